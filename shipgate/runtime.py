"""Wiring of the engine and its collaborators from configuration."""

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from shipgate.artifacts import ArtifactStore, RetentionReaper
from shipgate.config import Config
from shipgate.credentials import CredentialBroker, SecretStore, VaultSecretsBackend
from shipgate.database import Database
from shipgate.events import EventBus
from shipgate.pipeline.executor import PipelineEngine
from shipgate.pipeline.loader import PipelineLoader, PipelineRegistry
from shipgate.recorder import RunRecorder
from shipgate.services import RunService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a process (CLI or server) needs to run pipelines."""
    db: Database
    recorder: RunRecorder
    store: ArtifactStore
    broker: CredentialBroker
    secret_store: Optional[SecretStore]
    event_bus: EventBus
    engine: PipelineEngine
    loader: PipelineLoader
    registry: PipelineRegistry
    service: RunService
    reaper: RetentionReaper


def _setting(settings: Optional[Mapping[str, Any]], name: str) -> Any:
    if settings is not None and name in settings:
        return settings[name]
    return getattr(Config, name)


def build_runtime(settings: Optional[Mapping[str, Any]] = None, event_bus: Optional[EventBus] = None) -> Runtime:
    """
    Build the runtime from Config, overridden by ``settings``.

    Args:
        settings: Mapping of Config attribute names to values (e.g. Flask app.config)
        event_bus: Event bus for progress events (a new one if omitted)
    """
    db = Database(_setting(settings, "DB_PATH"))
    recorder = RunRecorder(db)
    store = ArtifactStore(
        _setting(settings, "ARTIFACT_ROOT"),
        db,
        retention_periods=_setting(settings, "RETENTION_PERIODS"),
        is_run_terminal=recorder.is_terminal,
    )

    secret_store = None
    if _setting(settings, "SECRETS_BACKEND") == "vault":
        backend = VaultSecretsBackend(
            addr=_setting(settings, "VAULT_ADDR"),
            token=_setting(settings, "VAULT_TOKEN"),
            mount=_setting(settings, "VAULT_MOUNT"),
        )
    else:
        backend = secret_store = SecretStore(
            db,
            use_encryption=_setting(settings, "ENCRYPT_SECRETS"),
            key_path=os.path.join(_setting(settings, "DATA_DIR"), ".shipgate_key"),
        )
    broker = CredentialBroker(backend, default_ttl=_setting(settings, "DEFAULT_LEASE_TTL_SECONDS"))

    event_bus = event_bus or EventBus()
    engine = PipelineEngine(
        recorder,
        store,
        broker,
        max_parallel=_setting(settings, "MAX_PARALLEL_STAGES"),
        workspace_root=_setting(settings, "WORKSPACE_ROOT"),
        event_bus=event_bus,
        default_timeout=_setting(settings, "DEFAULT_STAGE_TIMEOUT_SECONDS"),
    )
    loader = PipelineLoader()
    registry = PipelineRegistry(loader)
    logger.info(f"Runtime ready (db={db.db_path}, secrets={type(backend).__name__})")

    return Runtime(
        db=db,
        recorder=recorder,
        store=store,
        broker=broker,
        secret_store=secret_store,
        event_bus=event_bus,
        engine=engine,
        loader=loader,
        registry=registry,
        service=RunService(engine, registry),
        reaper=RetentionReaper(store, interval_seconds=_setting(settings, "REAPER_INTERVAL_SECONDS")),
    )

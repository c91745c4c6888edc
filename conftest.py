"""Shared fixtures: an isolated database, store, broker and engine per test.

External tools are simulated with ``sys.executable -c`` child processes.
"""

import json
import sys

import pytest

from shipgate.artifacts import ArtifactStore, RetentionReaper
from shipgate.credentials import CredentialBroker, SecretStore
from shipgate.database import Database
from shipgate.events import EventBus
from shipgate.pipeline.executor import PipelineEngine
from shipgate.pipeline.schema import PipelineDefinition
from shipgate.recorder import RunRecorder
from shipgate.tools.adapter import ToolAdapter

RETENTION_DAYS = {"compliance": 2192, "standard": 90, "ephemeral": 0}


def py(code, *args):
    """Command spec running a Python snippet. Braces must be escaped as ``{{ }}``."""
    return {"command": sys.executable, "args": ["-c", code, *args]}


def literal(text):
    """Escape text so it survives command template rendering unchanged."""
    return text.replace("{", "{{").replace("}", "}}")


def emit_json(document):
    """Command spec printing a JSON document on stdout."""
    return py("import sys; sys.stdout.write(sys.argv[1])", literal(json.dumps(document)))


def pipeline(stages, gates=None, **extra):
    data = {"name": extra.pop("name", "demo"), "stages": stages, "gates": gates or {}}
    data.update(extra)
    return PipelineDefinition.model_validate(data)


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "shipgate.db"))


@pytest.fixture
def recorder(db):
    return RunRecorder(db)


@pytest.fixture
def store(tmp_path, db, recorder):
    return ArtifactStore(
        tmp_path / "artifacts",
        db,
        retention_periods=RETENTION_DAYS,
        is_run_terminal=recorder.is_terminal,
    )


@pytest.fixture
def reaper(store):
    return RetentionReaper(store, interval_seconds=3600)


@pytest.fixture
def secret_store(tmp_path, db):
    return SecretStore(db, use_encryption=True, key_path=str(tmp_path / "keys" / ".shipgate_key"))


@pytest.fixture
def broker(secret_store):
    return CredentialBroker(secret_store, default_ttl=300)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def adapter():
    return ToolAdapter(poll_interval=0.05, kill_grace_seconds=2.0)


@pytest.fixture
def engine(tmp_path, recorder, store, broker, adapter, event_bus):
    return PipelineEngine(
        recorder,
        store,
        broker,
        adapter=adapter,
        max_parallel=4,
        workspace_root=str(tmp_path / "workspaces"),
        event_bus=event_bus,
        default_timeout=60,
        poll_interval=0.02,
    )

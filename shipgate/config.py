import os
from typing import Any, Dict


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    SECRET_KEY: str = (
        os.environ.get("SECRET_KEY") or "shipgate-secret-key-change-in-production"
    )
    LOG_LEVEL: str = os.environ.get("SHIPGATE_LOG_LEVEL") or "INFO"

    DATA_DIR: str = os.environ.get("SHIPGATE_DATA_DIR") or os.path.join(os.getcwd(), "data")
    DB_PATH: str = os.environ.get("SHIPGATE_DB_PATH") or os.path.join(DATA_DIR, "shipgate.db")
    ARTIFACT_ROOT: str = os.environ.get("SHIPGATE_ARTIFACT_ROOT") or os.path.join(DATA_DIR, "artifacts")
    WORKSPACE_ROOT: str = os.environ.get("SHIPGATE_WORKSPACE_ROOT") or os.path.join(DATA_DIR, "workspaces")

    MAX_PARALLEL_STAGES: int = _env_int("SHIPGATE_MAX_PARALLEL_STAGES", 4)
    DEFAULT_STAGE_TIMEOUT_SECONDS: int = _env_int("SHIPGATE_STAGE_TIMEOUT", 600)
    DEFAULT_LEASE_TTL_SECONDS: int = _env_int("SHIPGATE_LEASE_TTL", 900)
    REAPER_INTERVAL_SECONDS: int = _env_int("SHIPGATE_REAPER_INTERVAL", 3600)

    # Minimum retention per class, in days. Ephemeral artifacts are build-scoped.
    RETENTION_PERIODS: Dict[str, int] = {
        "compliance": _env_int("SHIPGATE_RETENTION_COMPLIANCE_DAYS", 2192),
        "standard": _env_int("SHIPGATE_RETENTION_STANDARD_DAYS", 90),
        "ephemeral": 0,
    }

    SECRETS_BACKEND: str = os.environ.get("SHIPGATE_SECRETS_BACKEND") or "local"
    ENCRYPT_SECRETS: bool = os.environ.get("SHIPGATE_ENCRYPT_SECRETS", "1").lower() not in {"0", "false", "no"}
    VAULT_ADDR: str = os.environ.get("VAULT_ADDR") or "http://127.0.0.1:8200"
    VAULT_TOKEN: str = os.environ.get("VAULT_TOKEN") or ""
    VAULT_MOUNT: str = os.environ.get("SHIPGATE_VAULT_MOUNT") or "secret"

    @staticmethod
    def init_app(app: Any) -> None:
        for key in ("DATA_DIR", "ARTIFACT_ROOT", "WORKSPACE_ROOT"):
            os.makedirs(app.config.get(key) or getattr(Config, key), exist_ok=True)

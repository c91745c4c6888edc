"""Credential broker and secrets backends.

Stages never see long-lived secrets directly: the broker leases a scope's
secret values for a bounded time and revokes the lease when the stage (or
the whole run) ends. Lease ids, scopes and expiry are safe to record;
secret values are not and never leave the Credential object.
"""

import logging
import os
import secrets
import threading
from abc import ABC, abstractmethod
from base64 import b64decode, b64encode
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import requests

from shipgate.config import Config
from shipgate.data_models import Credential, utc_now
from shipgate.database import Database
from shipgate.errors import CredentialUnavailable
from shipgate.utils.retry import (
    DEFAULT_SECRETS_RETRY_CONFIG,
    RateLimitError,
    RetryConfig,
    ServiceUnavailableError,
    retry_sync,
)

logger = logging.getLogger(__name__)


class SecretsBackend(ABC):
    """Source of secret values for a credential scope."""

    @abstractmethod
    def fetch(self, scope: str) -> Dict[str, str]:
        """
        Return the secret fields of a scope (e.g. username/password).

        Raises:
            CredentialUnavailable: Scope unknown or backend unreachable
        """


class SecretStore(SecretsBackend):
    """Secrets kept in the local database, with optional encryption.

    Lookups fall back to ``SHIPGATE_SECRET_<SCOPE>_<FIELD>`` environment
    variables when a scope has no stored fields.
    """

    ENV_PREFIX = "SHIPGATE_SECRET_"

    def __init__(self, db: Database, use_encryption: bool = True, key_path: Optional[str] = None):
        """
        Initialize secret store.

        Args:
            db: Database holding the secrets table
            use_encryption: Encrypt values with Fernet (base64 obfuscation otherwise)
            key_path: Location of the Fernet key file
        """
        self.db = db
        self.use_encryption = use_encryption
        self.key_path = Path(key_path or os.path.join(Config.DATA_DIR, ".shipgate_key"))
        self.lock = threading.Lock()
        self.cipher = None

        if use_encryption:
            from cryptography.fernet import Fernet
            self.cipher = Fernet(self._get_or_create_key())

    def _get_or_create_key(self) -> bytes:
        """Get or create encryption key."""
        if self.key_path.exists():
            return self.key_path.read_bytes()

        from cryptography.fernet import Fernet
        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)  # Restrict to owner only
        logger.info(f"Created new encryption key: {self.key_path}")
        return key

    def _encrypt(self, value: str) -> str:
        if self.cipher:
            return self.cipher.encrypt(value.encode()).decode()
        # Base64 is obfuscation only, not protection
        return b64encode(value.encode()).decode()

    def _decrypt(self, stored: str, encrypted: bool) -> str:
        if encrypted:
            if not self.cipher:
                raise CredentialUnavailable("<encrypted>", "secret is encrypted but no key is configured")
            return self.cipher.decrypt(stored.encode()).decode()
        return b64decode(stored.encode()).decode()

    def store(self, scope: str, values: Dict[str, str]) -> None:
        """
        Store (or replace) secret fields for a scope.

        Args:
            scope: Credential scope (e.g. 'registry', 'cluster')
            values: Field name -> secret value
        """
        timestamp = utc_now().isoformat()
        with self.lock:
            with self.db.get_connection() as conn:
                for field_name, value in values.items():
                    conn.execute(
                        """
                        INSERT INTO secrets (scope, field, value, encrypted, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT(scope, field)
                        DO UPDATE SET
                            value = excluded.value,
                            encrypted = excluded.encrypted,
                            updated_at = excluded.updated_at
                        """,
                        (scope, field_name, self._encrypt(value), bool(self.cipher), timestamp, timestamp),
                    )
                conn.commit()
        logger.info(f"Stored secret scope '{scope}' ({len(values)} fields, encrypted={bool(self.cipher)})")

    def fetch(self, scope: str) -> Dict[str, str]:
        with self.lock:
            with self.db.get_connection() as conn:
                rows = conn.execute(
                    "SELECT field, value, encrypted FROM secrets WHERE scope = ?", (scope,)
                ).fetchall()

        if rows:
            return {row["field"]: self._decrypt(row["value"], bool(row["encrypted"])) for row in rows}

        env_values = self._from_environment(scope)
        if env_values:
            logger.debug(f"Using secret scope '{scope}' from environment")
            return env_values

        raise CredentialUnavailable(scope, "no secret stored for scope")

    def delete(self, scope: str) -> None:
        with self.lock:
            with self.db.get_connection() as conn:
                conn.execute("DELETE FROM secrets WHERE scope = ?", (scope,))
                conn.commit()
        logger.info(f"Deleted secret scope '{scope}'")

    def list_scopes(self) -> List[Dict[str, str]]:
        """List stored scopes and field names (without values)."""
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT scope, field, updated_at FROM secrets ORDER BY scope, field"
            ).fetchall()
        return [dict(row) for row in rows]

    def _from_environment(self, scope: str) -> Dict[str, str]:
        prefix = f"{self.ENV_PREFIX}{scope.upper().replace('-', '_')}_"
        return {
            name[len(prefix):].lower(): value
            for name, value in os.environ.items()
            if name.startswith(prefix) and value
        }


class VaultSecretsBackend(SecretsBackend):
    """HashiCorp Vault KV v2 backend."""

    def __init__(
        self,
        addr: Optional[str] = None,
        token: Optional[str] = None,
        mount: Optional[str] = None,
        timeout_seconds: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.addr = (addr or Config.VAULT_ADDR).rstrip("/")
        self.token = token if token is not None else Config.VAULT_TOKEN
        self.mount = mount or Config.VAULT_MOUNT
        self.timeout = timeout_seconds
        self.retry_config = retry_config or DEFAULT_SECRETS_RETRY_CONFIG
        self.session = session or requests.Session()

    def fetch(self, scope: str) -> Dict[str, str]:
        try:
            return retry_sync(self._read, scope, config=self.retry_config)
        except (RateLimitError, ServiceUnavailableError) as exc:
            raise CredentialUnavailable(scope, str(exc)) from exc

    def _read(self, scope: str) -> Dict[str, str]:
        url = f"{self.addr}/v1/{self.mount}/data/{scope}"
        try:
            response = self.session.get(url, headers={"X-Vault-Token": self.token}, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise ServiceUnavailableError(f"Vault unreachable: {exc}")

        if response.status_code == 429:
            raise RateLimitError("Vault rate limit exceeded", retry_after=self._retry_after(response))
        if response.status_code >= 500:
            raise ServiceUnavailableError(f"Vault returned {response.status_code}",
                                          retry_after=self._retry_after(response))
        if response.status_code == 404:
            raise CredentialUnavailable(scope, "not found in Vault")
        if response.status_code in (401, 403):
            raise CredentialUnavailable(scope, "Vault denied access")
        if response.status_code != 200:
            raise CredentialUnavailable(scope, f"Vault returned {response.status_code}")

        data = ((response.json() or {}).get("data") or {}).get("data")
        if not isinstance(data, dict) or not data:
            raise CredentialUnavailable(scope, "Vault secret has no data")
        return {str(k): str(v) for k, v in data.items()}

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[float]:
        header = response.headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                pass
        return None


class CredentialBroker:
    """Issue short-lived, scoped credential leases.

    Every ``lease`` call yields an independent lease; leases for the same
    scope requested by concurrent stages never block each other.
    """

    def __init__(self, backend: SecretsBackend, default_ttl: Optional[int] = None):
        """
        Args:
            backend: Source of secret values
            default_ttl: Lease lifetime in seconds when none is requested
        """
        self.backend = backend
        self.default_ttl = default_ttl or Config.DEFAULT_LEASE_TTL_SECONDS
        self._leases: Dict[str, Credential] = {}
        self._lock = threading.Lock()

    def lease(
        self,
        scope: str,
        ttl: Optional[int] = None,
        run_id: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> Credential:
        """
        Lease a credential for a scope.

        Args:
            scope: Credential scope (e.g. 'registry')
            ttl: Lease lifetime in seconds
            run_id: Run the lease belongs to
            stage: Stage the lease belongs to

        Returns:
            Credential holding the secret values

        Raises:
            CredentialUnavailable: Backend cannot supply the scope
        """
        try:
            values = self.backend.fetch(scope)
        except CredentialUnavailable:
            logger.warning(f"Credential unavailable for scope '{scope}' ({run_id}/{stage})")
            raise
        except Exception as exc:
            logger.error(f"Secrets backend failed for scope '{scope}': {exc}")
            raise CredentialUnavailable(scope, str(exc)) from exc

        issued = utc_now()
        credential = Credential(
            lease_id=secrets.token_urlsafe(16),
            scope=scope,
            issued_at=issued,
            expires_at=issued + timedelta(seconds=ttl or self.default_ttl),
            values=values,
            run_id=run_id,
            stage=stage,
        )
        with self._lock:
            self._leases[credential.lease_id] = credential

        logger.info(f"Leased '{scope}' to {run_id}/{stage} (lease {credential.lease_id[:8]}, "
                    f"expires {credential.expires_at.isoformat()})")
        return credential

    def is_valid(self, lease_id: str, now: Optional[datetime] = None) -> bool:
        """A lease is valid until it is revoked or expires."""
        now = now or utc_now()
        with self._lock:
            credential = self._leases.get(lease_id)
        return credential is not None and now < credential.expires_at

    def revoke(self, lease_id: str) -> bool:
        """Revoke one lease. Returns False if it was not active."""
        with self._lock:
            credential = self._leases.pop(lease_id, None)
        if credential is None:
            return False
        credential.values.clear()
        logger.info(f"Revoked lease {lease_id[:8]} ('{credential.scope}', {credential.run_id}/{credential.stage})")
        return True

    def revoke_stage(self, run_id: str, stage: str) -> int:
        return self._revoke_where(lambda c: c.run_id == run_id and c.stage == stage)

    def revoke_run(self, run_id: str) -> int:
        """Revoke every lease issued to a run. Returns the number revoked."""
        return self._revoke_where(lambda c: c.run_id == run_id)

    def active_leases(self, run_id: Optional[str] = None) -> List[Credential]:
        with self._lock:
            leases = list(self._leases.values())
        return [c for c in leases if run_id is None or c.run_id == run_id]

    def _revoke_where(self, predicate) -> int:
        with self._lock:
            lease_ids = [lease_id for lease_id, c in self._leases.items() if predicate(c)]
        return sum(1 for lease_id in lease_ids if self.revoke(lease_id))

    @contextmanager
    def leased(self, scope: str, ttl: Optional[int] = None, run_id: Optional[str] = None,
               stage: Optional[str] = None) -> Iterator[Credential]:
        """Lease a credential for the duration of a ``with`` block."""
        credential = self.lease(scope, ttl=ttl, run_id=run_id, stage=stage)
        try:
            yield credential
        finally:
            self.revoke(credential.lease_id)


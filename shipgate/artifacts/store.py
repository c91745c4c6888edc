"""Content-addressed artifact storage with retention metadata.

Blobs live under ``<root>/objects/<first 2 hex>/<remaining 62 hex>`` and are
written through a temporary file plus ``os.replace`` so a reader never sees a
partial blob. Bindings (which run and stage produced which blob, under what
name and retention class) live in the ``artifacts`` table.

Bindings are written unsealed and become visible through ``list`` only once
the engine seals them at the end of their stage.
"""

import hashlib
import logging
import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from shipgate.config import Config
from shipgate.data_models import Artifact, RetentionClass, StageResult, parse_timestamp, utc_now
from shipgate.database import Database
from shipgate.errors import ArtifactNotFound, ArtifactStoreUnavailable, RetentionViolation

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Store and retrieve run artifacts by content hash."""

    def __init__(
        self,
        root: Union[str, Path],
        db: Database,
        retention_periods: Optional[Dict[str, int]] = None,
        is_run_terminal: Optional[Callable[[str], bool]] = None,
    ):
        """
        Args:
            root: Directory holding the blob tree
            db: Database holding artifact bindings
            retention_periods: Minimum retention in days per class
            is_run_terminal: Lookup used to keep ephemeral artifacts of live runs
        """
        self.root = Path(root)
        self.objects_dir = self.root / "objects"
        self.db = db
        self.retention_periods = dict(retention_periods or Config.RETENTION_PERIODS)
        self.is_run_terminal = is_run_terminal
        self._lock = threading.RLock()
        try:
            self.objects_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArtifactStoreUnavailable(f"cannot create artifact root {self.root}: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(
        self,
        stage_result: StageResult,
        data: bytes,
        media_type: str,
        retention: Any,
        name: str,
    ) -> Artifact:
        """
        Store bytes for a stage and bind them to its run.

        Idempotent: identical bytes under the same run, stage and name return
        the same artifact without writing a second blob or binding.

        Args:
            stage_result: Producing stage (supplies run id and stage name)
            data: Artifact contents
            media_type: e.g. ``application/vnd.cyclonedx+json``
            retention: RetentionClass or its name; unknown values fail closed
            name: Logical artifact name

        Returns:
            The stored Artifact

        Raises:
            ArtifactStoreUnavailable: On any storage failure
        """
        retention_class = RetentionClass.parse(retention)
        digest = hashlib.sha256(data).hexdigest()
        created = utc_now()
        retain_until = self._retain_until(created, retention_class)

        with self._lock:
            try:
                self._write_blob(digest, data)
            except OSError as exc:
                raise ArtifactStoreUnavailable(f"failed to write blob {digest[:12]}: {exc}") from exc

            try:
                with self.db.get_connection() as conn:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO artifacts
                            (hash, name, media_type, run_id, stage, retention, size, created_at, retain_until)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (digest, name, media_type, stage_result.run_id, stage_result.stage,
                         retention_class.value, len(data), created.isoformat(), retain_until.isoformat()),
                    )
                    conn.commit()
                    row = conn.execute(
                        "SELECT * FROM artifacts WHERE run_id = ? AND stage = ? AND name = ? AND hash = ?",
                        (stage_result.run_id, stage_result.stage, name, digest),
                    ).fetchone()
            except sqlite3.Error as exc:
                raise ArtifactStoreUnavailable(f"failed to bind artifact '{name}': {exc}") from exc

        logger.info(f"Stored artifact '{name}' ({len(data)} bytes, {retention_class.value}) "
                    f"for {stage_result.run_id}/{stage_result.stage}: {digest[:12]}")
        return self._row_to_artifact(row)

    def seal(self, run_id: str, stage: str) -> int:
        """Make a stage's artifacts visible to ``list``. Returns the number sealed."""
        try:
            with self.db.get_connection() as conn:
                cursor = conn.execute(
                    "UPDATE artifacts SET sealed = 1 WHERE run_id = ? AND stage = ? AND sealed = 0",
                    (run_id, stage),
                )
                conn.commit()
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise ArtifactStoreUnavailable(f"failed to seal artifacts of {run_id}/{stage}: {exc}") from exc

    def _write_blob(self, digest: str, data: bytes) -> None:
        path = self.blob_path(digest)
        if path.exists():
            if self._digest_of(path) == digest:
                return
            logger.warning(f"Blob {digest[:12]} is corrupted on disk; rewriting it")
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _digest_of(path: Path) -> str:
        sha = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1 << 20), b""):
                sha.update(chunk)
        return sha.hexdigest()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def blob_path(self, digest: str) -> Path:
        return self.objects_dir / digest[:2] / digest[2:]

    def get(self, digest: str) -> bytes:
        """
        Read a blob and verify its content hash.

        Raises:
            ArtifactNotFound: No blob under this hash
            ArtifactStoreUnavailable: Read failure or corrupted blob
        """
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            raise ArtifactNotFound(f"invalid artifact hash: {digest}")
        path = self.blob_path(digest)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFound(f"artifact not found: {digest}")
        except OSError as exc:
            raise ArtifactStoreUnavailable(f"failed to read blob {digest[:12]}: {exc}") from exc

        if hashlib.sha256(data).hexdigest() != digest:
            raise ArtifactStoreUnavailable(f"blob {digest[:12]} is corrupted (hash mismatch)")
        return data

    def list(self, run_id: str, include_unsealed: bool = False) -> List[Artifact]:
        """List a run's artifacts in creation order."""
        query = "SELECT * FROM artifacts WHERE run_id = ?"
        if not include_unsealed:
            query += " AND sealed = 1"
        query += " ORDER BY id"
        return [self._row_to_artifact(row) for row in self._query(query, (run_id,))]

    def list_stage(self, run_id: str, stage: str, include_unsealed: bool = False) -> List[Artifact]:
        return [a for a in self.list(run_id, include_unsealed=include_unsealed) if a.stage == stage]

    def _query(self, query: str, params: tuple) -> List[sqlite3.Row]:
        try:
            with self.db.get_connection() as conn:
                return conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise ArtifactStoreUnavailable(f"artifact index unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def _retain_until(self, created: datetime, retention: RetentionClass) -> datetime:
        days = self.retention_periods.get(retention.value)
        if days is None:
            days = max(self.retention_periods.values())
        return created + timedelta(days=days)

    def effective_retain_until(self, row: sqlite3.Row) -> datetime:
        """Retention deadline of a binding, failing closed on missing metadata.

        The stored deadline is never allowed to undercut the class minimum.
        """
        created = parse_timestamp(row["created_at"])
        retention = RetentionClass.parse(row["retention"])
        deadline = self._retain_until(created, retention)
        stored = parse_timestamp(row["retain_until"])
        return max(deadline, stored) if stored else deadline

    def is_expired(self, row: sqlite3.Row, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        if now < self.effective_retain_until(row):
            return False
        if RetentionClass.parse(row["retention"]) == RetentionClass.EPHEMERAL:
            if self.is_run_terminal is None or not self.is_run_terminal(row["run_id"]):
                return False
        return True

    def expired(self, now: Optional[datetime] = None) -> List[sqlite3.Row]:
        rows = self._query("SELECT * FROM artifacts ORDER BY id", ())
        return [row for row in rows if self.is_expired(row, now)]

    def delete(self, artifact_id: int, now: Optional[datetime] = None) -> None:
        """
        Delete one binding, and its blob if nothing else references it.

        Raises:
            RetentionViolation: The retention period has not elapsed
            ArtifactNotFound: No such binding
        """
        now = now or utc_now()
        with self._lock:
            rows = self._query("SELECT * FROM artifacts WHERE id = ?", (artifact_id,))
            if not rows:
                raise ArtifactNotFound(f"artifact binding {artifact_id} not found")
            row = rows[0]
            if not self.is_expired(row, now):
                raise RetentionViolation(
                    f"artifact '{row['name']}' ({row['retention'] or 'unclassified'}) is retained until "
                    f"{self.effective_retain_until(row).isoformat()}"
                )

            try:
                with self.db.get_connection() as conn:
                    conn.execute("DELETE FROM artifacts WHERE id = ?", (artifact_id,))
                    remaining = conn.execute(
                        "SELECT COUNT(*) FROM artifacts WHERE hash = ?", (row["hash"],)
                    ).fetchone()[0]
                    conn.commit()
                if not remaining:
                    self.blob_path(row["hash"]).unlink(missing_ok=True)
            except (sqlite3.Error, OSError) as exc:
                raise ArtifactStoreUnavailable(f"failed to delete artifact {artifact_id}: {exc}") from exc

        logger.info(f"Deleted artifact '{row['name']}' of {row['run_id']}/{row['stage']} ({row['hash'][:12]})")

    def _row_to_artifact(self, row: sqlite3.Row) -> Artifact:
        return Artifact(
            hash=row["hash"],
            name=row["name"],
            media_type=row["media_type"],
            run_id=row["run_id"],
            stage=row["stage"],
            retention=RetentionClass.parse(row["retention"]),
            size=row["size"],
            created_at=row["created_at"],
            retain_until=self.effective_retain_until(row).isoformat(),
        )

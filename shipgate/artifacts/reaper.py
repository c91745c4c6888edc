"""Background retention reaper."""

import logging
import threading
from datetime import datetime
from typing import List, Optional

from shipgate.artifacts.store import ArtifactStore
from shipgate.config import Config
from shipgate.errors import RetentionViolation

logger = logging.getLogger(__name__)


class RetentionReaper:
    """Periodically delete artifacts whose retention period has elapsed.

    The reaper only proposes deletions; ``ArtifactStore.delete`` re-checks the
    retention class and refuses anything still inside its minimum period.
    """

    def __init__(self, store: ArtifactStore, interval_seconds: Optional[float] = None):
        self.store = store
        self.interval_seconds = interval_seconds or Config.REAPER_INTERVAL_SECONDS
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def reap_once(self, now: Optional[datetime] = None) -> List[str]:
        """
        Delete every expired artifact binding.

        Returns:
            Hashes of the bindings removed
        """
        removed = []
        for row in self.store.expired(now):
            try:
                self.store.delete(row["id"], now=now)
            except RetentionViolation as exc:
                logger.warning(f"Reaper skipped artifact {row['id']}: {exc}")
                continue
            removed.append(row["hash"])

        if removed:
            logger.info(f"Reaper removed {len(removed)} expired artifact(s)")
        return removed

    def start(self) -> None:
        if self._thread:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="shipgate-reaper", daemon=True)
        self._thread.start()
        logger.info(f"Retention reaper started (interval={self.interval_seconds}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.reap_once()
            except Exception as e:
                logger.error(f"Retention reaper pass failed: {e}")

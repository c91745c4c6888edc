"""Server-Sent Events manager for live run progress.

Each client watching a run holds an SSEConnection with its own queue; the
event bus broadcasts into every queue registered for that run id.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Set

from shipgate.data_models import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

# Sentinel event closing a stream once the run is terminal
STREAM_END_EVENTS = {"run_completed", "run_failed", "run_aborted"}


@dataclass(eq=False)
class SSEConnection:
    """One client subscribed to a run's events."""

    run_id: str
    client_id: str
    queue: Queue = field(default_factory=Queue)
    connected_at: str = field(default_factory=lambda: utc_now().isoformat())
    last_activity: str = field(default_factory=lambda: utc_now().isoformat())

    def __hash__(self):
        return hash((self.run_id, self.client_id))

    def __eq__(self, other):
        if not isinstance(other, SSEConnection):
            return False
        return self.run_id == other.run_id and self.client_id == other.client_id

    def send_event(self, event_type: str, data: Dict[str, Any]) -> None:
        self.queue.put({
            "event": event_type,
            "data": data,
            "timestamp": utc_now().isoformat(),
        })
        self.last_activity = utc_now().isoformat()

    def get_events(self, timeout: float = 15.0) -> List[Dict[str, Any]]:
        """
        Wait for the next event, then drain whatever else is queued.

        Args:
            timeout: Seconds to wait before returning empty (keepalive)

        Returns:
            List of events (empty on timeout)
        """
        try:
            events = [self.queue.get(timeout=timeout)]
        except Empty:
            return []

        while True:
            try:
                events.append(self.queue.get_nowait())
            except Empty:
                break
        return events


class SSEManager:
    """
    Manages SSE connections and event broadcasting.

    Usage:
        manager = SSEManager()
        connection = manager.connect(run_id="release#12")
        manager.broadcast(run_id="release#12", event_type="stage_started", data={"stage": "Build"})
        manager.disconnect(run_id="release#12", client_id=connection.client_id)
    """

    def __init__(self):
        # run_id -> set of SSEConnection objects
        self._connections: Dict[str, Set[SSEConnection]] = {}
        self._lock = threading.RLock()

    def connect(self, run_id: str, client_id: Optional[str] = None) -> SSEConnection:
        """
        Register a new SSE connection.

        Args:
            run_id: Run to watch
            client_id: Optional client identifier (generated if not provided)

        Returns:
            SSEConnection object
        """
        client_id = client_id or f"client-{uuid.uuid4().hex[:8]}"
        connection = SSEConnection(run_id=run_id, client_id=client_id)

        with self._lock:
            self._connections.setdefault(run_id, set()).add(connection)

        logger.info(f"SSE connection established: run_id={run_id}, client_id={client_id}")
        connection.send_event("connected", {"run_id": run_id, "client_id": client_id})
        return connection

    def disconnect(self, run_id: str, client_id: str) -> None:
        with self._lock:
            if run_id in self._connections:
                self._connections[run_id] = {
                    conn for conn in self._connections[run_id] if conn.client_id != client_id
                }
                if not self._connections[run_id]:
                    del self._connections[run_id]

        logger.info(f"SSE connection closed: run_id={run_id}, client_id={client_id}")

    def broadcast(self, run_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Broadcast an event to all connections watching a run.

        Returns:
            Number of connections that received the event
        """
        with self._lock:
            connections = list(self._connections.get(run_id, set()))

        for connection in connections:
            connection.send_event(event_type, data)

        if connections:
            logger.debug(f"Broadcast {event_type} to {len(connections)} client(s) for run {run_id}")
        return len(connections)

    def get_connections(self, run_id: str) -> List[SSEConnection]:
        with self._lock:
            return list(self._connections.get(run_id, set()))

    def get_connection_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._connections.get(run_id, set()))

    def cleanup_stale_connections(self, max_age_seconds: float = 3600) -> int:
        """
        Remove connections older than max_age_seconds.

        Returns:
            Number of connections removed
        """
        removed = 0
        now = time.time()

        with self._lock:
            for run_id in list(self._connections.keys()):
                stale = {
                    conn for conn in self._connections[run_id]
                    if now - parse_timestamp(conn.connected_at).timestamp() > max_age_seconds
                }
                if stale:
                    self._connections[run_id] -= stale
                    removed += len(stale)
                    if not self._connections[run_id]:
                        del self._connections[run_id]

        if removed:
            logger.info(f"Cleaned up {removed} stale SSE connection(s)")
        return removed


def format_sse_message(event_type: str, data: Dict[str, Any]) -> str:
    """
    Format data as an SSE message.

    Args:
        event_type: Event type
        data: Event data

    Returns:
        SSE-formatted message string
    """
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def format_keepalive() -> str:
    return f": keepalive {utc_now().isoformat()}\n\n"

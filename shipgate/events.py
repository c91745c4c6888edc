"""Event broadcasting for pipeline runs.

Events describe progress of a run as it happens (stage started, gate
evaluated, artifact stored, ...). They are a live notification channel only:
the Run Recorder is the durable record, and nothing reads events back to
decide run state. Consumers:
- SSE streams (``shipgate.sse``)
- Logging
- Tests (via subscribe / get_history)
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
import json
import logging
import threading

from shipgate.data_models import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted during pipeline execution."""

    # Run events
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_ABORTED = "run_aborted"

    # Stage events
    STAGE_STARTED = "stage_started"
    STAGE_PASSED = "stage_passed"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"

    # Evidence events
    GATE_EVALUATED = "gate_evaluated"
    ARTIFACT_STORED = "artifact_stored"

    # Credential events
    CREDENTIAL_LEASED = "credential_leased"
    CREDENTIAL_REVOKED = "credential_revoked"

    # Error events
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Event:
    """A single published event."""

    type: EventType
    run_id: str
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EventBus:
    """Central event bus for publishing and subscribing to events.

    Thread-safe: stages of one run publish from several worker threads.
    Subscriber errors are logged and never reach the publisher.
    """

    def __init__(self, sse_manager=None, max_history: int = 1000):
        """
        Initialize event bus.

        Args:
            sse_manager: SSEManager to forward events to (optional)
            max_history: Number of recent events kept in memory
        """
        self._subscribers: Dict[EventType, List[Callable]] = {}
        self._wildcard_subscribers: List[Callable] = []
        self._event_history: List[Event] = []
        self._max_history = max_history
        self._lock = threading.RLock()
        self.sse_manager = sse_manager

    def subscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]):
        """
        Subscribe to events.

        Args:
            event_type: Type of event to subscribe to, or None for all events
            callback: Function to call when event is published
        """
        with self._lock:
            if event_type is None:
                self._wildcard_subscribers.append(callback)
            else:
                self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]):
        with self._lock:
            if event_type is None:
                if callback in self._wildcard_subscribers:
                    self._wildcard_subscribers.remove(callback)
            elif callback in self._subscribers.get(event_type, []):
                self._subscribers[event_type].remove(callback)

    def publish(self, event: Event):
        """
        Publish event to all subscribers.

        Args:
            event: Event to publish
        """
        with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history.pop(0)
            callbacks = list(self._wildcard_subscribers) + list(self._subscribers.get(event.type, []))

        logger.debug(f"Event published: {event.type.value} for run {event.run_id}")

        self._forward_to_sse(event)

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event callback for {event.type.value}: {e}")

    def _forward_to_sse(self, event: Event):
        """Forward event to SSE connections watching this run."""
        sse_manager = self.sse_manager
        if sse_manager is None:
            from flask import current_app, has_app_context

            if has_app_context():
                sse_manager = getattr(current_app, "sse_manager", None)
        if sse_manager is None:
            return

        payload = dict(event.data)
        payload["timestamp"] = event.timestamp
        sse_manager.broadcast(run_id=event.run_id, event_type=event.type.value, data=payload)

    def get_history(self, run_id: Optional[str] = None, event_type: Optional[EventType] = None) -> List[Event]:
        """
        Get event history.

        Args:
            run_id: Filter by run ID (optional)
            event_type: Filter by event type (optional)

        Returns:
            List of events matching filters
        """
        with self._lock:
            events = list(self._event_history)

        if run_id:
            events = [e for e in events if e.run_id == run_id]
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events


# Global event bus instance
_global_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get global event bus instance (singleton)."""
    global _global_event_bus
    if _global_event_bus is None:
        _global_event_bus = EventBus()
    return _global_event_bus


class EventEmitter:
    """Helper for emitting events of one run from the engine and stages."""

    def __init__(self, run_id: str, event_bus: Optional[EventBus] = None):
        """
        Initialize event emitter.

        Args:
            run_id: Run ID for all events
            event_bus: EventBus to use (defaults to global)
        """
        self.run_id = run_id
        self.event_bus = event_bus or get_event_bus()

    def emit(self, event_type, data: Optional[Dict[str, Any]] = None):
        """
        Emit an event.

        Args:
            event_type: Type of event (EventType enum or string)
            data: Event data (optional)
        """
        if isinstance(event_type, str):
            try:
                event_type = EventType(event_type)
            except ValueError:
                logger.warning(f"Unknown event type: {event_type}")
                return

        self.event_bus.publish(Event(type=event_type, run_id=self.run_id, data=data or {}))

    def run_started(self, pipeline: str, build_number: int, stages: List[str]):
        self.emit(EventType.RUN_STARTED, {
            "pipeline": pipeline,
            "build_number": build_number,
            "stages": stages,
        })

    def run_finished(self, status: str, reason: str, duration_ms: int):
        """Emit the terminal run event matching ``status``."""
        event_type = {
            "succeeded": EventType.RUN_COMPLETED,
            "aborted": EventType.RUN_ABORTED,
        }.get(status, EventType.RUN_FAILED)
        self.emit(event_type, {
            "status": status,
            "reason": reason,
            "duration_ms": duration_ms,
        })

    def stage_started(self, stage: str):
        self.emit(EventType.STAGE_STARTED, {"stage": stage})

    def stage_finished(self, stage_result):
        """Emit stage_passed / stage_failed / stage_skipped for a terminal StageResult."""
        event_type = {
            "passed": EventType.STAGE_PASSED,
            "skipped": EventType.STAGE_SKIPPED,
        }.get(stage_result.status.value, EventType.STAGE_FAILED)
        self.emit(event_type, {
            "stage": stage_result.stage,
            "status": stage_result.status.value,
            "error_kind": stage_result.error_kind,
            "reason": stage_result.reason,
            "duration_ms": stage_result.duration_ms,
        })

    def gate_evaluated(self, stage: str, gate_result):
        data = gate_result.to_dict()
        data["stage"] = stage
        self.emit(EventType.GATE_EVALUATED, data)

    def artifact_stored(self, stage: str, artifact):
        self.emit(EventType.ARTIFACT_STORED, {
            "stage": stage,
            "name": artifact.name,
            "hash": artifact.hash,
            "media_type": artifact.media_type,
            "retention": artifact.retention.value,
            "size": artifact.size,
        })

    def credential_leased(self, credential):
        """Emit lease metadata. Secret values are never part of the event."""
        self.emit(EventType.CREDENTIAL_LEASED, credential.to_dict())

    def credential_revoked(self, credential):
        self.emit(EventType.CREDENTIAL_REVOKED, {
            "lease_id": credential.lease_id,
            "scope": credential.scope,
            "stage": credential.stage,
        })

    def error(self, error_message: str, context: Optional[Dict[str, Any]] = None):
        self.emit(EventType.ERROR, {
            "error": error_message,
            "context": context or {},
        })

    def warning(self, warning_message: str, context: Optional[Dict[str, Any]] = None):
        self.emit(EventType.WARNING, {
            "warning": warning_message,
            "context": context or {},
        })

#!/usr/bin/env python3
"""SSE streaming and event bus tests."""

import json
import threading
import time

from shipgate.events import Event, EventBus, EventEmitter, EventType
from shipgate.sse.stream import SSEConnection, SSEManager, format_keepalive, format_sse_message


# ============================================================================
# SSEConnection Tests
# ============================================================================

def test_sse_connection_creation():
    """Test creating an SSE connection."""
    conn = SSEConnection(run_id="release#12", client_id="client-1")

    assert conn.run_id == "release#12"
    assert conn.client_id == "client-1"
    assert conn.queue is not None
    assert conn.connected_at is not None


def test_sse_connection_send_event():
    """Test sending an event to a connection."""
    conn = SSEConnection(run_id="release#12", client_id="client-1")

    conn.send_event("stage_started", {"stage": "Build"})

    events = conn.get_events(timeout=0.1)
    assert len(events) == 1
    assert events[0]["event"] == "stage_started"
    assert events[0]["data"]["stage"] == "Build"
    assert "timestamp" in events[0]


def test_sse_connection_get_events_timeout():
    """Test get_events returns empty after the timeout (keepalive case)."""
    conn = SSEConnection(run_id="release#12", client_id="client-1")

    start = time.time()
    events = conn.get_events(timeout=0.3)

    assert events == []
    assert time.time() - start >= 0.3


def test_sse_connection_drains_queue():
    """Test several queued events come back in one batch, in order."""
    conn = SSEConnection(run_id="release#12", client_id="client-1")

    for stage in ("Checkout", "Build", "Test"):
        conn.send_event("stage_passed", {"stage": stage})

    events = conn.get_events(timeout=0.1)
    assert [e["data"]["stage"] for e in events] == ["Checkout", "Build", "Test"]


# ============================================================================
# SSEManager Tests
# ============================================================================

def test_sse_manager_connect():
    """Test connecting a client sends a connected event."""
    manager = SSEManager()

    conn = manager.connect(run_id="release#12", client_id="client-1")

    assert conn.run_id == "release#12"
    assert manager.get_connection_count("release#12") == 1
    assert conn.get_events(timeout=0.1)[0]["event"] == "connected"


def test_sse_manager_connect_auto_client_id():
    """Test connecting without explicit client ID."""
    manager = SSEManager()

    conn = manager.connect(run_id="release#12")

    assert conn.client_id.startswith("client-")


def test_sse_manager_disconnect():
    """Test disconnecting a client."""
    manager = SSEManager()
    manager.connect(run_id="release#12", client_id="client-1")

    manager.disconnect(run_id="release#12", client_id="client-1")

    assert manager.get_connection_count("release#12") == 0
    assert manager.get_connections("release#12") == []


def test_sse_manager_broadcast_isolation():
    """Test broadcasts only reach clients watching that run."""
    manager = SSEManager()
    conn1 = manager.connect(run_id="orders#3", client_id="client-1")
    conn2 = manager.connect(run_id="orders#3", client_id="client-2")
    other = manager.connect(run_id="payments#9", client_id="client-3")

    count = manager.broadcast(run_id="orders#3", event_type="stage_failed", data={"stage": "ImageScan"})

    assert count == 2
    for conn in (conn1, conn2):
        failed = [e for e in conn.get_events(timeout=0.1) if e["event"] == "stage_failed"]
        assert failed[0]["data"]["stage"] == "ImageScan"
    assert [e["event"] for e in other.get_events(timeout=0.1)] == ["connected"]


def test_sse_manager_broadcast_without_clients():
    """Test broadcasting to a run nobody watches."""
    assert SSEManager().broadcast("orders#3", "run_completed", {}) == 0


def test_sse_manager_cleanup_stale():
    """Test connections older than the limit are removed."""
    manager = SSEManager()
    conn = manager.connect(run_id="release#12", client_id="client-1")
    manager.connect(run_id="release#12", client_id="client-2")

    conn.connected_at = "2020-01-01T00:00:00"

    assert manager.cleanup_stale_connections(max_age_seconds=3600) == 1
    assert [c.client_id for c in manager.get_connections("release#12")] == ["client-2"]


def test_sse_manager_thread_safety():
    """Test concurrent connects and broadcasts."""
    manager = SSEManager()
    connections = []

    threads = [
        threading.Thread(target=lambda i=i: connections.append(manager.connect("release#12", f"client-{i}")))
        for i in range(5)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    threads = [
        threading.Thread(target=manager.broadcast, args=("release#12", "stage_passed", {"n": i}))
        for i in range(10)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert manager.get_connection_count("release#12") == 5
    for conn in connections:
        passed = [e for e in conn.get_events(timeout=0.1) if e["event"] == "stage_passed"]
        assert sorted(e["data"]["n"] for e in passed) == list(range(10))


# ============================================================================
# SSE Formatting Tests
# ============================================================================

def test_format_sse_message():
    """Test SSE message formatting."""
    msg = format_sse_message("gate_evaluated", {"gate": "imageScan", "passed": False})

    assert msg.startswith("event: gate_evaluated\n")
    assert '"gate": "imageScan"' in msg
    assert msg.endswith("\n\n")


def test_format_keepalive():
    """Test SSE keepalive comment formatting."""
    msg = format_keepalive()

    assert msg.startswith(": keepalive")
    assert msg.endswith("\n\n")


# ============================================================================
# Event Bus Tests
# ============================================================================

def test_event_bus_forwards_to_sse():
    """Test published events reach SSE clients with a timestamp."""
    manager = SSEManager()
    bus = EventBus(sse_manager=manager)
    conn = manager.connect("release#12")

    EventEmitter("release#12", bus).stage_started("Build")

    started = [e for e in conn.get_events(timeout=0.1) if e["event"] == "stage_started"]
    assert started[0]["data"]["stage"] == "Build"
    assert "timestamp" in started[0]["data"]


def test_event_bus_subscribers_and_history():
    """Test typed and wildcard subscribers, and history filtering."""
    bus = EventBus()
    typed, everything = [], []
    bus.subscribe(EventType.RUN_COMPLETED, typed.append)
    bus.subscribe(None, everything.append)

    emitter = EventEmitter("release#12", bus)
    emitter.stage_started("Build")
    emitter.run_finished("succeeded", "", 1200)
    EventEmitter("release#13", bus).run_finished("aborted", "aborted: superseded", 10)

    assert [e.type for e in typed] == [EventType.RUN_COMPLETED]
    assert len(everything) == 3
    assert len(bus.get_history("release#12")) == 2
    assert bus.get_history(event_type=EventType.RUN_ABORTED)[0].run_id == "release#13"

    bus.unsubscribe(None, everything.append)
    emitter.stage_started("Test")
    assert len(everything) == 3


def test_event_bus_history_is_bounded():
    """Test only the most recent events are kept."""
    bus = EventBus(max_history=3)
    for i in range(5):
        bus.publish(Event(type=EventType.WARNING, run_id="r#1", data={"n": i}))

    assert [e.data["n"] for e in bus.get_history()] == [2, 3, 4]


def test_failing_subscriber_does_not_break_publisher():
    """Test a subscriber exception is contained."""
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(None, broken)
    bus.subscribe(None, received.append)
    EventEmitter("release#12", bus).stage_started("Build")

    assert len(received) == 1


def test_unknown_event_type_is_ignored():
    """Test emitting an unknown type string publishes nothing."""
    bus = EventBus()
    EventEmitter("release#12", bus).emit("scan_started", {})
    assert bus.get_history() == []


def test_event_serialization():
    """Test Event.to_dict and Event.to_json."""
    event = Event(type=EventType.ARTIFACT_STORED, run_id="release#12", data={"name": "sbom"})
    payload = json.loads(event.to_json())
    assert payload == event.to_dict()
    assert payload["type"] == "artifact_stored"
    assert payload["data"] == {"name": "sbom"}
    assert payload["timestamp"] == event.timestamp

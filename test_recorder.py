#!/usr/bin/env python3
"""Run recorder tests: build numbers, append-only log and replay."""

import threading

from shipgate.data_models import GateResult, Run, RunStatus, StageResult, StageStatus
from shipgate.recorder import RUN_CREATED, RUN_FINISHED, STAGE_FINISHED, RunRecorder

DEFINITION = {"name": "demo", "stages": [{"name": "Build"}, {"name": "Test"}]}


def _new_run(recorder, build_number=1):
    run = Run(run_id=f"demo#{build_number}", pipeline="demo", build_number=build_number,
              variables={"GIT_REF": "main"})
    recorder.run_created(run, DEFINITION)
    return run


# ============================================================================
# Build Numbers
# ============================================================================

def test_build_numbers_increase_per_pipeline(recorder):
    """Test numbers start at 1 and are independent per pipeline."""
    assert recorder.next_build_number("orders") == 1
    assert recorder.next_build_number("orders") == 2
    assert recorder.next_build_number("payments") == 1
    assert recorder.next_build_number("orders") == 3


def test_build_numbers_unique_under_concurrency(db):
    """Test concurrent allocation never hands out a number twice."""
    numbers = []
    lock = threading.Lock()

    def allocate():
        recorder = RunRecorder(db)
        for _ in range(10):
            number = recorder.next_build_number("orders")
            with lock:
                numbers.append(number)

    threads = [threading.Thread(target=allocate) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(numbers) == list(range(1, 41))


# ============================================================================
# Event Log
# ============================================================================

def test_events_are_appended_in_order(recorder):
    """Test events come back in recording order with parsed payloads."""
    run = _new_run(recorder)
    recorder.run_started(run)
    seq = recorder.record(run.run_id, run.pipeline, "custom_note", payload={"note": "hello"})

    events = recorder.events(run.run_id)
    assert [e["event"] for e in events] == [RUN_CREATED, "run_started", "custom_note"]
    assert events[-1]["seq"] == seq
    assert events[-1]["payload"] == {"note": "hello"}
    assert events[0]["payload"]["definition"] == DEFINITION


def test_definition_snapshot(recorder):
    """Test the definition stored at creation is returned."""
    run = _new_run(recorder)
    assert recorder.definition(run.run_id) == DEFINITION
    assert recorder.definition("demo#99") is None


def test_finished_stage_records_are_never_rewritten(recorder, db):
    """Test a later record adds a row rather than updating the earlier one."""
    run = _new_run(recorder)
    result = StageResult(run_id=run.run_id, stage="Build", status=StageStatus.PASSED)
    recorder.stage_finished(run, result)
    recorder.record(run.run_id, run.pipeline, "custom_note")

    with db.get_connection() as conn:
        rows = conn.execute("SELECT event FROM run_events WHERE run_id = ? ORDER BY seq", (run.run_id,)).fetchall()
    assert [row["event"] for row in rows] == [RUN_CREATED, STAGE_FINISHED, "custom_note"]


# ============================================================================
# Replay
# ============================================================================

def test_replay_unknown_run(recorder):
    """Test replaying a run that was never recorded."""
    assert recorder.replay("demo#404") is None


def test_replay_reconstructs_run(recorder):
    """Test replay yields the statuses, reasons and gate results recorded."""
    run = _new_run(recorder)
    run.status = RunStatus.RUNNING
    run.started_at = "2026-01-05T10:00:00+00:00"
    recorder.run_started(run)

    build = StageResult(run_id=run.run_id, stage="Build", status=StageStatus.RUNNING,
                        started_at="2026-01-05T10:00:01+00:00")
    recorder.stage_started(run, build)
    build.status = StageStatus.FAILED
    build.error_kind = "gate_failure"
    build.reason = "gate 'unitTests' failed: 2 failed tests (max 0)"
    build.gate_results = [GateResult(gate="unitTests", passed=False, reason="2 failed tests (max 0)")]
    recorder.stage_finished(run, build)

    skipped = StageResult(run_id=run.run_id, stage="Test", status=StageStatus.SKIPPED,
                          error_kind="dependency_not_met", reason="dependency 'Build' did not pass")
    recorder.stage_finished(run, skipped)

    run.status = RunStatus.FAILED
    run.reason = "stage 'Build' failed: gate 'unitTests' failed"
    run.completed_at = "2026-01-05T10:03:00+00:00"
    recorder.run_finished(run)

    replayed = recorder.replay(run.run_id)
    assert replayed.status == RunStatus.FAILED
    assert replayed.reason == run.reason
    assert replayed.build_number == 1
    assert replayed.variables == {"GIT_REF": "main"}
    assert replayed.started_at == "2026-01-05T10:00:00+00:00"
    assert replayed.stages["Build"].status == StageStatus.FAILED
    assert replayed.stages["Build"].gate_results[0].gate == "unitTests"
    assert replayed.stages["Test"].error_kind == "dependency_not_met"
    assert replayed.completed_at == "2026-01-05T10:03:00+00:00"


def test_replay_shows_running_stage(recorder):
    """Test a stage with only a start record replays as Running."""
    run = _new_run(recorder)
    recorder.run_started(run)
    recorder.stage_started(run, StageResult(run_id=run.run_id, stage="Build", started_at="t0"))

    replayed = recorder.replay(run.run_id)
    assert replayed.status == RunStatus.RUNNING
    assert replayed.stages["Build"].status == StageStatus.RUNNING
    assert replayed.stages["Test"].status == StageStatus.PENDING


def test_rejected_run_stays_pending(recorder):
    """Test a rejected run replays as Pending with the rejection reason."""
    run = _new_run(recorder)
    recorder.run_rejected(run, "stage 'Build': unresolved variable 'IMAGE_TAG'")

    replayed = recorder.replay(run.run_id)
    assert replayed.status == RunStatus.PENDING
    assert "IMAGE_TAG" in replayed.reason
    assert recorder.queued_runs() == []


# ============================================================================
# Queries
# ============================================================================

def test_run_queries(recorder):
    """Test list_runs, incomplete_runs, queued_runs and is_terminal."""
    finished = _new_run(recorder, 1)
    recorder.run_started(finished)
    finished.status = RunStatus.SUCCEEDED
    recorder.run_finished(finished)

    crashed = _new_run(recorder, 2)
    recorder.run_started(crashed)

    queued = _new_run(recorder, 3)

    other = Run(run_id="payments#1", pipeline="payments", build_number=1)
    recorder.run_created(other, {"name": "payments", "stages": []})

    assert recorder.is_terminal(finished.run_id)
    assert not recorder.is_terminal(crashed.run_id)
    assert recorder.incomplete_runs() == [crashed.run_id]
    assert recorder.queued_runs() == [queued.run_id, other.run_id]

    summaries = recorder.list_runs("demo")
    assert [s["run_id"] for s in summaries] == ["demo#3", "demo#2", "demo#1"]
    assert summaries[2]["status"] == "succeeded"
    assert len(recorder.list_runs()) == 4


def test_finished_event_payload(recorder):
    """Test run_finished stores status and reason."""
    run = _new_run(recorder)
    run.status = RunStatus.ABORTED
    run.reason = "aborted: superseded"
    recorder.run_finished(run)

    event = recorder.events(run.run_id)[-1]
    assert event["event"] == RUN_FINISHED
    assert event["payload"]["status"] == "aborted"
    assert event["payload"]["reason"] == "aborted: superseded"

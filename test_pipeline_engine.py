#!/usr/bin/env python3
"""Pipeline engine tests: scheduling, failure propagation, abort, resume and evidence."""

import ast
import sys
import threading
import time

import pytest

from conftest import emit_json, literal, pipeline, py
from shipgate.data_models import RunStatus, StageResult, StageStatus, utc_now
from shipgate.errors import ArtifactStoreUnavailable, DefinitionError, ErrorKind
from shipgate.events import EventType
from shipgate.pipeline.executor import DISABLED_REASON, INTERRUPTED_REASON
from shipgate.recorder import RUN_CREATED, RUN_REJECTED

OK = py("print('ok')")

JUNIT_12_PASSED = (
    '<testsuite name="OrderServiceTest" tests="12">'
    + "".join(f'<testcase classname="OrderServiceTest" name="t{i}"/>' for i in range(12))
    + "</testsuite>"
)

JUNIT_1_FAILED = (
    '<testsuite name="PaymentTest" tests="2">'
    '<testcase classname="PaymentTest" name="charge"/>'
    '<testcase classname="PaymentTest" name="refund"><failure message="boom"/></testcase>'
    "</testsuite>"
)

TRIVY_CRITICAL = {
    "Results": [{
        "Target": "registry.local/orders:1",
        "Vulnerabilities": [
            {"VulnerabilityID": "CVE-2024-3094", "PkgName": "xz-utils", "InstalledVersion": "5.6.0",
             "Severity": "CRITICAL"},
            {"VulnerabilityID": "CVE-2023-1111", "PkgName": "zlib", "InstalledVersion": "1.2.13",
             "Severity": "MEDIUM"},
        ],
    }],
}

SPAN = "import sys, time; s = time.time(); time.sleep(0.4); open(sys.argv[1], 'w').write(repr((s, time.time())))"


def _stage(name, *commands, **extra):
    data = {"name": name, "commands": list(commands) or [OK]}
    data.update(extra)
    return data


def _statuses(run):
    return {name: result.status for name, result in run.stages.items()}


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError("condition not reached in time")


def _spans(directory):
    return sorted(ast.literal_eval(path.read_text()) for path in directory.glob("span-*.txt"))


def _assert_no_overlap(spans):
    for (_, end), (start, _) in zip(spans, spans[1:]):
        assert start >= end


# ============================================================================
# Linear Execution
# ============================================================================

def test_linear_pipeline_succeeds(engine, store, recorder):
    """Test a sequential pipeline passes every stage and stores evidence."""
    build = py("import os; os.makedirs('target', exist_ok=True); open('target/app.jar', 'wb').write(b'jar-bytes')")
    definition = pipeline([
        _stage("Checkout", py("print('checked out')")),
        _stage("Build", build, outputs=[{"name": "jar", "pattern": "target/*.jar", "required": True,
                                         "retention": "standard"}]),
        _stage("Test"),
    ])

    run = engine.execute(definition)

    assert run.run_id == "demo#1"
    assert run.build_number == 1
    assert run.status == RunStatus.SUCCEEDED
    assert run.reason == ""
    assert set(_statuses(run).values()) == {StageStatus.PASSED}
    assert run.stages["Build"].exit_code == 0

    checkout_log = store.get(run.stages["Checkout"].output_ref).decode()
    assert "checked out" in checkout_log
    assert "[exit 0," in checkout_log

    names = {a.name: a for a in store.list(run.run_id)}
    assert set(names) == {"Checkout.log", "Build.log", "jar", "Test.log"}
    assert names["jar"].retention.value == "standard"
    assert store.get(names["jar"].hash) == b"jar-bytes"
    assert names["jar"].hash in run.stages["Build"].artifacts

    replayed = recorder.replay(run.run_id)
    assert replayed.status == RunStatus.SUCCEEDED
    assert _statuses(replayed) == _statuses(run)

    assert engine.execute(definition).run_id == "demo#2"


def test_command_templates_rendered(engine, store):
    """Test run variables and built-ins are substituted into commands."""
    definition = pipeline(
        [_stage("Tag", py("import sys; print('tag=' + sys.argv[1])", "{REGISTRY}/orders:{build_number}"))],
        variables={"REGISTRY": "registry.default"},
    )

    run = engine.execute(definition, {"REGISTRY": "registry.local"})

    assert run.variables["REGISTRY"] == "registry.local"
    assert "tag=registry.local/orders:1" in store.get(run.stages["Tag"].output_ref).decode()


def test_unresolved_variable_rejects_run(engine, recorder):
    """Test a template error is raised before any stage runs and the run stays Pending."""
    definition = pipeline([_stage("Checkout"), _stage("Push", py("print(1)", "{IMAGE_TAG}"))])

    with pytest.raises(DefinitionError, match="stage 'Push': unresolved variable 'IMAGE_TAG'"):
        engine.execute(definition)

    assert [e["event"] for e in recorder.events("demo#1")] == [RUN_CREATED, RUN_REJECTED]
    run = recorder.replay("demo#1")
    assert run.status == RunStatus.PENDING
    assert set(_statuses(run).values()) == {StageStatus.PENDING}


# ============================================================================
# Gates (Scenarios A and B)
# ============================================================================

def test_passing_unit_tests_gate_lets_run_proceed(engine):
    """Test 12 passed / 0 failed JUnit output passes maxFailures 0."""
    definition = pipeline(
        [
            _stage("UnitTest", py("import sys; sys.stdout.write(sys.argv[1])", literal(JUNIT_12_PASSED)),
                   gate="unitTests", report={"format": "junit"}),
            _stage("Package"),
        ],
        gates={"unitTests": {"maxFailures": 0}},
    )

    run = engine.execute(definition)

    gate = run.stages["UnitTest"].gate_results[0]
    assert gate.passed is True
    assert gate.gate == "unitTests"
    assert run.stages["Package"].status == StageStatus.PASSED
    assert run.status == RunStatus.SUCCEEDED


def test_critical_image_finding_blocks_push(engine, store):
    """Test one CRITICAL finding fails maxSeverity HIGH and skips PushImage."""
    definition = pipeline(
        [
            _stage("DockerBuild"),
            _stage("ImageScan", emit_json(TRIVY_CRITICAL), gate="imageScan", report={"format": "trivy"}),
            _stage("PushImage"),
        ],
        gates={"imageScan": {"maxSeverity": "HIGH"}},
    )

    run = engine.execute(definition)

    scan = run.stages["ImageScan"]
    assert scan.status == StageStatus.FAILED
    assert scan.error_kind == ErrorKind.GATE_FAILURE.value
    assert "gate 'imageScan' failed" in scan.reason
    assert "CRITICAL" in scan.reason
    assert scan.gate_results[0].passed is False
    assert scan.gate_results[0].severity_breakdown["critical"] == 1
    assert scan.output_ref in [a.hash for a in store.list(run.run_id)]

    assert run.stages["PushImage"].status == StageStatus.SKIPPED
    assert "ImageScan" in run.stages["PushImage"].reason
    assert run.status == RunStatus.FAILED
    assert run.reason.startswith("stage 'ImageScan' failed: gate 'imageScan' failed")


def test_unparseable_report_fails_gate(engine):
    """Test garbage scanner output never passes a gate."""
    definition = pipeline(
        [_stage("ImageScan", py("print('error: cannot reach registry')"), gate="scan", report={"format": "trivy"})],
        gates={"scan": {"maxSeverity": "CRITICAL"}},
    )

    run = engine.execute(definition)

    assert run.stages["ImageScan"].status == StageStatus.FAILED
    assert "unparseable tool output" in run.stages["ImageScan"].reason


def test_report_files_are_merged(engine):
    """Test a report glob matching several files is evaluated as one result."""
    write_reports = py(
        "import os, sys; os.makedirs('reports', exist_ok=True); "
        "open('reports/TEST-a.xml', 'w').write(sys.argv[1]); open('reports/TEST-b.xml', 'w').write(sys.argv[2])",
        literal(JUNIT_12_PASSED),
        literal(JUNIT_1_FAILED),
    )
    definition = pipeline(
        [_stage("UnitTest", write_reports, gate="unitTests",
                report={"format": "junit", "source": "reports/TEST-*.xml"})],
        gates={"unitTests": {"maxFailures": 0}},
    )

    run = engine.execute(definition)

    gate = run.stages["UnitTest"].gate_results[0]
    assert gate.passed is False
    assert "1 failed tests (max 0)" in gate.reason


def test_gate_is_still_evaluated_for_failed_command(engine):
    """Test a non-zero exit is reported even when gates are evaluated."""
    failing_tests = py("import sys; sys.stdout.write(sys.argv[1]); sys.exit(1)", literal(JUNIT_1_FAILED))
    definition = pipeline(
        [_stage("UnitTest", failing_tests, gate="unitTests", report={"format": "junit"})],
        gates={"unitTests": {"maxFailures": 0}},
    )

    run = engine.execute(definition)

    result = run.stages["UnitTest"]
    assert result.error_kind == ErrorKind.TOOL_NON_ZERO_EXIT.value
    assert result.exit_code == 1
    assert result.gate_results[0].passed is False


# ============================================================================
# Stage Failures
# ============================================================================

def test_build_timeout_produces_no_artifact(engine, store):
    """Test a stage exceeding its timeout fails with tool_timeout and stores nothing."""
    definition = pipeline([
        _stage("Build", py("import time; time.sleep(30)"), timeout=1),
        _stage("Test"),
    ])

    start = time.monotonic()
    run = engine.execute(definition)

    assert time.monotonic() - start < 15
    build = run.stages["Build"]
    assert build.status == StageStatus.FAILED
    assert build.error_kind == ErrorKind.TOOL_TIMEOUT.value
    assert build.reason.startswith("stage timed out after 1s")
    assert build.artifacts == []
    assert build.output_ref is None
    assert store.list_stage(run.run_id, "Build", include_unsealed=True) == []
    assert run.stages["Test"].status == StageStatus.SKIPPED
    assert run.status == RunStatus.FAILED


def test_failure_skips_pending_stages_but_in_flight_finish(engine):
    """Test a hard failure skips unstarted stages while running ones complete."""
    definition = pipeline([
        _stage("Build", py("import sys; sys.exit(2)")),
        _stage("Test"),
        _stage("Lint", py("import time; time.sleep(0.5); print('linted')"), dependsOn=[]),
    ])

    run = engine.execute(definition)

    assert run.stages["Build"].error_kind == ErrorKind.TOOL_NON_ZERO_EXIT.value
    assert run.stages["Build"].reason == f"'{sys.executable}' exited with code 2"
    assert run.stages["Test"].status == StageStatus.SKIPPED
    assert run.stages["Lint"].status == StageStatus.PASSED
    assert run.status == RunStatus.FAILED
    assert run.reason == f"stage 'Build' failed: '{sys.executable}' exited with code 2"


def test_commands_stop_at_first_failure(engine, store):
    """Test later commands of a stage do not run after a non-zero exit."""
    definition = pipeline([_stage(
        "Build",
        py("print('first-output')"),
        py("import sys; sys.exit(3)"),
        py("print('third-output')"),
    )])

    run = engine.execute(definition)

    build = run.stages["Build"]
    assert build.exit_code == 3
    log = store.get(build.output_ref).decode()
    assert "first-output" in log
    assert "third-output" not in log


def test_missing_required_output(engine, store):
    """Test a required output with no matching file fails the stage."""
    definition = pipeline([_stage("Sbom", outputs=[
        {"name": "sbom", "pattern": "bom.json", "required": True},
        {"name": "extras", "pattern": "extras/*.json"},
    ])])

    run = engine.execute(definition)

    sbom = run.stages["Sbom"]
    assert sbom.status == StageStatus.FAILED
    assert sbom.error_kind == ErrorKind.MISSING_OUTPUT.value
    assert sbom.reason == "required output 'sbom' not found"
    assert [a.name for a in store.list(run.run_id)] == ["Sbom.log"]


def test_multiple_matching_outputs_are_named_by_path(engine, store):
    """Test each file matched by an output pattern is stored separately."""
    write = py("import os; os.makedirs('out', exist_ok=True); "
               "open('out/a.txt', 'w').write('a'); open('out/b.txt', 'w').write('b')")
    definition = pipeline([_stage("Docs", write, outputs=[{"name": "docs", "pattern": "out/*.txt"}])])

    run = engine.execute(definition)

    names = sorted(a.name for a in store.list(run.run_id) if a.stage == "Docs" and a.name != "Docs.log")
    assert names == ["docs/out/a.txt", "docs/out/b.txt"]


def test_missing_executable_fails_stage(engine):
    """Test a tool that cannot start fails its stage with tool_invocation_error."""
    definition = pipeline([_stage("Scan", {"command": "/nonexistent/sonar-scanner"})])

    run = engine.execute(definition)

    assert run.stages["Scan"].error_kind == ErrorKind.TOOL_INVOCATION_ERROR.value
    assert run.status == RunStatus.FAILED


def test_artifact_store_failure_is_fatal(engine, store, monkeypatch):
    """Test a storage failure fails the stage and the whole run."""
    original_put = store.put

    def failing_put(stage_result, *args, **kwargs):
        if stage_result.stage == "Build":
            raise ArtifactStoreUnavailable("disk full")
        return original_put(stage_result, *args, **kwargs)

    monkeypatch.setattr(store, "put", failing_put)
    definition = pipeline([_stage("Build"), _stage("Test"), _stage("Docs", dependsOn=[], after=["Build"])])

    run = engine.execute(definition)

    assert run.stages["Build"].error_kind == ErrorKind.ARTIFACT_STORE_UNAVAILABLE.value
    assert run.stages["Test"].status == StageStatus.SKIPPED
    assert run.stages["Test"].error_kind == ErrorKind.ARTIFACT_STORE_UNAVAILABLE.value
    assert run.stages["Docs"].status == StageStatus.SKIPPED
    assert run.status == RunStatus.FAILED
    assert run.reason == "artifact store unavailable: disk full"


# ============================================================================
# Continuation and Ordering
# ============================================================================

def test_continue_on_failure_only_skips_dependents(engine):
    """Test a tolerated failure skips its dependents while other stages proceed."""
    definition = pipeline([
        _stage("Build"),
        _stage("ApiTest", py("import sys; sys.exit(1)"), continueOnFailure=True),
        _stage("Notify", dependsOn=["ApiTest"]),
        _stage("Sbom", dependsOn=["Build"]),
    ])

    run = engine.execute(definition)

    assert run.stages["ApiTest"].status == StageStatus.FAILED
    assert run.stages["Notify"].status == StageStatus.SKIPPED
    assert run.stages["Notify"].error_kind == ErrorKind.DEPENDENCY_NOT_MET.value
    assert run.stages["Notify"].reason == "dependency 'ApiTest' did not pass"
    assert run.stages["Sbom"].status == StageStatus.PASSED
    assert run.status == RunStatus.SUCCEEDED


def test_linear_pipeline_proceeds_past_tolerated_failure(engine):
    """Test later stages of a linear pipeline still run after a continueOnFailure stage fails."""
    definition = pipeline([
        _stage("Build"),
        _stage("Lint", py("import sys; sys.exit(3)"), continueOnFailure=True),
        _stage("Test"),
        _stage("Deploy"),
    ])

    run = engine.execute(definition)

    assert run.stages["Lint"].status == StageStatus.FAILED
    assert run.stages["Lint"].exit_code == 3
    assert run.stages["Test"].status == StageStatus.PASSED
    assert run.stages["Deploy"].status == StageStatus.PASSED
    assert run.stages["Test"].started_at >= run.stages["Lint"].completed_at
    assert run.status == RunStatus.SUCCEEDED


def test_linear_pipeline_stops_on_required_failure(engine):
    """Test a failure without continueOnFailure still skips the rest of a linear pipeline."""
    definition = pipeline([_stage("Build", py("import sys; sys.exit(1)")), _stage("Test"), _stage("Deploy")])

    run = engine.execute(definition)

    assert run.stages["Test"].status == StageStatus.SKIPPED
    assert run.stages["Test"].reason == "stage 'Build' failed"
    assert run.stages["Deploy"].status == StageStatus.SKIPPED
    assert run.status == RunStatus.FAILED


def test_disabled_stage_is_skipped_without_blocking(engine):
    """Test a disabled stage is skipped and its dependents still run."""
    definition = pipeline([_stage("Build"), _stage("Scan", enabled=False), _stage("Push")])

    run = engine.execute(definition)

    assert run.stages["Scan"].status == StageStatus.SKIPPED
    assert run.stages["Scan"].reason == DISABLED_REASON
    assert run.stages["Push"].status == StageStatus.PASSED
    assert run.status == RunStatus.SUCCEEDED


def test_after_orders_without_requiring_success(engine):
    """Test an ordering-only prerequisite runs after a failed stage."""
    definition = pipeline([
        _stage("Build", py("import sys; sys.exit(1)"), continueOnFailure=True),
        _stage("Report", dependsOn=[], after=["Build"]),
    ])

    run = engine.execute(definition)

    assert run.stages["Report"].status == StageStatus.PASSED
    assert run.stages["Report"].started_at >= run.stages["Build"].completed_at


# ============================================================================
# Concurrency (Scenario D)
# ============================================================================

def test_independent_stages_run_in_parallel(engine):
    """Test two root stages run at the same time (each waits for the other)."""
    rendezvous = (
        "import os, sys, time; open(sys.argv[1], 'w').close(); t = time.time()\n"
        "while not os.path.exists(sys.argv[2]):\n"
        "    time.sleep(0.02)\n"
        "    if time.time() - t > 10: sys.exit(9)\n"
    )
    definition = pipeline([
        _stage("Scan", py(rendezvous, "scan.flag", "sbom.flag"), dependsOn=[]),
        _stage("Sbom", py(rendezvous, "sbom.flag", "scan.flag"), dependsOn=[]),
    ])

    run = engine.execute(definition)

    assert _statuses(run) == {"Scan": StageStatus.PASSED, "Sbom": StageStatus.PASSED}


def test_max_parallel_stages_bounds_concurrency(engine, tmp_path):
    """Test maxParallelStages 1 runs independent stages one at a time."""
    spans = tmp_path / "spans"
    spans.mkdir()
    definition = pipeline(
        [_stage(name, py(SPAN, literal(str(spans / f"span-{name}.txt"))), dependsOn=[]) for name in "ABC"],
        maxParallelStages=1,
    )

    run = engine.execute(definition)

    assert run.status == RunStatus.SUCCEEDED
    recorded = _spans(spans)
    assert len(recorded) == 3
    _assert_no_overlap(recorded)


def test_runs_of_same_pipeline_are_serialized(engine, tmp_path):
    """Test two runs of one pipeline never execute at the same time."""
    spans = tmp_path / "spans"
    spans.mkdir()
    definition = pipeline([_stage("Build", py(SPAN, literal(str(spans)) + "/span-{build_number}.txt"))])

    runs = []
    threads = [threading.Thread(target=lambda: runs.append(engine.execute(definition))) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(r.run_id for r in runs) == ["demo#1", "demo#2"]
    _assert_no_overlap(_spans(spans))


def test_concurrent_pipelines_keep_records_separate(engine, store, recorder):
    """Test two pipelines running concurrently never mix stage results or artifacts."""
    definitions = [
        pipeline([_stage("Build"), _stage("ImageScan"), _stage("PushImage")], name=name)
        for name in ("orders", "payments")
    ]

    runs = {}
    threads = [
        threading.Thread(target=lambda d=d: runs.__setitem__(d.name, engine.execute(d)))
        for d in definitions
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    for name, run in runs.items():
        assert run.run_id == f"{name}#1"
        assert run.status == RunStatus.SUCCEEDED
        assert all(result.run_id == run.run_id for result in run.stages.values())
        assert all(a.run_id == run.run_id for a in store.list(run.run_id))
        assert {e["pipeline"] for e in recorder.events(run.run_id)} == {name}
        replayed = recorder.replay(run.run_id)
        assert all(result.run_id == run.run_id for result in replayed.stages.values())


# ============================================================================
# Credentials
# ============================================================================

def test_credentials_are_injected_redacted_and_revoked(engine, broker, secret_store, store, event_bus):
    """Test leased secrets reach the tool, never the log, and are revoked after the stage."""
    secret_store.store("registry", {"username": "ci", "password": "hunter2"})
    definition = pipeline([_stage(
        "PushImage",
        py("import os; print('user=' + os.environ['REG_USER']); print('pass=' + os.environ['REG_PASS'])"),
        credentials=[{"scope": "registry", "ttl": 120, "env": {"REG_USER": "username", "REG_PASS": "password"}}],
    )])

    run = engine.execute(definition)

    assert run.status == RunStatus.SUCCEEDED
    log = store.get(run.stages["PushImage"].output_ref).decode()
    assert "user=ci" in log
    assert "hunter2" not in log
    assert "pass=****" in log

    assert broker.active_leases() == []
    leased = event_bus.get_history(run.run_id, EventType.CREDENTIAL_LEASED)
    revoked = event_bus.get_history(run.run_id, EventType.CREDENTIAL_REVOKED)
    assert len(leased) == 1
    assert leased[0].data["scope"] == "registry"
    assert "hunter2" not in leased[0].to_json()
    assert [e.data["lease_id"] for e in revoked] == [leased[0].data["lease_id"]]


def test_identity_fields_do_not_corrupt_stdout_report(engine, secret_store, store):
    """Test a short username is left alone so the stdout report still parses."""
    secret_store.store("nexus", {"username": "test", "password": "hunter2"})
    definition = pipeline(
        [_stage(
            "UnitTest",
            py("import sys; sys.stdout.write(sys.argv[1])", literal(JUNIT_12_PASSED)),
            credentials=["nexus"],
            gate="unitTests",
            report={"format": "junit"},
        )],
        gates={"unitTests": {"maxFailures": 0}},
    )

    run = engine.execute(definition)

    assert run.status == RunStatus.SUCCEEDED
    assert run.stages["UnitTest"].gate_results[0].passed is True
    assert "<testsuite" in store.get(run.stages["UnitTest"].output_ref).decode()


def test_secret_fields_select_what_is_masked(engine, secret_store, store):
    """Test secretFields overrides the default choice of masked fields."""
    secret_store.store("deploy", {"account": "svc-release", "token": "t0k3n-abc"})
    definition = pipeline([_stage(
        "Deploy",
        py("import os; print(os.environ['DEPLOY_ACCOUNT'], os.environ['DEPLOY_TOKEN'])"),
        credentials=[{"scope": "deploy", "secretFields": ["token"]}],
    )])

    run = engine.execute(definition)

    log = store.get(run.stages["Deploy"].output_ref).decode()
    assert "svc-release ****" in log
    assert "t0k3n-abc" not in log


def test_unavailable_credential_fails_stage_before_commands(engine, tmp_path):
    """Test a stage whose scope cannot be leased never runs its commands."""
    marker = tmp_path / "ran.txt"
    definition = pipeline([_stage(
        "Deploy",
        py("import sys; open(sys.argv[1], 'w').write('ran')", literal(str(marker))),
        credentials=["cluster"],
    )])

    run = engine.execute(definition)

    assert run.stages["Deploy"].error_kind == ErrorKind.CREDENTIAL_UNAVAILABLE.value
    assert "cluster" in run.stages["Deploy"].reason
    assert not marker.exists()


# ============================================================================
# Abort
# ============================================================================

def test_abort_terminates_running_stage(engine, broker, secret_store, recorder):
    """Test abort kills the in-flight tool, skips the rest and revokes leases."""
    secret_store.store("registry", {"password": "pw"})
    definition = pipeline([
        _stage("Build", py("import time; time.sleep(30)"), credentials=["registry"]),
        _stage("PushImage"),
    ])
    run = engine.create_run(definition)

    result = {}
    worker = threading.Thread(target=lambda: result.setdefault("run", engine.execute(definition, run=run)))
    start = time.monotonic()
    worker.start()
    _wait_for(lambda: recorder.replay(run.run_id).stages["Build"].status == StageStatus.RUNNING)

    assert engine.abort(run.run_id, "superseded by demo#2") is True
    worker.join(timeout=20)

    assert time.monotonic() - start < 20
    aborted = result["run"]
    assert aborted.status == RunStatus.ABORTED
    assert aborted.reason == "aborted: superseded by demo#2"
    assert aborted.stages["Build"].status == StageStatus.FAILED
    assert aborted.stages["Build"].error_kind == ErrorKind.ABORTED.value
    assert aborted.stages["PushImage"].status == StageStatus.SKIPPED
    assert aborted.stages["PushImage"].reason == "run aborted: superseded by demo#2"
    assert broker.active_leases(run.run_id) == []
    assert recorder.replay(run.run_id).status == RunStatus.ABORTED
    assert engine.abort(run.run_id) is False


def test_abort_queued_run(engine, recorder):
    """Test aborting a run that has not started closes it without running stages."""
    definition = pipeline([_stage("Build"), _stage("Test")])
    run = engine.create_run(definition)

    assert engine.abort(run.run_id, "cancelled") is True

    replayed = recorder.replay(run.run_id)
    assert replayed.status == RunStatus.ABORTED
    assert all(r.status == StageStatus.SKIPPED for r in replayed.stages.values())
    assert all(r.error_kind == ErrorKind.ABORTED.value for r in replayed.stages.values())

    assert engine.execute(definition, run=run).status == RunStatus.ABORTED
    assert not any(e["event"] == "stage_started" for e in recorder.events(run.run_id))


def test_abort_before_scheduling_keeps_run_aborted(engine, recorder, monkeypatch):
    """Test an abort landing while execute prepares the run ends it Aborted without running stages."""
    definition = pipeline([_stage("Build"), _stage("Test")])
    run = engine.create_run(definition)
    rendering = threading.Event()
    original_render = engine.render_commands

    def slow_render(*args):
        rendering.set()
        time.sleep(0.5)
        return original_render(*args)

    monkeypatch.setattr(engine, "render_commands", slow_render)
    result = {}
    worker = threading.Thread(target=lambda: result.setdefault("run", engine.execute(definition, run=run)))
    worker.start()
    assert rendering.wait(timeout=10)

    assert engine.is_active(run.run_id)
    assert engine.abort(run.run_id, "superseded") is True
    worker.join(timeout=20)

    assert result["run"].status == RunStatus.ABORTED
    events = [e["event"] for e in recorder.events(run.run_id)]
    assert events.count("run_finished") == 1
    assert "run_started" not in events
    assert "stage_started" not in events
    replayed = recorder.replay(run.run_id)
    assert replayed.status == RunStatus.ABORTED
    assert replayed.reason == "aborted: superseded"
    assert all(r.status == StageStatus.SKIPPED for r in replayed.stages.values())
    assert not engine.is_active(run.run_id)


def test_abort_unknown_run(engine):
    """Test aborting a run that does not exist."""
    assert engine.abort("demo#77") is False


# ============================================================================
# Resume
# ============================================================================

def test_resume_marks_interrupted_stage_failed(engine, recorder, event_bus):
    """Test a stage left Running by a crash is failed and the run concluded."""
    definition = pipeline([
        _stage("Checkout"),
        _stage("Build"),
        _stage("Docs", dependsOn=["Checkout"]),
    ])
    run = engine.create_run(definition)
    run.status = RunStatus.RUNNING
    run.started_at = utc_now().isoformat()
    recorder.run_started(run)
    checkout = StageResult(run_id=run.run_id, stage="Checkout", status=StageStatus.PASSED,
                           started_at=run.started_at, completed_at=utc_now().isoformat())
    recorder.stage_started(run, checkout)
    recorder.stage_finished(run, checkout)
    recorder.stage_started(run, StageResult(run_id=run.run_id, stage="Build", started_at=utc_now().isoformat()))

    resumed = engine.resume(run.run_id)

    assert resumed.stages["Checkout"].status == StageStatus.PASSED
    assert resumed.stages["Build"].status == StageStatus.FAILED
    assert resumed.stages["Build"].reason == INTERRUPTED_REASON
    assert resumed.stages["Docs"].status == StageStatus.SKIPPED
    assert resumed.status == RunStatus.FAILED
    assert recorder.replay(run.run_id).status == RunStatus.FAILED
    assert sum(1 for e in recorder.events(run.run_id) if e["event"] == "run_started") == 1
    warnings = event_bus.get_history(run.run_id, EventType.WARNING)
    assert [w.data["context"]["stage"] for w in warnings] == ["Build"]


def test_resume_queued_run_executes_it(engine, recorder):
    """Test a run created but never started runs to completion on resume."""
    definition = pipeline([_stage("Build"), _stage("Test")])
    run = engine.create_run(definition)

    resumed = engine.resume(run.run_id)

    assert resumed.status == RunStatus.SUCCEEDED
    assert engine.resume(run.run_id).status == RunStatus.SUCCEEDED


def test_resume_unknown_or_rejected_run(engine):
    """Test resume refuses runs that cannot continue."""
    with pytest.raises(DefinitionError):
        engine.resume("demo#5")

    definition = pipeline([_stage("Push", py("print(1)", "{IMAGE_TAG}"))])
    with pytest.raises(DefinitionError):
        engine.execute(definition)
    with pytest.raises(DefinitionError, match="rejected"):
        engine.resume("demo#1")


# ============================================================================
# Events
# ============================================================================

def test_progress_events_published(engine, event_bus):
    """Test run, stage, gate and artifact events are published in order."""
    definition = pipeline(
        [
            _stage("UnitTest", py("import sys; sys.stdout.write(sys.argv[1])", literal(JUNIT_12_PASSED)),
                   gate="unitTests", report={"format": "junit"}),
            _stage("Skipme", enabled=False),
        ],
        gates={"unitTests": {"maxFailures": 0}},
    )

    run = engine.execute(definition)

    types = [e.type for e in event_bus.get_history(run.run_id)]
    assert types[0] == EventType.RUN_STARTED
    assert types[-1] == EventType.RUN_COMPLETED
    assert EventType.STAGE_STARTED in types
    assert EventType.GATE_EVALUATED in types
    assert EventType.ARTIFACT_STORED in types
    assert EventType.STAGE_PASSED in types
    assert EventType.STAGE_SKIPPED in types
    assert types.index(EventType.STAGE_STARTED) < types.index(EventType.GATE_EVALUATED)

"""Pipeline engine: schedule a pipeline's stage DAG for one run.

The engine owns all run state transitions. Every transition is committed to
the RunRecorder before the next scheduling decision and then published on
the event bus. Independent stages run in parallel on a thread pool; a
stage's outcome never changes after it is recorded.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Optional, Set

from shipgate.artifacts.store import ArtifactStore
from shipgate.config import Config
from shipgate.credentials import CredentialBroker
from shipgate.data_models import Run, RunStatus, StageResult, StageStatus, utc_now
from shipgate.errors import ArtifactStoreUnavailable, DefinitionError, ErrorKind
from shipgate.events import EventBus, EventEmitter, get_event_bus
from shipgate.pipeline.schema import CommandSpec, PipelineDefinition
from shipgate.pipeline.stage import StageContext, StageRunner
from shipgate.recorder import RunRecorder
from shipgate.tools.adapter import ToolAdapter

logger = logging.getLogger(__name__)

DISABLED_REASON = "stage disabled"
INTERRUPTED_REASON = "interrupted by engine restart"


class PipelineEngine:
    """Execute pipeline definitions as recorded runs."""

    def __init__(
        self,
        recorder: RunRecorder,
        store: ArtifactStore,
        broker: CredentialBroker,
        adapter: Optional[ToolAdapter] = None,
        max_parallel: Optional[int] = None,
        workspace_root: Optional[str] = None,
        event_bus: Optional[EventBus] = None,
        default_timeout: Optional[float] = None,
        poll_interval: float = 0.1,
    ):
        """
        Initialize pipeline engine.

        Args:
            recorder: Durable run log
            store: Artifact store for logs, reports and outputs
            broker: Credential broker for stage leases
            adapter: Tool adapter used to run stage commands
            max_parallel: Default bound on concurrently running stages
            workspace_root: Directory holding per-run workspaces
            event_bus: Bus receiving progress events (defaults to global)
            default_timeout: Stage timeout in seconds when a stage sets none
            poll_interval: Seconds between checks for abort requests
        """
        self.recorder = recorder
        self.store = store
        self.broker = broker
        self.adapter = adapter or ToolAdapter()
        self.max_parallel = max_parallel or Config.MAX_PARALLEL_STAGES
        self.workspace_root = Path(workspace_root or Config.WORKSPACE_ROOT)
        self.event_bus = event_bus or get_event_bus()
        self.default_timeout = default_timeout or Config.DEFAULT_STAGE_TIMEOUT_SECONDS
        self.poll_interval = poll_interval
        self.stage_runner = StageRunner(self.adapter, self.store, self.broker)

        self._pipeline_locks: Dict[str, threading.Lock] = {}
        # Runs claimed by execute/resume; abort signals these instead of closing them out
        self._cancel_events: Dict[str, threading.Event] = {}
        self._abort_reasons: Dict[str, str] = {}
        # Runs being closed out directly by abort
        self._closing: Set[str] = set()
        # Reentrant so a SIGINT handler calling abort() cannot deadlock the main thread
        self._lock = threading.RLock()
        self._released = threading.Condition(self._lock)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_run(self, definition: PipelineDefinition, variables: Optional[Dict[str, str]] = None) -> Run:
        """
        Allocate and record a new Pending run, validating its templates.

        Raises:
            DefinitionError: A command template cannot be rendered; the run
                is recorded as rejected and stays Pending
        """
        merged = dict(definition.variables)
        merged.update(variables or {})

        build_number = self.recorder.next_build_number(definition.name)
        run = Run(
            run_id=f"{definition.name}#{build_number}",
            pipeline=definition.name,
            build_number=build_number,
            variables=merged,
        )
        for stage in definition.stages:
            run.stages[stage.name] = StageResult(run_id=run.run_id, stage=stage.name)

        self.recorder.run_created(run, definition.model_dump(mode="json"))
        logger.info(f"Created run {run.run_id} ({len(definition.stages)} stages)")

        try:
            self.render_commands(definition, run)
        except DefinitionError as exc:
            run.reason = exc.message
            self.recorder.run_rejected(run, exc.message)
            EventEmitter(run.run_id, self.event_bus).error(exc.message, {"kind": exc.kind.value})
            logger.error(f"Run {run.run_id} rejected: {exc.message}")
            raise
        return run

    def execute(
        self,
        definition: PipelineDefinition,
        variables: Optional[Dict[str, str]] = None,
        run: Optional[Run] = None,
    ) -> Run:
        """
        Execute a pipeline to a terminal run.

        Runs of the same pipeline execute one at a time; a second call waits
        for the first to finish. Different pipelines run concurrently.

        Args:
            definition: Validated pipeline definition
            variables: Run-scoped variables overriding the definition defaults
            run: Run previously allocated with ``create_run``

        Returns:
            The terminal Run

        Raises:
            DefinitionError: Templates cannot be rendered (no stage has run)
        """
        if run is None:
            run = self.create_run(definition, variables)

        cancel_event = self._claim(run.run_id)
        try:
            with self._pipeline_lock(definition.name):
                if self.recorder.is_terminal(run.run_id):
                    logger.info(f"Run {run.run_id} finished before it could start")
                    return self.recorder.replay(run.run_id)
                commands = self.render_commands(definition, run)
                return self._drive(definition, run, commands, cancel_event)
        finally:
            self._release(run.run_id)

    def resume(self, run_id: str) -> Run:
        """
        Continue a run that was interrupted (e.g. by an engine restart).

        Stages recorded as Running are failed as interrupted; remaining
        stages are scheduled as usual. A run that was queued but never
        started simply starts.
        """
        run = self.recorder.replay(run_id)
        snapshot = self.recorder.definition(run_id)
        if run is None or snapshot is None:
            raise DefinitionError(f"no recorded run '{run_id}'")
        if run.is_terminal:
            return run
        if run.status == RunStatus.PENDING and run.reason:
            raise DefinitionError(f"run '{run_id}' was rejected: {run.reason}")

        definition = PipelineDefinition.model_validate(snapshot)
        cancel_event = self._claim(run_id)
        try:
            with self._pipeline_lock(definition.name):
                run = self.recorder.replay(run_id)
                if run.is_terminal:
                    return run
                for result in run.stages.values():
                    if result.status == StageStatus.RUNNING:
                        result.status = StageStatus.FAILED
                        result.error_kind = ErrorKind.TOOL_INVOCATION_ERROR.value
                        result.reason = INTERRUPTED_REASON
                        result.completed_at = utc_now().isoformat()
                        self.store.seal(run_id, result.stage)
                        self.recorder.stage_finished(run, result)
                        EventEmitter(run_id, self.event_bus).warning(
                            f"stage '{result.stage}' {INTERRUPTED_REASON}", {"stage": result.stage}
                        )
                        logger.warning(f"{run_id}/{result.stage} was interrupted; marked failed")

                logger.info(f"Resuming run {run_id}")
                commands = self.render_commands(definition, run)
                return self._drive(definition, run, commands, cancel_event)
        finally:
            self._release(run_id)

    def abort(self, run_id: str, reason: str = "aborted by user") -> bool:
        """
        Abort a run.

        In-flight stages are terminated, pending stages are skipped and the
        run's credential leases are revoked. Returns False if the run is
        unknown or already terminal.
        """
        with self._lock:
            cancel_event = self._cancel_events.get(run_id)
            if cancel_event is not None:
                self._abort_reasons.setdefault(run_id, reason)
                cancel_event.set()
                logger.warning(f"Abort requested for {run_id}: {reason}")
                return True
            if run_id in self._closing:
                return False
            self._closing.add(run_id)

        # Nobody executes this run (queued or left over): close it out directly
        try:
            run = self.recorder.replay(run_id)
            if run is None or run.is_terminal:
                return False
            self._close_out(run, f"aborted: {reason}", EventEmitter(run_id, self.event_bus))
            return True
        finally:
            with self._lock:
                self._closing.discard(run_id)
                self._released.notify_all()

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._cancel_events

    def render_commands(self, definition: PipelineDefinition, run: Run) -> Dict[str, List[CommandSpec]]:
        """
        Render every stage's command templates against the run variables.

        Raises:
            DefinitionError: A placeholder has no value or a template is malformed
        """
        context = dict(run.variables)
        context.update({
            "build_number": run.build_number,
            "run_id": run.run_id,
            "pipeline": run.pipeline,
            "workspace": str(self.workspace_for(run)),
        })

        rendered: Dict[str, List[CommandSpec]] = {}
        for stage in definition.stages:
            try:
                rendered[stage.name] = [
                    CommandSpec(
                        command=spec.command.format_map(context),
                        args=[arg.format_map(context) for arg in spec.args],
                        env={key: value.format_map(context) for key, value in spec.env.items()},
                    )
                    for spec in stage.commands
                ]
            except KeyError as exc:
                raise DefinitionError(f"stage '{stage.name}': unresolved variable {exc}") from exc
            except (IndexError, ValueError) as exc:
                raise DefinitionError(f"stage '{stage.name}': malformed command template ({exc})") from exc
        return rendered

    def workspace_for(self, run: Run) -> Path:
        return self.workspace_root / run.pipeline / str(run.build_number)

    # ------------------------------------------------------------------
    # Run ownership
    # ------------------------------------------------------------------

    def _claim(self, run_id: str) -> threading.Event:
        """Register ``run_id`` as executing here, waiting out a direct abort in progress."""
        with self._lock:
            while run_id in self._closing:
                self._released.wait()
            cancel_event = threading.Event()
            self._cancel_events[run_id] = cancel_event
            return cancel_event

    def _release(self, run_id: str) -> None:
        with self._lock:
            self._cancel_events.pop(run_id, None)
            self._abort_reasons.pop(run_id, None)

    def _close_out(self, run: Run, reason: str, emitter: EventEmitter) -> None:
        """Skip every unfinished stage of a run that never started and end it Aborted."""
        for result in list(run.stages.values()):
            if not result.status.is_terminal:
                self._skip(run, result.stage, f"run {reason}", ErrorKind.ABORTED, emitter)
        self._finish_run(run, RunStatus.ABORTED, reason, emitter, time.monotonic())
        self.broker.revoke_run(run.run_id)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _drive(self, definition: PipelineDefinition, run: Run, commands: Dict[str, List[CommandSpec]],
               cancel_event: threading.Event) -> Run:
        emitter = EventEmitter(run.run_id, self.event_bus)

        with self._lock:
            abort_reason = self._abort_reasons.get(run.run_id)
        if abort_reason is not None and run.status != RunStatus.RUNNING:
            logger.info(f"Run {run.run_id} aborted before it started")
            self._close_out(run, f"aborted: {abort_reason}", emitter)
            return run

        start = time.monotonic()
        workspace = self.workspace_for(run)
        workspace.mkdir(parents=True, exist_ok=True)

        if run.status != RunStatus.RUNNING:
            run.status = RunStatus.RUNNING
            run.started_at = utc_now().isoformat()
            self.recorder.run_started(run)
            emitter.run_started(run.pipeline, run.build_number, [s.name for s in definition.stages])
            logger.info(f"Run {run.run_id} started")

        order = definition.topological_order()
        max_parallel = definition.max_parallel_stages or self.max_parallel
        running: Dict[Future, str] = {}
        fatal: Optional[str] = None
        failed_stage: Optional[StageResult] = None

        for name in order:
            result = run.stages[name]
            if result.status == StageStatus.FAILED and self._stops_run(definition, result):
                failed_stage = failed_stage or result

        try:
            with ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix="shipgate-stage") as pool:
                while True:
                    stop_reason, stop_kind = self._stop_reason(run, cancel_event, fatal, failed_stage)
                    if stop_reason is not None:
                        for name in order:
                            if run.stages[name].status == StageStatus.PENDING:
                                self._skip(run, name, stop_reason, stop_kind, emitter)
                    else:
                        self._schedule(definition, run, order, commands, workspace, cancel_event,
                                       emitter, pool, running, max_parallel)

                    if not running:
                        break

                    done, _ = wait(list(running), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                    for future in done:
                        name = running.pop(future)
                        result, error = self._collect(run, name, future)
                        if error is not None and fatal is None:
                            fatal = error
                            cancel_event.set()
                        self._record_finished(run, result, emitter)

                        if result.status == StageStatus.FAILED and self._stops_run(definition, result):
                            failed_stage = failed_stage or result

            with self._lock:
                abort_reason = self._abort_reasons.get(run.run_id)
            if abort_reason is not None:
                status = RunStatus.ABORTED
                reason = f"aborted: {abort_reason}"
            elif fatal is not None:
                status, reason = RunStatus.FAILED, fatal
            elif failed_stage is not None:
                status = RunStatus.FAILED
                reason = f"stage '{failed_stage.stage}' failed: {failed_stage.reason}"
            else:
                status, reason = RunStatus.SUCCEEDED, ""

            self._finish_run(run, status, reason, emitter, start)
            return run
        finally:
            revoked = self.broker.revoke_run(run.run_id)
            if revoked:
                logger.info(f"Revoked {revoked} outstanding lease(s) of {run.run_id}")

    def _schedule(self, definition, run, order, commands, workspace, cancel_event,
                  emitter, pool, running, max_parallel) -> None:
        """Skip or start every stage whose prerequisites are terminal."""
        satisfied = self._satisfied(run)
        progress = True
        while progress:
            progress = False
            for name in order:
                result = run.stages[name]
                if result.status != StageStatus.PENDING:
                    continue
                if not all(run.stages[dep].status.is_terminal for dep in definition.prerequisites(name)):
                    continue

                unmet = [dep for dep in definition.hard_dependencies(name) if dep not in satisfied]
                stage = definition.stage(name)
                if unmet:
                    self._skip(run, name, f"dependency '{unmet[0]}' did not pass",
                               ErrorKind.DEPENDENCY_NOT_MET, emitter)
                    progress = True
                elif not stage.enabled:
                    self._skip(run, name, DISABLED_REASON, None, emitter)
                    satisfied.add(name)
                    progress = True
                elif len(running) < max_parallel:
                    result.status = StageStatus.RUNNING
                    result.started_at = utc_now().isoformat()
                    self.recorder.stage_started(run, result)
                    emitter.stage_started(name)
                    logger.info(f"{run.run_id}/{name} started")

                    context = StageContext(
                        run=run,
                        stage=stage,
                        commands=commands[name],
                        workspace=workspace,
                        policies={gate: definition.gates[gate] for gate in stage.gates},
                        cancel_event=cancel_event,
                        timeout_seconds=stage.timeout_seconds or self.default_timeout,
                        emitter=emitter,
                    )
                    running[pool.submit(self.stage_runner.run, context)] = name

    def _collect(self, run: Run, name: str, future: Future):
        """Turn a finished stage future into a StageResult plus an optional fatal error."""
        started_at = run.stages[name].started_at
        try:
            result = future.result()
        except ArtifactStoreUnavailable as exc:
            logger.error(f"{run.run_id}/{name}: {exc.message}")
            return self._failed(run, name, started_at, exc.kind, exc.message), f"artifact store unavailable: {exc.message}"
        except Exception as exc:
            logger.exception(f"{run.run_id}/{name} raised unexpectedly")
            return self._failed(run, name, started_at, ErrorKind.TOOL_INVOCATION_ERROR, str(exc)), None

        try:
            self.store.seal(run.run_id, name)
        except ArtifactStoreUnavailable as exc:
            logger.error(f"{run.run_id}/{name}: {exc.message}")
            return self._failed(run, name, started_at, exc.kind, exc.message), f"artifact store unavailable: {exc.message}"
        return result, None

    def _failed(self, run: Run, name: str, started_at: Optional[str], kind: ErrorKind, reason: str) -> StageResult:
        return StageResult(
            run_id=run.run_id,
            stage=name,
            status=StageStatus.FAILED,
            error_kind=kind.value,
            reason=reason,
            started_at=started_at,
            completed_at=utc_now().isoformat(),
        )

    def _record_finished(self, run: Run, result: StageResult, emitter: EventEmitter) -> None:
        run.stages[result.stage] = result
        self.recorder.stage_finished(run, result)
        emitter.stage_finished(result)

    def _skip(self, run: Run, name: str, reason: str, kind: Optional[ErrorKind], emitter: EventEmitter) -> None:
        result = StageResult(
            run_id=run.run_id,
            stage=name,
            status=StageStatus.SKIPPED,
            error_kind=kind.value if kind is not None else None,
            reason=reason,
            completed_at=utc_now().isoformat(),
        )
        logger.info(f"{run.run_id}/{name} skipped: {reason}")
        self._record_finished(run, result, emitter)

    def _finish_run(self, run: Run, status: RunStatus, reason: str, emitter: EventEmitter, start: float) -> None:
        run.status = status
        run.reason = reason
        run.completed_at = utc_now().isoformat()
        self.recorder.run_finished(run)
        emitter.run_finished(status.value, reason, int((time.monotonic() - start) * 1000))
        log = logger.info if status == RunStatus.SUCCEEDED else logger.warning
        log(f"Run {run.run_id} {status.value}{': ' + reason if reason else ''}")

    def _stop_reason(self, run: Run, cancel_event: threading.Event, fatal: Optional[str],
                     failed_stage: Optional[StageResult]):
        """Why no further stage may start, with the kind recorded on skipped stages."""
        with self._lock:
            abort_reason = self._abort_reasons.get(run.run_id)
        if abort_reason is not None:
            return f"run aborted: {abort_reason}", ErrorKind.ABORTED
        if fatal is not None:
            return fatal, ErrorKind.ARTIFACT_STORE_UNAVAILABLE
        if failed_stage is not None:
            return f"stage '{failed_stage.stage}' failed", None
        if cancel_event.is_set():
            return "run cancelled", ErrorKind.ABORTED
        return None, None

    @staticmethod
    def _stops_run(definition: PipelineDefinition, result: StageResult) -> bool:
        if result.error_kind == ErrorKind.ABORTED.value:
            return False
        return not definition.stage(result.stage).continue_on_failure

    @staticmethod
    def _satisfied(run: Run) -> Set[str]:
        """Stages whose outcome lets hard dependents run."""
        return {
            name for name, result in run.stages.items()
            if result.status == StageStatus.PASSED
            or (result.status == StageStatus.SKIPPED and result.reason == DISABLED_REASON)
        }

    def _pipeline_lock(self, pipeline: str) -> threading.Lock:
        with self._lock:
            return self._pipeline_locks.setdefault(pipeline, threading.Lock())

"""Execution of a single stage.

A stage runs its commands through the ToolAdapter, stores the captured log
and its declared outputs in the ArtifactStore, parses its report and applies
its gates. Credentials are leased before the first command and revoked when
the stage ends, whatever the outcome.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from shipgate.credentials import CredentialBroker
from shipgate.data_models import (
    Credential,
    RetentionClass,
    Run,
    StageResult,
    StageStatus,
    ToolInvocation,
    ToolResult,
    utc_now,
)
from shipgate.errors import (
    CredentialUnavailable,
    ErrorKind,
    GateFailure,
    ToolInvocationError,
    ToolNonZeroExit,
    ToolTimeout,
)
from shipgate.events import EventEmitter
from shipgate.pipeline.gating import GateEvaluator
from shipgate.pipeline.schema import CommandSpec, GatePolicy, OutputSpec, StageDefinition
from shipgate.artifacts.store import ArtifactStore
from shipgate.tools.adapter import ToolAdapter
from shipgate.tools.parsers import get_parser

logger = logging.getLogger(__name__)

LOG_MEDIA_TYPE = "text/plain"


@dataclass
class StageContext:
    """Everything a stage needs to run, resolved by the engine."""
    run: Run
    stage: StageDefinition
    commands: List[CommandSpec]  # Rendered against the run variables
    workspace: Path
    policies: Dict[str, GatePolicy] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    timeout_seconds: Optional[float] = None
    emitter: Optional[EventEmitter] = None

    @property
    def working_dir(self) -> Path:
        if self.stage.working_dir:
            return self.workspace / self.stage.working_dir
        return self.workspace


class StageRunner:
    """Run one stage to a terminal StageResult.

    Stage-level failures (start failure, timeout, non-zero exit, gate
    failure, unavailable credential, missing output) are returned as a
    Failed result. ``ArtifactStoreUnavailable`` is raised: it is fatal to
    the whole run and handled by the engine.
    """

    def __init__(
        self,
        adapter: ToolAdapter,
        store: ArtifactStore,
        broker: CredentialBroker,
        gate_evaluator: Optional[GateEvaluator] = None,
    ):
        self.adapter = adapter
        self.store = store
        self.broker = broker
        self.gate_evaluator = gate_evaluator or GateEvaluator()

    def run(self, context: StageContext) -> StageResult:
        """
        Execute a stage.

        Args:
            context: Resolved stage context

        Returns:
            Terminal StageResult (Passed or Failed)

        Raises:
            ArtifactStoreUnavailable: Evidence could not be stored
        """
        stage = context.stage
        result = StageResult(
            run_id=context.run.run_id,
            stage=stage.name,
            status=StageStatus.RUNNING,
            started_at=utc_now().isoformat(),
        )
        start = time.monotonic()
        leases: List[Credential] = []

        try:
            try:
                env = self._lease_credentials(context, leases)
            except CredentialUnavailable as exc:
                return self._finish(result, start, StageStatus.FAILED, exc.kind, exc.message)

            working_dir = context.working_dir
            working_dir.mkdir(parents=True, exist_ok=True)
            secrets = [
                value
                for binding, lease in zip(context.stage.credentials, leases)
                for value in binding.secrets(lease.values)
            ]

            invocations: List[ToolInvocation] = []
            deadline = start + context.timeout_seconds if context.timeout_seconds else None
            for spec in context.commands:
                if context.cancel_event.is_set():
                    return self._finish(result, start, StageStatus.FAILED, ErrorKind.ABORTED,
                                        "run aborted before command started")
                remaining = max(deadline - time.monotonic(), 0.001) if deadline is not None else None
                try:
                    invocation = self.adapter.invoke(
                        spec.command,
                        args=spec.args,
                        env={**env, **spec.env},
                        working_dir=str(working_dir),
                        timeout=remaining,
                        cancel_event=context.cancel_event,
                        redact=secrets,
                    )
                except ToolTimeout as exc:
                    reason = f"stage timed out after {context.timeout_seconds:g}s ({exc.message})"
                    return self._finish(result, start, StageStatus.FAILED, exc.kind, reason)
                except ToolInvocationError as exc:
                    return self._finish(result, start, StageStatus.FAILED, exc.kind, exc.message)

                invocations.append(invocation)
                result.exit_code = invocation.exit_code
                if invocation.exit_code != 0:
                    break

            self._store_log(context, result, invocations)

            tool_result = self._parse_report(context, invocations) if stage.report else None

            result.gate_results = self.gate_evaluator.evaluate_all(context.policies, tool_result)
            for gate_result in result.gate_results:
                logger.info(f"{result.run_id}/{stage.name}: gate '{gate_result.gate}' "
                            f"{'passed' if gate_result.passed else 'failed'}: {gate_result.reason}")
                if context.emitter:
                    context.emitter.gate_evaluated(stage.name, gate_result)

            missing = self._store_outputs(context, result)

            try:
                if invocations:
                    invocations[-1].check()
                self.gate_evaluator.require_passed(result.gate_results)
            except (ToolNonZeroExit, GateFailure) as exc:
                return self._finish(result, start, StageStatus.FAILED, exc.kind, exc.message)
            if missing:
                reason = "; ".join(f"required output '{name}' not found" for name in missing)
                return self._finish(result, start, StageStatus.FAILED, ErrorKind.MISSING_OUTPUT, reason)
            return self._finish(result, start, StageStatus.PASSED, None, "")
        finally:
            for lease in leases:
                if self.broker.revoke(lease.lease_id) and context.emitter:
                    context.emitter.credential_revoked(lease)

    def _lease_credentials(self, context: StageContext, leases: List[Credential]) -> Dict[str, str]:
        env: Dict[str, str] = {}
        for binding in context.stage.credentials:
            credential = self.broker.lease(
                binding.scope,
                ttl=binding.ttl_seconds,
                run_id=context.run.run_id,
                stage=context.stage.name,
            )
            leases.append(credential)
            env.update(binding.environment(credential.values))
            if context.emitter:
                context.emitter.credential_leased(credential)
        return env

    def _store_log(self, context: StageContext, result: StageResult, invocations: List[ToolInvocation]) -> None:
        """Keep the captured output of every command as the stage's log."""
        sections = []
        for invocation in invocations:
            sections.append(f"$ {' '.join(invocation.command)}\n")
            sections.append(invocation.stdout)
            if invocation.stderr:
                sections.append(f"\n[stderr]\n{invocation.stderr}")
            sections.append(f"\n[exit {invocation.exit_code}, {invocation.duration_ms}ms]\n")

        artifact = self.store.put(
            result,
            "".join(sections).encode("utf-8"),
            LOG_MEDIA_TYPE,
            RetentionClass.EPHEMERAL,
            name=f"{context.stage.name}.log",
        )
        result.output_ref = artifact.hash
        result.artifacts.append(artifact.hash)
        if context.emitter:
            context.emitter.artifact_stored(context.stage.name, artifact)

    def _parse_report(self, context: StageContext, invocations: List[ToolInvocation]) -> Optional[ToolResult]:
        report = context.stage.report
        parser = get_parser(report.format.value)

        if report.source == "stdout":
            raw = invocations[-1].stdout if invocations else None
            return parser.parse(raw)

        matches = sorted(p for p in context.working_dir.glob(report.source) if p.is_file())
        if not matches:
            logger.warning(f"{context.run.run_id}/{context.stage.name}: no report matches '{report.source}'")
            return parser.unparseable(f"report '{report.source}' not found")
        results = [parser.parse(path.read_text(encoding="utf-8", errors="replace")) for path in matches]
        return results[0] if len(results) == 1 else parser.merge(results)

    def _store_outputs(self, context: StageContext, result: StageResult) -> List[str]:
        """Store declared outputs. Returns names of required outputs with no match."""
        missing = []
        for output in context.stage.outputs:
            matches = sorted(p for p in context.working_dir.glob(output.pattern) if p.is_file())
            if not matches:
                if output.required:
                    missing.append(output.name)
                else:
                    logger.debug(f"{result.run_id}/{result.stage}: optional output '{output.name}' not produced")
                continue
            for path in matches:
                self._store_output(context, result, output, path, multiple=len(matches) > 1)
        return missing

    def _store_output(self, context: StageContext, result: StageResult, output: OutputSpec,
                      path: Path, multiple: bool) -> None:
        name = output.name
        if multiple:
            name = f"{output.name}/{path.relative_to(context.working_dir).as_posix()}"
        artifact = self.store.put(result, path.read_bytes(), output.media_type, output.retention, name=name)
        if artifact.hash not in result.artifacts:
            result.artifacts.append(artifact.hash)
        if context.emitter:
            context.emitter.artifact_stored(context.stage.name, artifact)

    @staticmethod
    def _finish(result: StageResult, start: float, status: StageStatus,
                kind: Optional[ErrorKind], reason: str) -> StageResult:
        result.status = status
        result.error_kind = kind.value if kind is not None else None
        result.reason = reason
        result.completed_at = utc_now().isoformat()
        result.duration_ms = int((time.monotonic() - start) * 1000)
        if status == StageStatus.PASSED:
            logger.info(f"{result.run_id}/{result.stage} passed in {result.duration_ms}ms")
        else:
            logger.warning(f"{result.run_id}/{result.stage} failed ({result.error_kind}): {reason}")
        return result

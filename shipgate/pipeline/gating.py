"""Gate evaluation for stage reports.

Provides:
- GateEvaluator: Apply a GatePolicy to a parsed ToolResult
- ConditionEvaluator: Evaluate field-path gating conditions
- ContextBuilder: Build the evaluation context from a ToolResult

Evaluation is pure: the same policy and ToolResult always yield the same
GateResult. Anything that cannot be evaluated fails the gate.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from shipgate.data_models import GateResult, SEVERITY_ORDER, Severity, ToolResult
from shipgate.errors import GateFailure
from shipgate.pipeline.schema import GatePolicy, GatingCondition, GatingOperator

logger = logging.getLogger(__name__)

UNPARSEABLE_REASON = "unparseable tool output"


@dataclass
class EvaluationResult:
    """Result of condition evaluation."""
    result: bool  # True if condition met
    resolved_values: Dict[str, Any]  # Field paths resolved during evaluation
    debug_info: Optional[str] = None  # Human-readable explanation


class ContextBuilder:
    """Build evaluation context from a tool result.

    Context structure:
    {
        "findings": {
            "count": 10,
            "open_count": 8,
            "critical_count": 1,
            "high_count": 3,
            "medium_count": 4,
            "low_count": 2,
            "info_count": 0,
            "max_severity": "critical",
            "by_severity": {"critical": {"count": 1}, ...},
        },
        "metrics": {
            "tests": 12, "failures": 0, "coverage": 0.83, ...
        },
        "format": "trivy",
    }
    """

    def build(self, tool_result: ToolResult) -> Dict[str, Any]:
        """
        Build evaluation context from a tool result.

        Args:
            tool_result: Parsed tool output

        Returns:
            Context dict for evaluation
        """
        return {
            "findings": self._build_findings_context(tool_result),
            "metrics": dict(tool_result.metrics),
            "format": tool_result.format,
        }

    def _build_findings_context(self, tool_result: ToolResult) -> Dict[str, Any]:
        """Build findings aggregate context."""
        breakdown = tool_result.severity_breakdown()
        max_severity = "none"
        for severity in SEVERITY_ORDER:
            if breakdown[severity.value]:
                max_severity = severity.value

        context = {
            "count": len(tool_result.findings),
            "open_count": sum(1 for f in tool_result.findings if f.is_open),
            "max_severity": max_severity,
            "by_severity": {k: {"count": v} for k, v in breakdown.items()},
        }
        for severity, count in breakdown.items():
            context[f"{severity}_count"] = count
        return context


class ConditionEvaluator:
    """Evaluate gating conditions against a context.

    Supports:
    - Numeric comparisons: >, >=, <, <=, ==, !=
    - Membership: in, not_in
    - Boolean operators: and, or (via and_conditions, or_conditions)
    - Field path resolution: findings.count, metrics.coverage, etc.
    - Missing paths raise ValueError so the gate fails closed
    """

    def evaluate(
        self,
        condition: GatingCondition,
        context: Dict[str, Any],
    ) -> EvaluationResult:
        """
        Evaluate a gating condition.

        Args:
            condition: Condition to evaluate
            context: Evaluation context (from ContextBuilder)

        Returns:
            EvaluationResult with result and resolved values
        """
        resolved_values = {}

        field_value = self._resolve_path(condition.field, context)
        resolved_values[condition.field] = field_value

        base_result = self._compare(field_value, condition.operator, condition.value)

        # AND conditions: all must be true, including base
        if condition.and_conditions:
            if not base_result:
                return EvaluationResult(
                    result=False,
                    resolved_values=resolved_values,
                    debug_info=f"{condition.field}={field_value} {condition.operator.value} {condition.value} failed",
                )

            for and_cond in condition.and_conditions:
                and_result = self.evaluate(and_cond, context)
                resolved_values.update(and_result.resolved_values)
                if not and_result.result:
                    return EvaluationResult(
                        result=False,
                        resolved_values=resolved_values,
                        debug_info=f"AND condition failed: {and_result.debug_info}",
                    )

            return EvaluationResult(
                result=True,
                resolved_values=resolved_values,
                debug_info="All AND conditions met",
            )

        # OR conditions: base OR any or_condition must be true
        if condition.or_conditions:
            if base_result:
                return EvaluationResult(
                    result=True,
                    resolved_values=resolved_values,
                    debug_info="Base condition met (OR)",
                )

            for or_cond in condition.or_conditions:
                or_result = self.evaluate(or_cond, context)
                resolved_values.update(or_result.resolved_values)
                if or_result.result:
                    return EvaluationResult(
                        result=True,
                        resolved_values=resolved_values,
                        debug_info=f"OR condition met: {or_cond.field}",
                    )

            return EvaluationResult(
                result=False,
                resolved_values=resolved_values,
                debug_info=f"No OR conditions met for {condition.field}",
            )

        return EvaluationResult(
            result=base_result,
            resolved_values=resolved_values,
            debug_info=f"{condition.field}={field_value} {condition.operator.value} {condition.value} -> {base_result}",
        )

    def _resolve_path(self, path: str, context: Dict[str, Any]) -> Any:
        """
        Resolve a dot-separated field path in context.

        Examples:
            "findings.count" -> context["findings"]["count"]
            "metrics.coverage" -> context["metrics"]["coverage"]
        """
        current = context

        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                raise ValueError(f"Path '{path}' not found in context (missing at '{part}')")

        return current

    def _compare(self, left: Any, operator: GatingOperator, right: Any) -> bool:
        """Compare values using operator. Type errors count as not met."""
        if left is None:
            left = 0

        try:
            if operator == GatingOperator.GT:
                return left > right
            elif operator == GatingOperator.GTE:
                return left >= right
            elif operator == GatingOperator.LT:
                return left < right
            elif operator == GatingOperator.LTE:
                return left <= right
            elif operator == GatingOperator.EQ:
                return left == right
            elif operator == GatingOperator.NEQ:
                return left != right
            elif operator == GatingOperator.IN:
                return left in right
            elif operator == GatingOperator.NOT_IN:
                return left not in right
            else:
                raise ValueError(f"Unknown operator: {operator}")
        except TypeError as e:
            logger.warning(f"Type error comparing {left} {operator.value} {right}: {e}")
            return False


class GateEvaluator:
    """Apply gate policies to tool results."""

    def __init__(self, condition_evaluator: Optional[ConditionEvaluator] = None):
        self.context_builder = ContextBuilder()
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()

    def evaluate(self, policy: GatePolicy, tool_result: Optional[ToolResult], name: str = "gate") -> GateResult:
        """
        Evaluate one policy against a tool result.

        Args:
            policy: Gate policy (all of its rules must pass)
            tool_result: Parsed tool output, or None if nothing was parsed
            name: Gate name recorded on the result

        Returns:
            GateResult with verdict, reason and severity breakdown
        """
        if tool_result is None or not tool_result.parseable:
            detail = "; ".join(tool_result.parse_errors) if tool_result is not None else ""
            reason = f"{UNPARSEABLE_REASON}: {detail}" if detail else UNPARSEABLE_REASON
            return GateResult(gate=name, passed=False, reason=reason, severity_breakdown={})

        breakdown = tool_result.severity_breakdown()
        failures: List[str] = []
        checks: List[str] = []

        if policy.max_severity is not None:
            self._check_max_severity(policy.max_severity, tool_result, failures, checks)

        if policy.max_findings is not None:
            count = len(tool_result.findings)
            self._check(count <= policy.max_findings,
                        f"{count} findings (max {policy.max_findings})", failures, checks)

        if policy.max_open_findings is not None:
            count = sum(1 for f in tool_result.findings if f.is_open)
            self._check(count <= policy.max_open_findings,
                        f"{count} open findings (max {policy.max_open_findings})", failures, checks)

        if policy.max_failures is not None:
            metrics = tool_result.metrics
            if "failures" not in metrics and "errors" not in metrics:
                failures.append("test failure counts missing from tool output")
            else:
                count = int(metrics.get("failures", 0) + metrics.get("errors", 0))
                self._check(count <= policy.max_failures,
                            f"{count} failed tests (max {policy.max_failures})", failures, checks)

        if policy.min_coverage is not None:
            coverage = tool_result.metrics.get("coverage")
            if coverage is None:
                failures.append("coverage metric missing from tool output")
            else:
                self._check(coverage >= policy.min_coverage,
                            f"coverage {coverage:.1%} (min {policy.min_coverage:.1%})", failures, checks)

        if policy.conditions:
            context = self.context_builder.build(tool_result)
            for condition in policy.conditions:
                try:
                    outcome = self.condition_evaluator.evaluate(condition, context)
                except ValueError as exc:
                    failures.append(str(exc))
                    continue
                self._check(outcome.result, outcome.debug_info or condition.field, failures, checks)

        passed = not failures
        reason = "; ".join(failures) if failures else "; ".join(checks)
        logger.debug(f"Gate '{name}' {'passed' if passed else 'failed'}: {reason}")
        return GateResult(gate=name, passed=passed, reason=reason, severity_breakdown=breakdown)

    def evaluate_all(self, policies: Dict[str, GatePolicy], tool_result: Optional[ToolResult]) -> List[GateResult]:
        """Evaluate named policies in order."""
        return [self.evaluate(policy, tool_result, name=name) for name, policy in policies.items()]

    @staticmethod
    def require_passed(gate_results: Iterable[GateResult]) -> None:
        """
        Raise unless every gate attached to a stage passed.

        Raises:
            GateFailure: Carries the failed results, one reason per gate
        """
        failed = [result for result in gate_results if not result.passed]
        if failed:
            raise GateFailure(
                "; ".join(f"gate '{g.gate}' failed: {g.reason}" for g in failed),
                failed=failed,
            )

    def _check_max_severity(self, threshold: Severity, tool_result: ToolResult,
                            failures: List[str], checks: List[str]) -> None:
        over: Dict[Severity, int] = {}
        for finding in tool_result.findings:
            if finding.is_open and finding.severity.rank > threshold.rank:
                over[finding.severity] = over.get(finding.severity, 0) + 1

        if over:
            detail = ", ".join(
                f"{over[severity]} {severity.value.upper()}"
                for severity in reversed(SEVERITY_ORDER) if severity in over
            )
            failures.append(f"{detail} above max severity {threshold.value.upper()}")
        else:
            checks.append(f"no findings above {threshold.value.upper()}")

    @staticmethod
    def _check(ok: bool, message: str, failures: List[str], checks: List[str]) -> None:
        (checks if ok else failures).append(message)

"""Runtime data models for shipgate runs, stages, gates and artifacts."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp written by shipgate (always UTC)."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RunStatus(str, Enum):
    """Lifecycle status of a pipeline run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class StageStatus(str, Enum):
    """Lifecycle status of a stage within a run."""
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.PASSED, StageStatus.FAILED, StageStatus.SKIPPED)


class Severity(str, Enum):
    """Finding severity, ordered from least to most severe."""
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Map scanner severity labels onto the shipgate scale."""
        if isinstance(value, Severity):
            return value
        label = str(value or "").strip().lower()
        aliases = {
            "negligible": cls.INFO,
            "unknown": cls.INFO,
            "none": cls.INFO,
            "informational": cls.INFO,
            "moderate": cls.MEDIUM,
            "important": cls.HIGH,
        }
        if label in aliases:
            return aliases[label]
        try:
            return cls(label)
        except ValueError:
            # Unrecognised labels rank as the most severe
            return cls.CRITICAL


SEVERITY_ORDER = [Severity.INFO, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class RetentionClass(str, Enum):
    """Retention policy governing the minimum lifetime of an artifact."""
    COMPLIANCE = "compliance"  # Compliance-mandated minimum (6 years)
    STANDARD = "standard"
    EPHEMERAL = "ephemeral"    # Build-scoped, eligible once the run is terminal

    @classmethod
    def parse(cls, value: Any) -> "RetentionClass":
        """Missing or unknown retention metadata fails closed to COMPLIANCE."""
        if isinstance(value, RetentionClass):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.COMPLIANCE


@dataclass
class Finding:
    """A single issue reported by an external tool."""
    id: str
    title: str
    severity: Severity
    component: Optional[str] = None
    status: str = "open"
    location: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status.lower() in ("open", "confirmed", "reopened")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "severity": self.severity.value,
            "component": self.component,
            "status": self.status,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            severity=Severity.parse(data.get("severity")),
            component=data.get("component"),
            status=data.get("status", "open"),
            location=data.get("location"),
        )


@dataclass
class ToolInvocation:
    """Captured outcome of one external process."""
    command: List[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    def check(self) -> "ToolInvocation":
        """Raise ToolNonZeroExit unless the process exited cleanly."""
        from shipgate.errors import ToolNonZeroExit

        if self.exit_code != 0:
            raise ToolNonZeroExit(
                f"'{self.command[0]}' exited with code {self.exit_code}",
                exit_code=self.exit_code,
            )
        return self


@dataclass
class ToolResult:
    """Structured result parsed from a tool's output."""
    format: str
    findings: List[Finding] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    parse_errors: List[str] = field(default_factory=list)

    @property
    def parseable(self) -> bool:
        return not self.parse_errors

    def severity_breakdown(self) -> Dict[str, int]:
        breakdown = {severity.value: 0 for severity in SEVERITY_ORDER}
        for finding in self.findings:
            breakdown[finding.severity.value] += 1
        return breakdown

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format,
            "findings": [f.to_dict() for f in self.findings],
            "metrics": dict(self.metrics),
            "parse_errors": list(self.parse_errors),
        }


@dataclass(frozen=True)
class GateResult:
    """Verdict of one gate policy against a tool result."""
    gate: str
    passed: bool
    reason: str
    severity_breakdown: Dict[str, int] = field(default_factory=dict, compare=True, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gate": self.gate,
            "passed": self.passed,
            "reason": self.reason,
            "severity_breakdown": dict(self.severity_breakdown),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GateResult":
        return cls(
            gate=data["gate"],
            passed=bool(data["passed"]),
            reason=data.get("reason", ""),
            severity_breakdown=data.get("severity_breakdown", {}),
        )


@dataclass
class Artifact:
    """A stored, content-addressed output bound to its producing run and stage."""
    hash: str
    name: str
    media_type: str
    run_id: str
    stage: str
    retention: RetentionClass
    size: int
    created_at: str
    retain_until: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "name": self.name,
            "media_type": self.media_type,
            "run_id": self.run_id,
            "stage": self.stage,
            "retention": self.retention.value,
            "size": self.size,
            "created_at": self.created_at,
            "retain_until": self.retain_until,
        }


@dataclass
class Credential:
    """A short-lived lease on a credential scope.

    ``values`` holds the secret material and is never serialized.
    """
    lease_id: str
    scope: str
    issued_at: datetime
    expires_at: datetime
    values: Dict[str, str] = field(default_factory=dict, repr=False)
    run_id: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lease_id": self.lease_id,
            "scope": self.scope,
            "run_id": self.run_id,
            "stage": self.stage,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class StageResult:
    """Outcome of a single stage within a run."""
    run_id: str
    stage: str
    status: StageStatus = StageStatus.PENDING
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    reason: str = ""
    output_ref: Optional[str] = None
    gate_results: List[GateResult] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: int = 0

    @property
    def gates_passed(self) -> bool:
        return all(g.passed for g in self.gate_results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "error_kind": self.error_kind,
            "reason": self.reason,
            "output_ref": self.output_ref,
            "gate_results": [g.to_dict() for g in self.gate_results],
            "artifacts": list(self.artifacts),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        return cls(
            run_id=data["run_id"],
            stage=data["stage"],
            status=StageStatus(data.get("status", "pending")),
            exit_code=data.get("exit_code"),
            error_kind=data.get("error_kind"),
            reason=data.get("reason", ""),
            output_ref=data.get("output_ref"),
            gate_results=[GateResult.from_dict(g) for g in data.get("gate_results", [])],
            artifacts=list(data.get("artifacts", [])),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration_ms=data.get("duration_ms", 0),
        )


@dataclass
class Run:
    """One end-to-end execution of a pipeline definition."""
    run_id: str
    pipeline: str
    build_number: int
    status: RunStatus = RunStatus.PENDING
    variables: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    reason: str = ""
    stages: Dict[str, StageResult] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "build_number": self.build_number,
            "status": self.status.value,
            "variables": dict(self.variables),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "reason": self.reason,
            "stages": {name: result.to_dict() for name, result in self.stages.items()},
        }

"""Pipeline schema definitions using Pydantic for validation.

This module defines the structure of shipgate pipelines, including:
- Pipeline definition and metadata
- Stages (commands, dependencies, outputs, credentials)
- Gate policies applied to parsed tool reports
- Field-path gating conditions for custom rules
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shipgate.data_models import RetentionClass, Severity


class ReportFormat(str, Enum):
    """Structured output formats a stage's report can be parsed from."""
    JUNIT = "junit"
    JACOCO = "jacoco"
    TRIVY = "trivy"
    ANCHORE = "anchore"
    CYCLONEDX = "cyclonedx"
    SONARQUBE = "sonarqube"


class GatingOperator(str, Enum):
    """Comparison operators for gating conditions."""
    GT = ">"      # Greater than
    GTE = ">="    # Greater than or equal
    LT = "<"      # Less than
    LTE = "<="    # Less than or equal
    EQ = "=="     # Equal
    NEQ = "!="    # Not equal
    IN = "in"     # Value in list
    NOT_IN = "not_in"  # Value not in list


class GatingCondition(BaseModel):
    """Field-path condition evaluated against a tool result.

    The condition states what must hold for the gate to pass.

    Examples:
        # No more than 3 medium findings
        field: "findings.medium_count"
        operator: "<="
        value: 3

        # Branch coverage of at least 60%
        field: "metrics.branch_coverage"
        operator: ">="
        value: 0.6
    """
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Field path to evaluate (e.g., 'findings.high_count')")
    operator: GatingOperator = Field(..., description="Comparison operator")
    value: Union[int, float, str, bool, List] = Field(..., description="Value to compare against")

    # Optional: combine multiple conditions
    and_conditions: Optional[List["GatingCondition"]] = Field(None, description="AND these conditions")
    or_conditions: Optional[List["GatingCondition"]] = Field(None, description="OR these conditions")


class GatePolicy(BaseModel):
    """Declarative pass/fail rules applied to a stage's parsed report.

    Every rule that is set must pass (AND semantics). Accepts the camelCase
    spellings used in pipeline files, e.g.
    ``{"maxSeverity": "HIGH", "maxFindings": 0}`` or ``{"minCoverage": 0.8}``.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_severity: Optional[Severity] = Field(None, alias="maxSeverity", description="Highest severity allowed")
    max_findings: Optional[int] = Field(None, alias="maxFindings", ge=0)
    max_open_findings: Optional[int] = Field(None, alias="maxOpenFindings", ge=0)
    max_failures: Optional[int] = Field(None, alias="maxFailures", ge=0, description="Failed plus errored tests")
    min_coverage: Optional[float] = Field(
        None, alias="minCoverage", description="Ratio up to 1 (0.8, 1 = 100%) or whole percent above 1 (80)"
    )
    conditions: List[GatingCondition] = Field(default_factory=list)

    @field_validator("max_severity", mode="before")
    @classmethod
    def normalize_severity(cls, value: Any):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("min_coverage")
    @classmethod
    def normalize_coverage(cls, value: Optional[float]):
        if value is None:
            return value
        if value > 1:
            # 1 is a ratio (100%); anything larger must be a whole percentage
            if value != int(value):
                raise ValueError(f"minCoverage {value} is ambiguous: use a ratio (0-1) or a whole percentage")
            value = value / 100.0
        if not 0 <= value <= 1:
            raise ValueError("minCoverage must be a ratio (0-1) or a percentage (0-100)")
        return value

    @model_validator(mode="after")
    def validate_has_rule(self):
        rules = (self.max_severity, self.max_findings, self.max_open_findings,
                 self.max_failures, self.min_coverage)
        if all(rule is None for rule in rules) and not self.conditions:
            raise ValueError("Gate policy must define at least one rule")
        return self


class CommandSpec(BaseModel):
    """One external command. ``command``, ``args`` and ``env`` values are
    templates rendered against the run variables (``{IMAGE_TAG}``,
    ``{build_number}``, ...)."""
    model_config = ConfigDict(frozen=True)

    command: str = Field(..., min_length=1)
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class ReportSpec(BaseModel):
    """Where a stage's structured report comes from."""
    model_config = ConfigDict(frozen=True)

    format: ReportFormat
    source: str = Field("stdout", description="'stdout' or a glob relative to the stage working directory")


class OutputSpec(BaseModel):
    """Declared artifact output of a stage."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    pattern: str = Field(..., description="Glob relative to the stage working directory")
    media_type: str = Field("application/octet-stream", alias="mediaType")
    retention: RetentionClass = RetentionClass.COMPLIANCE
    required: bool = False

    @field_validator("retention", mode="before")
    @classmethod
    def parse_retention(cls, value: Any):
        return RetentionClass.parse(value)


# Identity fields left readable in captured output unless secretFields says otherwise
NON_SECRET_FIELDS = frozenset({"username", "user", "login"})


class CredentialBinding(BaseModel):
    """Credential scope a stage needs, and how its fields reach the environment."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    scope: str = Field(..., min_length=1)
    ttl_seconds: Optional[int] = Field(None, alias="ttl", gt=0)
    env: Dict[str, str] = Field(default_factory=dict, description="ENV_VAR -> secret field")
    secret_fields: Optional[List[str]] = Field(
        None, alias="secretFields", description="Fields masked in captured output (default: all but identity fields)"
    )

    def secrets(self, values: Dict[str, str]) -> List[str]:
        """Leased values that must never appear in captured output."""
        if self.secret_fields is not None:
            names = self.secret_fields
        else:
            names = [key for key in values if key.lower() not in NON_SECRET_FIELDS]
        return [values[key] for key in names if values.get(key)]

    def environment(self, values: Dict[str, str]) -> Dict[str, str]:
        """Map leased secret values onto environment variables."""
        if self.env:
            return {var: values[key] for var, key in self.env.items() if key in values}
        prefix = self.scope.upper().replace("-", "_").replace(".", "_")
        return {f"{prefix}_{key.upper()}": value for key, value in values.items()}


class StageDefinition(BaseModel):
    """A named unit of pipeline work.

    ``depends_on`` lists hard prerequisites: the stage runs only if they all
    passed. Left unset, the stage starts after the previous stage in declared
    order whatever its outcome (a failure that stops the run still skips it);
    ``[]`` makes it a root. ``after`` lists ordering-only
    prerequisites whose outcome does not matter.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    commands: List[CommandSpec] = Field(..., min_length=1)
    depends_on: Optional[List[str]] = Field(None, alias="dependsOn")
    after: List[str] = Field(default_factory=list)
    gates: List[str] = Field(default_factory=list)
    report: Optional[ReportSpec] = None
    outputs: List[OutputSpec] = Field(default_factory=list)
    credentials: List[CredentialBinding] = Field(default_factory=list)
    continue_on_failure: bool = Field(False, alias="continueOnFailure")
    timeout_seconds: Optional[int] = Field(None, alias="timeout", gt=0)
    enabled: bool = True
    working_dir: Optional[str] = Field(None, alias="workingDir")

    @model_validator(mode="before")
    @classmethod
    def expand_shorthand(cls, data: Any):
        """Accept ``gate: name`` and a single ``command`` + ``args`` pair."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        gate = data.pop("gate", None)
        if gate:
            data["gates"] = list(data.get("gates") or []) + [gate]
        if "command" in data and "commands" not in data:
            data["commands"] = [{
                "command": data.pop("command"),
                "args": data.pop("args", []),
                "env": data.pop("env", {}),
            }]
        return data

    @field_validator("credentials", mode="before")
    @classmethod
    def expand_credentials(cls, value: Any):
        if isinstance(value, list):
            return [{"scope": item} if isinstance(item, str) else item for item in value]
        return value


class PipelineDefinition(BaseModel):
    """Complete pipeline definition: ordered stages forming a DAG."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Pipeline name (e.g., 'container_release')")
    version: str = Field("1.0", description="Pipeline version for tracking changes")
    description: Optional[str] = Field(None, description="Human-readable description")

    stages: List[StageDefinition] = Field(..., description="Stages in declared order")
    gates: Dict[str, GatePolicy] = Field(default_factory=dict, description="Named gate policies")
    variables: Dict[str, str] = Field(default_factory=dict, description="Run-scoped variable defaults")
    max_parallel_stages: Optional[int] = Field(None, alias="maxParallelStages", gt=0)

    is_preset: bool = Field(False, description="Whether this is a built-in preset pipeline")

    @field_validator("stages")
    @classmethod
    def validate_stages(cls, stages: List[StageDefinition]):
        """Validate stage list has at least one stage and unique names."""
        if not stages:
            raise ValueError("Pipeline must have at least one stage")

        names = [stage.name for stage in stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Stage names must be unique (duplicated: {', '.join(duplicates)})")

        return stages

    @model_validator(mode="after")
    def validate_references(self):
        """Validate dependency and gate references, then reject cycles."""
        names = {stage.name for stage in self.stages}

        for stage in self.stages:
            for dep in (stage.depends_on or []) + stage.after:
                if dep not in names:
                    raise ValueError(f"Stage '{stage.name}' depends on unknown stage '{dep}'")
                if dep == stage.name:
                    raise ValueError(f"Stage '{stage.name}' depends on itself")

            for gate in stage.gates:
                if gate not in self.gates:
                    raise ValueError(f"Stage '{stage.name}' references unknown gate policy '{gate}'")
            if stage.gates and stage.report is None:
                raise ValueError(f"Stage '{stage.name}' has gates but no report to evaluate them against")

        cycle = self._find_cycle()
        if cycle:
            raise ValueError(f"Dependency cycle: {' -> '.join(cycle)}")

        return self

    def stage(self, name: str) -> StageDefinition:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def hard_dependencies(self, name: str) -> List[str]:
        """Stages that must have passed before ``name`` may run."""
        return list(self.stage(name).depends_on or [])

    def prerequisites(self, name: str) -> List[str]:
        """Stages that must be terminal before ``name`` may start."""
        index = [s.name for s in self.stages].index(name)
        stage = self.stages[index]
        deps = list(stage.depends_on or [])
        if stage.depends_on is None and index > 0:
            deps.append(self.stages[index - 1].name)
        return deps + [dep for dep in stage.after if dep not in deps]

    def dependents(self, name: str) -> List[str]:
        """Stages that transitively hard-depend on ``name``, in declared order."""
        found = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for stage in self.stages:
                if stage.name not in found and current in self.hard_dependencies(stage.name):
                    found.add(stage.name)
                    frontier.append(stage.name)
        return [stage.name for stage in self.stages if stage.name in found]

    def topological_order(self) -> List[str]:
        """Stage names in a dependency-respecting order, stable on declared order."""
        order: List[str] = []
        remaining = [stage.name for stage in self.stages]
        while remaining:
            ready = [n for n in remaining if all(p in order for p in self.prerequisites(n))]
            if not ready:
                raise ValueError("Dependency cycle among: " + ", ".join(remaining))
            order.append(ready[0])
            remaining.remove(ready[0])
        return order

    def _find_cycle(self) -> Optional[List[str]]:
        visiting: List[str] = []
        done = set()

        def visit(name: str) -> Optional[List[str]]:
            if name in done:
                return None
            if name in visiting:
                return visiting[visiting.index(name):] + [name]
            visiting.append(name)
            for dep in self.prerequisites(name):
                cycle = visit(dep)
                if cycle:
                    return cycle
            visiting.pop()
            done.add(name)
            return None

        for stage in self.stages:
            cycle = visit(stage.name)
            if cycle:
                return cycle
        return None


# Update forward references for recursive models
GatingCondition.model_rebuild()

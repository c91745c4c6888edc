"""Pipeline definitions, gating and execution for shipgate.

This package provides:
- Pipeline schema definitions (schema.py)
- Pipeline loader and registry (loader.py)
- Gate evaluation (gating.py)
- Stage execution (stage.py)
- The DAG-scheduling pipeline engine (executor.py)
"""

from shipgate.pipeline.schema import (
    CommandSpec,
    CredentialBinding,
    GatePolicy,
    GatingCondition,
    GatingOperator,
    OutputSpec,
    PipelineDefinition,
    ReportFormat,
    ReportSpec,
    StageDefinition,
)
from shipgate.pipeline.gating import GateEvaluator
from shipgate.pipeline.loader import (
    PipelineLoader,
    PipelineRegistry,
)
from shipgate.pipeline.stage import StageContext, StageRunner
from shipgate.pipeline.executor import PipelineEngine

__all__ = [
    "CommandSpec",
    "CredentialBinding",
    "GatePolicy",
    "GatingCondition",
    "GatingOperator",
    "OutputSpec",
    "PipelineDefinition",
    "ReportFormat",
    "ReportSpec",
    "StageDefinition",
    "GateEvaluator",
    "PipelineLoader",
    "PipelineRegistry",
    "StageContext",
    "StageRunner",
    "PipelineEngine",
]

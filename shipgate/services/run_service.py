"""Run orchestration service used by the API and the background worker."""

import logging
from typing import Any, Dict, List, Optional

from shipgate.artifacts.store import ArtifactStore
from shipgate.data_models import Run
from shipgate.errors import DefinitionError
from shipgate.pipeline.executor import PipelineEngine
from shipgate.pipeline.loader import PipelineRegistry
from shipgate.pipeline.schema import PipelineDefinition
from shipgate.recorder import RunRecorder

logger = logging.getLogger(__name__)


class RunService:
    """Create, execute, inspect and abort pipeline runs."""

    def __init__(
        self,
        engine: PipelineEngine,
        registry: PipelineRegistry,
        worker=None,
    ):
        self.engine = engine
        self.registry = registry
        self.worker = worker

    @property
    def recorder(self) -> RunRecorder:
        return self.engine.recorder

    @property
    def store(self) -> ArtifactStore:
        return self.engine.store

    def trigger(
        self,
        pipeline_name: str,
        variables: Optional[Dict[str, str]] = None,
        definition: Optional[PipelineDefinition] = None,
    ) -> Run:
        """
        Create a run and hand it to the worker (or execute it inline).

        Args:
            pipeline_name: Registered pipeline or preset name
            variables: Run-scoped variables
            definition: Explicit definition, registered under its name

        Returns:
            The Pending run (terminal when executed inline)

        Raises:
            KeyError: Unknown pipeline
            DefinitionError: Definition or templates invalid
        """
        if definition is not None:
            if definition.name != pipeline_name:
                raise DefinitionError(
                    f"definition name '{definition.name}' does not match pipeline '{pipeline_name}'"
                )
            definition = self.registry.register_custom(definition)
        else:
            definition = self.registry.get_pipeline(pipeline_name)
            if definition is None:
                raise KeyError(pipeline_name)

        run = self.engine.create_run(definition, variables)
        if self.worker is None:
            return self.engine.execute(definition, run=run)

        self.worker.enqueue_run(run, definition)
        return run

    def execute(self, run: Run, definition: PipelineDefinition) -> Run:
        return self.engine.execute(definition, run=run)

    def resume(self, run_id: str) -> Run:
        return self.engine.resume(run_id)

    def abort(self, run_id: str, reason: str = "aborted by user") -> bool:
        return self.engine.abort(run_id, reason)

    def get_run(self, run_id: str) -> Optional[Run]:
        return self.recorder.replay(run_id)

    def list_runs(self, pipeline: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.recorder.list_runs(pipeline)

    def list_pipelines(self) -> List[Dict[str, Any]]:
        """Summaries of every available pipeline."""
        names = self.registry.list_all()
        summaries = []
        for name in sorted(set(names["presets"]) | set(names["custom"])):
            definition = self.registry.get_pipeline(name)
            if definition is not None:
                summaries.append({
                    "name": definition.name,
                    "version": definition.version,
                    "description": definition.description,
                    "is_preset": definition.is_preset,
                    "stages": [stage.name for stage in definition.stages],
                    "variables": sorted(definition.variables),
                })
        return summaries

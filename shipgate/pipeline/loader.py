"""Pipeline loader and registry.

Loads pipeline definitions from YAML files or dicts, validates them and
provides access to the built-in presets and to registered custom pipelines.
Every loading failure surfaces as a DefinitionError, before any stage runs.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from shipgate.config_loader import ConfigLoader
from shipgate.errors import DefinitionError
from shipgate.pipeline.schema import PipelineDefinition

logger = logging.getLogger(__name__)

PRESETS_DIR = Path(__file__).resolve().parent.parent / "presets"


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "pipeline"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


class PipelineLoader:
    """Load and validate pipeline definitions."""

    def __init__(self, presets_dir: Optional[Path] = None):
        """
        Args:
            presets_dir: Directory of preset YAML files (defaults to the bundled presets)
        """
        self.presets_dir = Path(presets_dir or PRESETS_DIR)
        self._preset_cache: Dict[str, PipelineDefinition] = {}

    def load_from_yaml(self, yaml_path: Path) -> PipelineDefinition:
        """
        Load pipeline from YAML file.

        Args:
            yaml_path: Path to YAML file

        Returns:
            Validated PipelineDefinition

        Raises:
            DefinitionError: File missing, YAML malformed or definition invalid
        """
        yaml_path = Path(yaml_path)
        try:
            raw_config = ConfigLoader.load_yaml(yaml_path)
        except FileNotFoundError as exc:
            raise DefinitionError(f"Pipeline file not found: {yaml_path}") from exc
        except yaml.YAMLError as exc:
            raise DefinitionError(f"Malformed YAML in {yaml_path}: {exc}") from exc

        return self._validate(raw_config, source=str(yaml_path))

    def load_from_dict(self, config_dict: Dict[str, Any]) -> PipelineDefinition:
        """
        Load pipeline from dictionary (for API requests).

        Raises:
            DefinitionError: If pipeline is invalid
        """
        return self._validate(ConfigLoader.resolve_env_vars(config_dict), source="request")

    def load_preset(self, preset_name: str) -> PipelineDefinition:
        """
        Load a preset pipeline by name.

        Args:
            preset_name: Name of preset pipeline (e.g., 'container_release')

        Raises:
            DefinitionError: If preset doesn't exist or is invalid
        """
        if preset_name in self._preset_cache:
            return self._preset_cache[preset_name]

        preset_path = self.presets_dir / f"{preset_name}.yaml"
        if not preset_path.exists():
            raise DefinitionError(f"Unknown preset pipeline '{preset_name}'")

        pipeline = self.load_from_yaml(preset_path).model_copy(update={"is_preset": True})
        self._preset_cache[preset_name] = pipeline
        return pipeline

    def list_presets(self) -> List[str]:
        if not self.presets_dir.exists():
            return []
        return sorted(path.stem for path in self.presets_dir.glob("*.yaml"))

    def validate_pipeline(self, pipeline: PipelineDefinition) -> List[str]:
        """
        Return warnings for definitions that are valid but likely mistaken.

        Args:
            pipeline: Pipeline to inspect

        Returns:
            List of warning messages (empty if no issues)
        """
        warnings = []
        for stage in pipeline.stages:
            if stage.report and not stage.gates:
                warnings.append(f"Stage '{stage.name}' declares a report but no gate evaluates it")
            if stage.continue_on_failure and pipeline.dependents(stage.name):
                warnings.append(
                    f"Stage '{stage.name}' continues on failure but "
                    f"{', '.join(pipeline.dependents(stage.name))} will be skipped when it fails"
                )
            if not stage.enabled:
                warnings.append(f"Stage '{stage.name}' is disabled")
        for gate in pipeline.gates:
            if not any(gate in stage.gates for stage in pipeline.stages):
                warnings.append(f"Gate policy '{gate}' is not used by any stage")
        return warnings

    def _validate(self, raw_config: Any, source: str) -> PipelineDefinition:
        if not isinstance(raw_config, dict):
            raise DefinitionError(f"Invalid pipeline definition in {source}: expected a mapping")
        try:
            pipeline = PipelineDefinition.model_validate(raw_config)
        except ValidationError as exc:
            raise DefinitionError(
                f"Invalid pipeline definition in {source}: {_format_validation_error(exc)}"
            ) from exc

        for warning in self.validate_pipeline(pipeline):
            logger.warning(f"{pipeline.name}: {warning}")
        return pipeline


class PipelineRegistry:
    """Registry for preset and custom pipelines."""

    def __init__(self, loader: Optional[PipelineLoader] = None):
        self.loader = loader or PipelineLoader()
        self._custom_pipelines: Dict[str, PipelineDefinition] = {}
        self._lock = threading.Lock()

    def get_pipeline(self, name: str) -> Optional[PipelineDefinition]:
        """
        Get pipeline by name. Custom pipelines shadow presets of the same name.

        Returns:
            PipelineDefinition or None if not found
        """
        with self._lock:
            custom = self._custom_pipelines.get(name)
        if custom is not None:
            return custom
        if name in self.loader.list_presets():
            return self.loader.load_preset(name)
        return None

    def register_custom(self, pipeline: PipelineDefinition) -> PipelineDefinition:
        pipeline = pipeline.model_copy(update={"is_preset": False})
        with self._lock:
            self._custom_pipelines[pipeline.name] = pipeline
        logger.info(f"Registered custom pipeline '{pipeline.name}'")
        return pipeline

    def list_all(self) -> Dict[str, List[str]]:
        """
        List all available pipelines.

        Returns:
            Dict with 'presets' and 'custom' keys containing pipeline names
        """
        with self._lock:
            custom = sorted(self._custom_pipelines)
        return {"presets": self.loader.list_presets(), "custom": custom}

"""Base parser interface for structured tool output."""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
import xml.etree.ElementTree as ET

from shipgate.data_models import ToolResult


class BaseParser(ABC):
    """
    Abstract base class for tool output parsers.

    Parsers convert a tool's report (JSON or XML text) into a ToolResult.
    They never raise on bad input: problems are reported through
    ``ToolResult.parse_errors`` so the gate evaluator can fail closed.
    """

    format: str = "unknown"
    max_length: int = 64 * 1024 * 1024

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize parser with optional configuration.

        Args:
            config: Parser-specific configuration
        """
        self.config = config or {}

    def parse(self, raw_output: Optional[str]) -> ToolResult:
        """
        Parse tool output into a ToolResult.

        Args:
            raw_output: Report text (stdout or report file contents)

        Returns:
            ToolResult with findings, metrics and parse errors
        """
        if raw_output is None or not raw_output.strip():
            return self.unparseable("empty tool output")
        if not self.validate_output_size(raw_output):
            return self.unparseable(f"tool output exceeds {self.max_length} bytes")
        try:
            return self._parse(raw_output)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            return self.unparseable(f"{type(exc).__name__}: {exc}")

    @abstractmethod
    def _parse(self, raw_output: str) -> ToolResult:
        """Format-specific parsing. May raise; ``parse`` converts errors."""

    def unparseable(self, message: str) -> ToolResult:
        return ToolResult(format=self.format, parse_errors=[message])

    def validate_output_size(self, raw_output: str) -> bool:
        """
        Validate output size to prevent pathological inputs.

        Args:
            raw_output: Raw output string

        Returns:
            True if valid, False otherwise
        """
        return len(raw_output) <= self.max_length

    @staticmethod
    def load_json(raw_output: str) -> Tuple[Any, Optional[str]]:
        try:
            return json.loads(raw_output), None
        except json.JSONDecodeError as exc:
            return None, f"invalid JSON: {exc}"

    @staticmethod
    def load_xml(raw_output: str) -> Tuple[Optional[ET.Element], Optional[str]]:
        try:
            return ET.fromstring(raw_output), None
        except ET.ParseError as exc:
            return None, f"invalid XML: {exc}"

    def merge(self, results: List[ToolResult]) -> ToolResult:
        """
        Combine results parsed from several report files.

        Findings and parse errors are concatenated. Metrics are not additive
        in general, so the first file's metrics win; formats whose metrics
        are counters override this.
        """
        merged = ToolResult(format=self.format)
        for result in results:
            merged.findings.extend(result.findings)
            merged.parse_errors.extend(result.parse_errors)
        if results:
            merged.metrics = dict(results[0].metrics)
        return merged

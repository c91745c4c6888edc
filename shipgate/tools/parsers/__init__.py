"""Parsers for structured tool output (test reports, scans, SBOMs)."""

from typing import Dict, Type

from shipgate.tools.parsers.base import BaseParser
from shipgate.tools.parsers.junit import JUnitParser
from shipgate.tools.parsers.jacoco import JaCoCoParser
from shipgate.tools.parsers.trivy import TrivyParser
from shipgate.tools.parsers.anchore import AnchoreParser
from shipgate.tools.parsers.cyclonedx import CycloneDXParser
from shipgate.tools.parsers.sonarqube import SonarQubeParser

# Built-in parser registry, keyed by ReportFormat value
_PARSER_CLASSES: Dict[str, Type[BaseParser]] = {
    "junit": JUnitParser,
    "jacoco": JaCoCoParser,
    "trivy": TrivyParser,
    "anchore": AnchoreParser,
    "cyclonedx": CycloneDXParser,
    "sonarqube": SonarQubeParser,
}


def get_parser(report_format: str) -> BaseParser:
    """
    Instantiate a parser for a report format.

    Raises:
        ValueError: If the format is unknown
    """
    parser_cls = _PARSER_CLASSES.get(str(report_format))
    if not parser_cls:
        raise ValueError(f"Unknown report format: {report_format}")
    return parser_cls()


def supported_formats():
    return sorted(_PARSER_CLASSES)


__all__ = [
    "BaseParser",
    "JUnitParser",
    "JaCoCoParser",
    "TrivyParser",
    "AnchoreParser",
    "CycloneDXParser",
    "SonarQubeParser",
    "get_parser",
    "supported_formats",
]

"""External tool invocation and output parsing."""

from shipgate.tools.adapter import ToolAdapter
from shipgate.tools.parsers import get_parser, supported_formats

__all__ = ["ToolAdapter", "get_parser", "supported_formats"]

"""JaCoCo XML coverage report parser."""

from shipgate.data_models import ToolResult
from shipgate.tools.parsers.base import BaseParser


class JaCoCoParser(BaseParser):
    """Read the report-level counters of a JaCoCo ``<report>``.

    ``coverage`` is the line coverage ratio (0.0 - 1.0); branch coverage is
    reported as ``branch_coverage`` when the counter is present.
    """

    format = "jacoco"

    def _parse(self, raw_output: str) -> ToolResult:
        root, error = self.load_xml(raw_output)
        if error:
            return self.unparseable(error)
        if root.tag != "report":
            return self.unparseable(f"unexpected JaCoCo root element <{root.tag}>")

        counters = {c.get("type"): c for c in root.findall("counter")}
        line = counters.get("LINE")
        if line is None:
            return self.unparseable("JaCoCo report has no LINE counter")

        covered = int(line.get("covered", 0))
        missed = int(line.get("missed", 0))
        total = covered + missed
        metrics = {
            "lines_covered": float(covered),
            "lines_missed": float(missed),
            "coverage": covered / total if total else 0.0,
        }

        branch = counters.get("BRANCH")
        if branch is not None:
            b_covered = int(branch.get("covered", 0))
            b_total = b_covered + int(branch.get("missed", 0))
            metrics["branch_coverage"] = b_covered / b_total if b_total else 0.0

        return ToolResult(format=self.format, metrics=metrics)

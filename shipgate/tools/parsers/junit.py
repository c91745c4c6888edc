"""JUnit XML report parser (Maven Surefire, pytest, newman)."""

from shipgate.data_models import Finding, Severity, ToolResult
from shipgate.tools.parsers.base import BaseParser


class JUnitParser(BaseParser):
    """Parse ``<testsuites>`` or a single ``<testsuite>`` document.

    Metrics: tests, failures, errors, skipped, passed.
    Every failed or errored test case becomes a HIGH finding.
    """

    format = "junit"

    def _parse(self, raw_output: str) -> ToolResult:
        root, error = self.load_xml(raw_output)
        if error:
            return self.unparseable(error)

        if root.tag == "testsuite":
            suites = [root]
        elif root.tag == "testsuites":
            suites = root.findall("testsuite")
        else:
            return self.unparseable(f"unexpected JUnit root element <{root.tag}>")

        result = ToolResult(format=self.format)
        totals = {"tests": 0, "failures": 0, "errors": 0, "skipped": 0}

        for suite in suites:
            cases = suite.findall(".//testcase")
            if cases:
                # Count from cases; suite attributes are frequently stale
                totals["tests"] += len(cases)
                for case in cases:
                    outcome = self._case_outcome(case)
                    if outcome == "skipped":
                        totals["skipped"] += 1
                    elif outcome in ("failures", "errors"):
                        totals[outcome] += 1
                        result.findings.append(self._case_finding(suite, case, outcome))
            else:
                for key in totals:
                    totals[key] += int(suite.get(key, 0) or 0)

        totals["passed"] = totals["tests"] - totals["failures"] - totals["errors"] - totals["skipped"]
        result.metrics = {key: float(value) for key, value in totals.items()}
        return result

    def _case_outcome(self, case) -> str:
        if case.find("failure") is not None:
            return "failures"
        if case.find("error") is not None:
            return "errors"
        if case.find("skipped") is not None:
            return "skipped"
        return "passed"

    def _case_finding(self, suite, case, outcome: str) -> Finding:
        classname = case.get("classname") or suite.get("name") or ""
        name = case.get("name", "")
        detail = case.find("failure" if outcome == "failures" else "error")
        message = detail.get("message") if detail is not None else None
        title = f"{classname}.{name}" if classname else name
        if message:
            title = f"{title}: {message}"
        return Finding(
            id=f"{classname}::{name}",
            title=title,
            severity=Severity.HIGH,
            component=classname or None,
            location=case.get("file"),
        )

    def merge(self, results):
        """Test counters add up across report files."""
        merged = super().merge(results)
        totals = {}
        for result in results:
            for key, value in result.metrics.items():
                totals[key] = totals.get(key, 0.0) + value
        merged.metrics = totals
        return merged

"""SonarQube issues search parser (``/api/issues/search`` JSON)."""

from shipgate.data_models import Finding, Severity, ToolResult
from shipgate.tools.parsers.base import BaseParser

SONAR_SEVERITY = {
    "BLOCKER": Severity.CRITICAL,
    "CRITICAL": Severity.HIGH,
    "MAJOR": Severity.MEDIUM,
    "MINOR": Severity.LOW,
    "INFO": Severity.INFO,
}


class SonarQubeParser(BaseParser):
    """Issues become findings; ``measures`` with a ``coverage`` metric
    (percent, as returned by ``/api/measures/component``) populate
    ``metrics.coverage`` as a ratio.
    """

    format = "sonarqube"

    def _parse(self, raw_output: str) -> ToolResult:
        data, error = self.load_json(raw_output)
        if error:
            return self.unparseable(error)
        if not isinstance(data, dict) or "issues" not in data:
            return self.unparseable("SonarQube report has no 'issues' key")

        result = ToolResult(format=self.format)
        for issue in data.get("issues") or []:
            line = issue.get("line")
            component = issue.get("component")
            result.findings.append(Finding(
                id=issue.get("key", ""),
                title=issue.get("message") or issue.get("rule", ""),
                severity=SONAR_SEVERITY.get(str(issue.get("severity", "")).upper(), Severity.CRITICAL),
                component=component,
                status=str(issue.get("status", "OPEN")).lower(),
                location=f"{component}:{line}" if component and line else component,
            ))

        open_count = sum(1 for f in result.findings if f.is_open)
        result.metrics = {
            "issues": float(len(result.findings)),
            "open_issues": float(open_count),
        }

        measures = (data.get("component") or {}).get("measures") or data.get("measures") or []
        for measure in measures:
            if measure.get("metric") == "coverage" and measure.get("value") is not None:
                result.metrics["coverage"] = float(measure["value"]) / 100.0

        return result

"""CycloneDX JSON SBOM parser."""

from shipgate.data_models import Finding, Severity, SEVERITY_ORDER, ToolResult
from shipgate.tools.parsers.base import BaseParser


class CycloneDXParser(BaseParser):
    """Count SBOM components and surface embedded vulnerabilities.

    When a vulnerability carries several ratings the most severe one wins.
    """

    format = "cyclonedx"

    def _parse(self, raw_output: str) -> ToolResult:
        data, error = self.load_json(raw_output)
        if error:
            return self.unparseable(error)
        if not isinstance(data, dict) or data.get("bomFormat") != "CycloneDX":
            return self.unparseable("document is not a CycloneDX BOM")

        components = data.get("components") or []
        result = ToolResult(format=self.format)
        result.metrics = {"components": float(len(components))}

        for vuln in data.get("vulnerabilities") or []:
            ratings = [Severity.parse(r.get("severity")) for r in vuln.get("ratings") or []]
            severity = max(ratings, key=SEVERITY_ORDER.index) if ratings else Severity.CRITICAL
            affects = [a.get("ref") for a in vuln.get("affects") or [] if a.get("ref")]
            result.findings.append(Finding(
                id=vuln.get("id", ""),
                title=vuln.get("description") or vuln.get("id", ""),
                severity=severity,
                component=affects[0] if affects else None,
            ))

        result.metrics["vulnerabilities"] = float(len(result.findings))
        return result

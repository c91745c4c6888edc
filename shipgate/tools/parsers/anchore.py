"""Anchore / Grype JSON report parser (``grype -o json``)."""

from shipgate.data_models import Finding, Severity, ToolResult
from shipgate.tools.parsers.base import BaseParser


class AnchoreParser(BaseParser):
    format = "anchore"

    def _parse(self, raw_output: str) -> ToolResult:
        data, error = self.load_json(raw_output)
        if error:
            return self.unparseable(error)
        if not isinstance(data, dict) or "matches" not in data:
            return self.unparseable("Anchore report has no 'matches' key")

        result = ToolResult(format=self.format)
        for match in data.get("matches") or []:
            vuln = match.get("vulnerability") or {}
            artifact = match.get("artifact") or {}
            name, version = artifact.get("name"), artifact.get("version")
            fix_state = (vuln.get("fix") or {}).get("state")
            result.findings.append(Finding(
                id=vuln.get("id", ""),
                title=vuln.get("description") or vuln.get("id", ""),
                severity=Severity.parse(vuln.get("severity")),
                component=f"{name}@{version}" if name and version else name,
                status="wont-fix" if fix_state == "wont-fix" else "open",
                location=(artifact.get("locations") or [{}])[0].get("path"),
            ))

        result.metrics = {"vulnerabilities": float(len(result.findings))}
        return result

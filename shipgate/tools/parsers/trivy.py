"""Trivy JSON report parser (``trivy image -f json``)."""

from shipgate.data_models import Finding, Severity, ToolResult
from shipgate.tools.parsers.base import BaseParser


class TrivyParser(BaseParser):
    format = "trivy"

    def _parse(self, raw_output: str) -> ToolResult:
        data, error = self.load_json(raw_output)
        if error:
            return self.unparseable(error)
        if not isinstance(data, dict) or "Results" not in data:
            return self.unparseable("Trivy report has no 'Results' key")

        result = ToolResult(format=self.format)
        # A clean scan reports "Results": null for some targets
        for target in data.get("Results") or []:
            target_name = target.get("Target")
            for vuln in target.get("Vulnerabilities") or []:
                package = vuln.get("PkgName")
                version = vuln.get("InstalledVersion")
                component = f"{package}@{version}" if package and version else package
                result.findings.append(Finding(
                    id=vuln.get("VulnerabilityID", ""),
                    title=vuln.get("Title") or vuln.get("VulnerabilityID", ""),
                    severity=Severity.parse(vuln.get("Severity")),
                    component=component,
                    location=target_name,
                ))

        result.metrics = {"vulnerabilities": float(len(result.findings))}
        return result

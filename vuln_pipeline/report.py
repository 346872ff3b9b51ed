# vuln_pipeline/report.py
"""
Report emitter.

The structured document is the contract downstream automation consumes (PR
annotations, dashboards) and carries enough to rebuild the AggregatedReport.
Every renderer orders findings the same way (severity descending, then
dependency name) so identical input gives byte-identical output.
"""
import html
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from .exceptions import PartialMatchError, ReportEmissionError
from .models import AggregatedReport, Advisory, DependencyUnit, Finding, PolicyDecision

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


@dataclass(frozen=True)
class EmittedReport:
    structured: bytes
    human_readable: bytes


def _unit_fields(unit: DependencyUnit) -> dict:
    return {
        "dependencyName": unit.name,
        "dependencyVersion": unit.resolved_version,
        "ecosystem": unit.ecosystem,
        "direct": unit.direct,
        "introducingPath": list(unit.introducing_path),
    }


def _finding_document(finding: Finding, report: AggregatedReport) -> dict:
    advisory = finding.advisory
    document = _unit_fields(finding.dependency_unit)
    document.update({
        "advisoryId": advisory.id,
        "severity": advisory.severity,
        "fixedVersion": advisory.fixed_version,
        "remediationHint": finding.remediation_hint,
        "title": advisory.title,
        "affectedRange": advisory.affected_version_range,
        "aliases": list(advisory.aliases),
        "reportedBy": list(report.provenance.get(finding.key, ())),
    })
    return document


def _path_text(unit: DependencyUnit) -> str:
    if unit.direct:
        return "direct dependency"
    return " > ".join([*unit.introducing_path, unit.ref])


def to_document(report: AggregatedReport, decision: PolicyDecision) -> dict:
    return {
        "schemaVersion": SCHEMA_VERSION,
        "findings": [_finding_document(finding, report) for finding in report.sorted_findings()],
        "countsBySeverity": dict(report.counts_by_severity),
        "total": report.total,
        "confidence": report.confidence,
        "matchErrors": [
            {**_unit_fields(error.unit), "reason": error.reason, "scanPass": error.label}
            for error in report.match_errors
        ],
        "policy": {
            "blocking": decision.blocking,
            "thresholdBreached": decision.threshold_breached,
            "reason": decision.reason,
        },
    }


def render_structured(report: AggregatedReport, decision: PolicyDecision) -> bytes:
    return (json.dumps(to_document(report, decision), indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def render_text(report: AggregatedReport, decision: PolicyDecision) -> bytes:
    lines = ["--- vulngate Scan Report ---"]
    if decision.blocking:
        lines.append(f"Policy:     BLOCKING ({decision.reason})")
    else:
        lines.append(f"Policy:     PASS ({decision.reason})")
    lines.append(f"Confidence: {report.confidence}")
    if not report.findings:
        lines.append("No vulnerabilities found.")
    else:
        counts = ", ".join(f"{severity}: {count}" for severity, count in report.counts_by_severity.items())
        lines.append(f"Found {report.total} vulnerabilities ({counts}):")
        for finding in report.sorted_findings():
            unit, advisory = finding.dependency_unit, finding.advisory
            lines.append(f"  - [{advisory.severity.upper()}] {unit.ref} ({unit.ecosystem})")
            lines.append(f"    Advisory: {advisory.id}" + (f" - {advisory.title}" if advisory.title else ""))
            lines.append(f"    Affected: {advisory.affected_version_range}   Fixed in: {advisory.fixed_version or 'N/A'}")
            lines.append(f"    Path:     {_path_text(unit)}")
            lines.append(f"    Fix:      {finding.remediation_hint}")
            reported_by = report.provenance.get(finding.key)
            if reported_by:
                lines.append(f"    Seen in:  {', '.join(reported_by)}")
            lines.append("-" * 20)
    if report.match_errors:
        lines.append(f"Lookup errors ({len(report.match_errors)}); results for these units are missing:")
        for error in report.match_errors:
            lines.append(f"  - {error}")
    lines.append("--- End Report ---")
    return ("\n".join(lines) + "\n").encode("utf-8")


HTML_CSS = """<style>
body { font-family: sans-serif; margin: 20px; background-color: #f4f7f6; color: #333; }
table { border-collapse: collapse; margin: 1em 0; width: 100%; background-color: #fff; }
th, td { border: 1px solid #ddd; padding: 8px 12px; text-align: left; vertical-align: top; }
th { background-color: #6c7ae0; color: white; text-transform: uppercase; }
.severity-critical { color: #FF0000; font-weight: bold; } .severity-high { color: #FF8C00; font-weight: bold; }
.severity-medium { color: #DAA520; } .severity-low { color: #32CD32; } .severity-unknown { color: #808080; }
.blocking { color: #FF0000; font-weight: bold; }
</style>"""


def render_html(report: AggregatedReport, decision: PolicyDecision) -> bytes:
    status = "BLOCKING" if decision.blocking else "PASS"
    parts = [
        f'<!DOCTYPE html><html lang="en"><head><title>vulngate Scan Report</title><meta charset="UTF-8">{HTML_CSS}</head><body>',
        "<h1>vulngate Scan Report</h1>",
        f'<p class="{"blocking" if decision.blocking else ""}">Policy: {status} - {html.escape(decision.reason)}</p>',
        f"<p>Confidence: {report.confidence}</p>",
    ]
    if not report.findings:
        parts.append("<p>No vulnerabilities found.</p>")
    else:
        parts.append(f"<p>Found {report.total} vulnerabilities.</p><table><thead><tr><th>Severity</th>"
                     "<th>Advisory</th><th>Package</th><th>Version</th><th>Ecosystem</th><th>Fixed in</th>"
                     "<th>Path</th><th>Remediation</th></tr></thead><tbody>")
        for finding in report.sorted_findings():
            unit, advisory = finding.dependency_unit, finding.advisory
            cells = [advisory.id + (f" ({advisory.title})" if advisory.title else ""), unit.name,
                     unit.resolved_version, unit.ecosystem, advisory.fixed_version or "N/A", _path_text(unit),
                     finding.remediation_hint]
            parts.append(f'<tr><td class="severity-{html.escape(advisory.severity)}">{html.escape(advisory.severity.upper())}</td>'
                         + "".join(f"<td>{html.escape(cell)}</td>" for cell in cells) + "</tr>")
        parts.append("</tbody></table>")
    if report.match_errors:
        parts.append("<h2>Lookup errors</h2><ul>")
        parts.extend(f"<li>{html.escape(str(error))}</li>" for error in report.match_errors)
        parts.append("</ul>")
    parts.append("</body></html>\n")
    return "\n".join(parts).encode("utf-8")


def emit(report: AggregatedReport, decision: PolicyDecision) -> EmittedReport:
    try:
        return EmittedReport(structured=render_structured(report, decision),
                             human_readable=render_text(report, decision))
    except (TypeError, ValueError) as e:
        raise ReportEmissionError(f"Could not render report: {e}") from e


def write_output(path: str | Path, data: bytes) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as e:
        raise ReportEmissionError(f"Could not write report to {path}: {e}") from e
    logger.info(f"Report saved to: {path.resolve()}")
    return path


# --- Round trip ---

def _unit_from_document(item: dict) -> DependencyUnit:
    return DependencyUnit(
        name=item["dependencyName"],
        ecosystem=item["ecosystem"],
        resolved_version=item["dependencyVersion"],
        direct=item.get("direct", True),
        introducing_path=tuple(item.get("introducingPath") or ()),
    )


def parse_structured(data: bytes | str) -> tuple[AggregatedReport, PolicyDecision]:
    """Rebuilds the AggregatedReport and PolicyDecision from render_structured() output."""
    try:
        document = json.loads(data)
        findings = []
        provenance = {}
        for item in document["findings"]:
            advisory = Advisory(
                id=item["advisoryId"],
                severity=item["severity"],
                affected_version_range=item.get("affectedRange") or "*",
                fixed_version=item.get("fixedVersion"),
                title=item.get("title") or "",
                aliases=tuple(item.get("aliases") or ()),
            )
            finding = Finding(_unit_from_document(item), advisory, item.get("remediationHint") or "")
            findings.append(finding)
            provenance[finding.key] = tuple(item.get("reportedBy") or ())
        errors = tuple(PartialMatchError(_unit_from_document(item), item["reason"], item.get("scanPass"))
                       for item in document.get("matchErrors") or [])
        policy = document["policy"]
        report = AggregatedReport(
            findings=tuple(findings),
            counts_by_severity={str(k): int(v) for k, v in document["countsBySeverity"].items()},
            total=int(document["total"]),
            provenance=provenance,
            match_errors=errors,
        )
        decision = PolicyDecision(blocking=bool(policy["blocking"]), reason=policy.get("reason") or "",
                                  threshold_breached=policy.get("thresholdBreached"))
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid structured report: {e}") from e
    if report.total != len(report.findings) or report.total != sum(report.counts_by_severity.values()):
        raise ValueError("Invalid structured report: total does not match findings and counts")
    return report, decision

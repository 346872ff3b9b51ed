# vuln_pipeline/aggregator.py
"""Merges finding batches from several scan passes into one deduplicated report."""
import logging
from collections import Counter
from dataclasses import dataclass, field

from .exceptions import PartialMatchError
from .models import AggregatedReport, Finding, SEVERITIES

logger = logging.getLogger(__name__)


@dataclass
class FindingBatch:
    """The findings (and lookup errors) of one scan pass."""
    label: str
    findings: list[Finding] = field(default_factory=list)
    errors: list[PartialMatchError] = field(default_factory=list)


def count_by_severity(findings) -> dict[str, int]:
    """Non-zero counts only, highest severity first."""
    counts = Counter(finding.severity for finding in findings)
    ordered = {severity: counts.pop(severity) for severity in SEVERITIES if counts.get(severity)}
    ordered.update(sorted(counts.items()))
    return ordered


def aggregate(batches) -> AggregatedReport:
    """
    Merges batches; the dedup key is (dependency unit key, advisory id).

    Each batch may be a FindingBatch, a plain sequence of findings (labelled
    pass-1, pass-2, ...) or an AggregatedReport, whose provenance is carried
    over. The first occurrence of a key is kept as the canonical finding and
    every reporting label is recorded.
    """
    canonical: dict[tuple, Finding] = {}
    provenance: dict[tuple, list[str]] = {}
    errors: dict[PartialMatchError, None] = {}
    input_count = 0

    def record(finding: Finding, labels) -> None:
        key = finding.key
        if key not in canonical:
            canonical[key] = finding
            provenance[key] = []
        for label in labels:
            if label not in provenance[key]:
                provenance[key].append(label)

    for position, batch in enumerate(batches, 1):
        if isinstance(batch, AggregatedReport):
            for finding in batch.findings:
                input_count += 1
                record(finding, batch.provenance.get(finding.key, ()))
            batch_errors = batch.match_errors
        elif isinstance(batch, FindingBatch):
            for finding in batch.findings:
                input_count += 1
                record(finding, (batch.label,))
            batch_errors = batch.errors
        else:
            label = f"pass-{position}"
            for finding in batch:
                input_count += 1
                record(finding, (label,))
            batch_errors = ()
        for error in batch_errors:
            errors.setdefault(error, None)

    findings = tuple(canonical.values())
    counts = count_by_severity(findings)
    if input_count != len(findings):
        logger.info(f"Deduplicated {input_count} findings into {len(findings)}.")
    return AggregatedReport(
        findings=findings,
        counts_by_severity=counts,
        total=len(findings),
        provenance={key: tuple(labels) for key, labels in provenance.items()},
        match_errors=tuple(errors),
    )

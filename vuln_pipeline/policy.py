# vuln_pipeline/policy.py
"""Severity-threshold policy. The default threshold 'none' never blocks."""
import logging

from .exceptions import ConfigError
from .models import (
    AggregatedReport, PolicyConfig, PolicyDecision, NONE, POLICY_THRESHOLDS, SEVERITY_ORDER, severity_rank,
)

logger = logging.getLogger(__name__)


def parse_ignore_list(value) -> frozenset[str]:
    """Accepts a list of ids or a comma-separated string. Ids are lower-cased."""
    if not value:
        return frozenset()
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigError(f"'ignore_vulnerabilities' must be a list or a comma-separated string, got {type(value).__name__}")
    return frozenset(str(item).strip().lower() for item in value if str(item).strip())


def make_policy(fail_on: str | None = None, allowlist=None) -> PolicyConfig:
    threshold = (fail_on or NONE).strip().lower()
    if threshold not in POLICY_THRESHOLDS:
        raise ConfigError(f"Invalid severity threshold '{fail_on}'. Expected one of {', '.join(POLICY_THRESHOLDS)}.")
    return PolicyConfig(fail_on_severity_at_or_above=threshold, allowlist=parse_ignore_list(allowlist))


def policy_from_mapping(config: dict) -> PolicyConfig:
    """Reads 'fail_on' and 'ignore_vulnerabilities' from a loaded YAML config."""
    return make_policy(config.get("fail_on"), config.get("ignore_vulnerabilities"))


def evaluate(report: AggregatedReport, config: PolicyConfig) -> PolicyDecision:
    threshold = config.fail_on_severity_at_or_above.lower()
    if threshold == NONE:
        return PolicyDecision(blocking=False, reason=f"Non-blocking mode: {report.total} findings reported, threshold is 'none'.")
    if threshold not in SEVERITY_ORDER:
        raise ConfigError(f"Invalid severity threshold '{threshold}'")

    allowlist = {item.lower() for item in config.allowlist}
    considered = [finding for finding in report.findings if not (finding.advisory.identifiers & allowlist)]
    ignored = report.total - len(considered)
    breaching = [finding for finding in considered if severity_rank(finding.severity) >= SEVERITY_ORDER[threshold]]
    if ignored:
        logger.info(f"Policy: {ignored} allowlisted findings excluded from threshold evaluation.")

    if breaching:
        worst = max(breaching, key=lambda finding: severity_rank(finding.severity)).severity
        return PolicyDecision(
            blocking=True,
            reason=f"{len(breaching)} findings at or above '{threshold}' (highest: {worst}).",
            threshold_breached=threshold,
        )
    return PolicyDecision(
        blocking=False,
        reason=f"No findings at or above '{threshold}' ({ignored} allowlisted).",
    )

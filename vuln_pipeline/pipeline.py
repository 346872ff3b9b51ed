# vuln_pipeline/pipeline.py
"""
Scan pipeline: resolve -> match -> aggregate -> evaluate policy.

Each manifest source is one scan pass. All passes share one overall deadline
and feed a single aggregated report.
"""
import logging
import time
from dataclasses import dataclass, field

from .aggregator import FindingBatch, aggregate
from .exceptions import AdvisorySourceUnavailableError, UnsupportedEcosystemError
from .matcher import DEFAULT_MAX_WORKERS, match
from .models import AggregatedReport, ComponentInventory, PolicyConfig, PolicyDecision, DependencyUnit
from .policy import evaluate
from .resolver import ResolverRegistry, default_registry
from .sbom import build_inventory

logger = logging.getLogger(__name__)


@dataclass
class ScanOutcome:
    report: AggregatedReport
    decision: PolicyDecision
    inventory: ComponentInventory
    skipped: list[UnsupportedEcosystemError] = field(default_factory=list)
    units: list[DependencyUnit] = field(default_factory=list)


def _unique_label(label: str, used: set[str]) -> str:
    candidate, counter = label, 2
    while candidate in used:
        candidate = f"{label}#{counter}"
        counter += 1
    used.add(candidate)
    return candidate


def resolve_sources(sources, registry: ResolverRegistry):
    """
    Resolves every source up front so a malformed manifest aborts the scan
    before any advisory lookup. Returns ([(label, units)], skipped).
    """
    passes = []
    skipped = []
    used_labels: set[str] = set()
    for source in sources:
        try:
            units = registry.resolve(source)
        except UnsupportedEcosystemError as e:
            logger.warning(f"Skipping {e}")
            skipped.append(e)
            continue
        passes.append((_unique_label(source.label, used_labels), units))
    if skipped and not passes:
        raise skipped[0]
    return passes, skipped


def run_scan(sources, advisory_source, policy: PolicyConfig | None = None, *,
             registry: ResolverRegistry | None = None, max_workers: int = DEFAULT_MAX_WORKERS,
             timeout: float | None = None, project: str | None = None, monitor: bool = False) -> ScanOutcome:
    """
    Runs one scan over the given manifest sources.

    Raises MalformedManifestError before matching if any source is malformed,
    UnsupportedEcosystemError if no source could be resolved, and
    AdvisorySourceUnavailableError if every attempted lookup failed.
    """
    registry = registry or default_registry()
    policy = policy or PolicyConfig()
    deadline = time.monotonic() + timeout if timeout else None

    passes, skipped = resolve_sources(sources, registry)

    batches = []
    all_units = []
    succeeded = failed = 0
    for label, units in passes:
        logger.info(f"Scan pass '{label}': {len(units)} dependency units")
        result = match(units, advisory_source, max_workers=max_workers, deadline=deadline, label=label)
        batches.append(FindingBatch(label=label, findings=result.findings, errors=result.errors))
        all_units.extend(units)
        succeeded += result.succeeded
        failed += result.failed
    if failed and not succeeded:
        source_name = getattr(advisory_source, "name", type(advisory_source).__name__)
        raise AdvisorySourceUnavailableError(f"Advisory source '{source_name}' failed for all {failed} lookups")

    report = aggregate(batches)
    decision = evaluate(report, policy)

    if monitor:
        project_identifier = project or (passes[0][0] if passes else "project")
        try:
            advisory_source.register_for_tracking(project_identifier)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Could not register '{project_identifier}' for monitoring: {e}")

    return ScanOutcome(report=report, decision=decision, inventory=build_inventory(all_units),
                       skipped=skipped, units=all_units)

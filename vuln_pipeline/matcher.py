# vuln_pipeline/matcher.py
"""
Advisory matcher.

Lookups are I/O bound and independent per unit, so they run on a bounded
set of daemon worker threads. Workers never touch shared state: each returns
its findings (or its error) and results are reassembled in unit order.
"""
import logging
import queue
import threading
import time
from dataclasses import dataclass, field

from .exceptions import AdvisorySourceUnavailableError, PartialMatchError
from .models import DependencyUnit, Finding, Advisory
from .versions import VersionRange

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8
TIMED_OUT = "timed out"


@dataclass
class MatchResult:
    findings: list[Finding] = field(default_factory=list)
    errors: list[PartialMatchError] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0  # advisory source failures, excluding timeouts
    timed_out: int = 0


def remediation_hint(unit: DependencyUnit, advisory: Advisory) -> str:
    if not advisory.fixed_version:
        return f"No fixed version of {unit.name} is known for {advisory.id}; consider an alternative package or mitigation."
    hint = f"Upgrade {unit.name} from {unit.resolved_version} to {advisory.fixed_version} or later."
    if not unit.direct and unit.introducing_path:
        hint += (f" It is pulled in by {unit.introducing_path[0]}; upgrade that dependency to a release"
                 f" that requires {unit.name}>={advisory.fixed_version}.")
    return hint


def affected(unit: DependencyUnit, advisory: Advisory) -> bool:
    try:
        return VersionRange.parse(advisory.affected_version_range).contains(unit.resolved_version, unit.ecosystem)
    except ValueError as e:
        logger.warning(f"Skipping {advisory.id} for {unit.ref}: cannot evaluate range "
                       f"'{advisory.affected_version_range}': {e}")
        return False


def match_unit(unit: DependencyUnit, source) -> list[Finding]:
    """Looks up one unit and keeps the advisories whose range contains its version."""
    advisories = source.lookup(unit.ecosystem, unit.name)
    return [Finding(dependency_unit=unit, advisory=advisory, remediation_hint=remediation_hint(unit, advisory))
            for advisory in advisories if affected(unit, advisory)]


def _lookup_worker(source, jobs: queue.Queue, results: queue.Queue, stop: threading.Event) -> None:
    while not stop.is_set():
        try:
            position, unit = jobs.get_nowait()
        except queue.Empty:
            return
        try:
            outcome = match_unit(unit, source)
        except Exception as e:  # noqa: BLE001
            outcome = e
        results.put((position, outcome))


def match(units, source, *, max_workers: int = DEFAULT_MAX_WORKERS, deadline: float | None = None,
          label: str | None = None) -> MatchResult:
    """
    Matches every unit against the advisory source.

    A failed lookup is recorded as a PartialMatchError for that unit and the
    rest of the batch continues. `deadline` is a time.monotonic() value; units
    whose lookup has not finished by then are recorded as timed out and the
    findings gathered so far are returned. Lookups run on daemon threads, so a
    lookup still stuck after the deadline does not keep the process alive.
    """
    units = list(units)
    result = MatchResult()
    if not units:
        return result

    jobs: queue.Queue = queue.Queue()
    for position, unit in enumerate(units):
        jobs.put((position, unit))
    results: queue.Queue = queue.Queue()
    stop = threading.Event()
    for index in range(min(max(1, max_workers), len(units))):
        threading.Thread(target=_lookup_worker, args=(source, jobs, results, stop),
                         name=f"advisory-lookup-{index}", daemon=True).start()

    outcomes: dict[int, list[Finding] | PartialMatchError] = {}
    try:
        while len(outcomes) < len(units):
            timeout = None if deadline is None else deadline - time.monotonic()
            if timeout is not None and timeout <= 0:
                break
            try:
                position, outcome = results.get(timeout=timeout)
            except queue.Empty:
                break
            unit = units[position]
            if isinstance(outcome, AdvisorySourceUnavailableError):
                outcomes[position] = PartialMatchError(unit, str(outcome), label)
            elif isinstance(outcome, Exception):
                logger.error(f"Unexpected error looking up {unit.ref}", exc_info=outcome)
                outcomes[position] = PartialMatchError(unit, f"{type(outcome).__name__}: {outcome}", label)
            else:
                outcomes[position] = outcome
    finally:
        stop.set()
    for position, unit in enumerate(units):
        if position not in outcomes:
            outcomes[position] = PartialMatchError(unit, TIMED_OUT, label)

    for position in range(len(units)):
        outcome = outcomes[position]
        if isinstance(outcome, PartialMatchError):
            result.errors.append(outcome)
            if outcome.reason == TIMED_OUT:
                result.timed_out += 1
            else:
                result.failed += 1
                logger.warning(f"Advisory lookup failed: {outcome}")
        else:
            result.succeeded += 1
            result.findings.extend(outcome)
    if result.timed_out:
        logger.warning(f"{result.timed_out} of {len(units)} lookups did not finish before the deadline ({label}).")
    logger.info(f"Matched {len(units)} units ({label}): {len(result.findings)} findings, "
                f"{result.failed} failed lookups.")
    return result

# vuln_pipeline/advisories.py
"""
Advisory source contract and the shared pieces every source uses.

A source answers `lookup(ecosystem, name)` with every advisory it knows for
the package; version filtering happens in the matcher. `register_for_tracking`
asks the source to keep monitoring a project between runs.
"""
import json
import logging
import threading
import time
from pathlib import Path

import yaml
from cvss import CVSS3
from cvss.exceptions import CVSSError

from .ecosystems import canonical_ecosystem
from .exceptions import ConfigError
from .models import Advisory, CRITICAL, HIGH, MEDIUM, LOW, UNKNOWN

logger = logging.getLogger(__name__)

SEVERITY_ALIASES = {
    "critical": CRITICAL,
    "high": HIGH,
    "important": HIGH,
    "medium": MEDIUM,
    "moderate": MEDIUM,
    "low": LOW,
    "negligible": LOW,
    "info": LOW,
}


def severity_from_cvss(score: float | None) -> str:
    if score is None or score <= 0.0:
        return UNKNOWN
    if score >= 9.0:
        return CRITICAL
    if score >= 7.0:
        return HIGH
    if score >= 4.0:
        return MEDIUM
    return LOW


def severity_from_vector(vector: str) -> str:
    """Scores a CVSS v3 vector string. Unparseable vectors give 'unknown'."""
    try:
        return severity_from_cvss(float(CVSS3(vector).base_score))
    except CVSSError as e:
        logger.warning(f"Failed CVSS parse for vector '{vector}': {e}")
        return UNKNOWN


def normalize_severity(value) -> str:
    if value is None:
        return UNKNOWN
    if isinstance(value, (int, float)):
        return severity_from_cvss(float(value))
    text = str(value).strip()
    if text.upper().startswith("CVSS:3"):
        return severity_from_vector(text)
    return SEVERITY_ALIASES.get(text.lower(), UNKNOWN)


class RateLimiter:
    """Spaces calls at least `1 / per_second` seconds apart across all threads."""

    def __init__(self, per_second: float | None = None):
        self.interval = 1.0 / per_second if per_second else 0.0
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> None:
        if not self.interval:
            return
        with self._lock:
            now = time.monotonic()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self.interval
        if wait > 0:
            time.sleep(wait)


class AdvisorySource:
    """Base class for advisory sources."""

    name = "advisory-source"

    def lookup(self, ecosystem: str, name: str) -> list[Advisory]:
        raise NotImplementedError

    def register_for_tracking(self, project_identifier: str) -> None:
        logger.info(f"{self.name} does not support continuous monitoring; '{project_identifier}' not registered.")


# --- Feed files ---

def advisory_from_mapping(entry: dict) -> Advisory:
    advisory_id = entry.get("id")
    if not advisory_id:
        raise ValueError(f"Advisory without id: {entry!r}")
    aliases = entry.get("aliases") or ()
    return Advisory(
        id=str(advisory_id),
        severity=normalize_severity(entry.get("severity")),
        affected_version_range=str(entry.get("range") or entry.get("affectedVersionRange") or "*"),
        fixed_version=str(entry["fixedVersion"]) if entry.get("fixedVersion") else None,
        title=str(entry.get("title") or ""),
        aliases=tuple(str(alias) for alias in aliases),
    )


def load_feed(path: str | Path) -> list[tuple[str, str, Advisory]]:
    """
    Reads a JSON or YAML advisory feed. Returns (ecosystem, package name, advisory) triples.
    Feed shape: {"advisories": [{"id", "ecosystem", "package", "severity", "range",
    "fixedVersion", "title", "aliases"}]}
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if path.suffix in (".yaml", ".yml") else json.loads(text)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read advisory feed '{path}': {e}") from e
    entries = data.get("advisories") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ConfigError(f"Advisory feed '{path}' must contain an 'advisories' list")
    triples = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("ecosystem") or not entry.get("package"):
            raise ConfigError(f"Advisory feed entry needs 'ecosystem' and 'package': {entry!r}")
        try:
            advisory = advisory_from_mapping(entry)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        triples.append((canonical_ecosystem(entry["ecosystem"]), str(entry["package"]), advisory))
    return triples


class FileAdvisorySource(AdvisorySource):
    """Advisories served from an in-memory index, usually loaded from a feed file."""

    name = "file"

    def __init__(self, advisories: list[tuple[str, str, Advisory]] | None = None):
        self._index: dict[tuple[str, str], list[Advisory]] = {}
        for ecosystem, package, advisory in advisories or []:
            self.add(ecosystem, package, advisory)

    @classmethod
    def from_file(cls, path: str | Path) -> "FileAdvisorySource":
        return cls(load_feed(path))

    def add(self, ecosystem: str, package: str, advisory: Advisory) -> None:
        self._index.setdefault((canonical_ecosystem(ecosystem), package.lower()), []).append(advisory)

    def lookup(self, ecosystem: str, name: str) -> list[Advisory]:
        return list(self._index.get((canonical_ecosystem(ecosystem), name.lower()), ()))


# vuln_pipeline/osv_source.py
import functools
import json
import logging
import time

import requests

from .advisories import AdvisorySource, RateLimiter, normalize_severity, severity_from_vector
from .ecosystems import canonical_ecosystem
from .exceptions import AdvisorySourceUnavailableError
from .models import Advisory, UNKNOWN
from .versions import compare_versions

logger = logging.getLogger(__name__)

OSV_API_URL = "https://api.osv.dev"
# Timeout for API requests in seconds
OSV_TIMEOUT = 30
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Mapping our canonical ecosystem names to OSV ecosystem names
# OSV ecosystems list: https://osv.dev/docs/#tag/ecosystems
ECOSYSTEM_MAP = {
    "PyPI": "PyPI",
    "npm": "npm",
    "Maven": "Maven",
    "Go": "Go",
    "crates.io": "crates.io",
    "RubyGems": "RubyGems",
    "NuGet": "NuGet",
    "Packagist": "Packagist",
    "Debian": "Debian",
    "Ubuntu": "Ubuntu",
    "Alpine": "Alpine",
}


def events_to_range(events: list[dict]) -> list[str]:
    """
    Converts OSV range events (introduced / fixed / last_affected) into range
    alternatives such as '>=1.0.0 <1.2.3'.
    """
    alternatives = []
    lower = None
    open_interval = False
    for event in events:
        if "introduced" in event:
            introduced = str(event["introduced"])
            lower = None if introduced == "0" else introduced
            open_interval = True
        elif "fixed" in event or "last_affected" in event:
            if not open_interval:
                continue
            upper = f"<{event['fixed']}" if "fixed" in event else f"<={event['last_affected']}"
            alternatives.append(f">={lower} {upper}" if lower else upper)
            open_interval = False
    if open_interval:
        alternatives.append(f">={lower}" if lower else "*")
    return alternatives


def _severity_of(vuln: dict, affected_entries: list[dict]) -> str:
    for source in [*(entry.get("database_specific") or {} for entry in affected_entries),
                   vuln.get("database_specific") or {}]:
        if isinstance(source, dict) and source.get("severity"):
            severity = normalize_severity(source["severity"])
            if severity != UNKNOWN:
                return severity
    for entry in vuln.get("severity") or []:
        if isinstance(entry, dict) and entry.get("type") == "CVSS_V3" and isinstance(entry.get("score"), str):
            return severity_from_vector(entry["score"])
    return UNKNOWN


def advisory_from_osv(vuln: dict, ecosystem: str, name: str) -> Advisory | None:
    """Builds an Advisory from an OSV vulnerability, keeping only the entries for this package."""
    osv_ecosystem = ECOSYSTEM_MAP.get(ecosystem, ecosystem)
    relevant = []
    for entry in vuln.get("affected") or []:
        package = entry.get("package") or {}
        entry_ecosystem = str(package.get("ecosystem", "")).split(":", 1)[0]
        if entry_ecosystem == osv_ecosystem and str(package.get("name", "")).lower() == name.lower():
            relevant.append(entry)
    if not relevant or not vuln.get("id"):
        return None

    alternatives: list[str] = []
    fixed_versions: list[str] = []
    for entry in relevant:
        for version_range in entry.get("ranges") or []:
            if version_range.get("type") == "GIT":
                continue
            events = version_range.get("events") or []
            alternatives.extend(events_to_range(events))
            fixed_versions.extend(str(e["fixed"]) for e in events if "fixed" in e)
        alternatives.extend(f"={version}" for version in entry.get("versions") or [])
    if not alternatives:
        return None
    range_text = "*" if "*" in alternatives else " || ".join(dict.fromkeys(alternatives))
    # highest fix across all affected intervals
    fixed_version = max(fixed_versions, key=functools.cmp_to_key(lambda a, b: compare_versions(a, b, ecosystem)),
                        default=None)

    return Advisory(
        id=vuln["id"],
        severity=_severity_of(vuln, relevant),
        affected_version_range=range_text,
        fixed_version=fixed_version,
        title=vuln.get("summary") or (vuln.get("details") or "")[:120] or vuln["id"],
        aliases=tuple(vuln.get("aliases") or ()),
    )


class OsvAdvisorySource(AdvisorySource):
    """Queries the OSV API (or a compatible mirror) one package at a time."""

    name = "osv"

    def __init__(self, api_url: str = OSV_API_URL, *, monitor_url: str | None = None, api_token: str | None = None,
                 timeout: float = OSV_TIMEOUT, max_retries: int = 3, backoff: float = 1.0,
                 rate_limiter: RateLimiter | None = None):
        self.api_url = api_url.rstrip("/")
        self.monitor_url = monitor_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.rate_limiter = rate_limiter or RateLimiter()
        self.headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}

    def _post(self, url: str, body: dict) -> dict:
        delay = self.backoff
        for attempt in range(self.max_retries + 1):
            self.rate_limiter.acquire()
            try:
                response = requests.post(url, json=body, headers=self.headers, timeout=self.timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                error = f"{type(e).__name__}: {e}"
            except requests.exceptions.RequestException as e:
                raise AdvisorySourceUnavailableError(f"OSV request to {url} failed: {type(e).__name__}: {e}") from e
            else:
                if response.status_code not in RETRY_STATUS_CODES:
                    try:
                        response.raise_for_status()
                        return response.json() if response.content else {}
                    except requests.exceptions.HTTPError as e:
                        raise AdvisorySourceUnavailableError(f"OSV request failed: {e}") from e
                    except json.JSONDecodeError as e:
                        raise AdvisorySourceUnavailableError(f"Error decoding OSV response: {e}") from e
                error = f"HTTP {response.status_code}"
            if attempt < self.max_retries:
                logger.debug(f"OSV request to {url} failed ({error}), retrying in {delay:.1f}s")
                time.sleep(delay)
                delay *= 2
        raise AdvisorySourceUnavailableError(f"OSV request to {url} failed after {self.max_retries + 1} attempts: {error}")

    def lookup(self, ecosystem: str, name: str) -> list[Advisory]:
        ecosystem = canonical_ecosystem(ecosystem)
        osv_ecosystem = ECOSYSTEM_MAP.get(ecosystem)
        if not osv_ecosystem:
            logger.warning(f"Ecosystem '{ecosystem}' for package '{name}' is not mapped in ECOSYSTEM_MAP. Trying direct use.")
            osv_ecosystem = ecosystem

        advisories = []
        body = {"package": {"name": name, "ecosystem": osv_ecosystem}}
        while True:
            data = self._post(f"{self.api_url}/v1/query", body)
            for vuln in data.get("vulns") or []:
                advisory = advisory_from_osv(vuln, ecosystem, name)
                if advisory:
                    advisories.append(advisory)
            page_token = data.get("next_page_token")
            if not page_token:
                break
            body = {**body, "page_token": page_token}
        logger.debug(f"OSV returned {len(advisories)} advisories for {osv_ecosystem}/{name}")
        return advisories

    def register_for_tracking(self, project_identifier: str) -> None:
        if not self.monitor_url:
            super().register_for_tracking(project_identifier)
            return
        self._post(self.monitor_url, {"project": project_identifier})
        logger.info(f"Registered '{project_identifier}' for monitoring at {self.monitor_url}")

# vuln_pipeline/models.py
from dataclasses import dataclass, field

from .exceptions import PartialMatchError

# --- Severities ---
CRITICAL = "critical"
HIGH = "high"
MEDIUM = "medium"
LOW = "low"
UNKNOWN = "unknown"
NONE = "none"  # policy threshold only

SEVERITY_ORDER = {UNKNOWN: 0, LOW: 1, MEDIUM: 2, HIGH: 3, CRITICAL: 4}
SEVERITIES = (CRITICAL, HIGH, MEDIUM, LOW, UNKNOWN)  # descending
POLICY_THRESHOLDS = (CRITICAL, HIGH, MEDIUM, LOW, NONE)

# --- Manifest kinds ---
PACKAGE_GRAPH = "package-graph"
CONTAINER_LAYERS = "container-layers"


def severity_rank(severity: str | None) -> int:
    return SEVERITY_ORDER.get((severity or UNKNOWN).lower(), 0)


@dataclass(frozen=True)
class DependencyUnit:
    name: str
    ecosystem: str
    resolved_version: str
    direct: bool = True
    # Parent references ("name@version"), root-most first. Empty for direct units.
    introducing_path: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.ecosystem, self.name, self.resolved_version)

    @property
    def ref(self) -> str:
        return f"{self.name}@{self.resolved_version}"


@dataclass(frozen=True)
class Advisory:
    id: str
    severity: str
    affected_version_range: str
    fixed_version: str | None = None
    title: str = ""
    aliases: tuple[str, ...] = ()

    @property
    def identifiers(self) -> set[str]:
        """Advisory id plus aliases, lower-cased."""
        return {self.id.lower(), *(alias.lower() for alias in self.aliases)}


@dataclass(frozen=True)
class Finding:
    dependency_unit: DependencyUnit
    advisory: Advisory
    remediation_hint: str = ""

    @property
    def key(self) -> tuple[tuple[str, str, str], str]:
        return (self.dependency_unit.key, self.advisory.id)

    @property
    def severity(self) -> str:
        return self.advisory.severity


def finding_sort_key(finding: Finding) -> tuple:
    """Total order used by every renderer: severity desc, then name, version, ecosystem, advisory id."""
    unit = finding.dependency_unit
    return (-severity_rank(finding.severity), unit.name, unit.resolved_version, unit.ecosystem, finding.advisory.id)


@dataclass(frozen=True)
class AggregatedReport:
    findings: tuple[Finding, ...] = ()
    counts_by_severity: dict[str, int] = field(default_factory=dict)
    total: int = 0
    # Finding.key -> labels of the scan passes that reported it
    provenance: dict[tuple, tuple[str, ...]] = field(default_factory=dict)
    match_errors: tuple[PartialMatchError, ...] = ()

    @property
    def confidence(self) -> str:
        return "partial" if self.match_errors else "complete"

    def sorted_findings(self) -> list[Finding]:
        return sorted(self.findings, key=finding_sort_key)


@dataclass(frozen=True)
class PolicyConfig:
    fail_on_severity_at_or_above: str = NONE
    allowlist: frozenset[str] = frozenset()


@dataclass(frozen=True)
class PolicyDecision:
    blocking: bool
    reason: str
    threshold_breached: str | None = None


@dataclass(frozen=True)
class Component:
    name: str
    version: str
    identifier: str


@dataclass(frozen=True)
class ComponentInventory:
    components: tuple[Component, ...] = ()


# --- Manifest sources ---

@dataclass(frozen=True)
class GraphNode:
    name: str
    version: str
    # References to parent nodes: "name@version", or a bare "name" when unambiguous.
    # Empty means a direct dependency of the project.
    parents: tuple[str, ...] = ()


@dataclass(frozen=True)
class DependencyGraphManifest:
    ecosystem: str
    nodes: tuple[GraphNode, ...]
    label: str = "dependencies"

    kind = PACKAGE_GRAPH


@dataclass(frozen=True)
class ImageLayer:
    digest: str
    packages: tuple[tuple[str, str], ...] = ()  # (name, version)
    # packages is the full installed set (a package database copy), not a delta
    complete: bool = False


@dataclass(frozen=True)
class ContainerLayerManifest:
    ecosystem: str
    layers: tuple[ImageLayer, ...]
    image: str = ""
    label: str = "image"

    kind = CONTAINER_LAYERS

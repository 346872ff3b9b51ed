# vuln_pipeline/resolver.py
"""
Resolver adapter: turns manifest sources into canonical DependencyUnits.

Both manifest kinds (dependency graphs and container layer listings) produce
the same DependencyUnit shape so that matching never needs to know where a
unit came from.
"""
import logging
from collections import deque

from .ecosystems import canonical_ecosystem, PACKAGE_ECOSYSTEMS, OS_ECOSYSTEMS
from .exceptions import MalformedManifestError, UnsupportedEcosystemError
from .models import (
    DependencyUnit, DependencyGraphManifest, ContainerLayerManifest,
    PACKAGE_GRAPH, CONTAINER_LAYERS,
)

logger = logging.getLogger(__name__)

SQUASHED = "squashed"
ALL_LAYERS = "all-layers"
LAYER_SCOPES = (SQUASHED, ALL_LAYERS)


def _split_ref(ref: str) -> tuple[str, str | None]:
    """'name@version' -> (name, version); scoped npm names keep their leading '@'."""
    head, sep, tail = ref.rpartition("@")
    if sep and head:
        return head, tail
    return ref, None


class GraphResolver:
    """Resolves a serialized dependency graph (name, version, parent edges)."""

    kind = PACKAGE_GRAPH

    def resolve(self, manifest: DependencyGraphManifest) -> list[DependencyUnit]:
        ecosystem = canonical_ecosystem(manifest.ecosystem)
        label = manifest.label

        order: list[tuple[str, str]] = []  # first-seen order of (name, version)
        parents_of: dict[tuple[str, str], set[tuple[str, str]]] = {}
        versions_by_name: dict[str, set[str]] = {}
        for node in manifest.nodes:
            if not node.name or not node.version:
                raise MalformedManifestError(f"Dependency entry without name or version: {node!r}", label)
            node_id = (node.name, node.version)
            if node_id not in parents_of:
                order.append(node_id)
                parents_of[node_id] = set()
            versions_by_name.setdefault(node.name, set()).add(node.version)

        direct_ids = set()
        children_of: dict[tuple[str, str], list[tuple[str, str]]] = {}
        for node in manifest.nodes:
            node_id = (node.name, node.version)
            if not node.parents:
                direct_ids.add(node_id)
            for ref in node.parents:
                parent_id = self._lookup_ref(ref, versions_by_name, label)
                if parent_id not in parents_of[node_id]:
                    parents_of[node_id].add(parent_id)
                    children_of.setdefault(parent_id, []).append(node_id)

        # Breadth-first from direct units: the first path that reaches a node is a shortest one.
        paths: dict[tuple[str, str], tuple[str, ...]] = {}
        queue = deque()
        for node_id in order:
            if node_id in direct_ids:
                paths[node_id] = ()
                queue.append(node_id)
        while queue:
            current = queue.popleft()
            current_path = paths[current] + (f"{current[0]}@{current[1]}",)
            for child in children_of.get(current, ()):
                if child not in paths:
                    paths[child] = current_path
                    queue.append(child)

        unreachable = [f"{name}@{version}" for name, version in order if (name, version) not in paths]
        if unreachable:
            raise MalformedManifestError(
                f"Dependencies not reachable from any direct dependency: {', '.join(unreachable[:5])}", label)

        units = [
            DependencyUnit(name=name, ecosystem=ecosystem, resolved_version=version,
                           direct=(name, version) in direct_ids, introducing_path=paths[(name, version)])
            for name, version in order
        ]
        logger.debug(f"Resolved {len(units)} unique {ecosystem} units from {len(manifest.nodes)} graph entries ({label}).")
        return units

    @staticmethod
    def _lookup_ref(ref: str, versions_by_name: dict[str, set[str]], label: str) -> tuple[str, str]:
        if ref in versions_by_name and len(versions_by_name[ref]) == 1:
            return ref, next(iter(versions_by_name[ref]))
        name, version = _split_ref(ref)
        if version is not None and version in versions_by_name.get(name, ()):
            return name, version
        if version is None and name in versions_by_name:
            raise MalformedManifestError(f"Ambiguous parent reference '{ref}' (several versions present)", label)
        raise MalformedManifestError(f"Parent reference '{ref}' does not match any dependency", label)


class LayerResolver:
    """Resolves a container image's per-layer package listing."""

    kind = CONTAINER_LAYERS

    def __init__(self, scope: str = SQUASHED):
        if scope not in LAYER_SCOPES:
            raise ValueError(f"Unknown layer scope '{scope}'. Expected one of {LAYER_SCOPES}.")
        self.scope = scope

    def resolve(self, manifest: ContainerLayerManifest) -> list[DependencyUnit]:
        ecosystem = canonical_ecosystem(manifest.ecosystem)
        seen: dict[tuple[str, str], None] = {}
        latest_by_name: dict[str, str] = {}
        # The squashed view starts at the last complete package listing; earlier layers are superseded.
        squash_from = max((i for i, layer in enumerate(manifest.layers) if layer.complete), default=0)
        for index, layer in enumerate(manifest.layers):
            for entry in layer.packages:
                if len(entry) != 2 or not entry[0] or not entry[1]:
                    raise MalformedManifestError(
                        f"Layer {layer.digest or '?'} has a package entry without name or version: {entry!r}",
                        manifest.label)
                name, version = entry
                seen.setdefault((name, version), None)
                if index < squash_from:
                    continue
                latest_by_name.pop(name, None)  # re-insert so the name moves to the end
                latest_by_name[name] = version

        if self.scope == SQUASHED:
            pairs = [(name, version) for (name, version) in seen if latest_by_name.get(name) == version]
        else:
            pairs = list(seen)
        units = [DependencyUnit(name=name, ecosystem=ecosystem, resolved_version=version, direct=True)
                 for name, version in pairs]
        logger.debug(f"Resolved {len(units)} {ecosystem} packages from {len(manifest.layers)} layers "
                     f"({manifest.label}, scope={self.scope}).")
        return units


class ResolverRegistry:
    """Maps (manifest kind, canonical ecosystem) to a resolver."""

    def __init__(self):
        self._resolvers = {}

    def register(self, ecosystem: str, resolver) -> None:
        self._resolvers[(resolver.kind, canonical_ecosystem(ecosystem))] = resolver

    def get(self, kind: str, ecosystem: str):
        return self._resolvers.get((kind, canonical_ecosystem(ecosystem)))

    def supported(self, kind: str) -> list[str]:
        return sorted(ecosystem for k, ecosystem in self._resolvers if k == kind)

    def resolve(self, source) -> list[DependencyUnit]:
        kind = getattr(source, "kind", None)
        if kind not in (PACKAGE_GRAPH, CONTAINER_LAYERS):
            raise MalformedManifestError(f"Unknown manifest source type: {type(source).__name__}")
        ecosystem = getattr(source, "ecosystem", None)
        if not ecosystem:
            raise MalformedManifestError("Manifest does not declare an ecosystem", source.label)
        resolver = self.get(kind, ecosystem)
        if resolver is None:
            raise UnsupportedEcosystemError(ecosystem, kind, source.label)
        return resolver.resolve(source)


def default_registry(scope: str = SQUASHED) -> ResolverRegistry:
    registry = ResolverRegistry()
    graph_resolver = GraphResolver()
    for ecosystem in PACKAGE_ECOSYSTEMS:
        registry.register(ecosystem, graph_resolver)
    layer_resolver = LayerResolver(scope)
    for ecosystem in OS_ECOSYSTEMS:
        registry.register(ecosystem, layer_resolver)
    return registry


def resolve(source, registry: ResolverRegistry | None = None) -> list[DependencyUnit]:
    """Resolves one manifest source with the given (or default) registry."""
    return (registry or default_registry()).resolve(source)

# vuln_pipeline/lockfiles.py
# Producers that turn lockfiles into serialized dependency graphs.
import json
import logging
import re

from packaging.version import parse as parse_version, InvalidVersion

from .exceptions import MalformedManifestError
from .models import DependencyGraphManifest, GraphNode

logger = logging.getLogger(__name__)

# Regex to find package==version lines, ignoring comments and extras
REQ_PATTERN = re.compile(r'^\s*([a-zA-Z0-9_.-]+)(?:\[[^\]]*\])?\s*===?\s*([a-zA-Z0-9_.*+!-]+)')
NODE_MODULES = "node_modules/"
DEPENDENCY_FIELDS = ("dependencies", "optionalDependencies", "peerDependencies")


def parse_requirements(content: str, source_hint: str = "requirements.txt") -> DependencyGraphManifest:
    """Parses pinned requirements.txt content. Every pin is a direct dependency."""
    nodes = []
    for line_num, line in enumerate(content.splitlines(), 1):
        line = line.split('#', 1)[0].strip()
        if not line or line.startswith('-'):
            continue
        match = REQ_PATTERN.match(line)
        if not match:
            logger.debug(f"{source_hint}:{line_num}: not an exact pin, skipping '{line}'")
            continue
        name = match.group(1).lower()
        version_str = match.group(2)
        try:
            parse_version(version_str)
        except InvalidVersion:
            logger.warning(f"{source_hint}:{line_num}: invalid version '{version_str}' for package '{name}', skipping")
            continue
        nodes.append(GraphNode(name=name, version=version_str))
    logger.info(f"Parsed {len(nodes)} pinned packages from {source_hint}.")
    return DependencyGraphManifest(ecosystem="PyPI", nodes=tuple(nodes), label=source_hint)


def _name_from_path(path: str) -> str:
    return path.rsplit(NODE_MODULES, 1)[-1]


def _locate(dependency: str, from_path: str, packages: dict) -> str | None:
    """Node module resolution: nearest node_modules/<dependency> walking up from from_path."""
    base = from_path
    while True:
        candidate = f"{base}/{NODE_MODULES}{dependency}" if base else f"{NODE_MODULES}{dependency}"
        if candidate in packages:
            return candidate
        if not base:
            return None
        index = base.rfind("/" + NODE_MODULES)
        base = base[:index] if index >= 0 else ""


def _reachable(starts: set[str], children: dict[str, list[str]]) -> set[str]:
    seen = set(starts)
    stack = list(starts)
    while stack:
        for child in children[stack.pop()]:
            if child not in seen:
                seen.add(child)
                stack.append(child)
    return seen


def parse_package_lock(content: str, source_hint: str = "package-lock.json") -> DependencyGraphManifest:
    """
    Parses package-lock.json content (v2/v3 format with 'packages' key) into a
    graph, rebuilding parent edges from each package's declared dependencies.
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise MalformedManifestError(f"Could not decode JSON content: {e}", source_hint) from e
    if not isinstance(data, dict) or not isinstance(data.get('packages'), dict):
        raise MalformedManifestError(
            "Lockfile does not contain a 'packages' object (lockfileVersion 1 is not supported)", source_hint)

    packages = {path: details for path, details in data['packages'].items()
                if isinstance(details, dict) and not details.get('link')}
    root = packages.get("", {})

    installed = {path: details for path, details in packages.items()
                 if path.startswith(NODE_MODULES) and details.get('version')}
    parents: dict[str, list[str]] = {path: [] for path in installed}
    children: dict[str, list[str]] = {path: [] for path in installed}
    direct: set[str] = set()
    for path, details in packages.items():
        if path and path not in installed:
            continue
        declared = set()
        for field in DEPENDENCY_FIELDS:
            declared.update((details.get(field) or {}).keys())
        if path == "":
            declared.update((root.get('devDependencies') or {}).keys())
        for dependency in sorted(declared):
            child = _locate(dependency, path, installed)
            if child is None:
                logger.debug(f"{source_hint}: '{dependency}' required by '{path or 'root'}' is not installed")
                continue
            if path == "":
                direct.add(child)
            elif child != path:
                parents[child].append(f"{_name_from_path(path)}@{details['version']}")
                children[path].append(child)

    # Packages nobody requires (extraneous) are treated as direct, and so is the
    # first package, in lockfile order, of any group that only requires itself.
    roots = direct | {path for path in installed if not parents[path]}
    reached = _reachable(roots, children)
    for path in installed:
        if path not in reached:
            roots.add(path)
            reached |= _reachable({path}, children)

    nodes = []
    for path, details in installed.items():
        name = _name_from_path(path)
        if path in roots:
            nodes.append(GraphNode(name=name, version=details['version']))
        if parents[path]:
            nodes.append(GraphNode(name=name, version=details['version'], parents=tuple(parents[path])))
    logger.info(f"Parsed {len(installed)} installed packages from {source_hint}.")
    return DependencyGraphManifest(ecosystem="npm", nodes=tuple(nodes), label=source_hint)

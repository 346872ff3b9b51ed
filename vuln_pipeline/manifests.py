# vuln_pipeline/manifests.py
"""
Loading manifest sources from disk.

Two serialized shapes are understood directly:

    {"ecosystem": "npm",
     "dependencies": [{"name": "express", "version": "4.17.1", "parents": []}, ...]}

    {"ecosystem": "debian", "image": "nginx:1.25",
     "layers": [{"digest": "sha256:...", "complete": true,
                 "packages": [{"name": "openssl", "version": "3.0.11-1"}]}]}

"complete" marks a layer whose packages are the full installed set rather
than the packages that layer added.

Lockfiles and image tarballs are converted by their producers.
"""
import json
import logging
import tarfile
from pathlib import Path

import yaml

from .exceptions import MalformedManifestError
from .image_parser import load_image_tar
from .lockfiles import parse_requirements, parse_package_lock
from .models import DependencyGraphManifest, ContainerLayerManifest, GraphNode, ImageLayer

logger = logging.getLogger(__name__)


def _as_str(value, what: str, source: str) -> str:
    if not isinstance(value, (str, int, float)) or value == "":
        raise MalformedManifestError(f"Missing or invalid {what}: {value!r}", source)
    return str(value)


def graph_from_mapping(data: dict, label: str = "dependencies") -> DependencyGraphManifest:
    entries = data.get("dependencies")
    if not isinstance(entries, list):
        raise MalformedManifestError("'dependencies' must be a list", label)
    nodes = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise MalformedManifestError(f"Dependency entry must be an object: {entry!r}", label)
        parents = entry.get("parents") or []
        if not isinstance(parents, list):
            raise MalformedManifestError(f"'parents' must be a list: {entry!r}", label)
        nodes.append(GraphNode(
            name=_as_str(entry.get("name"), "dependency name", label),
            version=_as_str(entry.get("version"), "dependency version", label),
            parents=tuple(_as_str(parent, "parent reference", label) for parent in parents),
        ))
    return DependencyGraphManifest(
        ecosystem=_as_str(data.get("ecosystem"), "ecosystem", label),
        nodes=tuple(nodes),
        label=data.get("label") or label,
    )


def layers_from_mapping(data: dict, label: str = "image") -> ContainerLayerManifest:
    layers = data.get("layers")
    if not isinstance(layers, list):
        raise MalformedManifestError("'layers' must be a list", label)
    image_layers = []
    for position, layer in enumerate(layers):
        if not isinstance(layer, dict) or not isinstance(layer.get("packages", []), list):
            raise MalformedManifestError(f"Layer {position} must be an object with a 'packages' list", label)
        packages = []
        for package in layer.get("packages", []):
            if not isinstance(package, dict):
                raise MalformedManifestError(f"Package entry must be an object: {package!r}", label)
            packages.append((_as_str(package.get("name"), "package name", label),
                             _as_str(package.get("version"), "package version", label)))
        image_layers.append(ImageLayer(digest=str(layer.get("digest") or f"layer-{position}"),
                                       packages=tuple(packages), complete=layer.get("complete") is True))
    return ContainerLayerManifest(
        ecosystem=_as_str(data.get("ecosystem"), "ecosystem", label),
        layers=tuple(image_layers),
        image=str(data.get("image") or ""),
        label=data.get("label") or label,
    )


def manifest_from_mapping(data, label: str):
    if not isinstance(data, dict):
        raise MalformedManifestError("Manifest document must be an object", label)
    if "layers" in data:
        return layers_from_mapping(data, label)
    if "dependencies" in data and "ecosystem" in data:
        return graph_from_mapping(data, label)
    raise MalformedManifestError("Unrecognised manifest document (expected 'dependencies' or 'layers')", label)


def load_manifest(path: str | Path) -> list:
    """
    Loads one file and returns the manifest sources it contains. Image
    tarballs can yield several (OS packages plus application lockfiles).
    """
    path = Path(path)
    label = path.name
    if not path.is_file():
        raise MalformedManifestError("File not found", str(path))
    if path.suffix == ".tar" or tarfile.is_tarfile(path):
        return load_image_tar(str(path), label)
    try:
        text = path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedManifestError(f"Could not read file: {e}", label) from e

    if label == "package-lock.json":
        return [parse_package_lock(text, label)]
    if path.suffix == ".txt":
        return [parse_requirements(text, label)]
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise MalformedManifestError(f"Could not parse document: {e}", label) from e
    if isinstance(data, dict) and "packages" in data and "lockfileVersion" in data:
        return [parse_package_lock(text, label)]
    return [manifest_from_mapping(data, label)]

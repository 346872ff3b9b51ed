# vuln_pipeline/image_parser.py
"""
Reads container image tarballs (OCI layout or `docker save` output) and
produces per-layer package manifests.
"""
import io
import json
import logging
import re
import tarfile
from pathlib import PurePosixPath

from .ecosystems import canonical_ecosystem
from .exceptions import MalformedManifestError
from .lockfiles import parse_requirements, parse_package_lock
from .models import ContainerLayerManifest, ImageLayer

logger = logging.getLogger(__name__)

TARGET_PLATFORM = {"os": "linux", "architecture": "amd64"}
OS_RELEASE_PATHS = ("etc/os-release", "usr/lib/os-release")
DPKG_STATUS_PATH = "var/lib/dpkg/status"
APK_INSTALLED_PATH = "lib/apk/db/installed"
APP_MANIFEST_TARGETS = ("requirements.txt", "package-lock.json")

# os-release ID -> package database format
PACKAGE_DB_BY_DISTRO = {"debian": DPKG_STATUS_PATH, "ubuntu": DPKG_STATUS_PATH, "alpine": APK_INSTALLED_PATH}


def parse_os_release(content: bytes) -> dict:
    """Parses the content of an os-release file into a dictionary."""
    data = {}
    for line in content.decode('utf-8', errors='ignore').splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        match = re.match(r'^\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|([^#\s]+))\s*(?:#.*)?$', line)
        if match:
            data[match.group(1)] = next((g for g in match.groups()[1:] if g is not None), '')
    return data


def parse_dpkg_status(content: bytes) -> list[tuple[str, str]]:
    """
    Parses dpkg status file content to extract package names and versions.
    Stanzas whose Status is not 'installed' are skipped.
    """
    packages = []
    for stanza in content.decode('utf-8', errors='ignore').split('\n\n'):
        fields = {}
        for line in stanza.splitlines():
            if line[:1].isspace() or ':' not in line:
                continue  # continuation lines (Description etc.)
            key, value = line.split(':', 1)
            fields[key.strip()] = value.strip()
        name, version = fields.get('Package'), fields.get('Version')
        if not name:
            continue
        if not version:
            logger.warning(f"dpkg: package '{name}' has no Version field, skipping")
            continue
        status = fields.get('Status', 'install ok installed')
        if not status.endswith(' installed'):
            continue
        packages.append((name, version))
    logger.debug(f"Parsed {len(packages)} dpkg packages.")
    return packages


def parse_apk_installed(content: bytes) -> list[tuple[str, str]]:
    """Parses Alpine's lib/apk/db/installed. Returns (name, version) pairs."""
    packages = []
    for stanza in content.decode('utf-8', errors='ignore').strip().split('\n\n'):
        pkg_name = pkg_version = None
        for line in stanza.splitlines():
            line = line.strip()
            if line.startswith('P:'):
                pkg_name = line[2:].strip()
            elif line.startswith('V:'):
                pkg_version = line[2:].strip()
        if pkg_name and pkg_version:
            packages.append((pkg_name, pkg_version))
    logger.debug(f"Parsed {len(packages)} APK packages.")
    return packages


def _read_member(tar: tarfile.TarFile, name: str) -> bytes | None:
    try:
        member = tar.getmember(name)
    except KeyError:
        return None
    reader = tar.extractfile(member)
    if reader is None:
        return None
    with reader:
        return reader.read()


def _oci_layers(tar: tarfile.TarFile, index_content: bytes, source: str) -> list[tuple[str, str]]:
    """Returns (digest, member path) for every layer of the selected platform manifest."""

    def blob_path(digest: str) -> str:
        return f"blobs/sha256/{digest.split(':')[-1]}"

    def read_json_blob(digest: str) -> dict:
        content = _read_member(tar, blob_path(digest))
        if content is None:
            raise MalformedManifestError(f"Missing blob {digest}", source)
        return json.loads(content)

    manifests = json.loads(index_content).get('manifests')
    if not isinstance(manifests, list) or not manifests:
        raise MalformedManifestError("Invalid or empty 'manifests' in index.json", source)
    # docker save writes a nested index
    if "index" in manifests[0].get("mediaType", ""):
        manifests = read_json_blob(manifests[0]["digest"]).get('manifests') or []

    selected = None
    for ref in manifests:
        platform = ref.get('platform') or {}
        if platform.get('os') == TARGET_PLATFORM['os'] and platform.get('architecture') == TARGET_PLATFORM['architecture']:
            selected = ref.get('digest')
            break
    if selected is None and manifests:
        logger.warning(f"Platform {TARGET_PLATFORM} not found in {source}, using the first manifest.")
        selected = manifests[0].get('digest')
    if not selected:
        raise MalformedManifestError("Could not determine image manifest digest", source)

    manifest = read_json_blob(selected)
    if "manifests" in manifest:
        raise MalformedManifestError(f"Digest {selected} points to an index, not an image manifest", source)
    return [(layer['digest'], blob_path(layer['digest'])) for layer in manifest.get('layers', []) if 'digest' in layer]


def _docker_save_layers(manifest_content: bytes, source: str) -> list[tuple[str, str]]:
    entries = json.loads(manifest_content)
    if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
        raise MalformedManifestError("Invalid manifest.json", source)
    return [(PurePosixPath(path).parent.name or path, path) for path in entries[0].get('Layers', [])]


def _scan_layers(tar: tarfile.TarFile, layers: list[tuple[str, str]], source: str) -> list[tuple[str, dict[str, bytes]]]:
    """For each layer, collect the files we care about: os-release, package databases, app manifests."""
    wanted_paths = set(OS_RELEASE_PATHS) | set(PACKAGE_DB_BY_DISTRO.values())
    results = []
    for digest, member_path in layers:
        blob = _read_member(tar, member_path)
        if blob is None:
            raise MalformedManifestError(f"Missing layer blob {member_path}", source)
        found: dict[str, bytes] = {}
        try:
            with tarfile.open(fileobj=io.BytesIO(blob), mode='r:*') as layer_tar:
                for member in layer_tar.getmembers():
                    if not member.isfile():
                        continue
                    normalized = member.name.lstrip('./')
                    if normalized in wanted_paths or PurePosixPath(normalized).name in APP_MANIFEST_TARGETS:
                        reader = layer_tar.extractfile(member)
                        if reader:
                            with reader:
                                found[normalized] = reader.read()
        except tarfile.TarError as e:
            raise MalformedManifestError(f"Could not read layer {digest}: {e}", source) from e
        results.append((digest, found))
    return results


def load_image_tar(tar_path: str, label: str | None = None) -> list:
    """
    Returns the manifest sources found in an image tarball: one container layer
    manifest for the OS packages, plus one dependency graph per application
    manifest (requirements.txt, package-lock.json) present in the final image.
    """
    label = label or PurePosixPath(str(tar_path)).name
    try:
        with tarfile.open(tar_path, 'r') as tar:
            index_content = _read_member(tar, 'index.json')
            if index_content is not None:
                layers = _oci_layers(tar, index_content, label)
            else:
                manifest_content = _read_member(tar, 'manifest.json')
                if manifest_content is None:
                    raise MalformedManifestError("Neither index.json nor manifest.json found", label)
                layers = _docker_save_layers(manifest_content, label)
            layer_files = _scan_layers(tar, layers, label)
    except (tarfile.TarError, OSError) as e:
        raise MalformedManifestError(f"Could not read image tarball: {e}", label) from e
    except (json.JSONDecodeError, KeyError, AttributeError) as e:
        raise MalformedManifestError(f"Invalid image metadata: {e}", label) from e
    logger.info(f"Read {len(layer_files)} layers from {label}.")

    os_info = {}
    for _, files in layer_files:
        for path in OS_RELEASE_PATHS:
            if path in files:
                os_info = parse_os_release(files[path])
                break
    distro = os_info.get('ID', '').lower()

    sources = []
    if distro:
        db_path = PACKAGE_DB_BY_DISTRO.get(distro)
        image_layers = []
        for digest, files in layer_files:
            packages = ()
            has_db = bool(db_path) and db_path in files
            if has_db:
                parser = parse_apk_installed if distro == "alpine" else parse_dpkg_status
                packages = tuple(parser(files[db_path]))
            image_layers.append(ImageLayer(digest=digest, packages=packages, complete=has_db))
        logger.info(f"Detected OS: ID={distro}, VERSION_ID={os_info.get('VERSION_ID', '?')}")
        sources.append(ContainerLayerManifest(ecosystem=canonical_ecosystem(distro), layers=tuple(image_layers),
                                              image=label, label=f"{label}:os"))
    else:
        logger.warning(f"Could not find os-release in {label}. Skipping OS packages.")

    # Application manifests: the last layer that wrote a path wins.
    app_files: dict[str, bytes] = {}
    for _, files in layer_files:
        for path, content in files.items():
            if PurePosixPath(path).name in APP_MANIFEST_TARGETS:
                app_files[path] = content
    for path in sorted(app_files):
        hint = f"{label}:/{path}"
        text = app_files[path].decode('utf-8', errors='ignore')
        if path.endswith('package-lock.json'):
            sources.append(parse_package_lock(text, hint))
        else:
            sources.append(parse_requirements(text, hint))
    return sources

# vuln_pipeline/sbom.py
"""Component inventory (SBOM) built from resolved dependency units."""
import json
import logging
import uuid
from datetime import datetime, timezone
from urllib.parse import quote

from lxml import etree as ET

from . import __version__
from .ecosystems import PURL_TYPES
from .models import Component, ComponentInventory

logger = logging.getLogger(__name__)

CYCLONEDX_SPEC_VERSION = "1.5"
CYCLONEDX_NAMESPACE = "http://cyclonedx.org/schema/bom/1.5"
FORMATS = ("inventory", "cyclonedx-json", "cyclonedx-xml")


def package_url(name: str, version: str, ecosystem: str) -> str:
    """Package URL for a unit, e.g. pkg:npm/%40babel/core@7.0.0 or pkg:deb/debian/openssl@3.0.11-1."""
    purl_type, namespace = PURL_TYPES.get(ecosystem, ("generic", None))
    if purl_type == "maven" and ":" in name:
        group, artifact = name.split(":", 1)
        path = f"{quote(group, safe='')}/{quote(artifact, safe='')}"
    elif purl_type == "pypi":
        path = quote(name.lower().replace("_", "-"), safe="")
    else:
        path = quote(name, safe="/")
    if namespace:
        path = f"{namespace}/{path}"
    return f"pkg:{purl_type}/{path}@{quote(version, safe='')}"


def build_inventory(units) -> ComponentInventory:
    """One component per distinct unit, in first-seen order."""
    seen = set()
    components = []
    for unit in units:
        if unit.key in seen:
            continue
        seen.add(unit.key)
        components.append(Component(name=unit.name, version=unit.resolved_version,
                                    identifier=package_url(unit.name, unit.resolved_version, unit.ecosystem)))
    logger.debug(f"Inventory holds {len(components)} components")
    return ComponentInventory(components=tuple(components))


def to_json(inventory: ComponentInventory) -> bytes:
    items = [{"name": c.name, "version": c.version, "identifier": c.identifier} for c in inventory.components]
    return (json.dumps(items, indent=2) + "\n").encode("utf-8")


def _metadata(timestamp: datetime | None) -> dict:
    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        "timestamp": timestamp.replace(microsecond=0).isoformat(),
        "tools": {"components": [{"type": "application", "name": "vulngate", "version": __version__}]},
    }


def to_cyclonedx_json(inventory: ComponentInventory, *, serial_number: str | None = None,
                      timestamp: datetime | None = None) -> bytes:
    document = {
        "bomFormat": "CycloneDX",
        "specVersion": CYCLONEDX_SPEC_VERSION,
        "serialNumber": serial_number or f"urn:uuid:{uuid.uuid4()}",
        "version": 1,
        "metadata": _metadata(timestamp),
        "components": [
            {"type": "library", "bom-ref": c.identifier, "name": c.name, "version": c.version, "purl": c.identifier}
            for c in inventory.components
        ],
    }
    return (json.dumps(document, indent=2) + "\n").encode("utf-8")


def to_cyclonedx_xml(inventory: ComponentInventory, *, serial_number: str | None = None,
                     timestamp: datetime | None = None) -> bytes:
    ns = f"{{{CYCLONEDX_NAMESPACE}}}"
    root = ET.Element(f"{ns}bom", nsmap={None: CYCLONEDX_NAMESPACE},
                      serialNumber=serial_number or f"urn:uuid:{uuid.uuid4()}", version="1")
    metadata = _metadata(timestamp)
    meta_el = ET.SubElement(root, f"{ns}metadata")
    ET.SubElement(meta_el, f"{ns}timestamp").text = metadata["timestamp"]
    tool = ET.SubElement(ET.SubElement(ET.SubElement(meta_el, f"{ns}tools"), f"{ns}components"),
                         f"{ns}component", type="application")
    ET.SubElement(tool, f"{ns}name").text = "vulngate"
    ET.SubElement(tool, f"{ns}version").text = __version__

    components_el = ET.SubElement(root, f"{ns}components")
    for c in inventory.components:
        component_el = ET.SubElement(components_el, f"{ns}component", type="library")
        component_el.set("bom-ref", c.identifier)
        ET.SubElement(component_el, f"{ns}name").text = c.name
        ET.SubElement(component_el, f"{ns}version").text = c.version
        ET.SubElement(component_el, f"{ns}purl").text = c.identifier
    return ET.tostring(root, pretty_print=True, xml_declaration=True, encoding="UTF-8")


def render(inventory: ComponentInventory, fmt: str = "inventory") -> bytes:
    if fmt == "inventory":
        return to_json(inventory)
    if fmt == "cyclonedx-json":
        return to_cyclonedx_json(inventory)
    if fmt == "cyclonedx-xml":
        return to_cyclonedx_xml(inventory)
    raise ValueError(f"Unknown SBOM format '{fmt}'. Expected one of {', '.join(FORMATS)}.")

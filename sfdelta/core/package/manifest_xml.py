from __future__ import annotations

import xml.etree.ElementTree as ET
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from .assembler import DeployPackage, ManifestEntry

METADATA_NS = "http://soap.sforce.com/2006/04/metadata"
DEFAULT_API_VERSION = "61.0"


def _render(entries: Iterable[ManifestEntry], api_version: str) -> str:
    members: Dict[str, List[str]] = defaultdict(list)
    for entry in entries:
        members[entry.component_id.type].append(entry.component_id.api_name)

    root = ET.Element("Package", {"xmlns": METADATA_NS})
    for type_name in sorted(members):
        types_el = ET.SubElement(root, "types")
        for name in sorted(set(members[type_name])):
            ET.SubElement(types_el, "members").text = name
        ET.SubElement(types_el, "name").text = type_name
    ET.SubElement(root, "version").text = api_version

    ET.indent(root, space="    ")
    body = ET.tostring(root, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n"


def render_package_xml(package: DeployPackage, api_version: str = DEFAULT_API_VERSION) -> str:
    """package.xml for the upserts (an empty <Package> when there are none)."""

    return _render(package.upserts(), api_version)


def render_destructive_changes_xml(
    package: DeployPackage, api_version: str = DEFAULT_API_VERSION
) -> Optional[str]:
    """destructiveChangesPost.xml for the deletions, or None when nothing is deleted."""

    deletions = package.deletions()
    if not deletions:
        return None
    return _render(deletions, api_version)

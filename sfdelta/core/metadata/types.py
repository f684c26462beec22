from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple


@dataclass(frozen=True, slots=True)
class SourceTypeRule:
    """How one metadata type is laid out in Salesforce source format.

    child_of: directory name under the parent object folder, for child types
    whose api name is "<Object>.<Name>" (e.g. fields, validationRules).
    """

    type_name: str
    meta_suffix: str
    child_of: Optional[str] = None


_RULES: Tuple[SourceTypeRule, ...] = (
    SourceTypeRule("ApexClass", ".cls-meta.xml"),
    SourceTypeRule("ApexTrigger", ".trigger-meta.xml"),
    SourceTypeRule("ApexPage", ".page-meta.xml"),
    SourceTypeRule("ApexComponent", ".component-meta.xml"),
    SourceTypeRule("Flow", ".flow-meta.xml"),
    SourceTypeRule("Layout", ".layout-meta.xml"),
    SourceTypeRule("PermissionSet", ".permissionset-meta.xml"),
    SourceTypeRule("PermissionSetGroup", ".permissionsetgroup-meta.xml"),
    SourceTypeRule("Profile", ".profile-meta.xml"),
    SourceTypeRule("CustomTab", ".tab-meta.xml"),
    SourceTypeRule("CustomApplication", ".app-meta.xml"),
    SourceTypeRule("CustomMetadata", ".md-meta.xml"),
    SourceTypeRule("CustomLabels", ".labels-meta.xml"),
    SourceTypeRule("CustomPermission", ".customPermission-meta.xml"),
    SourceTypeRule("StaticResource", ".resource-meta.xml"),
    SourceTypeRule("FlexiPage", ".flexipage-meta.xml"),
    SourceTypeRule("GlobalValueSet", ".globalValueSet-meta.xml"),
    SourceTypeRule("RemoteSiteSetting", ".remoteSite-meta.xml"),
    SourceTypeRule("NamedCredential", ".namedCredential-meta.xml"),
    SourceTypeRule("Workflow", ".workflow-meta.xml"),
    SourceTypeRule("CustomObject", ".object-meta.xml"),
    SourceTypeRule("CustomField", ".field-meta.xml", child_of="fields"),
    SourceTypeRule("ValidationRule", ".validationRule-meta.xml", child_of="validationRules"),
    SourceTypeRule("RecordType", ".recordType-meta.xml", child_of="recordTypes"),
    SourceTypeRule("ListView", ".listView-meta.xml", child_of="listViews"),
    SourceTypeRule("WebLink", ".webLink-meta.xml", child_of="webLinks"),
    SourceTypeRule("FieldSet", ".fieldSet-meta.xml", child_of="fieldSets"),
    SourceTypeRule("CompactLayout", ".compactLayout-meta.xml", child_of="compactLayouts"),
)

SUFFIX_RULES: Mapping[str, SourceTypeRule] = {r.meta_suffix: r for r in _RULES}

# Directory-per-component types: every file below <folder>/<name>/ belongs to
# one component named <name>.
BUNDLE_FOLDERS: Mapping[str, str] = {
    "lwc": "LightningComponentBundle",
    "aura": "AuraDefinitionBundle",
}

# Content suffixes that are meaningless without a -meta.xml companion.
CONTENT_SUFFIXES_REQUIRING_META = frozenset({".cls", ".trigger", ".page", ".component"})

META_XML = "-meta.xml"


def match_suffix_rule(filename: str) -> Optional[SourceTypeRule]:
    """Return the rule whose meta suffix ends `filename` (longest match wins)."""

    best: Optional[SourceTypeRule] = None
    for suffix, rule in SUFFIX_RULES.items():
        if filename.endswith(suffix) and len(filename) > len(suffix):
            if best is None or len(suffix) > len(best.meta_suffix):
                best = rule
    return best


def generic_api_name(filename: str) -> str:
    """Api name for a -meta.xml without a known suffix: drop the last extension."""

    base = filename[: -len(META_XML)] if filename.endswith(META_XML) else filename
    return base.rsplit(".", 1)[0] if "." in base else base


def content_stem(filename: str) -> str:
    """Name a content file is matched on against its -meta.xml sibling."""

    return filename.rsplit(".", 1)[0] if "." in filename else filename


def known_type_names() -> Dict[str, SourceTypeRule]:
    return {r.type_name: r for r in _RULES}

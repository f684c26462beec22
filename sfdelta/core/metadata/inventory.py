from __future__ import annotations

import fnmatch
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Sequence, Tuple

from defusedxml import ElementTree as DefusedET
from defusedxml.common import DefusedXmlException

from sfdelta.core.errors import InventoryReadError, MetadataFormatError
from sfdelta.core.hashing import content_hash_of_files

from .models import ComponentId, MetadataComponent, Snapshot, SnapshotSource
from .types import (
    BUNDLE_FOLDERS,
    CONTENT_SUFFIXES_REQUIRING_META,
    META_XML,
    content_stem,
    generic_api_name,
    match_suffix_rule,
)

log = logging.getLogger("sfdelta.inventory")

_MAX_META_XML_BYTES = 10 * 1024 * 1024

DEFAULT_IGNORE_PATTERNS: Tuple[str, ...] = (
    "**/__tests__/**",
    "**/jsconfig.json",
    "**/.eslintrc.json",
    "package.xml",
)


@dataclass
class _PendingComponent:
    type_name: str
    api_name: str
    anchor: Path
    files: List[Path] = field(default_factory=list)


def _strip_ns(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


def read_meta_root_tag(path: Path) -> str:
    """Parse a -meta.xml with defusedxml and return its root element name.

    Raises MetadataFormatError for oversized or malformed XML.
    """

    try:
        size = path.stat().st_size
        if size > _MAX_META_XML_BYTES:
            raise MetadataFormatError("metadata XML too large", path=str(path))
        data = path.read_bytes()
    except OSError as e:
        raise InventoryReadError(f"cannot read {path}: {e}") from e

    try:
        root = DefusedET.fromstring(data)
    except (DefusedET.ParseError, DefusedXmlException) as e:
        raise MetadataFormatError(f"unparseable metadata XML ({e})", path=str(path)) from e

    return _strip_ns(root.tag)


def load_forceignore(project_root: Path) -> List[str]:
    """Read .forceignore patterns (comments and blank lines dropped)."""

    path = project_root / ".forceignore"
    if not path.is_file():
        return []
    out: List[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        out.append(line)
    return out


def is_ignored(relpath: str, patterns: Sequence[str]) -> bool:
    """Match a project-relative POSIX path against .forceignore-style globs.

    - "/x" anchors at the project root; bare names match any segment.
    - "dir/" ignores the directory and everything below it.
    - fnmatch "*" crosses "/" so "**/" prefixes behave like git's.
    """

    parts = relpath.split("/")
    ancestors = ["/".join(parts[: i + 1]) for i in range(len(parts))]

    for raw in patterns:
        pat = raw.strip()
        if not pat:
            continue
        anchored = pat.startswith("/")
        pat = pat.lstrip("/")
        dir_only = pat.endswith("/")
        pat = pat.rstrip("/")
        candidates = [pat]
        if pat.startswith("**/"):
            candidates.append(pat[3:])

        targets = ancestors[:-1] if dir_only else ancestors
        for cand in candidates:
            for anc in targets:
                if fnmatch.fnmatchcase(anc, cand):
                    return True
            if not anchored and "/" not in cand:
                segs = parts[:-1] if dir_only else parts
                if any(fnmatch.fnmatchcase(s, cand) for s in segs):
                    return True
    return False


def _under_object(parts: Tuple[str, ...]) -> bool:
    """True for objects/<Object>/<folder>/<file>."""
    return len(parts) >= 4 and parts[-4] == "objects"


def read_package_directories(project_root: Path) -> List[Path]:
    """Return the package directories declared by sfdx-project.json.

    Falls back to the project root itself when no project file exists.
    """

    project_file = project_root / "sfdx-project.json"
    if not project_file.is_file():
        return [project_root]

    try:
        data = json.loads(project_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise MetadataFormatError(f"invalid sfdx-project.json ({e})", path=str(project_file)) from e

    dirs = data.get("packageDirectories") if isinstance(data, dict) else None
    if not isinstance(dirs, list) or not dirs:
        raise MetadataFormatError("sfdx-project.json has no packageDirectories", path=str(project_file))

    out: List[Path] = []
    for entry in dirs:
        rel = entry.get("path") if isinstance(entry, dict) else None
        if not isinstance(rel, str) or not rel.strip():
            raise MetadataFormatError("packageDirectories entry without path", path=str(project_file))
        out.append((project_root / rel).resolve())
    return out


class InventoryReader:
    """
    Scan a Salesforce source-format project into a local Snapshot.

    Contract
    - Read-only, no network, deterministic for a fixed file tree.
    - Components are hashed by content (see content_hash_of_files).
    - InventoryReadError if the root (or a file) cannot be read.
    - MetadataFormatError if a metadata file cannot be attributed to a
      type and api name.
    """

    def __init__(
        self,
        project_root: str | Path,
        *,
        ignore_patterns: Optional[Sequence[str]] = None,
        source: SnapshotSource = SnapshotSource.LOCAL,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self._extra_ignores = list(ignore_patterns or [])
        self._source = source

    def scan(self, *, org_alias: Optional[str] = None) -> Snapshot:
        root = self.project_root
        if not root.is_dir():
            raise InventoryReadError(f"project root is not a readable directory: {root}")
        if not os.access(root, os.R_OK | os.X_OK):
            raise InventoryReadError(f"project root is not readable: {root}")

        patterns = list(DEFAULT_IGNORE_PATTERNS) + load_forceignore(root) + self._extra_ignores

        pending: Dict[ComponentId, _PendingComponent] = {}
        for pkg_dir in read_package_directories(root):
            if not pkg_dir.is_dir():
                raise InventoryReadError(f"package directory missing: {pkg_dir}")
            files = self._walk(pkg_dir, patterns)
            self._group(pkg_dir, files, pending)

        components = [self._finish(p) for p in pending.values()]
        log.info(
            "inventory_scanned",
            extra={"project_root": str(root), "component_count": len(components)},
        )
        return Snapshot.create(self._source, components, org_alias=org_alias)

    def _relpath(self, path: Path) -> str:
        return PurePosixPath(path.relative_to(self.project_root)).as_posix()

    def _walk(self, pkg_dir: Path, patterns: Sequence[str]) -> List[Path]:
        def onerror(err: OSError) -> None:
            raise InventoryReadError(f"cannot read {err.filename}: {err.strerror}") from err

        out: List[Path] = []
        for dirpath, dirnames, filenames in os.walk(pkg_dir, onerror=onerror):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                if name.startswith("."):
                    continue
                path = Path(dirpath) / name
                if is_ignored(self._relpath(path), patterns):
                    continue
                out.append(path)
        return out

    def _group(
        self,
        pkg_dir: Path,
        files: List[Path],
        pending: Dict[ComponentId, _PendingComponent],
    ) -> None:
        loose: List[Path] = []
        meta_by_dir_stem: Dict[Tuple[Path, str], ComponentId] = {}

        def claim(ident: ComponentId, anchor: Path, path: Path) -> None:
            existing = pending.get(ident)
            if existing is None:
                existing = _PendingComponent(ident.type, ident.api_name, anchor)
                pending[ident] = existing
            elif existing.anchor != anchor:
                raise MetadataFormatError(
                    f"duplicate metadata component {ident.key}", path=self._relpath(path)
                )
            existing.files.append(path)

        # Pass 1: bundles and -meta.xml files define components.
        for path in files:
            parts = path.relative_to(pkg_dir).parts
            bundle = self._bundle_of(parts)
            if bundle is not None:
                type_name, name, depth = bundle
                if path.name.endswith(META_XML):
                    read_meta_root_tag(path)
                claim(ComponentId(type_name, name), pkg_dir.joinpath(*parts[:depth]), path)
                continue

            if path.name.endswith(META_XML):
                ident, leaf = self._meta_identity(path, parts)
                claim(ident, path.parent, path)
                meta_by_dir_stem[(path.parent, leaf)] = ident
                continue

            loose.append(path)

        # Pass 2: content files attach to the -meta.xml that shares their stem,
        # either as a sibling (Foo.cls) or as a folder of that name (static resources).
        for path in loose:
            ident = meta_by_dir_stem.get((path.parent, content_stem(path.name)))
            if ident is None:
                for ancestor in path.parents:
                    if ancestor == pkg_dir or pkg_dir not in ancestor.parents:
                        break
                    ident = meta_by_dir_stem.get((ancestor.parent, ancestor.name))
                    if ident is not None:
                        break

            if ident is not None:
                pending[ident].files.append(path)
                continue

            if path.suffix in CONTENT_SUFFIXES_REQUIRING_META:
                raise MetadataFormatError("metadata file without -meta.xml", path=self._relpath(path))
            log.debug("inventory_skip_untracked", extra={"path": self._relpath(path)})

    @staticmethod
    def _bundle_of(parts: Tuple[str, ...]) -> Optional[Tuple[str, str, int]]:
        for i, seg in enumerate(parts[:-2]):
            type_name = BUNDLE_FOLDERS.get(seg)
            if type_name is not None:
                return type_name, parts[i + 1], i + 2
        return None

    def _meta_identity(self, path: Path, parts: Tuple[str, ...]) -> Tuple[ComponentId, str]:
        name = path.name
        root_tag = read_meta_root_tag(path)
        rule = match_suffix_rule(name)

        if rule is None:
            leaf = generic_api_name(name)
            if not leaf or not root_tag:
                raise MetadataFormatError("cannot determine metadata type/name", path=self._relpath(path))
            if _under_object(parts):
                return ComponentId(root_tag, f"{parts[-3]}.{leaf}"), leaf
            return ComponentId(root_tag, leaf), leaf

        leaf = name[: -len(rule.meta_suffix)]
        if rule.child_of is None:
            return ComponentId(rule.type_name, leaf), leaf

        # objects/<Object>/<child_of>/<Name>.<suffix>
        if not _under_object(parts) or parts[-2] != rule.child_of:
            raise MetadataFormatError(
                f"{rule.type_name} outside objects/<Object>/{rule.child_of}/",
                path=self._relpath(path),
            )
        return ComponentId(rule.type_name, f"{parts[-3]}.{leaf}"), leaf

    def _finish(self, pending: _PendingComponent) -> MetadataComponent:
        entries: List[Tuple[str, bytes]] = []
        latest = 0.0
        for path in pending.files:
            try:
                data = path.read_bytes()
                latest = max(latest, path.stat().st_mtime)
            except OSError as e:
                raise InventoryReadError(f"cannot read {path}: {e}") from e
            entries.append((PurePosixPath(path.relative_to(pending.anchor)).as_posix(), data))

        return MetadataComponent(
            type=pending.type_name,
            api_name=pending.api_name,
            content_hash=content_hash_of_files(entries),
            last_modified=datetime.fromtimestamp(latest, tz=timezone.utc) if latest else None,
            files=tuple(sorted(self._relpath(p) for p in pending.files)),
        )


def scan_project(project_root: str | Path, *, ignore_patterns: Optional[Sequence[str]] = None) -> Snapshot:
    """Convenience wrapper: InventoryReader(project_root).scan()."""

    return InventoryReader(project_root, ignore_patterns=ignore_patterns).scan()

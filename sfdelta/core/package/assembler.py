from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sfdelta.core.delta.dependency_order import DependencyOrder, default_dependency_order
from sfdelta.core.delta.engine import ChangeSet
from sfdelta.core.errors import MetadataFormatError
from sfdelta.core.hashing import leaf_hash, merkle_root_hex
from sfdelta.core.metadata.models import ComponentId, Snapshot


class ManifestAction(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    component_id: ComponentId
    action: ManifestAction
    content_hash: Optional[str] = None

    def leaf(self) -> str:
        return leaf_hash([self.action.value, self.component_id.key, self.content_hash or ""])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component_id.key,
            "type": self.component_id.type,
            "api_name": self.component_id.api_name,
            "action": self.action.value,
            "content_hash": self.content_hash,
        }


@dataclass(frozen=True)
class DeployPackage:
    """
    Deployable unit built from one ChangeSet.

    - manifest: upserts in dependency order, then deletions in reverse
      dependency order.
    - payload: identity -> project-relative file paths to stage (upserts only).
    - content_hash: Merkle root over the manifest entries; validations and
      deploys are bound to it.
    """

    manifest: Tuple[ManifestEntry, ...]
    payload: Mapping[ComponentId, Tuple[str, ...]]
    content_hash: str

    @property
    def is_empty(self) -> bool:
        return not self.manifest

    def upserts(self) -> Tuple[ManifestEntry, ...]:
        return tuple(e for e in self.manifest if e.action == ManifestAction.UPSERT)

    def deletions(self) -> Tuple[ManifestEntry, ...]:
        return tuple(e for e in self.manifest if e.action == ManifestAction.DELETE)

    def position(self, ident: ComponentId) -> int:
        for i, entry in enumerate(self.manifest):
            if entry.component_id == ident:
                return i
        raise KeyError(ident.key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "manifest": [e.to_dict() for e in self.manifest],
            "payload": {k.key: list(v) for k, v in self.payload.items()},
        }


LocalFiles = Union[Snapshot, Mapping[ComponentId, Sequence[str]]]


def package_content_hash(manifest: Sequence[ManifestEntry]) -> str:
    return merkle_root_hex(e.leaf() for e in manifest)


def assemble(
    change_set: ChangeSet,
    local_files: LocalFiles,
    *,
    order: Optional[DependencyOrder] = None,
) -> DeployPackage:
    """Materialize a ChangeSet into a DeployPackage.

    Pure and in-memory: staging files for transmission belongs to the
    transport. Raises MetadataFormatError when an upserted component has no
    local files to ship.
    """

    order = order or default_dependency_order()
    files_index = local_files.files_by_identity() if isinstance(local_files, Snapshot) else local_files

    upserts = sorted(change_set.upserts(), key=lambda c: order.upsert_key(c.identity))
    deletions = sorted(change_set.deleted, key=order.delete_key)

    manifest: List[ManifestEntry] = []
    payload: Dict[ComponentId, Tuple[str, ...]] = {}

    for comp in upserts:
        ident = comp.identity
        files = tuple(sorted(files_index.get(ident) or ()))
        if not files:
            raise MetadataFormatError(f"no local files for {ident.key}")
        manifest.append(ManifestEntry(ident, ManifestAction.UPSERT, comp.content_hash))
        payload[ident] = files

    for ident in deletions:
        manifest.append(ManifestEntry(ident, ManifestAction.DELETE, None))

    return DeployPackage(
        manifest=tuple(manifest),
        payload=MappingProxyType(payload),
        content_hash=package_content_hash(manifest),
    )

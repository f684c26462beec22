from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from sfdelta.core.errors import MetadataFormatError
from sfdelta.core.hashing import stable_sha256


class SnapshotSource(str, Enum):
    LOCAL = "local"
    ORG = "org"
    PREVIOUS_DEPLOY = "previous_deploy"


@dataclass(frozen=True, slots=True)
class ComponentId:
    """Identity of a metadata component: (type, api_name).

    Ordering is by the identity string ``"<type>:<api_name>"`` so every
    sorted view in sfdelta agrees on one total order.
    """

    type: str
    api_name: str

    @property
    def key(self) -> str:
        return f"{self.type}:{self.api_name}"

    def __lt__(self, other: "ComponentId") -> bool:
        if not isinstance(other, ComponentId):
            return NotImplemented
        return self.key < other.key

    def __str__(self) -> str:
        return self.key

    @classmethod
    def parse(cls, key: str) -> "ComponentId":
        type_name, sep, api_name = str(key).partition(":")
        if not sep or not type_name or not api_name:
            raise ValueError(f"invalid component identity: {key!r}")
        return cls(type=type_name, api_name=api_name)


@dataclass(frozen=True, slots=True)
class MetadataComponent:
    """
    Immutable record of one metadata component as observed by a scan.

    Invariants
    - Identified by (type, api_name); two components with the same identity
      are the same component at possibly different content.
    - content_hash reflects file content only, never timestamps.
    - files are project-relative POSIX paths (empty for org-side components).
    """

    type: str
    api_name: str
    content_hash: str
    last_modified: Optional[datetime] = None
    files: Tuple[str, ...] = ()

    @property
    def identity(self) -> ComponentId:
        return ComponentId(self.type, self.api_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "api_name": self.api_name,
            "content_hash": self.content_hash,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "files": list(self.files),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MetadataComponent":
        required = {"type", "api_name", "content_hash"}
        missing = required - set(data.keys())
        if missing:
            raise MetadataFormatError(f"component record missing keys {sorted(missing)}")

        raw_ts = data.get("last_modified")
        return cls(
            type=str(data["type"]),
            api_name=str(data["api_name"]),
            content_hash=str(data["content_hash"]),
            last_modified=datetime.fromisoformat(str(raw_ts)) if raw_ts else None,
            files=tuple(str(x) for x in (data.get("files") or [])),
        )


@dataclass(frozen=True)
class Snapshot:
    """
    Read-only, identity-ordered view of a set of metadata components.

    Owned by whoever created it; nothing in sfdelta mutates a Snapshot after
    `create`. The mapping is exposed through MappingProxyType.
    """

    source: SnapshotSource
    captured_at: datetime
    components: Mapping[ComponentId, MetadataComponent]
    org_alias: Optional[str] = None
    snapshot_hash: str = field(default="", compare=False)

    @classmethod
    def create(
        cls,
        source: SnapshotSource,
        components: Iterable[MetadataComponent],
        *,
        captured_at: Optional[datetime] = None,
        org_alias: Optional[str] = None,
    ) -> "Snapshot":
        by_id: Dict[ComponentId, MetadataComponent] = {}
        for comp in components:
            ident = comp.identity
            if ident in by_id:
                raise MetadataFormatError(f"duplicate metadata component {ident.key}")
            by_id[ident] = comp

        ordered = {k: by_id[k] for k in sorted(by_id)}
        snapshot_hash = stable_sha256(
            {"components": [[k.key, v.content_hash] for k, v in ordered.items()]}
        )

        return cls(
            source=SnapshotSource(source),
            captured_at=captured_at or datetime.now(timezone.utc),
            components=MappingProxyType(ordered),
            org_alias=org_alias,
            snapshot_hash=snapshot_hash,
        )

    @classmethod
    def empty(cls, source: SnapshotSource, *, org_alias: Optional[str] = None) -> "Snapshot":
        return cls.create(source, [], org_alias=org_alias)

    def __len__(self) -> int:
        return len(self.components)

    def __iter__(self) -> Iterator[ComponentId]:
        return iter(self.components)

    def __contains__(self, ident: object) -> bool:
        return ident in self.components

    def get(self, ident: ComponentId) -> Optional[MetadataComponent]:
        return self.components.get(ident)

    def files_by_identity(self) -> Dict[ComponentId, Tuple[str, ...]]:
        """Return the local file index consumed by the package assembler."""

        return {k: v.files for k, v in self.components.items()}

    def relabel(self, source: SnapshotSource) -> "Snapshot":
        """Return a copy of this snapshot tagged with another source."""

        return Snapshot.create(
            source,
            self.components.values(),
            captured_at=self.captured_at,
            org_alias=self.org_alias,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "captured_at": self.captured_at.isoformat(),
            "org_alias": self.org_alias,
            "snapshot_hash": self.snapshot_hash,
            "components": [c.to_dict() for c in self.components.values()],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Snapshot":
        """Rebuild a snapshot and check its recorded hash.

        Snapshot input is untrusted (it may come from the store).
        """

        try:
            source = SnapshotSource(str(data["source"]))
            captured_at = datetime.fromisoformat(str(data["captured_at"]))
        except (KeyError, ValueError) as e:
            raise MetadataFormatError(f"invalid snapshot record: {e}") from e

        snap = cls.create(
            source,
            [MetadataComponent.from_dict(c) for c in (data.get("components") or [])],
            captured_at=captured_at,
            org_alias=data.get("org_alias"),
        )
        recorded = data.get("snapshot_hash")
        if recorded and recorded != snap.snapshot_hash:
            raise MetadataFormatError("snapshot_hash mismatch")
        return snap

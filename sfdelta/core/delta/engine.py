from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Tuple

from sfdelta.core.metadata.models import ComponentId, MetadataComponent, Snapshot


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """
    Difference between a reference and a current Snapshot.

    Invariants
    - Each bucket is sorted by identity string.
    - An identity appears in at most one of added / modified / deleted.
    - Never persisted as a source of truth: diff() recomputes it.
    """

    added: Tuple[MetadataComponent, ...] = ()
    modified: Tuple[Tuple[MetadataComponent, MetadataComponent], ...] = ()
    deleted: Tuple[ComponentId, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted)

    def __len__(self) -> int:
        return len(self.added) + len(self.modified) + len(self.deleted)

    def identities(self) -> FrozenSet[ComponentId]:
        return (
            frozenset(c.identity for c in self.added)
            | frozenset(new.identity for _old, new in self.modified)
            | frozenset(self.deleted)
        )

    def upserts(self) -> Tuple[MetadataComponent, ...]:
        """Components that must be shipped: added plus the new side of modified."""

        return tuple(sorted(self.added + tuple(new for _old, new in self.modified), key=lambda c: c.identity.key))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": [c.to_dict() for c in self.added],
            "modified": [
                {"component": new.identity.key, "old_hash": old.content_hash, "new_hash": new.content_hash}
                for old, new in self.modified
            ],
            "deleted": [d.key for d in self.deleted],
            "counts": {
                "added": len(self.added),
                "modified": len(self.modified),
                "deleted": len(self.deleted),
            },
        }


def diff(reference: Snapshot, current: Snapshot) -> ChangeSet:
    """Compute the ChangeSet that turns `reference` into `current`.

    Pure: identical inputs yield structurally equal ChangeSets. Components
    with equal content_hash are excluded whatever their timestamps.
    """

    ref = reference.components
    cur = current.components

    added = tuple(cur[k] for k in sorted(cur.keys() - ref.keys()))
    deleted = tuple(sorted(ref.keys() - cur.keys()))
    modified = tuple(
        (ref[k], cur[k])
        for k in sorted(cur.keys() & ref.keys())
        if ref[k].content_hash != cur[k].content_hash
    )
    return ChangeSet(added=added, modified=modified, deleted=deleted)

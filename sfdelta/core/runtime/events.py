from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Dict, Optional, Type, TypeVar
from uuid import UUID, uuid4

from sfdelta.core.hashing import _json_safe

E = TypeVar("E", bound="WorkflowEvent")

# event_type -> class; only registered types can be rebuilt from storage.
EVENT_TYPES: Dict[str, Type["WorkflowEvent"]] = {}

SEAL_FIELDS = ("previous_event_hash", "event_hash")


def ledger_event(cls: Type[E]) -> Type[E]:
    EVENT_TYPES[cls.__name__] = cls
    return cls


@dataclass(frozen=True)
class WorkflowEvent:
    """One step of a delta workflow as recorded in its ledger.

    Events are frozen. `previous_event_hash` and `event_hash` stay None
    until a WorkflowContext seals the event on append. Payloads hold
    component identities, counts and hashes, never file contents.
    """

    event_id: UUID = field(default_factory=uuid4, init=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC), init=False)

    previous_event_hash: Optional[str] = field(default=None, init=False)
    event_hash: Optional[str] = field(default=None, init=False)

    @property
    def event_type(self) -> str:
        return type(self).__name__

    @property
    def sealed(self) -> bool:
        return self.event_hash is not None

    def to_payload(self) -> Dict[str, Any]:
        """Hash input for the chain: every field except the seal, JSON-safe."""

        payload: Dict[str, Any] = {"event_type": self.event_type}
        payload.update(
            (f.name, _json_safe(getattr(self, f.name))) for f in fields(self) if f.name not in SEAL_FIELDS
        )
        return payload

    def __repr__(self) -> str:
        return f"<{self.event_type} {self.event_id} at {self.created_at.isoformat()}>"


@ledger_event
@dataclass(frozen=True)
class SnapshotCapturedEvent(WorkflowEvent):
    """A snapshot was read from the project, the org, or the store."""

    source: str
    snapshot_hash: str
    component_count: int
    org_alias: Optional[str] = None


@ledger_event
@dataclass(frozen=True)
class ChangeSetComputedEvent(WorkflowEvent):
    reference_hash: str
    current_hash: str
    added: int
    modified: int
    deleted: int


@ledger_event
@dataclass(frozen=True)
class PackageAssembledEvent(WorkflowEvent):
    package_hash: str
    upserts: int
    deletions: int
    manifest: list = field(default_factory=list)


@ledger_event
@dataclass(frozen=True)
class JobSubmittedEvent(WorkflowEvent):
    """A validation or deploy job was accepted by the org."""

    job_id: str
    operation: str
    org_alias: str
    package_hash: str
    check_only: bool


@ledger_event
@dataclass(frozen=True)
class JobCompletedEvent(WorkflowEvent):
    """A run reached a terminal state (including TimedOut / Aborted)."""

    job_id: str
    operation: str
    org_alias: str
    state: str
    status: Optional[str] = None
    elapsed_seconds: float = 0.0
    failures: list = field(default_factory=list)


@ledger_event
@dataclass(frozen=True)
class ReferenceUpdatedEvent(WorkflowEvent):
    """The deployed snapshot was stored as the org's next reference."""

    org_alias: str
    snapshot_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)

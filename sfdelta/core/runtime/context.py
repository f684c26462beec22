from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional, Tuple, Type, TypeVar

from sfdelta.core.hashing import stable_event_hash

from .events import WorkflowEvent

T = TypeVar("T", bound=WorkflowEvent)

GENESIS = "GENESIS"


@dataclass
class WorkflowContext:
    """Hash-chained ledger of one workflow run against one org.

    Every appended event is sealed with the hash of its payload and the
    previous event's hash (GENESIS for the first). Timestamps may not go
    backwards. The internal lock is never held across an await.
    """

    context_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    org_alias: Optional[str] = None
    operation_name: Optional[str] = None

    _events: List[WorkflowEvent] = field(default_factory=list, init=False, repr=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def emit_event(self, event: WorkflowEvent) -> "WorkflowContext":
        """Seal `event` onto the chain.

        Raises TypeError for anything but a WorkflowEvent and RuntimeError
        when the event is already sealed or older than the current head.
        """

        if not isinstance(event, WorkflowEvent):
            raise TypeError(f"expected a WorkflowEvent, got {type(event).__name__}")
        if event.sealed:
            raise RuntimeError(f"{event.event_type} {event.event_id} is already sealed")

        with self._lock:
            head = self._events[-1] if self._events else None
            if head is not None and event.created_at < head.created_at:
                raise RuntimeError(
                    f"event timestamp goes backwards: {event.created_at.isoformat()} < {head.created_at.isoformat()}"
                )
            link = head.event_hash if head is not None else GENESIS
            object.__setattr__(event, "previous_event_hash", link)
            object.__setattr__(event, "event_hash", stable_event_hash(event.to_payload(), link))
            self._events.append(event)

        return self

    def append_sealed(self, event: WorkflowEvent) -> None:
        """Append an event loaded from storage as is; `verify_integrity` checks it."""

        with self._lock:
            self._events.append(event)

    def get_events(self) -> Tuple[WorkflowEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def events_of(self, event_type: Type[T]) -> Tuple[T, ...]:
        return tuple(e for e in self.get_events() if isinstance(e, event_type))

    @property
    def head_hash(self) -> str:
        events = self.get_events()
        return events[-1].event_hash if events else GENESIS

    def first_broken_index(self) -> Optional[int]:
        """Index of the first event whose link or hash does not recompute, else None."""

        link = GENESIS
        for index, event in enumerate(self.get_events()):
            if event.previous_event_hash != link:
                return index
            if event.event_hash != stable_event_hash(event.to_payload(), link):
                return index
            link = event.event_hash
        return None

    def verify_integrity(self) -> bool:
        return self.first_broken_index() is None

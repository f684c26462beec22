from __future__ import annotations

from dataclasses import fields
from datetime import datetime
from typing import Any, Dict, Mapping
from uuid import UUID

from .events import EVENT_TYPES, SEAL_FIELDS, WorkflowEvent

_RESTORED = {"event_id", "created_at", *SEAL_FIELDS}


def event_to_record(event: WorkflowEvent) -> Dict[str, Any]:
    """Flatten a sealed event into the record shape used by storage and the API."""

    return {
        "event_type": event.event_type,
        "event_id": str(event.event_id),
        "created_at": event.created_at.isoformat(),
        "payload": event.to_payload(),
        "previous_event_hash": event.previous_event_hash,
        "event_hash": event.event_hash,
    }


def event_from_record(record: Mapping[str, Any]) -> WorkflowEvent:
    """Rebuild an event from `event_to_record` output.

    The record is untrusted: only registered event types are built, and only
    a type's own init fields are taken from the payload. Chain fields are
    copied as stored; WorkflowContext verification decides whether they hold.
    """

    event_type = record.get("event_type")
    cls = EVENT_TYPES.get(event_type) if isinstance(event_type, str) else None
    if cls is None:
        raise ValueError(f"unknown event_type: {event_type!r}")

    payload = record.get("payload")
    if not isinstance(payload, Mapping):
        raise ValueError(f"{event_type}: payload must be an object")

    kwargs = {f.name: payload[f.name] for f in fields(cls) if f.init and f.name in payload}
    try:
        event = cls(**kwargs)
    except TypeError as e:
        raise ValueError(f"{event_type}: {e}") from e

    try:
        restored = {
            "event_id": UUID(str(record["event_id"])),
            "created_at": datetime.fromisoformat(str(record["created_at"])),
            "previous_event_hash": record.get("previous_event_hash"),
            "event_hash": record.get("event_hash"),
        }
    except (KeyError, ValueError) as e:
        raise ValueError(f"{event_type}: bad event_id/created_at ({e})") from e

    for name in _RESTORED:
        object.__setattr__(event, name, restored[name])
    return event

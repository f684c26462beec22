from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence, Tuple
from uuid import UUID


def _json_safe(value: Any) -> Any:
    """Map datetimes, UUIDs, tuples and sets onto plain JSON values (sets sorted)."""

    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_json_safe(v) for v in value)
    return value


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def stable_sha256(payload: Dict[str, Any]) -> str:
    """Hash a JSON-ish payload with sorted keys and compact separators."""

    serialized = json.dumps(_json_safe(payload), sort_keys=True, separators=(",", ":"))
    return sha256_hex(serialized.encode("utf-8"))


def stable_event_hash(event_data: dict, previous_hash: str) -> str:
    """Chain hash of one ledger event: its payload plus the previous link."""

    return stable_sha256({"event": event_data, "previous_event_hash": previous_hash})


def normalize_newlines(data: bytes) -> bytes:
    """Normalize CRLF to LF so hashes do not depend on checkout settings."""

    return data.replace(b"\r\n", b"\n")


def content_hash_of_files(files: Iterable[Tuple[str, bytes]]) -> str:
    """Hash a component's files independent of where they live on disk.

    Each entry is (name relative to the component anchor, raw bytes). Entries
    are sorted by name; name and normalized bytes are length-prefixed so
    boundaries between files cannot be forged.
    """

    h = hashlib.sha256()
    for name, data in sorted(files, key=lambda item: item[0]):
        body = normalize_newlines(data)
        encoded = name.encode("utf-8")
        h.update(len(encoded).to_bytes(4, "big"))
        h.update(encoded)
        h.update(len(body).to_bytes(8, "big"))
        h.update(body)
    return h.hexdigest()


def merkle_root_hex(leaves: Iterable[str]) -> str:
    """Merkle root over hex leaf digests.

    Leaves are sorted first, so the root does not depend on input order. An
    odd node at any level is paired with itself. No leaves hash to
    sha256("SFDELTA_EMPTY_MERKLE").
    """

    level: List[str] = sorted(str(x) for x in leaves if str(x))
    if not level:
        return sha256_hex(b"SFDELTA_EMPTY_MERKLE")

    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [sha256_hex((a + b).encode("utf-8")) for a, b in zip(level[::2], level[1::2])]
    return level[0]


def leaf_hash(parts: Sequence[str]) -> str:
    """Unit-separator joined parts, hashed; used for package manifest leaves."""

    return sha256_hex("\x1f".join(parts).encode("utf-8"))

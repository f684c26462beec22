from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence

from sfdelta.core.errors import (
    ConfigurationError,
    MetadataFormatError,
    OrgUnavailableError,
    TransientTransportError,
    TransportError,
)
from sfdelta.core.metadata.models import MetadataComponent, Snapshot, SnapshotSource

from .transport import CommandRequest, OrgOperation, OrgTransport

log = logging.getLogger("sfdelta.org")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff for read-only org requests.

    delay(n) = min(base_delay * factor**n, max_delay) for retry n = 0, 1, ...
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("retry max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")
        if self.factor < 1:
            raise ConfigurationError("retry factor must be >= 1")

    def delay(self, retry_index: int) -> float:
        return min(self.base_delay * (self.factor ** retry_index), self.max_delay)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RetryPolicy":
        d = cls()
        try:
            return cls(
                max_attempts=int(data.get("max_attempts", d.max_attempts)),
                base_delay=float(data.get("base_delay", d.base_delay)),
                factor=float(data.get("factor", d.factor)),
                max_delay=float(data.get("max_delay", d.max_delay)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid retry policy: {e}") from e


def _parse_component(row: Any) -> MetadataComponent:
    if not isinstance(row, Mapping):
        raise MetadataFormatError("org component row is not an object")

    type_name = str(row.get("type") or "").strip()
    full_name = str(row.get("fullName") or "").strip()
    content_hash = str(row.get("contentHash") or "").strip()
    if not type_name or not full_name or not content_hash:
        raise MetadataFormatError(f"org component row missing type/fullName/contentHash: {dict(row)!r}")

    raw_ts = row.get("lastModifiedDate")
    try:
        last_modified = datetime.fromisoformat(str(raw_ts).replace("Z", "+00:00")) if raw_ts else None
    except ValueError as e:
        raise MetadataFormatError(f"bad lastModifiedDate for {type_name}:{full_name}") from e

    return MetadataComponent(type_name, full_name, content_hash, last_modified)


class OrgSnapshotFetcher:
    """
    Read-only retrieval of an org's current metadata as a Snapshot.

    Contract
    - Never mutates org state.
    - Transient failures are retried with RetryPolicy backoff; once the budget
      is spent (or on a permanent failure) OrgUnavailableError names the alias.
    - Output that cannot be attributed to a component raises MetadataFormatError.
    """

    def __init__(
        self,
        transport: OrgTransport,
        retry: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    async def fetch(self, org_alias: str, metadata_types: Optional[Sequence[str]] = None) -> Snapshot:
        if not org_alias:
            raise ConfigurationError("org alias is required")

        payload = {"metadata_types": list(metadata_types)} if metadata_types else {}
        request = CommandRequest(org_alias=org_alias, operation=OrgOperation.RETRIEVE_MANIFEST, payload=payload)

        retry = self._retry
        last_detail = "no attempt made"
        for attempt in range(1, retry.max_attempts + 1):
            try:
                resp = await self._transport.execute(request)
            except TransientTransportError as e:
                last_detail = str(e)
            except TransportError as e:
                raise OrgUnavailableError(org_alias, str(e), attempts=attempt) from e
            else:
                if resp.ok:
                    return self._to_snapshot(org_alias, resp.output)
                last_detail = resp.error_detail or f"exit status {resp.exit_status}"
                if not resp.transient:
                    raise OrgUnavailableError(org_alias, last_detail, attempts=attempt)

            if attempt < retry.max_attempts:
                delay = retry.delay(attempt - 1)
                log.warning(
                    "org_fetch_retry",
                    extra={"org_alias": org_alias, "attempt": attempt, "delay": delay, "error": last_detail},
                )
                await self._sleep(delay)

        raise OrgUnavailableError(org_alias, last_detail, attempts=retry.max_attempts)

    def _to_snapshot(self, org_alias: str, output: Optional[Mapping[str, Any]]) -> Snapshot:
        if output is None or not isinstance(output.get("components"), list):
            raise MetadataFormatError(f"retrieve output for '{org_alias}' has no component list")

        components: List[MetadataComponent] = [_parse_component(r) for r in output["components"]]
        snap = Snapshot.create(SnapshotSource.ORG, components, org_alias=org_alias)
        log.info(
            "org_snapshot_fetched",
            extra={"org_alias": org_alias, "components": len(snap), "snapshot_hash": snap.snapshot_hash},
        )
        return snap

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Protocol


class OrgOperation(str, Enum):
    RETRIEVE_MANIFEST = "retrieve_manifest"
    DEPLOY_VALIDATE = "deploy_validate"
    DEPLOY_START = "deploy_start"
    DEPLOY_QUICK = "deploy_quick"
    DEPLOY_REPORT = "deploy_report"


@dataclass(frozen=True, slots=True)
class CommandRequest:
    """One request to the external org collaborator.

    Payload values must be JSON-safe; transports may serialize them.
    """

    org_alias: str
    operation: OrgOperation
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CommandResponse:
    """Result of a CommandRequest.

    Security notes:
    - `output` and `error_detail` come from an external process; treat them as
      untrusted input.

    transient: the transport's judgement that retrying may succeed.
    """

    exit_status: int
    output: Optional[Mapping[str, Any]] = None
    error_detail: Optional[str] = None
    transient: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class OrgTransport(Protocol):
    """
    Opaque service boundary to a Salesforce org (CLI, API, or simulation).

    Implementations may raise TransientTransportError for failures worth
    retrying and TransportError for anything else; they may also report
    failures through CommandResponse.exit_status.
    """

    async def execute(self, request: CommandRequest) -> CommandResponse:
        ...

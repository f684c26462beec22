"""Org access: the transport boundary and read-only snapshot retrieval."""

from .fetcher import OrgSnapshotFetcher, RetryPolicy  # noqa: F401
from .memory import InMemoryOrgTransport  # noqa: F401
from .sf_cli import SfCliTransport  # noqa: F401
from .transport import CommandRequest, CommandResponse, OrgOperation, OrgTransport  # noqa: F401

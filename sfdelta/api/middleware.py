from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("sfdelta.api")

_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
_ORG_PATH = re.compile(r"^/orgs/([^/]+)/")


def org_alias_from_path(path: str) -> Optional[str]:
    m = _ORG_PATH.match(path)
    return m.group(1) if m else None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Echo or mint X-Request-ID.

    A caller-supplied id is kept only when it is a short token of safe
    characters, so it can be copied into logs and CI output as is.
    """

    def __init__(self, app, *, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable):
        rid = request.headers.get(self._header_name) or ""
        if not _REQUEST_ID.match(rid):
            rid = uuid4().hex
        request.state.request_id = rid
        response: Response = await call_next(request)
        response.headers[self._header_name] = rid
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One `api_request` log record per call, tagged with the target org."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.monotonic()
        status_code: Optional[int] = None
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            log.info(
                "api_request",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "actor_id": getattr(request.state, "actor_id", None),
                    "org_alias": org_alias_from_path(request.url.path),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )

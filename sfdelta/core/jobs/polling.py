from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sfdelta.core.errors import (
    ConfigurationError,
    PollTimeoutError,
    TransientTransportError,
    TransportError,
)
from sfdelta.core.org.transport import CommandRequest, OrgOperation, OrgTransport

from .models import JobResult, RunState, job_result_from_report

log = logging.getLogger("sfdelta.jobs")

Clock = Callable[[], float]
Sleeper = Callable[[float, Optional["CancellationToken"]], Awaitable[bool]]


class CancellationToken:
    """Cooperative cancellation for one workflow.

    Cancelling stops local polling promptly; it never cancels the remote job.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def interruptible_sleep(seconds: float, cancel: Optional[CancellationToken]) -> bool:
    """Sleep without blocking the loop; return True if cancelled meanwhile."""

    if cancel is None:
        await asyncio.sleep(seconds)
        return False
    if cancel.cancelled:
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


def _loop_clock() -> float:
    return asyncio.get_running_loop().time()


@dataclass(frozen=True, slots=True)
class PollSettings:
    """Per-operation polling bounds (seconds)."""

    interval_seconds: float = 3.0
    timeout_seconds: float = 600.0

    def __post_init__(self) -> None:
        if not self.interval_seconds > 0:
            raise ConfigurationError("poll interval must be > 0")
        if not self.timeout_seconds > 0:
            raise ConfigurationError("poll timeout must be > 0")


@dataclass(frozen=True, slots=True)
class PollResult:
    state: RunState
    job: Optional[JobResult]
    elapsed_seconds: float


class JobPoller:
    """
    Poll one submitted job until it is terminal, cancelled, or out of time.

    Contract
    - The timeout clock starts at `started_at` (submission) and is never reset.
    - Transient report failures are retried in place at the next interval.
    - Raises PollTimeoutError once elapsed >= timeout, never before.
    - Returns PollResult(ABORTED) as soon as the token is cancelled.
    """

    def __init__(
        self,
        transport: OrgTransport,
        settings: PollSettings,
        *,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._clock = clock or _loop_clock
        self._sleep = sleep or interruptible_sleep

    def now(self) -> float:
        return self._clock()

    async def wait(
        self,
        *,
        org_alias: str,
        job_id: str,
        check_only: bool,
        package_hash: Optional[str],
        started_at: float,
        cancel: Optional[CancellationToken] = None,
    ) -> PollResult:
        settings = self._settings
        request = CommandRequest(org_alias=org_alias, operation=OrgOperation.DEPLOY_REPORT, payload={"job_id": job_id})
        last: Optional[JobResult] = None

        while True:
            if cancel is not None and cancel.cancelled:
                return PollResult(RunState.ABORTED, last, self.now() - started_at)

            try:
                resp = await self._transport.execute(request)
            except TransientTransportError as e:
                log.warning("poll_transient_error", extra={"job_id": job_id, "org_alias": org_alias, "error": str(e)})
            else:
                if resp.output is not None and "status" in resp.output:
                    job = job_result_from_report(
                        resp.output,
                        check_only=check_only,
                        package_hash=package_hash,
                        org_alias=org_alias,
                        job_id=job_id,
                    )
                    if last is None or job.status != last.status:
                        log.debug("poll_status", extra={"job_id": job_id, "status": job.status.value})
                    last = job
                    if job.is_terminal:
                        return PollResult(RunState.from_job_status(job.status), job, self.now() - started_at)
                elif resp.transient:
                    log.warning(
                        "poll_transient_error",
                        extra={"job_id": job_id, "org_alias": org_alias, "error": resp.error_detail},
                    )
                else:
                    raise TransportError(
                        f"deploy report for job {job_id} on '{org_alias}' failed: {resp.error_detail}"
                    )

            elapsed = self.now() - started_at
            if elapsed >= settings.timeout_seconds:
                raise PollTimeoutError(job_id, settings.timeout_seconds, elapsed_seconds=elapsed, last_job=last)

            remaining = settings.timeout_seconds - elapsed
            if await self._sleep(min(settings.interval_seconds, remaining), cancel):
                return PollResult(RunState.ABORTED, last, self.now() - started_at)

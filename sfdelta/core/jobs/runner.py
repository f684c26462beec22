from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from sfdelta.core.errors import PollTimeoutError, SubmissionError, TransportError
from sfdelta.core.org.transport import CommandRequest, OrgTransport
from sfdelta.core.package.assembler import DeployPackage
from sfdelta.core.package.manifest_xml import (
    DEFAULT_API_VERSION,
    render_destructive_changes_xml,
    render_package_xml,
)
from sfdelta.core.runtime.context import WorkflowContext
from sfdelta.core.runtime.events import JobCompletedEvent, JobSubmittedEvent

from .models import RunOutcome, RunState
from .polling import CancellationToken, Clock, JobPoller, PollSettings, Sleeper

log = logging.getLogger("sfdelta.jobs")


def package_payload(
    package: DeployPackage,
    *,
    api_version: str = DEFAULT_API_VERSION,
    test_level: Optional[str] = None,
) -> Dict[str, Any]:
    """JSON-safe submit payload shared by validate and deploy requests."""

    payload: Dict[str, Any] = {
        "package_hash": package.content_hash,
        "package_xml": render_package_xml(package, api_version),
        "destructive_xml": render_destructive_changes_xml(package, api_version),
        "manifest": [e.to_dict() for e in package.manifest],
        "files": {k.key: list(v) for k, v in package.payload.items()},
    }
    if test_level:
        payload["test_level"] = test_level
    return payload


class JobRunner:
    """
    Submit -> poll -> terminal protocol shared by validation and deploy runs.

    Contract
    - Submission is attempted once; any rejection raises SubmissionError.
    - The poll clock starts just before submission.
    - TimedOut and Aborted are returned as RunStates, never as Failed.
    - Task cancellation is recorded as Aborted and then re-raised.
    - When a WorkflowContext is given, JobSubmitted / JobCompleted events are
      emitted into it.
    """

    operation_name: str = "abstract"
    check_only: bool = False

    def __init__(
        self,
        transport: OrgTransport,
        settings: Optional[PollSettings] = None,
        *,
        api_version: str = DEFAULT_API_VERSION,
        test_level: Optional[str] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self._transport = transport
        self._settings = settings or PollSettings()
        self._poller = JobPoller(transport, self._settings, clock=clock, sleep=sleep)
        self.api_version = api_version
        self.test_level = test_level

    @property
    def settings(self) -> PollSettings:
        return self._settings

    def _payload(self, package: DeployPackage) -> Dict[str, Any]:
        return package_payload(package, api_version=self.api_version, test_level=self.test_level)

    async def _submit(self, request: CommandRequest) -> str:
        op = request.operation.value
        try:
            resp = await self._transport.execute(request)
        except TransportError as e:
            raise SubmissionError(request.org_alias, op, str(e)) from e

        if not resp.ok:
            raise SubmissionError(request.org_alias, op, resp.error_detail or f"exit status {resp.exit_status}")

        output = resp.output or {}
        job_id = str(output.get("id") or output.get("jobId") or "").strip()
        if not job_id:
            raise SubmissionError(request.org_alias, op, "org accepted the request but returned no job id")
        return job_id

    async def _run(
        self,
        request: CommandRequest,
        package: DeployPackage,
        *,
        cancel: Optional[CancellationToken],
        context: Optional[WorkflowContext],
    ) -> RunOutcome:
        org_alias = request.org_alias
        started_at = self._poller.now()
        job_id = await self._submit(request)

        log.info(
            "job_submitted",
            extra={"operation": self.operation_name, "job_id": job_id, "org_alias": org_alias},
        )
        if context is not None:
            context.emit_event(
                JobSubmittedEvent(
                    job_id=job_id,
                    operation=self.operation_name,
                    org_alias=org_alias,
                    package_hash=package.content_hash,
                    check_only=self.check_only,
                )
            )

        try:
            result = await self._poller.wait(
                org_alias=org_alias,
                job_id=job_id,
                check_only=self.check_only,
                package_hash=package.content_hash,
                started_at=started_at,
                cancel=cancel,
            )
        except PollTimeoutError as e:
            outcome = RunOutcome(RunState.TIMED_OUT, job_id, e.last_job, e.elapsed_seconds, detail=str(e))
        except asyncio.CancelledError:
            elapsed = self._poller.now() - started_at
            self._finish(RunOutcome(RunState.ABORTED, job_id, None, elapsed, detail="task cancelled"), org_alias, context)
            raise
        else:
            detail = "cancelled" if result.state == RunState.ABORTED else None
            if result.job is not None and result.job.error_message:
                detail = result.job.error_message
            outcome = RunOutcome(result.state, job_id, result.job, result.elapsed_seconds, detail=detail)

        self._finish(outcome, org_alias, context)
        return outcome

    def _finish(self, outcome: RunOutcome, org_alias: str, context: Optional[WorkflowContext]) -> None:
        level = logging.INFO if outcome.passed else logging.WARNING
        log.log(
            level,
            "job_finished",
            extra={
                "operation": self.operation_name,
                "job_id": outcome.job_id,
                "org_alias": org_alias,
                "state": outcome.state.value,
                "elapsed_seconds": round(outcome.elapsed_seconds, 3),
            },
        )
        if context is None:
            return
        job = outcome.job
        context.emit_event(
            JobCompletedEvent(
                job_id=outcome.job_id,
                operation=self.operation_name,
                org_alias=org_alias,
                state=outcome.state.value,
                status=job.status.value if job else None,
                elapsed_seconds=round(outcome.elapsed_seconds, 3),
                failures=[r.to_dict() for r in job.failures()] if job else [],
            )
        )

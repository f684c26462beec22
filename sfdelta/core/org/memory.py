from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from sfdelta.core.errors import TransientTransportError, TransportError
from sfdelta.core.metadata.models import ComponentId, MetadataComponent

from .transport import CommandRequest, CommandResponse, OrgOperation


@dataclass
class _SimulatedJob:
    job_id: str
    org_alias: str
    check_only: bool
    upserts: Tuple[Tuple[ComponentId, Optional[str]], ...]
    deletions: Tuple[ComponentId, ...]
    polls_remaining: int
    status: str = "Pending"


@dataclass
class _InjectedFailure:
    count: int
    transient: bool
    detail: str
    raise_error: bool


class InMemoryOrgTransport:
    """
    Simulated org for dry runs and tests.

    Contract
    - retrieve_manifest returns the simulated component state.
    - deploy_validate / deploy_start / deploy_quick accept a manifest payload
      and answer with a job id; deploy_report walks the job through
      Pending -> InProgress -> terminal after `polls_until_done` reports.
    - Only a successful non-check-only job changes the component state.
    - Every request is appended to `calls` for inspection.
    """

    def __init__(
        self,
        components: Iterable[MetadataComponent] = (),
        *,
        polls_until_done: int = 1,
        never_finish: bool = False,
    ) -> None:
        self._state: Dict[str, Dict[ComponentId, MetadataComponent]] = {}
        self._seed = {c.identity: c for c in components}
        self.polls_until_done = max(0, int(polls_until_done))
        self.never_finish = never_finish
        self.failures: Dict[ComponentId, str] = {}
        self.warnings: Dict[ComponentId, str] = {}
        self.unreachable: Set[str] = set()
        self.calls: List[CommandRequest] = []
        self._jobs: Dict[str, _SimulatedJob] = {}
        self._ids = itertools.count(1)
        self._injected: Dict[OrgOperation, _InjectedFailure] = {}

    def components(self, org_alias: str) -> Dict[ComponentId, MetadataComponent]:
        return self._state.setdefault(org_alias, dict(self._seed))

    def fail_next(
        self,
        operation: OrgOperation,
        count: int = 1,
        *,
        transient: bool = True,
        detail: str = "simulated failure",
        raise_error: bool = False,
    ) -> None:
        """Make the next `count` requests for `operation` fail."""

        self._injected[OrgOperation(operation)] = _InjectedFailure(count, transient, detail, raise_error)

    def job(self, job_id: str) -> Mapping[str, Any]:
        j = self._jobs[job_id]
        return {"id": j.job_id, "status": j.status, "checkOnly": j.check_only}

    async def execute(self, request: CommandRequest) -> CommandResponse:
        self.calls.append(request)
        await asyncio.sleep(0)

        if request.org_alias in self.unreachable:
            raise TransientTransportError(f"org '{request.org_alias}' unreachable")

        injected = self._injected.get(request.operation)
        if injected is not None and injected.count > 0:
            injected.count -= 1
            if injected.raise_error:
                if injected.transient:
                    raise TransientTransportError(injected.detail)
                raise TransportError(injected.detail)
            return CommandResponse(exit_status=1, error_detail=injected.detail, transient=injected.transient)

        op = request.operation
        if op == OrgOperation.RETRIEVE_MANIFEST:
            return self._retrieve(request)
        if op in (OrgOperation.DEPLOY_VALIDATE, OrgOperation.DEPLOY_START):
            return self._submit(request, check_only=op == OrgOperation.DEPLOY_VALIDATE)
        if op == OrgOperation.DEPLOY_QUICK:
            return self._quick(request)
        if op == OrgOperation.DEPLOY_REPORT:
            return self._report(request)
        raise TransportError(f"unsupported operation: {op}")

    def _retrieve(self, request: CommandRequest) -> CommandResponse:
        wanted = request.payload.get("metadata_types")
        types = set(wanted) if wanted else None
        rows = [
            {
                "type": c.type,
                "fullName": c.api_name,
                "contentHash": c.content_hash,
                "lastModifiedDate": c.last_modified.isoformat() if c.last_modified else None,
            }
            for ident, c in sorted(self.components(request.org_alias).items())
            if types is None or ident.type in types
        ]
        return CommandResponse(exit_status=0, output={"components": rows})

    def _submit(self, request: CommandRequest, *, check_only: bool) -> CommandResponse:
        manifest = request.payload.get("manifest") or []
        if not manifest:
            return CommandResponse(exit_status=1, error_detail="No source-backed components present in the package")

        upserts: List[Tuple[ComponentId, Optional[str]]] = []
        deletions: List[ComponentId] = []
        for row in manifest:
            ident = ComponentId(str(row["type"]), str(row["api_name"]))
            if row.get("action") == "delete":
                deletions.append(ident)
            else:
                upserts.append((ident, row.get("content_hash")))

        return self._new_job(request.org_alias, check_only, tuple(upserts), tuple(deletions))

    def _quick(self, request: CommandRequest) -> CommandResponse:
        validation_id = str(request.payload.get("validation_job_id") or "")
        source = self._jobs.get(validation_id)
        if source is None or not source.check_only or source.status not in ("Succeeded", "SucceededPartial"):
            return CommandResponse(exit_status=1, error_detail=f"no deployable validation {validation_id!r}")
        return self._new_job(request.org_alias, False, source.upserts, source.deletions)

    def _new_job(
        self,
        org_alias: str,
        check_only: bool,
        upserts: Tuple[Tuple[ComponentId, Optional[str]], ...],
        deletions: Tuple[ComponentId, ...],
    ) -> CommandResponse:
        job_id = f"0Af{next(self._ids):012d}"
        self._jobs[job_id] = _SimulatedJob(
            job_id=job_id,
            org_alias=org_alias,
            check_only=check_only,
            upserts=upserts,
            deletions=deletions,
            polls_remaining=self.polls_until_done,
        )
        return CommandResponse(exit_status=0, output={"id": job_id, "status": "Pending", "checkOnly": check_only})

    def _report(self, request: CommandRequest) -> CommandResponse:
        job_id = str(request.payload.get("job_id") or "")
        job = self._jobs.get(job_id)
        if job is None:
            return CommandResponse(exit_status=1, error_detail=f"unknown job {job_id!r}")

        if job.status in ("Pending", "InProgress"):
            if self.never_finish or job.polls_remaining > 0:
                job.polls_remaining -= 1
                job.status = "InProgress"
            else:
                self._finish(job)

        return CommandResponse(exit_status=0, output=self._report_body(job))

    def _finish(self, job: _SimulatedJob) -> None:
        touched = [ident for ident, _h in job.upserts] + list(job.deletions)
        failed = [i for i in touched if i in self.failures]
        if failed:
            job.status = "Failed"
            return

        job.status = "Succeeded"
        if job.check_only:
            return

        state = self.components(job.org_alias)
        for ident, content_hash in job.upserts:
            state[ident] = MetadataComponent(ident.type, ident.api_name, content_hash or "")
        for ident in job.deletions:
            state.pop(ident, None)

    def _report_body(self, job: _SimulatedJob) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "id": job.job_id,
            "status": job.status,
            "done": job.status not in ("Pending", "InProgress"),
            "checkOnly": job.check_only,
        }
        if not body["done"]:
            return body

        successes: List[Dict[str, Any]] = []
        failures: List[Dict[str, Any]] = []
        for ident in [i for i, _h in job.upserts] + list(job.deletions):
            row = {"componentType": ident.type, "fullName": ident.api_name}
            if ident in self.failures:
                failures.append({**row, "problem": self.failures[ident], "problemType": "Error"})
                continue
            successes.append(row)
            if ident in self.warnings:
                failures.append({**row, "problem": self.warnings[ident], "problemType": "Warning"})

        body["details"] = {"componentSuccesses": successes, "componentFailures": failures}
        if failures and job.status == "Failed":
            body["errorMessage"] = f"{sum(1 for f in failures if f['problemType'] == 'Error')} component failure(s)"
        return body


from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sfdelta.core.errors import MetadataFormatError
from sfdelta.core.metadata.models import ComponentId


class JobStatus(str, Enum):
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    SUCCEEDED_WITH_WARNINGS = "SucceededWithWarnings"
    FAILED = "Failed"
    CANCELED = "Canceled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_success(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.SUCCEEDED_WITH_WARNINGS)


_TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.SUCCEEDED_WITH_WARNINGS, JobStatus.FAILED, JobStatus.CANCELED}
)

# Remote status names (deploy report) -> JobStatus.
_REMOTE_STATUS: Mapping[str, JobStatus] = {
    "Pending": JobStatus.QUEUED,
    "Queued": JobStatus.QUEUED,
    "InProgress": JobStatus.IN_PROGRESS,
    "Canceling": JobStatus.IN_PROGRESS,
    "Succeeded": JobStatus.SUCCEEDED,
    "SucceededPartial": JobStatus.SUCCEEDED_WITH_WARNINGS,
    "SucceededWithWarnings": JobStatus.SUCCEEDED_WITH_WARNINGS,
    "Failed": JobStatus.FAILED,
    "Canceled": JobStatus.CANCELED,
}


class ComponentOutcome(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"


class RunState(str, Enum):
    SUBMITTED = "Submitted"
    POLLING = "Polling"
    PASSED = "Passed"
    PASSED_WITH_WARNINGS = "PassedWithWarnings"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunState.SUBMITTED, RunState.POLLING)

    @property
    def passed(self) -> bool:
        return self in (RunState.PASSED, RunState.PASSED_WITH_WARNINGS)

    @classmethod
    def from_job_status(cls, status: JobStatus) -> "RunState":
        if status == JobStatus.SUCCEEDED:
            return cls.PASSED
        if status == JobStatus.SUCCEEDED_WITH_WARNINGS:
            return cls.PASSED_WITH_WARNINGS
        if status == JobStatus.FAILED:
            return cls.FAILED
        if status == JobStatus.CANCELED:
            return cls.ABORTED
        return cls.POLLING


@dataclass(frozen=True, slots=True)
class ComponentResult:
    component_id: ComponentId
    outcome: ComponentOutcome
    error_messages: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component_id.key,
            "outcome": self.outcome.value,
            "error_messages": list(self.error_messages),
        }


@dataclass(frozen=True, slots=True)
class JobResult:
    """
    One observation of a submitted validation or deploy job.

    The poll loop that owns the job produces a fresh JobResult per poll; once
    `status` is terminal no newer observation is produced.
    """

    job_id: str
    status: JobStatus
    component_results: Tuple[ComponentResult, ...] = ()
    check_only: bool = False
    package_hash: Optional[str] = None
    org_alias: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def failures(self) -> Tuple[ComponentResult, ...]:
        return tuple(r for r in self.component_results if r.outcome == ComponentOutcome.FAILURE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "check_only": self.check_only,
            "package_hash": self.package_hash,
            "org_alias": self.org_alias,
            "error_message": self.error_message,
            "component_results": [r.to_dict() for r in self.component_results],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JobResult":
        try:
            results = tuple(
                ComponentResult(
                    component_id=ComponentId.parse(str(r["component"])),
                    outcome=ComponentOutcome(str(r["outcome"])),
                    error_messages=tuple(str(m) for m in (r.get("error_messages") or [])),
                )
                for r in (data.get("component_results") or [])
            )
            return cls(
                job_id=str(data["job_id"]),
                status=JobStatus(str(data["status"])),
                component_results=results,
                check_only=bool(data.get("check_only", False)),
                package_hash=data.get("package_hash"),
                org_alias=data.get("org_alias"),
                error_message=data.get("error_message"),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise MetadataFormatError(f"invalid job result record: {e}") from e


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """Terminal result of a validation or deploy run.

    TimedOut and Aborted are inconclusive, never a failure: `job` holds the
    last observation (or None if nothing was observed).
    """

    state: RunState
    job_id: str
    job: Optional[JobResult]
    elapsed_seconds: float = 0.0
    detail: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.state.passed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "job_id": self.job_id,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "detail": self.detail,
            "job": self.job.to_dict() if self.job else None,
        }


def _as_list(value: Any) -> List[Mapping[str, Any]]:
    if value is None:
        return []
    if isinstance(value, Mapping):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, Mapping)]
    return []


def _component_key(entry: Mapping[str, Any]) -> Optional[ComponentId]:
    type_name = str(entry.get("componentType") or "").strip()
    full_name = str(entry.get("fullName") or "").strip()
    if not type_name or not full_name:
        # package.xml / destructiveChanges rows carry no component type.
        return None
    return ComponentId(type_name, full_name)


def _collect_component_results(details: Mapping[str, Any]) -> Tuple[List[ComponentResult], bool]:
    by_id: Dict[ComponentId, ComponentResult] = {}
    has_warnings = False

    for entry in _as_list(details.get("componentSuccesses")):
        ident = _component_key(entry)
        if ident is not None:
            by_id[ident] = ComponentResult(ident, ComponentOutcome.SUCCESS)

    for entry in _as_list(details.get("componentFailures")):
        ident = _component_key(entry)
        if ident is None:
            continue
        problem = str(entry.get("problem") or "").strip()
        is_warning = str(entry.get("problemType") or "Error").lower() == "warning"
        outcome = ComponentOutcome.WARNING if is_warning else ComponentOutcome.FAILURE
        has_warnings = has_warnings or is_warning

        prior = by_id.get(ident)
        messages: Iterable[str] = prior.error_messages if prior else ()
        if prior is not None and prior.outcome == ComponentOutcome.FAILURE:
            outcome = ComponentOutcome.FAILURE
        by_id[ident] = ComponentResult(
            ident, outcome, tuple(messages) + ((problem,) if problem else ())
        )

    return [by_id[k] for k in sorted(by_id)], has_warnings


def job_result_from_report(
    output: Mapping[str, Any],
    *,
    check_only: bool,
    package_hash: Optional[str],
    org_alias: Optional[str],
    job_id: Optional[str] = None,
) -> JobResult:
    """Normalize a deploy report payload into a JobResult.

    Expected shape (as printed by `sf project deploy report --json`):
    {"id", "status", "errorMessage"?, "details": {"componentSuccesses",
    "componentFailures": [{"componentType", "fullName", "problem",
    "problemType"}]}}
    """

    raw_status = output.get("status")
    status = _REMOTE_STATUS.get(str(raw_status)) if raw_status is not None else None
    if status is None:
        raise MetadataFormatError(f"unknown job status in report: {raw_status!r}")

    rid = str(output.get("id") or job_id or "")
    if not rid:
        raise MetadataFormatError("job report without id")

    details = output.get("details")
    results, has_warnings = _collect_component_results(details if isinstance(details, Mapping) else {})
    if status == JobStatus.SUCCEEDED and has_warnings:
        status = JobStatus.SUCCEEDED_WITH_WARNINGS

    error_message = output.get("errorMessage")
    return JobResult(
        job_id=rid,
        status=status,
        component_results=tuple(results),
        check_only=check_only,
        package_hash=package_hash,
        org_alias=org_alias,
        error_message=str(error_message) if error_message else None,
    )

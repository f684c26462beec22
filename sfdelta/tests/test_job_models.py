from __future__ import annotations

import pytest

from sfdelta.core.errors import MetadataFormatError
from sfdelta.core.jobs.models import (
    ComponentOutcome,
    JobResult,
    JobStatus,
    RunState,
    job_result_from_report,
)
from sfdelta.core.metadata.models import ComponentId


def _report(status, successes=(), failures=(), **extra):
    return {
        "id": "0Af000000000042",
        "status": status,
        "details": {"componentSuccesses": list(successes), "componentFailures": list(failures)},
        **extra,
    }


def test_succeeded_report_parses_component_results():
    out = _report("Succeeded", successes=[{"componentType": "ApexClass", "fullName": "Foo"}])

    job = job_result_from_report(out, check_only=True, package_hash="p1", org_alias="dev")

    assert job.status == JobStatus.SUCCEEDED
    assert job.is_terminal
    assert job.check_only and job.package_hash == "p1" and job.org_alias == "dev"
    assert job.component_results[0].component_id == ComponentId("ApexClass", "Foo")
    assert job.failures() == ()


def test_warnings_upgrade_success_to_success_with_warnings():
    row = {"componentType": "ApexClass", "fullName": "Foo"}
    out = _report(
        "Succeeded",
        successes=[row],
        failures=[{**row, "problem": "deprecated API", "problemType": "Warning"}],
    )

    job = job_result_from_report(out, check_only=True, package_hash=None, org_alias=None)

    assert job.status == JobStatus.SUCCEEDED_WITH_WARNINGS
    assert job.component_results[0].outcome == ComponentOutcome.WARNING
    assert RunState.from_job_status(job.status) == RunState.PASSED_WITH_WARNINGS


def test_failed_report_lists_failures_with_messages():
    out = _report(
        "Failed",
        failures=[
            {"componentType": "ApexClass", "fullName": "Foo", "problem": "Unexpected token", "problemType": "Error"},
            {"fullName": "package.xml", "problem": "ignored row"},
        ],
        errorMessage="1 component failure(s)",
    )

    job = job_result_from_report(out, check_only=False, package_hash=None, org_alias="dev")

    assert job.status == JobStatus.FAILED
    assert [f.component_id.key for f in job.failures()] == ["ApexClass:Foo"]
    assert job.failures()[0].error_messages == ("Unexpected token",)
    assert job.error_message == "1 component failure(s)"


def test_in_progress_is_not_terminal():
    job = job_result_from_report({"id": "0Af1", "status": "InProgress"}, check_only=True, package_hash=None, org_alias=None)

    assert not job.is_terminal
    assert RunState.from_job_status(job.status) == RunState.POLLING


def test_unknown_status_is_rejected():
    with pytest.raises(MetadataFormatError):
        job_result_from_report({"id": "0Af1", "status": "Exploded"}, check_only=True, package_hash=None, org_alias=None)


def test_canceled_maps_to_aborted_and_failed_is_not_passed():
    assert RunState.from_job_status(JobStatus.CANCELED) == RunState.ABORTED
    assert not RunState.FAILED.passed
    assert RunState.TIMED_OUT.is_terminal and not RunState.TIMED_OUT.passed


def test_job_result_dict_form_survives_storage():
    out = _report(
        "Failed",
        failures=[{"componentType": "Flow", "fullName": "Intake", "problem": "bad", "problemType": "Error"}],
    )
    job = job_result_from_report(out, check_only=True, package_hash="p", org_alias="dev")

    assert JobResult.from_dict(job.to_dict()) == job

    with pytest.raises(MetadataFormatError):
        JobResult.from_dict({"status": "Failed"})

from __future__ import annotations

import asyncio

import pytest

from sfdelta.core.config import ReferenceSource, WorkflowConfig
from sfdelta.core.errors import OrgUnavailableError
from sfdelta.core.jobs.models import RunState
from sfdelta.core.jobs.receipts import generate_ed25519_keypair
from sfdelta.core.metadata.models import ComponentId
from sfdelta.core.org.fetcher import RetryPolicy
from sfdelta.core.org.memory import InMemoryOrgTransport
from sfdelta.core.runtime.events import JobCompletedEvent, JobSubmittedEvent, ReferenceUpdatedEvent
from sfdelta.core.runtime.storage.sqlite_store import SQLiteWorkflowStore
from sfdelta.core.workflow import DeltaWorkflow

FOO = ComponentId("ApexClass", "Foo")


async def _no_sleep(seconds):
    return None


def _workflow(project, tmp_path, transport, **cfg):
    config = WorkflowConfig(project_root=project.root, poll_interval_seconds=0.01, poll_timeout_seconds=5, **cfg)
    store = SQLiteWorkflowStore(tmp_path / "sfdelta.db")
    return DeltaWorkflow(config, transport, store, retry_sleep=_no_sleep), store


@pytest.mark.asyncio
async def test_first_run_deploys_everything_and_records_reference(project, tmp_path):
    project.add_class("Foo")
    project.add_object("Account")
    project.add_field("Account", "Rating__c")
    org = InMemoryOrgTransport()
    wf, store = _workflow(project, tmp_path, org)

    result = await wf.run("dev")

    assert result.validation.state == RunState.PASSED
    assert result.deployment.state == RunState.PASSED
    manifest = [e.component_id.type for e in result.plan.package.manifest]
    assert manifest.index("CustomObject") < manifest.index("CustomField") < manifest.index("ApexClass")
    assert store.latest_deployed_snapshot("dev").snapshot_hash == result.plan.local.snapshot_hash
    assert FOO in org.components("dev")


@pytest.mark.asyncio
async def test_second_run_only_ships_the_change(project, tmp_path):
    project.add_class("Foo")
    project.add_class("Bar")
    org = InMemoryOrgTransport()
    wf, store = _workflow(project, tmp_path, org)
    await wf.run("dev")

    unchanged = await wf.run("dev")
    assert unchanged.plan.package.is_empty
    assert unchanged.validation is None

    project.add_class("Foo", "public class Foo { Integer answer = 42; }\n")
    project.remove("classes/Bar.cls")
    project.remove("classes/Bar.cls-meta.xml")
    result = await wf.run("dev")

    cs = result.plan.change_set
    assert [new.identity for _old, new in cs.modified] == [FOO]
    assert cs.deleted == (ComponentId("ApexClass", "Bar"),)
    assert result.deployment.passed
    assert ComponentId("ApexClass", "Bar") not in org.components("dev")
    assert len(store.list_deployed_snapshots("dev")) == 2


@pytest.mark.asyncio
async def test_failed_validation_stops_before_deploy(project, tmp_path):
    project.add_class("Foo")
    org = InMemoryOrgTransport()
    org.failures[FOO] = "Invalid type: Bar"
    wf, store = _workflow(project, tmp_path, org)

    result = await wf.run("dev")

    assert result.validation.state == RunState.FAILED
    assert result.deployment is None
    assert store.latest_deployed_snapshot("dev") is None


@pytest.mark.asyncio
async def test_validate_only_run_does_not_touch_reference(project, tmp_path):
    project.add_class("Foo")
    wf, store = _workflow(project, tmp_path, InMemoryOrgTransport())

    result = await wf.run("dev", deploy=False)

    assert result.validation.passed
    assert result.deployment is None
    assert store.latest_deployed_snapshot("dev") is None


@pytest.mark.asyncio
async def test_workflow_ledger_is_persisted_and_verifies(project, tmp_path):
    project.add_class("Foo")
    wf, store = _workflow(project, tmp_path, InMemoryOrgTransport())

    result = await wf.run("dev", quick=True)

    ctx = store.load_context(result.context_id)
    assert ctx.verify_integrity()
    assert [e.event_type for e in ctx.get_events()] == [
        "SnapshotCapturedEvent",
        "SnapshotCapturedEvent",
        "ChangeSetComputedEvent",
        "PackageAssembledEvent",
        "JobSubmittedEvent",
        "JobCompletedEvent",
        "JobSubmittedEvent",
        "JobCompletedEvent",
        "ReferenceUpdatedEvent",
    ]
    assert result.to_dict()["integrity_ok"] is True


@pytest.mark.asyncio
async def test_concurrent_runs_against_two_orgs_stay_independent(project, tmp_path):
    project.add_class("Foo")
    org = InMemoryOrgTransport(polls_until_done=3)
    wf, store = _workflow(project, tmp_path, org)

    dev, uat = await asyncio.gather(wf.run("dev"), wf.run("uat"))

    assert dev.deployment.passed and uat.deployment.passed
    assert dev.context_id != uat.context_id
    for alias, result in (("dev", dev), ("uat", uat)):
        assert FOO in org.components(alias)
        assert store.latest_deployed_snapshot(alias).org_alias == alias
        assert len(store.list_deployed_snapshots(alias)) == 1

        ctx = store.load_context(result.context_id)
        assert ctx.verify_integrity()
        assert ctx.org_alias == alias
        scoped = [
            *ctx.events_of(JobSubmittedEvent),
            *ctx.events_of(JobCompletedEvent),
            *ctx.events_of(ReferenceUpdatedEvent),
        ]
        assert scoped and {e.org_alias for e in scoped} == {alias}

    job_ids = {r.deployment.job_id for r in (dev, uat)}
    assert len(job_ids) == 2


@pytest.mark.asyncio
async def test_org_current_reference_diffs_against_live_org(project, tmp_path):
    project.add_class("Foo")
    org = InMemoryOrgTransport()
    wf, _ = _workflow(project, tmp_path, org, reference_snapshot_source=ReferenceSource.ORG_CURRENT)

    await wf.run("dev")
    again = await wf.plan("dev")

    assert again.reference.org_alias == "dev"
    assert again.change_set.is_empty


@pytest.mark.asyncio
async def test_unreachable_org_fails_with_its_alias(project, tmp_path):
    project.add_class("Foo")
    org = InMemoryOrgTransport()
    org.unreachable.add("uat")
    wf, _ = _workflow(
        project,
        tmp_path,
        org,
        reference_snapshot_source=ReferenceSource.ORG_CURRENT,
        retry=RetryPolicy(max_attempts=2),
    )

    with pytest.raises(OrgUnavailableError) as ei:
        await wf.plan("uat")
    assert ei.value.org_alias == "uat"


@pytest.mark.asyncio
async def test_receipts_are_issued_and_enforced_when_keys_are_configured(project, tmp_path):
    project.add_class("Foo")
    keys = generate_ed25519_keypair(tmp_path / "keys")
    wf, _ = _workflow(
        project,
        tmp_path,
        InMemoryOrgTransport(),
        receipt_private_key=keys.private_key_path,
        receipt_public_key=keys.public_key_path,
    )

    result = await wf.run("dev")

    assert result.receipt is not None
    assert result.receipt.package_hash == result.plan.package.content_hash
    assert result.deployment.passed

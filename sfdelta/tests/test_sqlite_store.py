from __future__ import annotations

import sqlite3

import pytest

from sfdelta.core.errors import MetadataFormatError
from sfdelta.core.metadata.models import MetadataComponent, Snapshot, SnapshotSource
from sfdelta.core.runtime.context import WorkflowContext
from sfdelta.core.runtime.events import PackageAssembledEvent, SnapshotCapturedEvent
from sfdelta.core.runtime.storage.sqlite_store import SQLiteWorkflowStore


def _ctx(cid, org="dev", op="workflow:plan"):
    ctx = WorkflowContext(context_id=cid, org_alias=org, operation_name=op)
    ctx.emit_event(SnapshotCapturedEvent(source="local", snapshot_hash="s1", component_count=2))
    ctx.emit_event(PackageAssembledEvent(package_hash="p1", upserts=1, deletions=0, manifest=["upsert:ApexClass:Foo"]))
    return ctx


def _snapshot(*hashes):
    return Snapshot.create(
        SnapshotSource.LOCAL,
        [MetadataComponent("ApexClass", f"C{i}", h, files=(f"classes/C{i}.cls",)) for i, h in enumerate(hashes)],
    )


def test_save_and_load_context_round_trip(tmp_path):
    store = SQLiteWorkflowStore(tmp_path / "sfdelta.db")
    ctx = _ctx("wf-a")

    store.save_context(ctx)
    loaded = store.load_context("wf-a")

    assert loaded.org_alias == "dev"
    assert [e.event_type for e in loaded.get_events()] == ["SnapshotCapturedEvent", "PackageAssembledEvent"]
    assert loaded.head_hash == ctx.head_hash
    assert loaded.verify_integrity()


def test_overwrite_replaces_events(tmp_path):
    store = SQLiteWorkflowStore(tmp_path / "sfdelta.db")
    ctx = _ctx("wf-b")
    store.save_context(ctx)

    ctx.emit_event(SnapshotCapturedEvent(source="org", snapshot_hash="s2", component_count=1, org_alias="dev"))
    with pytest.raises(sqlite3.IntegrityError):
        store.save_context(ctx)
    store.save_context(ctx, overwrite=True)

    assert len(store.load_context("wf-b").get_events()) == 3


def test_list_contexts_filters_and_counts(tmp_path):
    store = SQLiteWorkflowStore(tmp_path / "sfdelta.db")
    store.save_context(_ctx("wf-1", org="dev"))
    store.save_context(_ctx("wf-2", org="uat", op="workflow:run"))

    rows = store.list_contexts(org_alias="uat")

    assert [r["context_id"] for r in rows] == ["wf-2"]
    assert rows[0]["event_count"] == 2
    assert {r["context_id"] for r in store.list_contexts()} == {"wf-1", "wf-2"}
    assert [r["context_id"] for r in store.list_contexts(operation_name="workflow:plan")] == ["wf-1"]


def test_unknown_context_raises_key_error(tmp_path):
    with pytest.raises(KeyError):
        SQLiteWorkflowStore(tmp_path / "x.db").load_context("nope")


def test_tampered_event_fails_integrity_on_load(tmp_path):
    db = tmp_path / "sfdelta.db"
    store = SQLiteWorkflowStore(db)
    store.save_context(_ctx("wf-t"))

    with sqlite3.connect(db) as con:
        con.execute(
            "UPDATE events SET payload_json = replace(payload_json, '\"p1\"', '\"p9\"') WHERE context_id = 'wf-t'"
        )

    with pytest.raises(ValueError):
        store.load_context("wf-t")


def test_latest_deployed_snapshot_is_newest_per_org(tmp_path):
    store = SQLiteWorkflowStore(tmp_path / "sfdelta.db")
    assert store.latest_deployed_snapshot("dev") is None

    first, second = _snapshot("a"), _snapshot("a", "b")
    store.save_deployed_snapshot("dev", first, deploy_job_id="0Af1")
    store.save_deployed_snapshot("dev", second, deploy_job_id="0Af2")
    store.save_deployed_snapshot("uat", first)

    latest = store.latest_deployed_snapshot("dev")

    assert latest.source == SnapshotSource.PREVIOUS_DEPLOY
    assert latest.snapshot_hash == second.snapshot_hash
    assert latest.org_alias == "dev"
    assert [r["deploy_job_id"] for r in store.list_deployed_snapshots("dev")] == ["0Af2", "0Af1"]
    assert store.latest_deployed_snapshot("uat").snapshot_hash == first.snapshot_hash


def test_corrupted_deployed_snapshot_is_rejected(tmp_path):
    db = tmp_path / "sfdelta.db"
    store = SQLiteWorkflowStore(db)
    store.save_deployed_snapshot("dev", _snapshot("a"))

    with sqlite3.connect(db) as con:
        con.execute("UPDATE deployed_snapshots SET snapshot_hash = 'forged'")

    with pytest.raises(MetadataFormatError):
        store.latest_deployed_snapshot("dev")

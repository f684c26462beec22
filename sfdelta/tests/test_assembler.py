from __future__ import annotations

import pytest

from sfdelta.core.delta.dependency_order import DependencyOrder
from sfdelta.core.delta.engine import ChangeSet, diff
from sfdelta.core.errors import MetadataFormatError
from sfdelta.core.metadata.models import ComponentId, MetadataComponent, Snapshot, SnapshotSource
from sfdelta.core.package.assembler import ManifestAction, assemble

FIELD = ComponentId("CustomField", "Account.Rating__c")
RULE = ComponentId("ValidationRule", "Account.Rating_Required")
CLASS = ComponentId("ApexClass", "RatingService")


def _comp(ident, h):
    return MetadataComponent(ident.type, ident.api_name, h)


def _files(*idents):
    return {i: (f"force-app/{i.type}/{i.api_name}",) for i in idents}


def test_upserts_follow_dependency_order():
    cs = ChangeSet(added=(_comp(RULE, "r1"), _comp(CLASS, "c1"), _comp(FIELD, "f1")))

    pkg = assemble(cs, _files(FIELD, RULE, CLASS))

    assert [e.component_id for e in pkg.manifest] == [FIELD, RULE, CLASS]
    assert pkg.position(FIELD) < pkg.position(RULE)
    assert pkg.payload[FIELD] == ("force-app/CustomField/Account.Rating__c",)


def test_deletions_remove_dependents_first_and_come_after_upserts():
    cs = ChangeSet(added=(_comp(CLASS, "c1"),), deleted=(FIELD, RULE))

    pkg = assemble(cs, _files(CLASS))

    assert [(e.component_id, e.action) for e in pkg.manifest] == [
        (CLASS, ManifestAction.UPSERT),
        (RULE, ManifestAction.DELETE),
        (FIELD, ManifestAction.DELETE),
    ]
    assert FIELD not in pkg.payload
    assert [e.component_id for e in pkg.deletions()] == [RULE, FIELD]


def test_unknown_types_go_last_on_upsert_and_first_on_delete():
    odd = ComponentId("BrandNewType", "X")
    cs = ChangeSet(added=(_comp(odd, "x1"), _comp(FIELD, "f1")), deleted=(RULE, ComponentId("BrandNewType", "Y")))

    pkg = assemble(cs, _files(odd, FIELD))

    assert [e.component_id for e in pkg.upserts()] == [FIELD, odd]
    assert [e.component_id.type for e in pkg.deletions()] == ["BrandNewType", "ValidationRule"]


def test_ties_within_a_type_break_by_identity():
    a = ComponentId("ApexClass", "A")
    b = ComponentId("ApexClass", "B")
    cs = ChangeSet(added=(_comp(b, "1"), _comp(a, "2")))

    pkg = assemble(cs, _files(a, b), order=DependencyOrder.from_mapping({"ApexClass": []}))

    assert [e.component_id for e in pkg.manifest] == [a, b]


def test_missing_local_files_is_an_error():
    cs = ChangeSet(added=(_comp(CLASS, "c1"),))

    with pytest.raises(MetadataFormatError):
        assemble(cs, {})


def test_content_hash_tracks_component_content():
    ref = Snapshot.create(SnapshotSource.PREVIOUS_DEPLOY, [_comp(CLASS, "c0")])
    v1 = Snapshot.create(SnapshotSource.LOCAL, [_comp(CLASS, "c1")])
    v2 = Snapshot.create(SnapshotSource.LOCAL, [_comp(CLASS, "c2")])

    files = _files(CLASS)
    p1 = assemble(diff(ref, v1), files)
    p1_again = assemble(diff(ref, v1), files)
    p2 = assemble(diff(ref, v2), files)

    assert p1.content_hash == p1_again.content_hash
    assert p1.content_hash != p2.content_hash


def test_empty_change_set_gives_empty_package():
    pkg = assemble(ChangeSet(), {})

    assert pkg.is_empty
    assert pkg.to_dict()["manifest"] == []

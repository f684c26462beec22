from __future__ import annotations

import os

import pytest

from sfdelta.core.errors import InventoryReadError, MetadataFormatError
from sfdelta.core.metadata.inventory import InventoryReader, is_ignored, scan_project
from sfdelta.core.metadata.models import ComponentId, SnapshotSource


def test_scan_groups_class_with_its_meta_file(project):
    project.add_class("Foo")

    snap = InventoryReader(project.root).scan()

    assert snap.source == SnapshotSource.LOCAL
    comp = snap.get(ComponentId("ApexClass", "Foo"))
    assert comp is not None
    assert comp.files == (
        "force-app/main/default/classes/Foo.cls",
        "force-app/main/default/classes/Foo.cls-meta.xml",
    )
    assert len(comp.content_hash) == 64


def test_child_types_are_named_after_their_object(project):
    project.add_object("Account")
    project.add_field("Account", "Rating__c")
    project.add_validation_rule("Account", "Rating_Required")

    snap = scan_project(project.root)

    assert list(snap) == [
        ComponentId("CustomField", "Account.Rating__c"),
        ComponentId("CustomObject", "Account"),
        ComponentId("ValidationRule", "Account.Rating_Required"),
    ]


def test_lwc_bundle_is_one_component(project):
    project.add_lwc("ratingCard")
    project.write("lwc/ratingCard/__tests__/ratingCard.test.js", "it('works', () => {});\n")

    snap = scan_project(project.root)

    comp = snap.get(ComponentId("LightningComponentBundle", "ratingCard"))
    assert comp is not None
    assert len(comp.files) == 3
    assert not any("__tests__" in f for f in comp.files)


def test_rescan_without_changes_is_identical(project):
    project.add_class("Foo")
    project.add_lwc("card")

    a = scan_project(project.root)
    b = scan_project(project.root)

    assert a.snapshot_hash == b.snapshot_hash
    assert list(a) == list(b)


def test_content_hash_ignores_mtime_and_line_endings(project):
    project.add_class("Foo", "public class Foo {\n}\n")
    before = scan_project(project.root).get(ComponentId("ApexClass", "Foo"))

    cls_file = project.default / "classes" / "Foo.cls"
    cls_file.write_bytes(b"public class Foo {\r\n}\r\n")
    os.utime(cls_file, (1_000_000, 1_000_000))
    after = scan_project(project.root).get(ComponentId("ApexClass", "Foo"))

    assert before.content_hash == after.content_hash


def test_content_change_changes_hash(project):
    project.add_class("Foo", "public class Foo {}\n")
    before = scan_project(project.root)
    project.add_class("Foo", "public class Foo { Integer x; }\n")
    after = scan_project(project.root)

    assert before.snapshot_hash != after.snapshot_hash


def test_forceignore_excludes_matching_files(project):
    project.add_class("Foo")
    project.add_class("IgnoredHelper")
    (project.root / ".forceignore").write_text("# local only\n**/IgnoredHelper*\n", encoding="utf-8")

    snap = scan_project(project.root)

    assert ComponentId("ApexClass", "Foo") in snap
    assert ComponentId("ApexClass", "IgnoredHelper") not in snap


def test_class_without_meta_file_is_rejected(project):
    project.write("classes/Orphan.cls", "public class Orphan {}\n")

    with pytest.raises(MetadataFormatError) as ei:
        scan_project(project.root)
    assert "Orphan.cls" in str(ei.value)


def test_malformed_meta_xml_is_rejected(project):
    project.write("classes/Bad.cls", "public class Bad {}\n")
    project.write("classes/Bad.cls-meta.xml", "<ApexClass><unclosed></ApexClass>")

    with pytest.raises(MetadataFormatError):
        scan_project(project.root)


def test_field_outside_object_folder_is_rejected(project):
    project.write("fields/Loose__c.field-meta.xml", "<CustomField/>")

    with pytest.raises(MetadataFormatError):
        scan_project(project.root)


def test_missing_root_raises_inventory_read_error(tmp_path):
    with pytest.raises(InventoryReadError):
        InventoryReader(tmp_path / "does-not-exist").scan()


def test_missing_package_directory_raises(tmp_path):
    root = tmp_path / "p"
    root.mkdir()
    (root / "sfdx-project.json").write_text('{"packageDirectories": [{"path": "gone"}]}', encoding="utf-8")

    with pytest.raises(InventoryReadError):
        scan_project(root)


def test_is_ignored_patterns():
    assert is_ignored("force-app/main/default/lwc/a/__tests__/a.test.js", ["**/__tests__/**"])
    assert is_ignored("force-app/main/default/classes/Foo.cls", ["Foo.cls"])
    assert is_ignored("force-app/main/default/staticresources/x/y.js", ["staticresources/"])
    assert not is_ignored("force-app/main/default/classes/Foo.cls", ["/classes"])
    assert not is_ignored("force-app/main/default/classes/Foo.cls", ["Bar.cls"])


def test_unknown_object_children_are_named_after_their_object(project):
    for obj in ("Account", "Opportunity"):
        project.add_object(obj)
        project.write(
            f"objects/{obj}/businessProcesses/Default.businessProcess-meta.xml",
            "<BusinessProcess><fullName>Default</fullName></BusinessProcess>",
        )

    snap = scan_project(project.root)

    assert snap.get(ComponentId("BusinessProcess", "Account.Default")) is not None
    assert snap.get(ComponentId("BusinessProcess", "Opportunity.Default")) is not None
    assert snap.get(ComponentId("BusinessProcess", "Default")) is None


def test_field_directly_under_an_object_is_rejected(project):
    project.add_object("Account")
    project.write("objects/Account/Loose__c.field-meta.xml", "<CustomField/>")

    with pytest.raises(MetadataFormatError):
        scan_project(project.root)

from __future__ import annotations

import pytest

from sfdelta.core.delta.dependency_order import (
    DependencyOrder,
    default_dependency_order,
    dependency_order_from_data,
    load_dependency_order,
)
from sfdelta.core.errors import ConfigurationError, CyclicDependencyError
from sfdelta.core.metadata.models import ComponentId


def test_default_table_puts_prerequisites_first():
    order = default_dependency_order()

    assert order.rank("CustomObject") < order.rank("CustomField")
    assert order.rank("CustomField") < order.rank("ValidationRule")
    assert order.rank("ApexClass") < order.rank("ApexTrigger")
    assert order.rank("CustomField") < order.rank("PermissionSet")


def test_unknown_types_rank_after_every_known_type():
    order = default_dependency_order()

    highest = max(order.rank(t) for t in order.types)
    assert order.rank("SomethingNew") > highest
    assert not order.is_known("SomethingNew")


def test_cycle_is_rejected_with_its_members():
    with pytest.raises(CyclicDependencyError) as ei:
        DependencyOrder({"A": ["B"], "B": ["C"], "C": ["A"]})

    assert {"A", "B", "C"} <= set(ei.value.cycle)


def test_delete_key_reverses_rank():
    order = DependencyOrder.from_mapping({"Parent": [], "Child": ["Parent"]})

    child = ComponentId("Child", "x")
    parent = ComponentId("Parent", "x")
    assert order.upsert_key(parent) < order.upsert_key(child)
    assert order.delete_key(child) < order.delete_key(parent)


def test_load_yaml_table(tmp_path):
    p = tmp_path / "order.yaml"
    p.write_text(
        "dependencies:\n"
        "  CustomObject: []\n"
        "  CustomField:\n"
        "    - CustomObject\n"
        "  ValidationRule:\n"
        "    - CustomField\n",
        encoding="utf-8",
    )

    order = load_dependency_order(p)

    assert order.types == ("CustomObject", "CustomField", "ValidationRule")
    assert order.prerequisites("ValidationRule") == frozenset({"CustomField"})


def test_load_json_order_list(tmp_path):
    p = tmp_path / "order.json"
    p.write_text('{"order": ["CustomObject", "CustomField", "Layout"]}', encoding="utf-8")

    order = load_dependency_order(p)

    assert [order.rank(t) for t in ("CustomObject", "CustomField", "Layout")] == [0, 1, 2]


def test_invalid_tables_raise_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        dependency_order_from_data({"something": 1})
    with pytest.raises(ConfigurationError):
        dependency_order_from_data({"dependencies": {"A": "B"}})
    with pytest.raises(ConfigurationError):
        load_dependency_order(tmp_path / "missing.json")


def test_cyclic_file_surfaces_cyclic_error(tmp_path):
    p = tmp_path / "cyclic.json"
    p.write_text('{"dependencies": {"A": ["B"], "B": ["A"]}}', encoding="utf-8")

    with pytest.raises(CyclicDependencyError):
        load_dependency_order(p)

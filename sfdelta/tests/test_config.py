from __future__ import annotations

import pytest

from sfdelta.core.config import (
    ReferenceSource,
    WorkflowConfig,
    apply_env_overrides,
    config_from_mapping,
    load_workflow_config,
)
from sfdelta.core.errors import ConfigurationError, CyclicDependencyError


def test_yaml_config_with_camel_case_keys(tmp_path):
    cfg_file = tmp_path / "sfdelta.yaml"
    cfg_file.write_text(
        "# workflow settings\n"
        "projectRoot: proj\n"
        "referenceSnapshotSource: orgCurrent\n"
        "pollIntervalSeconds: 5\n"
        "pollTimeoutSeconds: 120\n"
        "apiVersion: \"60.0\"\n"
        "dependencyOrderTable: order.json\n"
        "retry:\n"
        "  maxAttempts: 2\n"
        "  baseDelay: 0.5\n",
        encoding="utf-8",
    )

    cfg = load_workflow_config(cfg_file, env={})

    assert cfg.project_root == tmp_path / "proj"
    assert cfg.reference_snapshot_source == ReferenceSource.ORG_CURRENT
    assert cfg.poll_settings().interval_seconds == 5.0
    assert cfg.poll_settings().timeout_seconds == 120.0
    assert cfg.api_version == "60.0"
    assert cfg.dependency_order_table == tmp_path / "order.json"
    assert cfg.retry.max_attempts == 2
    assert cfg.retry.base_delay == 0.5


def test_json_config_and_defaults(tmp_path):
    cfg_file = tmp_path / "sfdelta.json"
    cfg_file.write_text('{"project_root": "."}', encoding="utf-8")

    cfg = load_workflow_config(cfg_file, env={})

    assert cfg.reference_snapshot_source == ReferenceSource.PREVIOUS_DEPLOY
    assert cfg.poll_interval_seconds == 3.0
    assert cfg.poll_timeout_seconds == 600.0
    assert cfg.store_path is None


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("SFDELTA_POLL_INTERVAL_SEC", "1.5")
    monkeypatch.setenv("SFDELTA_POLL_TIMEOUT_SEC", "30")
    monkeypatch.setenv("SFDELTA_REFERENCE_SOURCE", "orgcurrent")
    monkeypatch.setenv("SFDELTA_DB", str(tmp_path / "state.db"))
    monkeypatch.setenv("SFDELTA_RETRY_MAX_ATTEMPTS", "7")

    cfg = load_workflow_config(project_root=tmp_path)

    assert cfg.project_root == tmp_path.resolve()
    assert cfg.poll_interval_seconds == 1.5
    assert cfg.poll_timeout_seconds == 30.0
    assert cfg.reference_snapshot_source == ReferenceSource.ORG_CURRENT
    assert cfg.store_path == tmp_path / "state.db"
    assert cfg.retry.max_attempts == 7


def test_invalid_values_are_configuration_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        WorkflowConfig(project_root=tmp_path, reference_snapshot_source="lastTuesday")
    with pytest.raises(ConfigurationError):
        WorkflowConfig(project_root=tmp_path, poll_interval_seconds=0)
    with pytest.raises(ConfigurationError):
        WorkflowConfig(project_root=tmp_path, api_version="v61")
    with pytest.raises(ConfigurationError):
        config_from_mapping({"pollTimeoutSeconds": "soon"})
    with pytest.raises(ConfigurationError):
        apply_env_overrides(WorkflowConfig(project_root=tmp_path), {"SFDELTA_POLL_TIMEOUT_SEC": "ten"})
    with pytest.raises(ConfigurationError):
        load_workflow_config(tmp_path / "missing.yaml", env={})


def test_custom_dependency_table_is_used(tmp_path):
    table = tmp_path / "order.json"
    table.write_text('{"order": ["Flow", "ApexClass"]}', encoding="utf-8")

    cfg = WorkflowConfig(project_root=tmp_path, dependency_order_table=table)

    assert cfg.dependency_order().rank("Flow") < cfg.dependency_order().rank("ApexClass")


def test_default_reference_source_builds_on_every_supported_python(tmp_path):
    cfg = WorkflowConfig(project_root=tmp_path)

    assert cfg.reference_snapshot_source is ReferenceSource.PREVIOUS_DEPLOY
    assert ReferenceSource.parse(ReferenceSource.ORG_CURRENT) is ReferenceSource.ORG_CURRENT
    cfg = config_from_mapping({"projectRoot": str(tmp_path)})
    assert cfg.reference_snapshot_source is ReferenceSource.PREVIOUS_DEPLOY


def test_inline_dependency_order_list(tmp_path):
    cfg = config_from_mapping(
        {"projectRoot": str(tmp_path), "dependencyOrderTable": ["CustomField", "ValidationRule"]},
        base_dir=tmp_path,
    )

    order = cfg.dependency_order()
    assert order.rank("CustomField") < order.rank("ValidationRule")
    assert order.rank("ApexClass") > order.rank("ValidationRule")
    assert cfg.to_dict()["dependency_order_table"] == {
        "dependencies": {"CustomField": [], "ValidationRule": ["CustomField"]}
    }


def test_inline_dependency_order_in_yaml(tmp_path):
    cfg_file = tmp_path / "sfdelta.yaml"
    cfg_file.write_text(
        "dependencyOrderTable:\n"
        "  dependencies:\n"
        "    ValidationRule:\n"
        "      - CustomField\n"
        "    CustomField: []\n",
        encoding="utf-8",
    )

    order = load_workflow_config(cfg_file, env={}).dependency_order()

    assert order.rank("CustomField") < order.rank("ValidationRule")


def test_inline_cyclic_dependency_order_is_rejected(tmp_path):
    with pytest.raises(CyclicDependencyError):
        config_from_mapping({"dependencyOrderTable": {"dependencies": {"A": ["B"], "B": ["A"]}}}, base_dir=tmp_path)

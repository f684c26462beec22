from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from sfdelta.core.delta.dependency_order import (
    DependencyOrder,
    default_dependency_order,
    dependency_order_from_data,
    load_dependency_order,
)
from sfdelta.core.errors import ConfigurationError
from sfdelta.core.jobs.polling import PollSettings
from sfdelta.core.org.fetcher import RetryPolicy
from sfdelta.core.package.manifest_xml import DEFAULT_API_VERSION
from sfdelta.utils.minimal_yaml import parse_config_text


class ReferenceSource(str, Enum):
    """Where the delta reference snapshot comes from."""

    PREVIOUS_DEPLOY = "previousDeploy"
    ORG_CURRENT = "orgCurrent"

    @classmethod
    def parse(cls, value: Any) -> "ReferenceSource":
        if isinstance(value, cls):
            return value
        raw = str(value).strip()
        for member in cls:
            if raw.lower() in (member.value.lower(), member.name.lower()):
                return member
        raise ConfigurationError(
            f"referenceSnapshotSource must be one of {[m.value for m in cls]}, got {raw!r}"
        )


@dataclass(frozen=True)
class WorkflowConfig:
    """
    Explicit configuration for one delta workflow.

    Nothing here is read from ambient state after construction; env
    overrides are applied once by load_workflow_config.
    """

    project_root: Path
    reference_snapshot_source: ReferenceSource = ReferenceSource.PREVIOUS_DEPLOY
    poll_interval_seconds: float = 3.0
    poll_timeout_seconds: float = 600.0
    # A table file, or an order already built from inline config data.
    dependency_order_table: Union[Path, DependencyOrder, None] = None
    api_version: str = DEFAULT_API_VERSION
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    store_path: Optional[Path] = None
    sf_bin: Optional[str] = None
    test_level: Optional[str] = None
    receipt_private_key: Optional[Path] = None
    receipt_public_key: Optional[Path] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "project_root", Path(self.project_root))
        object.__setattr__(self, "reference_snapshot_source", ReferenceSource.parse(self.reference_snapshot_source))
        if not re.fullmatch(r"\d+\.0", str(self.api_version)):
            raise ConfigurationError(f"api_version must look like '61.0', got {self.api_version!r}")
        # Validates the poll bounds.
        self.poll_settings()

    def poll_settings(self) -> PollSettings:
        return PollSettings(
            interval_seconds=float(self.poll_interval_seconds),
            timeout_seconds=float(self.poll_timeout_seconds),
        )

    def dependency_order(self) -> DependencyOrder:
        if self.dependency_order_table is None:
            return default_dependency_order()
        if isinstance(self.dependency_order_table, DependencyOrder):
            return self.dependency_order_table
        return load_dependency_order(self.dependency_order_table)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_root": str(self.project_root),
            "reference_snapshot_source": self.reference_snapshot_source.value,
            "poll_interval_seconds": self.poll_interval_seconds,
            "poll_timeout_seconds": self.poll_timeout_seconds,
            "dependency_order_table": _table_to_dict(self.dependency_order_table),
            "api_version": self.api_version,
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "base_delay": self.retry.base_delay,
                "factor": self.retry.factor,
                "max_delay": self.retry.max_delay,
            },
            "store_path": str(self.store_path) if self.store_path else None,
            "test_level": self.test_level,
        }


_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL.sub("_", str(key).strip()).lower().replace("-", "_")


def _env_float(name: str, env: Mapping[str, str]) -> Optional[float]:
    raw = env.get(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, env: Mapping[str, str]) -> Optional[int]:
    raw = env.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _as_float(data: Mapping[str, Any], key: str, default: float) -> float:
    if key not in data or data[key] in (None, ""):
        return default
    try:
        return float(data[key])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be a number, got {data[key]!r}") from e


def _table_to_dict(table: Union[Path, DependencyOrder, None]) -> Any:
    if isinstance(table, DependencyOrder):
        return table.to_dict()
    return str(table) if table else None


def _as_order_table(value: Any, base: Path) -> Union[Path, DependencyOrder, None]:
    """A path string loads lazily; an inline list or mapping is built and validated now."""

    if isinstance(value, (list, Mapping)):
        return dependency_order_from_data(value)
    return _as_path(value, base)


def _as_path(value: Any, base: Path) -> Optional[Path]:
    if value in (None, ""):
        return None
    p = Path(str(value)).expanduser()
    return p if p.is_absolute() else (base / p)


def config_from_mapping(data: Mapping[str, Any], *, base_dir: str | Path = ".") -> WorkflowConfig:
    """Build a WorkflowConfig from parsed config data (camelCase or snake_case keys).

    Relative paths resolve against `base_dir` (the config file's directory).
    """

    base = Path(base_dir)
    d = {_snake(k): v for k, v in data.items()}

    retry_raw = d.get("retry") or {}
    if not isinstance(retry_raw, Mapping):
        raise ConfigurationError("retry must be a mapping")

    try:
        return WorkflowConfig(
            project_root=_as_path(d.get("project_root") or ".", base) or base,
            reference_snapshot_source=d.get("reference_snapshot_source") or ReferenceSource.PREVIOUS_DEPLOY,
            poll_interval_seconds=_as_float(d, "poll_interval_seconds", 3.0),
            poll_timeout_seconds=_as_float(d, "poll_timeout_seconds", 600.0),
            dependency_order_table=_as_order_table(d.get("dependency_order_table"), base),
            api_version=str(d.get("api_version") or DEFAULT_API_VERSION),
            retry=RetryPolicy.from_dict({_snake(k): v for k, v in retry_raw.items()}),
            store_path=_as_path(d.get("store_path"), base),
            sf_bin=d.get("sf_bin") or None,
            test_level=d.get("test_level") or None,
            receipt_private_key=_as_path(d.get("receipt_private_key"), base),
            receipt_public_key=_as_path(d.get("receipt_public_key"), base),
        )
    except TypeError as e:
        raise ConfigurationError(f"invalid workflow config: {e}") from e


def apply_env_overrides(cfg: WorkflowConfig, env: Optional[Mapping[str, str]] = None) -> WorkflowConfig:
    """Apply SFDELTA_* environment overrides.

    - SFDELTA_POLL_INTERVAL_SEC / SFDELTA_POLL_TIMEOUT_SEC
    - SFDELTA_REFERENCE_SOURCE (previousDeploy | orgCurrent)
    - SFDELTA_DB (store path)
    - SFDELTA_SF_BIN
    - SFDELTA_RETRY_MAX_ATTEMPTS
    """

    env = os.environ if env is None else env
    changes: Dict[str, Any] = {}

    interval = _env_float("SFDELTA_POLL_INTERVAL_SEC", env)
    if interval is not None:
        changes["poll_interval_seconds"] = interval
    timeout = _env_float("SFDELTA_POLL_TIMEOUT_SEC", env)
    if timeout is not None:
        changes["poll_timeout_seconds"] = timeout

    ref = env.get("SFDELTA_REFERENCE_SOURCE", "").strip()
    if ref:
        changes["reference_snapshot_source"] = ReferenceSource.parse(ref)
    db = env.get("SFDELTA_DB", "").strip()
    if db:
        changes["store_path"] = Path(db)
    sf_bin = env.get("SFDELTA_SF_BIN", "").strip()
    if sf_bin:
        changes["sf_bin"] = sf_bin

    attempts = _env_int("SFDELTA_RETRY_MAX_ATTEMPTS", env)
    if attempts is not None:
        changes["retry"] = replace(cfg.retry, max_attempts=attempts)

    return replace(cfg, **changes) if changes else cfg


def load_workflow_config(
    path: Optional[str | Path] = None,
    *,
    project_root: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> WorkflowConfig:
    """
    Load a WorkflowConfig from a JSON / minimal-YAML file, then apply env overrides.

    Without a file, defaults are used with `project_root` (or the current
    directory). An explicit `project_root` argument wins over the file.

    Raises ConfigurationError on unreadable files or invalid values.
    """

    if path is None:
        data: Mapping[str, Any] = {}
        base = Path(".")
    else:
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"cannot read workflow config {p}: {e}") from e
        try:
            data = parse_config_text(text, suffix=p.suffix)
        except ValueError as e:
            raise ConfigurationError(f"invalid workflow config {p}: {e}") from e
        base = p.parent

    if project_root is not None:
        data = {**data, "project_root": str(Path(project_root).resolve())}

    return apply_env_overrides(config_from_mapping(data, base_dir=base), env)

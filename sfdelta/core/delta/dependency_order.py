"""Metadata-type dependency order.

The order is data: a DAG of type -> prerequisite types, loaded from JSON or
minimal YAML and validated once with graphlib. A DependencyOrder is
read-only after construction and safe to share across workflows.
"""

from __future__ import annotations

from functools import lru_cache
from graphlib import CycleError, TopologicalSorter
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Sequence, Set, Tuple

from sfdelta.core.errors import ConfigurationError, CyclicDependencyError
from sfdelta.core.metadata.models import ComponentId
from sfdelta.utils.minimal_yaml import parse_config_text


class DependencyOrder:
    """Topological levels over metadata type names.

    rank(type) is the length of the longest prerequisite chain below the
    type; every unknown type ranks after all known types.
    """

    def __init__(self, graph: Mapping[str, Iterable[str]]) -> None:
        normalized: Dict[str, Set[str]] = {}
        for type_name, prereqs in graph.items():
            name = str(type_name).strip()
            if not name:
                raise ConfigurationError("dependency order table has an empty type name")
            normalized[name] = {str(p).strip() for p in prereqs if str(p).strip()}

        sorter = TopologicalSorter(normalized)
        try:
            sorter.prepare()
        except CycleError as e:
            cycle = e.args[1] if len(e.args) > 1 else []
            raise CyclicDependencyError([str(x) for x in cycle]) from e

        ranks: Dict[str, int] = {}
        level = 0
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            for name in ready:
                ranks[name] = level
            sorter.done(*ready)
            level += 1

        self._graph = MappingProxyType({k: frozenset(v) for k, v in normalized.items()})
        self._ranks = MappingProxyType(ranks)
        self._unknown_rank = level

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "DependencyOrder":
        return cls(mapping)

    @classmethod
    def from_sequence(cls, types: Sequence[str]) -> "DependencyOrder":
        """Build a total order where each type depends on the one before it."""

        graph: Dict[str, Set[str]] = {}
        previous = None
        for t in types:
            graph.setdefault(t, set())
            if previous is not None and previous != t:
                graph[t].add(previous)
            previous = t
        return cls(graph)

    @property
    def types(self) -> Tuple[str, ...]:
        return tuple(sorted(self._ranks, key=lambda t: (self._ranks[t], t)))

    def prerequisites(self, type_name: str) -> frozenset:
        return self._graph.get(type_name, frozenset())

    def is_known(self, type_name: str) -> bool:
        return type_name in self._ranks

    def rank(self, type_name: str) -> int:
        return self._ranks.get(type_name, self._unknown_rank)

    def upsert_key(self, ident: ComponentId) -> Tuple[int, str]:
        """Prerequisites first; unknown types last, by identity string."""

        return (self.rank(ident.type), ident.key)

    def delete_key(self, ident: ComponentId) -> Tuple[int, str]:
        """Dependents first; unknown types (no known dependents) lead, by identity string."""

        return (-self.rank(ident.type), ident.key)

    def to_dict(self) -> Dict[str, Any]:
        return {"dependencies": {k: sorted(v) for k, v in sorted(self._graph.items())}}


def dependency_order_from_data(data: Any) -> DependencyOrder:
    """Build a DependencyOrder from parsed config data.

    Accepted shapes:
    - {"dependencies": {type: [prerequisites]}}
    - {"order": [type, ...]} or a bare list (ordered list of type names)
    """

    if isinstance(data, list):
        return DependencyOrder.from_sequence([str(x) for x in data])
    if not isinstance(data, Mapping):
        raise ConfigurationError("dependency order must be a mapping or a list")

    if "dependencies" in data:
        deps = data["dependencies"]
        if not isinstance(deps, Mapping):
            raise ConfigurationError("dependencies must map type -> list of prerequisites")
        graph: Dict[str, Iterable[str]] = {}
        for k, v in deps.items():
            if v in (None, "", {}):
                v = []
            if not isinstance(v, list):
                raise ConfigurationError(f"prerequisites of {k} must be a list")
            graph[str(k)] = [str(x) for x in v]
        return DependencyOrder.from_mapping(graph)

    if "order" in data:
        order = data["order"]
        if not isinstance(order, list):
            raise ConfigurationError("order must be a list of type names")
        return DependencyOrder.from_sequence([str(x) for x in order])

    raise ConfigurationError("dependency order needs 'dependencies' or 'order'")


def load_dependency_order(path: str | Path) -> DependencyOrder:
    """Load a dependency order table from a JSON or minimal-YAML file."""

    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"cannot read dependency order {p}: {e}") from e
    try:
        data = parse_config_text(text, suffix=p.suffix)
    except ValueError as e:
        raise ConfigurationError(f"invalid dependency order {p}: {e}") from e
    return dependency_order_from_data(data)


@lru_cache(maxsize=1)
def default_dependency_order() -> DependencyOrder:
    """The shipped table (default_order.json), validated once per process."""

    text = resources.files("sfdelta.core.delta").joinpath("default_order.json").read_text(encoding="utf-8")
    return dependency_order_from_data(parse_config_text(text, suffix=".json"))

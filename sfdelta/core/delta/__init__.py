from .dependency_order import (  # noqa: F401
    DependencyOrder,
    default_dependency_order,
    load_dependency_order,
)
from .engine import ChangeSet, diff  # noqa: F401

"""Local metadata inventory.

Reads an SFDX source-format project into an immutable Snapshot of
metadata components keyed by (type, api_name).
"""

from .inventory import InventoryReader, scan_project  # noqa: F401
from .models import ComponentId, MetadataComponent, Snapshot, SnapshotSource  # noqa: F401

from .assembler import DeployPackage, ManifestAction, ManifestEntry, assemble  # noqa: F401
from .manifest_xml import render_destructive_changes_xml, render_package_xml  # noqa: F401

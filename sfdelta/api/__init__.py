"""sfdelta API package.

Optional FastAPI service layer around the delta / validate / deploy
workflow. Everything it exposes is also available from sfdelta.core.
"""

from .server import create_app  # noqa: F401

from __future__ import annotations

import os

import uvicorn

from sfdelta.api.server import create_app, env_int


def main() -> None:
    """Serve the API with uvicorn (SFDELTA_API_HOST / SFDELTA_API_PORT / SFDELTA_LOG_LEVEL)."""

    app = create_app(db_path=os.environ.get("SFDELTA_DB") or None)
    uvicorn.run(
        app,
        host=os.environ.get("SFDELTA_API_HOST", "127.0.0.1"),
        port=env_int("SFDELTA_API_PORT", 8080),
        log_level=os.environ.get("SFDELTA_LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()

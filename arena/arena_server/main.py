"""
Arena Server - Main entry point.

Starts the HTTP service with the backup subsystem:
- Storage lifecycle (single shared SQLite handle)
- JSON snapshot export/import with retention
- Whole-system archive build and restore

Usage:
    python -m arena.arena_server.main

Configuration is entirely via ARENA_* environment variables.
See config.py for all available settings.
"""

from __future__ import annotations

import logging

import json_log_formatter
import uvicorn

from .api import create_app
from .config import Settings

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings.

    Args:
        settings: Server settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)


def main() -> None:
    """Run the server."""
    settings = Settings()
    setup_logging(settings)
    settings.log_config()

    app = create_app(settings)
    logger.info(f"Arena server listening on http://{settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()

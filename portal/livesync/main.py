"""
portal-livesync - Main entry point.

Starts the HTTP/websocket layer over the configured backend.

Usage:
    python -m portal.livesync.main

Configuration is entirely via environment variables.
See config.py and api/settings.py for all available settings.
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api import create_app
from .api.settings import Settings
from .config import SyncConfig

logger = logging.getLogger(__name__)


def setup_logging(config: SyncConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Loaded configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("realtime").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = SyncConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    settings = Settings()
    app = create_app(config)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()

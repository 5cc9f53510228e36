"""
Voxtier Server - Main entry point.

This module starts the Voxtier server:
- FastAPI app (REST + realtime WebSocket) served by uvicorn
- SQLite store and object store opened in the app lifespan
- Optional training director bootstrap

Usage:
    voxtier-server
    python -m backend.voxtier_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store schema exists before the first request is served
    - Graceful shutdown closes realtime subscriptions, then the object store

How to change safely:
    - Add new components to the app lifespan, not to module import time
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import json_log_formatter
import uvicorn

from .api import create_app
from .config import ServerConfig
from .store.service import DataService

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """Voxtier Server orchestrator.

    Attributes:
        config: Server configuration
        service: Data service shared by all routes

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running until request_shutdown()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self.service: DataService | None = None
        self._uvicorn: uvicorn.Server | None = None

    async def start(self) -> None:
        """Start serving and block until shutdown."""
        logger.info("Starting Voxtier server")
        self.config.log_config()

        Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

        self.service = DataService.from_config(self.config)
        app = create_app(self.service, self.config)

        self._uvicorn = uvicorn.Server(
            uvicorn.Config(
                app,
                host=self.config.http.host,
                port=self.config.http.port,
                log_config=None,
                lifespan="on",
            )
        )
        try:
            await self._uvicorn.serve()
        except Exception as e:
            logger.error(f"Server failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Voxtier server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        if self._uvicorn is not None:
            self._uvicorn.should_exit = True


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        server.request_shutdown()


if __name__ == "__main__":
    main()

"""
Unit tests for server entry point helpers.

Tests cover:
- Logging setup (JSON and text)
- Server construction without serving
"""

import logging

import json_log_formatter
import pytest

from backend.voxtier_server.config import ObservabilityConfig, ServerConfig
from backend.voxtier_server.main import Server, setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_json_format(self, root_logger):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_level="DEBUG")))

        assert root_logger.level == logging.DEBUG
        assert isinstance(root_logger.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self, root_logger):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_format="text")))

        assert root_logger.level == logging.INFO
        assert not isinstance(root_logger.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_unknown_level_defaults_to_info(self, root_logger):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_level="chatty")))
        assert root_logger.level == logging.INFO


class TestServer:
    """Tests for Server."""

    def test_shutdown_before_start(self):
        server = Server(ServerConfig())
        server.request_shutdown()
        assert server.service is None

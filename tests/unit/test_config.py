"""
Unit tests for environment-driven configuration.

Tests cover:
- Defaults
- Loading each section from the environment
- Validation failures
"""

import pytest

from backend.voxtier_server.config import (
    DEFAULT_REALTIME_TABLES,
    ObjectStoreBackend,
    RealtimeConfig,
    ServerConfig,
)

_ENV_VARS = [
    "DATA_DIR",
    "DB_FILENAME",
    "OBJECT_STORE_BACKEND",
    "S3_BUCKET",
    "REALTIME_ENABLED",
    "REALTIME_TABLES",
    "REALTIME_QUEUE_SIZE",
    "MAX_MESSAGE_DURATION_SEC",
    "HTTP_PORT",
    "CORS_ORIGINS",
    "BOOTSTRAP_ADMIN_ID",
    "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    return monkeypatch


class TestDefaults:
    """Tests for default values."""

    def test_server_defaults(self):
        config = ServerConfig()
        assert config.storage.db_filename == "voxtier.db"
        assert config.objects.bucket == "voices"
        assert config.objects.backend == ObjectStoreBackend.S3
        assert config.realtime.tables == DEFAULT_REALTIME_TABLES
        assert config.messaging.max_message_duration_sec == 900
        assert config.bootstrap.admin_id is None

    def test_from_env_defaults(self, clean_env, tmp_path):
        config = ServerConfig.from_env()
        assert config.storage.data_dir == str(tmp_path)
        assert config.http.port == 8080
        assert config.realtime.enabled is True
        assert config.observability.log_format == "json"


class TestFromEnv:
    """Tests for loading from environment variables."""

    def test_sections_read_environment(self, clean_env):
        clean_env.setenv("OBJECT_STORE_BACKEND", "memory")
        clean_env.setenv("REALTIME_TABLES", "audio_messages, conversations")
        clean_env.setenv("REALTIME_QUEUE_SIZE", "8")
        clean_env.setenv("MAX_MESSAGE_DURATION_SEC", "60")
        clean_env.setenv("HTTP_PORT", "9090")
        clean_env.setenv("CORS_ORIGINS", "https://a.example,https://b.example")
        clean_env.setenv("BOOTSTRAP_ADMIN_ID", "root-director")

        config = ServerConfig.from_env()

        assert config.objects.backend == ObjectStoreBackend.MEMORY
        assert config.realtime.tables == ("audio_messages", "conversations")
        assert config.realtime.queue_size == 8
        assert config.messaging.max_message_duration_sec == 60.0
        assert config.http.port == 9090
        assert config.http.cors_origins == ("https://a.example", "https://b.example")
        assert config.bootstrap.admin_id == "root-director"

    def test_realtime_disabled(self, clean_env):
        clean_env.setenv("REALTIME_ENABLED", "false")
        assert RealtimeConfig.from_env().enabled is False

    def test_invalid_backend(self, clean_env):
        clean_env.setenv("OBJECT_STORE_BACKEND", "ftp")
        with pytest.raises(ValueError):
            ServerConfig.from_env()


class TestValidation:
    """Tests for ServerConfig.validate()."""

    def test_unknown_realtime_table(self, clean_env):
        clean_env.setenv("REALTIME_TABLES", "audio_messages,profiles")
        with pytest.raises(ValueError, match="REALTIME_TABLES"):
            ServerConfig.from_env()

    def test_queue_size_must_be_positive(self, clean_env):
        clean_env.setenv("REALTIME_QUEUE_SIZE", "0")
        with pytest.raises(ValueError, match="REALTIME_QUEUE_SIZE"):
            ServerConfig.from_env()

    def test_duration_must_be_positive(self, clean_env):
        clean_env.setenv("MAX_MESSAGE_DURATION_SEC", "-1")
        with pytest.raises(ValueError, match="MAX_MESSAGE_DURATION_SEC"):
            ServerConfig.from_env()

    def test_s3_requires_bucket(self, clean_env):
        clean_env.setenv("S3_BUCKET", "")
        with pytest.raises(ValueError, match="S3_BUCKET"):
            ServerConfig.from_env()

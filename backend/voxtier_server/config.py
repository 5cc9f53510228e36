"""
Configuration management for the Voxtier server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the object store
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_REALTIME_TABLES = ("audio_messages", "conversations", "favorites", "bookmarks")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


class ObjectStoreBackend(Enum):
    """Supported binary object store backends."""

    S3 = "s3"
    MEMORY = "memory"


@dataclass(frozen=True)
class StorageConfig:
    """Relational store configuration.

    Attributes:
        data_dir: Directory for the SQLite database file
        db_filename: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/voxtier"
    db_filename: str = "voxtier.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/voxtier"),
            db_filename=os.getenv("DB_FILENAME", "voxtier.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class ObjectStoreConfig:
    """Binary object store configuration for audio blobs.

    Attributes:
        backend: Which object store backend to use
        bucket: Bucket holding voice recordings
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO or LocalStack)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    backend: ObjectStoreBackend = ObjectStoreBackend.S3
    bucket: str = "voices"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> ObjectStoreConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If OBJECT_STORE_BACKEND is not a known backend.
        """
        backend_str = os.getenv("OBJECT_STORE_BACKEND", "s3").lower()
        try:
            backend = ObjectStoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid OBJECT_STORE_BACKEND '{backend_str}'. Must be one of: s3, memory"
            )

        return cls(
            backend=backend,
            bucket=os.getenv("S3_BUCKET", "voices"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class RealtimeConfig:
    """Realtime change fan-out configuration.

    Attributes:
        enabled: Whether insert events are published at all
        tables: Tables whose inserts are exposed on the change feed
        queue_size: Per-subscriber buffer; events beyond it are dropped
    """

    enabled: bool = True
    tables: tuple[str, ...] = DEFAULT_REALTIME_TABLES
    queue_size: int = 256

    @classmethod
    def from_env(cls) -> RealtimeConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("REALTIME_ENABLED", "true"),
            tables=_env_list("REALTIME_TABLES", DEFAULT_REALTIME_TABLES),
            queue_size=int(os.getenv("REALTIME_QUEUE_SIZE", "256")),
        )


@dataclass(frozen=True)
class MessagingConfig:
    """Message validation limits.

    Attributes:
        max_message_duration_sec: Longest accepted recording (client capture stops at 15 minutes)
    """

    max_message_duration_sec: float = 15 * 60

    @classmethod
    def from_env(cls) -> MessagingConfig:
        """Load configuration from environment variables."""
        return cls(
            max_message_duration_sec=float(os.getenv("MAX_MESSAGE_DURATION_SEC", str(15 * 60))),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("http://localhost:5173",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=_env_list("CORS_ORIGINS", ("http://localhost:5173",)),
        )


@dataclass(frozen=True)
class BootstrapConfig:
    """Administrative bootstrap configuration.

    When admin_id is set, the server ensures a training director profile
    with that identity exists on startup.

    Attributes:
        admin_id: Identity provider id of the initial training director
        admin_name: Display name for that profile
    """

    admin_id: str | None = None
    admin_name: str = "Training Director"

    @classmethod
    def from_env(cls) -> BootstrapConfig:
        """Load configuration from environment variables."""
        return cls(
            admin_id=os.getenv("BOOTSTRAP_ADMIN_ID") or None,
            admin_name=os.getenv("BOOTSTRAP_ADMIN_NAME", "Training Director"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Relational store configuration
        objects: Binary object store configuration
        realtime: Change fan-out configuration
        messaging: Message validation limits
        http: HTTP API configuration
        bootstrap: Administrative bootstrap configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    objects: ObjectStoreConfig = field(default_factory=ObjectStoreConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            objects=ObjectStoreConfig.from_env(),
            realtime=RealtimeConfig.from_env(),
            messaging=MessagingConfig.from_env(),
            http=HttpConfig.from_env(),
            bootstrap=BootstrapConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.objects.backend == ObjectStoreBackend.S3 and not self.objects.bucket:
            raise ValueError("S3_BUCKET is required when OBJECT_STORE_BACKEND=s3")

        known_tables = set(DEFAULT_REALTIME_TABLES)
        unknown = [t for t in self.realtime.tables if t not in known_tables]
        if unknown:
            raise ValueError(
                f"REALTIME_TABLES contains unsupported tables {unknown}; "
                f"must be a subset of {sorted(known_tables)}"
            )

        if self.realtime.queue_size <= 0:
            raise ValueError("REALTIME_QUEUE_SIZE must be positive")

        if self.messaging.max_message_duration_sec <= 0:
            raise ValueError("MAX_MESSAGE_DURATION_SEC must be positive")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_filename": self.storage.db_filename,
                "object_store": self.objects.backend.value,
                "bucket": self.objects.bucket,
                "realtime_enabled": self.realtime.enabled,
                "realtime_tables": list(self.realtime.tables),
                "http_bind": f"{self.http.host}:{self.http.port}",
                "bootstrap_admin": bool(self.bootstrap.admin_id),
                "log_level": self.observability.log_level,
            },
        )

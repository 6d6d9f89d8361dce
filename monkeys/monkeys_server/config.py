"""
Configuration management for the Infinite Monkeys server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The tunables exposed to clients (display limit, generation interval,
      max keep) come from this module only

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep client_settings() keys stable, browsers depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Hot store and archive location configuration.

    Attributes:
        data_dir: Directory holding the SQLite database
        db_filename: SQLite database file name inside data_dir
        archive_dir: Directory for archive segments (defaults to data_dir/archive)
        wal_mode: Enable SQLite WAL journal mode
        busy_timeout_ms: SQLite busy timeout
    """

    data_dir: str = "./data"
    db_filename: str = "monkeys.db"
    archive_dir: str | None = None
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_filename

    @property
    def archive_path(self) -> Path:
        if self.archive_dir:
            return Path(self.archive_dir)
        return Path(self.data_dir) / "archive"

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "./data"),
            db_filename=os.getenv("DB_FILENAME", "monkeys.db"),
            archive_dir=os.getenv("ARCHIVE_DIR") or None,
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class GeneratorConfig:
    """Character generator configuration.

    Attributes:
        enabled: Whether the generation loop runs
        interval_ms: Period between generated characters
    """

    enabled: bool = True
    interval_ms: int = 1000

    @classmethod
    def from_env(cls) -> GeneratorConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("GENERATOR_ENABLED", "true"),
            interval_ms=int(os.getenv("GENERATION_INTERVAL_MS", "1000")),
        )


@dataclass(frozen=True)
class ArchiverConfig:
    """Archiver configuration.

    Attributes:
        enabled: Whether the archiver loop runs
        max_keep: Maximum rows kept in the hot store; older rows are archived
    """

    enabled: bool = True
    max_keep: int = 1_000_000

    @classmethod
    def from_env(cls) -> ArchiverConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("ARCHIVER_ENABLED", "true"),
            max_keep=int(os.getenv("MAX_KEEP", "1000000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        display_limit: Number of characters clients show (and /recent returns)
        heartbeat_seconds: Idle time before an SSE keepalive comment is sent
        subscriber_queue_size: Pending records a live subscriber may hold
            before it is dropped as too slow
    """

    host: str = "0.0.0.0"
    port: int = 3000
    display_limit: int = 200
    heartbeat_seconds: float = 15.0
    subscriber_queue_size: int = 1000

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3000")),
            display_limit=int(os.getenv("DISPLAY_LIMIT", "200")),
            heartbeat_seconds=float(os.getenv("SSE_HEARTBEAT_SECONDS", "15")),
            subscriber_queue_size=int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "1000")),
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
        storage: Hot store and archive configuration
        generator: Generator configuration
        archiver: Archiver configuration
        http: HTTP server configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    archiver: ArchiverConfig = field(default_factory=ArchiverConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If a value is missing, malformed or out of range.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            generator=GeneratorConfig.from_env(),
            archiver=ArchiverConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.generator.interval_ms <= 0:
            raise ValueError("GENERATION_INTERVAL_MS must be positive")
        if self.archiver.max_keep < 0:
            raise ValueError("MAX_KEEP must not be negative")
        if self.http.display_limit <= 0:
            raise ValueError("DISPLAY_LIMIT must be positive")
        if self.http.subscriber_queue_size <= 0:
            raise ValueError("SUBSCRIBER_QUEUE_SIZE must be positive")
        if self.http.heartbeat_seconds <= 0:
            raise ValueError("SSE_HEARTBEAT_SECONDS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def client_settings(self) -> dict[str, Any]:
        """Tunables the browser client needs to initialize itself."""
        return {
            "displayLimit": self.http.display_limit,
            "generationIntervalMs": self.generator.interval_ms,
            "maxKeep": self.archiver.max_keep,
        }

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "archive_dir": str(self.storage.archive_path),
                "http_bind": f"{self.http.host}:{self.http.port}",
                "display_limit": self.http.display_limit,
                "generation_interval_ms": self.generator.interval_ms,
                "max_keep": self.archiver.max_keep,
                "generator_enabled": self.generator.enabled,
                "archiver_enabled": self.archiver.enabled,
                "log_level": self.observability.log_level,
            },
        )

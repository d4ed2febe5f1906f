"""
Configuration management for GrantDB.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Principal identifiers in settings obey the same length bound as stored ones
    - Nothing here touches the store; validation is purely syntactic

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Document all new settings in the config class docstrings
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .store.base import URI_STRING_LEN

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class StoreBackend(Enum):
    """Supported relation store backends."""

    SQLITE = "sqlite"
    MEMORY = "memory"


@dataclass(frozen=True)
class StoreConfig:
    """Relation store configuration.

    Attributes:
        backend: Which store backend to use
        data_dir: Directory for the SQLite database
        db_name: SQLite database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StoreBackend = StoreBackend.SQLITE
    data_dir: str = "/var/lib/grantdb"
    db_name: str = "grants.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORE_BACKEND", "sqlite").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: sqlite, memory")

        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/grantdb"),
            db_name=os.getenv("GRANTS_DB_NAME", "grants.db"),
            wal_mode=_env_flag("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class BootstrapConfig:
    """Superuser bootstrap configuration.

    Attributes:
        superuser: Principal that must hold the administrative authority
        on_start: Whether Service.start() runs the bootstrap guarantor
    """

    superuser: str | None = None
    on_start: bool = True

    @classmethod
    def from_env(cls) -> BootstrapConfig:
        """Load configuration from environment variables."""
        return cls(
            superuser=os.getenv("SUPERUSER_PRINCIPAL") or None,
            on_start=_env_flag("BOOTSTRAP_ON_START", "true"),
        )


@dataclass(frozen=True)
class ReconcilerConfig:
    """Reconciler configuration.

    Attributes:
        serialize_writes: Hold a per-anchor lock around each reconciliation
        service_actor: Acting principal for service-initiated writes
    """

    serialize_writes: bool = True
    service_actor: str = "system:grantdb"

    @classmethod
    def from_env(cls) -> ReconcilerConfig:
        """Load configuration from environment variables."""
        return cls(
            serialize_writes=_env_flag("RECONCILE_SERIALIZE_WRITES", "true"),
            service_actor=os.getenv("SERVICE_ACTOR", "system:grantdb"),
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
class ServiceConfig:
    """Complete service configuration.

    Attributes:
        store: Relation store configuration
        bootstrap: Superuser bootstrap configuration
        reconciler: Reconciler configuration
        observability: Logging configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            bootstrap=BootstrapConfig.from_env(),
            reconciler=ReconcilerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store.backend == StoreBackend.SQLITE:
            if not self.store.data_dir:
                raise ValueError("DATA_DIR is required when STORE_BACKEND=sqlite")
            if not self.store.db_name:
                raise ValueError("GRANTS_DB_NAME is required when STORE_BACKEND=sqlite")

        superuser = self.bootstrap.superuser
        if superuser is not None and len(superuser) > URI_STRING_LEN:
            raise ValueError(f"SUPERUSER_PRINCIPAL exceeds {URI_STRING_LEN} characters")

        if not self.reconciler.service_actor:
            raise ValueError("SERVICE_ACTOR must not be empty")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if self.store.backend == StoreBackend.MEMORY:
            logger.warning("Using in-memory store; memberships are lost on exit")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Service configuration loaded",
            extra={
                "store_backend": self.store.backend.value,
                "data_dir": self.store.data_dir
                if self.store.backend == StoreBackend.SQLITE
                else None,
                "superuser": self.bootstrap.superuser,
                "bootstrap_on_start": self.bootstrap.on_start,
                "serialize_writes": self.reconciler.serialize_writes,
                "log_level": self.observability.log_level,
            },
        )

"""
Configuration management for portal-livesync.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The hosted backend requires explicit URL and key
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Document new settings in README.md
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class Backend(Enum):
    """Supported data backends."""

    MEMORY = "memory"
    SUPABASE = "supabase"


@dataclass(frozen=True)
class SupabaseConfig:
    """Hosted backend configuration.

    Attributes:
        url: Project URL (https://<ref>.supabase.co)
        key: API key (anon or service role)
        schema: Postgres schema the live tables live in
        subscribe_timeout_seconds: How long to wait for a channel to report SUBSCRIBED
    """

    url: str | None = None
    key: str | None = None
    schema: str = "public"
    subscribe_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> SupabaseConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("SUPABASE_URL"),
            key=os.getenv("SUPABASE_KEY"),
            schema=os.getenv("SUPABASE_SCHEMA", "public"),
            subscribe_timeout_seconds=float(
                os.getenv("SUPABASE_SUBSCRIBE_TIMEOUT_SECONDS", "10")
            ),
        )


@dataclass(frozen=True)
class SessionConfig:
    """Live view configuration.

    Attributes:
        dashboard_tables: Tables a dashboard watches for one client
    """

    dashboard_tables: tuple[str, ...] = ("messages", "projects", "tasks", "admin_notes")

    @classmethod
    def from_env(cls) -> SessionConfig:
        """Load configuration from environment variables."""
        raw = os.getenv("LIVESYNC_DASHBOARD_TABLES", "messages,projects,tasks,admin_notes")
        return cls(dashboard_tables=tuple(t.strip() for t in raw.split(",") if t.strip()))


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
class SyncConfig:
    """Complete configuration.

    Attributes:
        backend: Which data backend to use
        supabase: Hosted backend configuration (if backend is SUPABASE)
        session: Live view configuration
        observability: Logging configuration
    """

    backend: Backend = Backend.MEMORY
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("BACKEND", "memory").lower()
        try:
            backend = Backend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid BACKEND '{backend_str}'. Must be one of: memory, supabase")

        config = cls(
            backend=backend,
            supabase=SupabaseConfig.from_env(),
            session=SessionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.backend == Backend.SUPABASE:
            if not self.supabase.url:
                raise ValueError("SUPABASE_URL is required when BACKEND=supabase")
            if not self.supabase.key:
                raise ValueError("SUPABASE_KEY is required when BACKEND=supabase")

        if self.supabase.subscribe_timeout_seconds <= 0:
            raise ValueError("SUPABASE_SUBSCRIBE_TIMEOUT_SECONDS must be positive")

        if not self.session.dashboard_tables:
            raise ValueError("LIVESYNC_DASHBOARD_TABLES must name at least one table")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Configuration loaded",
            extra={
                "backend": self.backend.value,
                "supabase_url": self.supabase.url
                if self.backend == Backend.SUPABASE
                else None,
                "supabase_schema": self.supabase.schema,
                "dashboard_tables": ",".join(self.session.dashboard_tables),
                "log_level": self.observability.log_level,
            },
        )

"""
Centralized settings for dockbase.

One validated, cached settings object holds every tunable of the engine:
timeouts, pacing delays, the migration port range and the host-gateway
alias used to reach a source database on the host.

All fields can be set via ``DOCKBASE_*`` environment variables (e.g.
``DOCKBASE_PULL_TIMEOUT_SECONDS=900``) or a ``.env`` file.

Tags:
    dockbase, configuration, settings, pydantic
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DockbaseSettings(BaseSettings):
    """Dockbase configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DOCKBASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Engine ───────────────────────────────────────────────────
    docker_host: str | None = Field(
        default=None,
        description="Engine URL (unix:///var/run/docker.sock); None uses DOCKER_HOST",
    )
    engine_timeout_seconds: int = Field(default=120)

    # ── Images ───────────────────────────────────────────────────
    pull_timeout_seconds: float = Field(default=600.0)

    # ── Pacing ───────────────────────────────────────────────────
    stop_settle_seconds: float = Field(default=1.0)
    start_settle_seconds: float = Field(default=2.0)
    readiness_attempts: int = Field(default=30, ge=1)
    readiness_interval_seconds: float = Field(default=2.0)

    # ── Migration ────────────────────────────────────────────────
    migration_base_port: int = Field(default=5433, ge=1, le=65535)
    port_search_limit: int = Field(default=1000, ge=1)
    default_postgres_major: str = Field(default="16")
    host_gateway_alias: str = Field(
        default="host.docker.internal",
        description="Name substituted for localhost sources on Docker Desktop engines; empty disables",
    )
    helper_sleep_seconds: int = Field(default=3600)
    helper_image: str = Field(
        default="alpine:3.20",
        description="Image for volume backup and restore helpers (needs tar)",
    )
    scratch_dir: str | None = Field(
        default=None,
        description="Also write each dump here during migration (deleted on cleanup)",
    )

    # ── Templates ────────────────────────────────────────────────
    templates_file: str | None = Field(
        default=None,
        description="YAML file with custom provisioning templates",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @model_validator(mode="after")
    def _validate_log_format(self) -> DockbaseSettings:
        if self.log_format not in ("console", "json"):
            raise ValueError(f"log_format must be 'console' or 'json', got {self.log_format!r}")
        return self


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, DockbaseSettings] = {}


def get_settings(*, _force_reload: bool = False) -> DockbaseSettings:
    """Load, validate, and cache a :class:`DockbaseSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = DockbaseSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["DockbaseSettings", "get_settings", "clear_settings_cache"]

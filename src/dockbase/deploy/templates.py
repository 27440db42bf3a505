"""Configuration presets for database provisioning.

A template maps each database type to resource limits, extra environment
and an optional restart policy. Applying one to a ``DatabaseConfig`` merges
the environment maps and lets the preset override memory, cpus and the
restart policy. A template that does not exist, or that has no entry for
the config's type, leaves the config unchanged.

Four presets ship with dockbase (development, testing, production,
high-availability). Operators can add their own in a YAML file::

    reporting:
      name: Reporting replica
      configurations:
        postgres:
          memory: 1g
          cpus: "2"
          env:
            POSTGRES_WORK_MEM: 64MB

Tags:
    templates, presets, configuration
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from dockbase.core.errors import ConfigError
from dockbase.core.logging import get_logger
from dockbase.deploy.catalog import DatabaseType
from dockbase.deploy.models import DatabaseConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class TemplateSettings:
    """Preset values for one database type."""

    memory: str | None = None
    cpus: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    restart_policy: str | None = None


@dataclass(frozen=True)
class Template:
    """A named preset across database types."""

    id: str
    name: str
    description: str = ""
    icon: str = ""
    custom: bool = False
    configurations: dict[DatabaseType, TemplateSettings] = field(default_factory=dict)


def _preset(
    id: str,
    name: str,
    description: str,
    icon: str,
    restart_policy: str | None = None,
    **configurations: tuple[str, str, dict[str, str]],
) -> Template:
    return Template(
        id=id,
        name=name,
        description=description,
        icon=icon,
        configurations={
            DatabaseType(db_type): TemplateSettings(
                memory=memory, cpus=cpus, env=env, restart_policy=restart_policy
            )
            for db_type, (memory, cpus, env) in configurations.items()
        },
    )


DEVELOPMENT = _preset(
    "development",
    "Local Development",
    "Optimized for local development with standard configurations",
    "💻",
    postgres=("256m", "1", {
        "POSTGRES_SHARED_BUFFERS": "128MB",
        "POSTGRES_MAX_CONNECTIONS": "100",
        "POSTGRES_WORK_MEM": "4MB",
    }),
    mysql=("256m", "1", {
        "MYSQL_INNODB_BUFFER_POOL_SIZE": "128M",
        "MYSQL_MAX_CONNECTIONS": "100",
    }),
    mongodb=("256m", "1", {"MONGO_CACHE_SIZE_GB": "0.25"}),
    redis=("128m", "1", {
        "REDIS_MAXMEMORY": "100mb",
        "REDIS_MAXMEMORY_POLICY": "allkeys-lru",
    }),
    mariadb=("256m", "1", {
        "MARIADB_INNODB_BUFFER_POOL_SIZE": "128M",
        "MARIADB_MAX_CONNECTIONS": "100",
    }),
)

TESTING = _preset(
    "testing",
    "Testing Environment",
    "Lightweight setup for automated testing and CI/CD",
    "🧪",
    postgres=("128m", "0.5", {
        "POSTGRES_SHARED_BUFFERS": "64MB",
        "POSTGRES_MAX_CONNECTIONS": "50",
        "POSTGRES_FSYNC": "off",
        "POSTGRES_SYNCHRONOUS_COMMIT": "off",
        "POSTGRES_FULL_PAGE_WRITES": "off",
    }),
    mysql=("128m", "0.5", {
        "MYSQL_INNODB_BUFFER_POOL_SIZE": "64M",
        "MYSQL_MAX_CONNECTIONS": "50",
        "MYSQL_INNODB_FLUSH_LOG_AT_TRX_COMMIT": "0",
    }),
    mongodb=("128m", "0.5", {"MONGO_CACHE_SIZE_GB": "0.125"}),
    redis=("64m", "0.5", {
        "REDIS_MAXMEMORY": "50mb",
        "REDIS_MAXMEMORY_POLICY": "allkeys-lru",
        "REDIS_SAVE": "",
    }),
    mariadb=("128m", "0.5", {
        "MARIADB_INNODB_BUFFER_POOL_SIZE": "64M",
        "MARIADB_MAX_CONNECTIONS": "50",
    }),
)

PRODUCTION = _preset(
    "production",
    "Production Optimized",
    "High-performance configuration for production workloads",
    "🚀",
    postgres=("2g", "2", {
        "POSTGRES_SHARED_BUFFERS": "512MB",
        "POSTGRES_MAX_CONNECTIONS": "200",
        "POSTGRES_WORK_MEM": "16MB",
        "POSTGRES_EFFECTIVE_CACHE_SIZE": "1536MB",
        "POSTGRES_MAINTENANCE_WORK_MEM": "256MB",
        "POSTGRES_CHECKPOINT_COMPLETION_TARGET": "0.9",
        "POSTGRES_WAL_BUFFERS": "16MB",
        "POSTGRES_DEFAULT_STATISTICS_TARGET": "100",
    }),
    mysql=("2g", "2", {
        "MYSQL_INNODB_BUFFER_POOL_SIZE": "1G",
        "MYSQL_MAX_CONNECTIONS": "200",
        "MYSQL_INNODB_LOG_FILE_SIZE": "256M",
    }),
    mongodb=("2g", "2", {"MONGO_CACHE_SIZE_GB": "1"}),
    redis=("512m", "1", {
        "REDIS_MAXMEMORY": "400mb",
        "REDIS_MAXMEMORY_POLICY": "allkeys-lru",
        "REDIS_SAVE": "900 1 300 10 60 10000",
    }),
    mariadb=("2g", "2", {
        "MARIADB_INNODB_BUFFER_POOL_SIZE": "1G",
        "MARIADB_MAX_CONNECTIONS": "200",
    }),
)

HIGH_AVAILABILITY = _preset(
    "high-availability",
    "High Availability",
    "Configuration for high availability and reliability",
    "🛡️",
    restart_policy="always",
    postgres=("4g", "4", {
        "POSTGRES_SHARED_BUFFERS": "1GB",
        "POSTGRES_MAX_CONNECTIONS": "500",
        "POSTGRES_WORK_MEM": "32MB",
        "POSTGRES_EFFECTIVE_CACHE_SIZE": "3GB",
        "POSTGRES_MAINTENANCE_WORK_MEM": "512MB",
        "POSTGRES_CHECKPOINT_COMPLETION_TARGET": "0.9",
        "POSTGRES_WAL_BUFFERS": "32MB",
        "POSTGRES_DEFAULT_STATISTICS_TARGET": "500",
        "POSTGRES_MAX_WAL_SIZE": "4GB",
        "POSTGRES_MIN_WAL_SIZE": "1GB",
    }),
    mysql=("4g", "4", {
        "MYSQL_INNODB_BUFFER_POOL_SIZE": "2G",
        "MYSQL_MAX_CONNECTIONS": "500",
        "MYSQL_INNODB_LOG_FILE_SIZE": "512M",
        "MYSQL_INNODB_FLUSH_METHOD": "O_DIRECT",
    }),
    mongodb=("4g", "4", {"MONGO_CACHE_SIZE_GB": "2"}),
    redis=("1g", "2", {
        "REDIS_MAXMEMORY": "800mb",
        "REDIS_MAXMEMORY_POLICY": "allkeys-lru",
        "REDIS_SAVE": "900 1 300 10 60 10000",
        "REDIS_APPENDONLY": "yes",
    }),
    mariadb=("4g", "4", {
        "MARIADB_INNODB_BUFFER_POOL_SIZE": "2G",
        "MARIADB_MAX_CONNECTIONS": "500",
    }),
)

PREDEFINED: dict[str, Template] = {
    t.id: t for t in (DEVELOPMENT, TESTING, PRODUCTION, HIGH_AVAILABILITY)
}


# ---------------------------------------------------------------------------
# Custom templates
# ---------------------------------------------------------------------------


def template_from_mapping(template_id: str, data: dict[str, Any]) -> Template:
    """Build a custom template from its YAML mapping.

    Raises:
        ConfigError: If ``configurations`` is missing or names an unknown type.
    """
    configurations = data.get("configurations")
    if not isinstance(configurations, dict) or not configurations:
        raise ConfigError(f"Template '{template_id}' has no configurations")

    parsed: dict[DatabaseType, TemplateSettings] = {}
    for db_type, values in configurations.items():
        try:
            key = DatabaseType(str(db_type).lower())
        except ValueError as exc:
            raise ConfigError(
                f"Template '{template_id}' configures unknown database type '{db_type}'", cause=exc
            ) from exc
        values = values or {}
        parsed[key] = TemplateSettings(
            memory=values.get("memory"),
            cpus=None if values.get("cpus") is None else str(values["cpus"]),
            env={str(k): "" if v is None else str(v) for k, v in (values.get("env") or {}).items()},
            restart_policy=values.get("restart_policy") or values.get("restartPolicy"),
        )
    return Template(
        id=template_id,
        name=str(data.get("name") or template_id),
        description=str(data.get("description") or ""),
        icon=str(data.get("icon") or "⭐"),
        custom=True,
        configurations=parsed,
    )


def load_custom_templates(path: Path) -> dict[str, Template]:
    """Read custom templates from a YAML file keyed by template id."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read templates from {path}: {exc}", cause=exc) from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Templates file {path} must be a mapping of template ids")
    templates = {str(tid): template_from_mapping(str(tid), body or {}) for tid, body in data.items()}
    logger.debug("templates.custom.loaded", path=str(path), count=len(templates))
    return templates


def all_templates(custom: dict[str, Template] | None = None) -> dict[str, Template]:
    """Predefined templates plus ``custom`` (custom ids win)."""
    return {**PREDEFINED, **(custom or {})}


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


def apply_template(
    template_id: str,
    config: DatabaseConfig,
    templates: dict[str, Template] | None = None,
) -> DatabaseConfig:
    """Return a copy of ``config`` with the template merged in."""
    template = (templates or PREDEFINED).get(template_id)
    if template is None:
        logger.warning("templates.not_found", template=template_id)
        return config

    preset = template.configurations.get(config.db_type)
    if preset is None:
        logger.warning("templates.type_missing", template=template_id, db_type=config.db_type.value)
        return config

    update: dict[str, Any] = {"env": {**config.env, **preset.env}}
    if preset.memory:
        update["memory"] = preset.memory
    if preset.cpus:
        update["cpus"] = preset.cpus
    if preset.restart_policy:
        update["restart_policy"] = preset.restart_policy
    return config.model_copy(update=update)


__all__ = [
    "Template",
    "TemplateSettings",
    "PREDEFINED",
    "template_from_mapping",
    "load_custom_templates",
    "all_templates",
    "apply_template",
]

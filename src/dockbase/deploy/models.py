"""Domain models for dockbase.

Pydantic v2 models for every payload that crosses the operator boundary:
provisioning input, runtime-derived container views, migration records,
compose manifests, volumes, images and stats snapshots.

Key Concepts:
    DatabaseConfig: Provisioning input. Validated on construction, never
        persisted.
    ContainerRecord: Runtime-observed view of a managed container. Rebuilt
        from the engine on every call.
    MigratedDatabase: One completed migration, held in a MigrationStore.
    ComposeService / ComposeConfig: Parsed compose manifest.
    ComposeProject: Live aggregation of containers sharing a project label.

Architecture Decisions:
    - Pydantic (not dataclasses): these models are user input or command
      output, so ``model_validate()`` and ``model_dump_json()`` matter.
    - ``ComposeService`` accepts both list and mapping forms for
      ``environment`` and ``depends_on`` and normalises them, so the rest
      of the engine only ever sees one shape.

Related Modules:
    - :mod:`dockbase.deploy.specs` - DatabaseConfig -> ContainerSpec
    - :mod:`dockbase.deploy.compose` - Parses / generates ComposeConfig
    - :mod:`dockbase.deploy.results` - Step and deployment results

Tags:
    models, pydantic, containers, compose, migration
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from dockbase.deploy.catalog import DatabaseType

#: Labels written on every managed database container.
MANAGED_LABEL = "app"
MANAGED_LABEL_VALUE = "dockbase"
LABEL_DATABASE_NAME = "database_name"
LABEL_DATABASE_TYPE = "database_type"
LABEL_DATABASE_ICON = "database_icon"
LABEL_MIGRATED = "migrated"
LABEL_MIGRATED_FROM = "migrated_from"

#: Labels written on every compose-deployed container.
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"

_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """Input to database provisioning."""

    name: str
    username: str = ""
    password: str = ""
    port: int = Field(ge=1, le=65535)
    version: str | None = None
    db_type: DatabaseType = DatabaseType.POSTGRES
    memory: str | None = None
    cpus: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    restart_policy: str | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError(
                f"invalid database name {value!r}: use letters, digits, '_', '.' or '-'"
            )
        return value

    @field_validator("memory", "cpus", "restart_policy", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("restart_policy")
    @classmethod
    def _check_restart(cls, value: str | None) -> str | None:
        if value is not None and value not in ("no", "always", "unless-stopped", "on-failure"):
            raise ValueError(f"unsupported restart policy {value!r}")
        return value


class ContainerRecord(BaseModel):
    """Runtime-observed view of a managed database container."""

    id: str
    name: str
    status: str
    port: int | None = None
    created: datetime | None = None
    database_name: str | None = None
    db_type: str | None = None
    icon: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_summary(cls, summary: dict[str, Any]) -> ContainerRecord:
        """Build from one entry of the engine's container list."""
        labels = summary.get("Labels") or {}
        names = summary.get("Names") or []
        port = None
        for binding in summary.get("Ports") or []:
            if binding.get("PublicPort"):
                port = int(binding["PublicPort"])
                break
        created = summary.get("Created")
        return cls(
            id=summary.get("Id", ""),
            name=names[0].lstrip("/") if names else "",
            status=summary.get("Status") or summary.get("State") or "",
            port=port,
            created=datetime.fromtimestamp(created, UTC) if created else None,
            database_name=labels.get(LABEL_DATABASE_NAME),
            db_type=labels.get(LABEL_DATABASE_TYPE),
            icon=labels.get(LABEL_DATABASE_ICON),
            labels=labels,
        )


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class MigrationRequest(BaseModel):
    """Where to migrate a database from, and what to call it."""

    source_host: str = "localhost"
    source_port: int = Field(default=5432, ge=1, le=65535)
    source_user: str = "postgres"
    source_password: str = ""
    source_database: str
    target_name: str | None = None
    target_password: str | None = None

    @property
    def effective_target_name(self) -> str:
        return self.target_name or self.source_database

    @property
    def effective_target_password(self) -> str:
        return self.target_password if self.target_password is not None else self.source_password

    @property
    def provenance(self) -> str:
        return f"{self.source_host}:{self.source_port}/{self.source_database}"


class MigratedDatabase(BaseModel):
    """A database that was migrated into a managed container."""

    original_name: str
    container_id: str
    container_name: str
    port: int | None = None
    migrated_at: datetime = Field(default_factory=_utcnow)
    size_bytes: int = 0
    source: str = ""


class SourceDatabase(BaseModel):
    """A database visible on a source server."""

    name: str
    size_bytes: int = 0
    owner: str | None = None


# ---------------------------------------------------------------------------
# Compose
# ---------------------------------------------------------------------------


class ComposeService(BaseModel):
    """One service entry of a compose manifest."""

    image: str
    container_name: str | None = None
    command: str | list[str] | None = None
    ports: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    volumes: list[str] = Field(default_factory=list)
    networks: list[str] = Field(default_factory=list)
    restart: str | None = None
    depends_on: list[str] = Field(default_factory=list)

    @field_validator("ports", mode="before")
    @classmethod
    def _ports_as_strings(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(item) for item in value]
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _normalise_environment(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, list):
            env: dict[str, str] = {}
            for item in value:
                key, _, val = str(item).partition("=")
                env[key] = val
            return env
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("networks", "depends_on", mode="before")
    @classmethod
    def _mapping_keys(cls, value: Any) -> Any:
        # long form: {db: {condition: service_healthy}}
        if value is None:
            return []
        if isinstance(value, dict):
            return list(value.keys())
        return value


class ComposeConfig(BaseModel):
    """A parsed compose manifest."""

    version: str | None = None
    services: dict[str, ComposeService]
    volumes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    networks: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("volumes", "networks", mode="before")
    @classmethod
    def _null_declarations(cls, value: Any) -> Any:
        # `volumes: {data: }` declares a volume with default options
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): v or {} for k, v in value.items()}
        return value

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_string(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @model_validator(mode="after")
    def _check_references(self) -> ComposeConfig:
        if not self.services:
            raise ValueError("compose file declares no services")
        for name, service in self.services.items():
            for dep in service.depends_on:
                if dep not in self.services:
                    raise ValueError(f"service '{name}' depends on undeclared service '{dep}'")
        return self


class ComposeProjectService(BaseModel):
    """One live container of a compose project."""

    name: str
    container_id: str
    container_name: str
    image: str = ""
    status: str = ""


class ComposeProject(BaseModel):
    """Containers grouped by their compose project label."""

    name: str
    services: list[ComposeProjectService] = Field(default_factory=list)

    @property
    def running(self) -> int:
        return sum(1 for s in self.services if s.status.startswith("Up") or s.status == "running")


class ComposeValidation(BaseModel):
    """Outcome of a compose manifest pre-check."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


class VolumeInfo(BaseModel):
    """A named volume known to the engine."""

    name: str
    driver: str = "local"
    mountpoint: str = ""
    created: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    in_use_by: list[str] = Field(default_factory=list)


class ImageInfo(BaseModel):
    """A locally present image."""

    id: str
    tags: list[str] = Field(default_factory=list)
    size: int = 0
    created: datetime | None = None


class ContainerStats(BaseModel):
    """One stats snapshot of a container."""

    container_id: str
    name: str = ""
    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    memory_percent: float = 0.0
    network_rx: int = 0
    network_tx: int = 0
    block_read: int = 0
    block_write: int = 0


__all__ = [
    "MANAGED_LABEL",
    "MANAGED_LABEL_VALUE",
    "LABEL_DATABASE_NAME",
    "LABEL_DATABASE_TYPE",
    "LABEL_DATABASE_ICON",
    "LABEL_MIGRATED",
    "LABEL_MIGRATED_FROM",
    "COMPOSE_PROJECT_LABEL",
    "COMPOSE_SERVICE_LABEL",
    "DatabaseConfig",
    "ContainerRecord",
    "MigrationRequest",
    "MigratedDatabase",
    "SourceDatabase",
    "ComposeService",
    "ComposeConfig",
    "ComposeProjectService",
    "ComposeProject",
    "ComposeValidation",
    "VolumeInfo",
    "ImageInfo",
    "ContainerStats",
]

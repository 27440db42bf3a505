"""Volume and database backups for dockbase.

Volumes are archived from inside a throwaway helper container that mounts
the volume, so the host needs neither access to the engine's data directory
nor a local ``tar``. The archive (gzip'd tar of the volume's contents) is
read back through the engine's archive endpoint and written to a host file.
Restoring makes the same trip in reverse.

A PostgreSQL database backup runs ``pg_dump`` inside the database's own
container and writes the plain SQL to a host file, so the dump always
matches the server version.

Key Concepts:
    BackupReport: What was backed up, where it went, how many bytes.
    BackupManager.backup_volume / restore_volume: Helper container scoped by
        :func:`~dockbase.deploy.migration.ephemeral_container`.
    BackupManager.backup_database: ``pg_dump`` in place.

Architecture Decisions:
    - Backups mount the volume read-only.
    - Restoring into a volume that a running container mounts is refused.
      Restores unpack over existing files; they do not empty the volume.

Tags:
    backup, restore, volumes, pg_dump
"""

from __future__ import annotations

import asyncio
import io
import tarfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from dockbase.core.errors import ConfigError, ConflictError, NotFoundError, PipelineError, ValidationError
from dockbase.core.logging import get_logger
from dockbase.deploy.allocator import container_display_name
from dockbase.deploy.catalog import POSTGRES, DatabaseType
from dockbase.deploy.engine import EngineClient, ExecResult, inspect_env
from dockbase.deploy.images import ImageProvisioner
from dockbase.deploy.migration import HELPER_ROLE_LABEL, build_dump_archive, ephemeral_container
from dockbase.deploy.models import LABEL_DATABASE_NAME, LABEL_DATABASE_TYPE
from dockbase.deploy.specs import ContainerSpec

logger = get_logger(__name__)

VOLUME_MOUNT = "/volume"
ARCHIVE_DIR = "/tmp"
ARCHIVE_NAME = "volume.tar.gz"
ARCHIVE_PATH = f"{ARCHIVE_DIR}/{ARCHIVE_NAME}"


@dataclass
class BackupReport:
    source: str
    path: str
    size_bytes: int


def extract_single_file(archive: bytes) -> bytes:
    """Contents of the first regular file in a tar stream."""
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        for member in tar.getmembers():
            if member.isfile():
                handle = tar.extractfile(member)
                if handle is not None:
                    return handle.read()
    raise PipelineError("Archive returned by the engine holds no file")


def _require_ok(result: ExecResult, what: str) -> None:
    if not result.ok:
        raise PipelineError(
            f"{what} failed (exit code {result.exit_code}): {result.stderr_text.strip()[:2000]}"
        )


def _write(destination: Path, payload: bytes) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(payload)


class BackupManager:
    """Backs up and restores volumes and PostgreSQL databases."""

    def __init__(
        self,
        engine: EngineClient,
        images: ImageProvisioner | None = None,
        *,
        helper_image: str = "alpine:3.20",
        helper_sleep_seconds: int = 3600,
        settle: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.images = images or ImageProvisioner(engine)
        self.helper_image = helper_image
        self.helper_sleep_seconds = helper_sleep_seconds
        self.settle = settle
        self.sleep = sleep

    def _helper(self, role: str, bind: str) -> ContainerSpec:
        return ContainerSpec(
            name=f"dockbase-volume-{role}-{uuid.uuid4().hex[:8]}",
            image=self.helper_image,
            command=["sleep", str(self.helper_sleep_seconds)],
            labels={HELPER_ROLE_LABEL: f"volume-{role}"},
            binds=[bind],
        )

    async def _ensure_helper_image(self) -> None:
        ensured = await self.images.ensure(self.helper_image)
        if ensured.is_err():
            raise ensured.error

    async def backup_volume(self, name: str, destination: Path) -> BackupReport:
        """Write a gzip'd tar of volume ``name`` to ``destination``."""
        volumes = {volume.get("Name") for volume in await self.engine.list_volumes()}
        if name not in volumes:
            raise NotFoundError(f"No such volume: {name}", status_code=404)
        await self._ensure_helper_image()

        spec = self._helper("backup", f"{name}:{VOLUME_MOUNT}:ro")
        async with ephemeral_container(self.engine, spec, settle=self.settle, sleep=self.sleep) as helper:
            packed = await self.engine.exec(helper, ["tar", "czf", ARCHIVE_PATH, "-C", VOLUME_MOUNT, "."])
            _require_ok(packed, f"Archiving volume '{name}'")
            payload = extract_single_file(await self.engine.get_archive(helper, ARCHIVE_PATH))

        _write(destination, payload)
        logger.info("volume.backup.completed", volume=name, path=str(destination), size_bytes=len(payload))
        return BackupReport(source=name, path=str(destination), size_bytes=len(payload))

    async def restore_volume(self, name: str, source: Path) -> BackupReport:
        """Unpack a volume backup from ``source`` into volume ``name``.

        The volume is created if it does not exist yet.
        """
        if not source.is_file():
            raise ConfigError(f"Backup file not found: {source}")
        holders = [
            container_display_name(summary)
            for summary in await self.engine.list_containers(all=False)
            if any(
                mount.get("Type") == "volume" and mount.get("Name") == name
                for mount in summary.get("Mounts") or []
            )
        ]
        if holders:
            raise ConflictError(
                f"Volume '{name}' is mounted by running container(s): {', '.join(holders)}",
                field="volume",
                value=name,
            )

        payload = source.read_bytes()
        await self.engine.create_volume(name)
        await self._ensure_helper_image()

        spec = self._helper("restore", f"{name}:{VOLUME_MOUNT}")
        async with ephemeral_container(self.engine, spec, settle=self.settle, sleep=self.sleep) as helper:
            await self.engine.put_archive(helper, ARCHIVE_DIR, build_dump_archive(payload, ARCHIVE_NAME))
            unpacked = await self.engine.exec(helper, ["tar", "xzf", ARCHIVE_PATH, "-C", VOLUME_MOUNT])
            _require_ok(unpacked, f"Unpacking into volume '{name}'")

        logger.info("volume.restore.completed", volume=name, path=str(source), size_bytes=len(payload))
        return BackupReport(source=str(source), path=name, size_bytes=len(payload))

    async def backup_database(self, container: str, destination: Path) -> BackupReport:
        """``pg_dump`` a running managed PostgreSQL container to ``destination``."""
        info = await self.engine.inspect_container(container)
        labels = (info.get("Config") or {}).get("Labels") or {}
        name = (info.get("Name") or "").lstrip("/") or container
        if labels.get(LABEL_DATABASE_TYPE) != DatabaseType.POSTGRES.value:
            raise ValidationError(
                f"Container '{name}' is not a managed PostgreSQL database",
                field="container",
                value=container,
            )
        if not (info.get("State") or {}).get("Running"):
            raise ValidationError(f"Container '{name}' is not running", field="container", value=container)

        env = inspect_env(info)
        user = env.get("POSTGRES_USER") or POSTGRES.default_user
        database = env.get("POSTGRES_DB") or labels.get(LABEL_DATABASE_NAME) or user
        dumped = await self.engine.exec(
            info.get("Id", container),
            ["pg_dump", "-U", user, "-d", database, "--no-owner", "--no-acl"],
        )
        if not dumped.ok or not dumped.stdout.strip():
            raise PipelineError(
                f"pg_dump in '{name}' failed (exit code {dumped.exit_code}): "
                f"{dumped.stderr_text.strip()[:2000]}"
            ).with_context(container=name, database=database)

        _write(destination, dumped.stdout)
        logger.info("database.backup.completed", container=name, database=database, size_bytes=len(dumped.stdout))
        return BackupReport(source=name, path=str(destination), size_bytes=len(dumped.stdout))


__all__ = [
    "BackupManager",
    "BackupReport",
    "extract_single_file",
]

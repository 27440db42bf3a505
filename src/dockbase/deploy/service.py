"""Operator-facing facade for dockbase.

``DockbaseService`` is what the CLI (or any other shell) talks to. Every
public method returns a :class:`~dockbase.core.result.Result`: ``Ok`` with
the payload, or ``Err`` with the :class:`DockbaseError` whose string is the
message shown to the operator. Unexpected exceptions are bugs and
propagate.

Why This Matters:
    The engine handle is shared. Operations like create and remove are
    list-then-mutate sequences; two of them interleaving could both pass the
    port check and both create. The service holds one ``asyncio.Lock`` for
    the whole sequence of every engine-touching operation.

Key Concepts:
    _locked: Runs one operation under the engine lock and turns
        DockbaseError into Err.
    MigrationStore: Owned here and passed to the pipeline; removing a
        database also drops its migration record.

Related Modules:
    - :mod:`dockbase.deploy.migration` - MigrationPipeline
    - :mod:`dockbase.deploy.compose` - ComposeOrchestrator
    - :mod:`dockbase.cli` - Renders the results

Tags:
    facade, service, locking, result
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

from dockbase.core.errors import DockbaseError, ValidationError
from dockbase.core.logging import get_logger
from dockbase.core.result import Err, Ok, Result
from dockbase.core.settings import DockbaseSettings, get_settings
from dockbase.deploy.allocator import ResourceAllocator
from dockbase.deploy.backup import BackupManager, BackupReport
from dockbase.deploy.catalog import DatabaseTypeInfo, get_type_info, list_types
from dockbase.deploy.compose import (
    ComposeOrchestrator,
    generate_compose_from_containers,
    parse_compose_file,
    validate_compose,
)
from dockbase.deploy.engine import DockerEngine, EngineClient
from dockbase.deploy.images import ImageProvisioner
from dockbase.deploy.inventory import Inventory, PruneReport
from dockbase.deploy.migration import (
    MigrationPipeline,
    MigrationStore,
    SourceFactory,
    default_source_factory,
)
from dockbase.deploy.models import (
    MANAGED_LABEL,
    MANAGED_LABEL_VALUE,
    ComposeConfig,
    ComposeProject,
    ComposeValidation,
    ContainerRecord,
    ContainerStats,
    DatabaseConfig,
    ImageInfo,
    MigratedDatabase,
    MigrationRequest,
    SourceDatabase,
    VolumeInfo,
)
from dockbase.deploy.reconfigure import PortChange, update_database_port
from dockbase.deploy.results import DeploymentResult, MigrationResult
from dockbase.deploy.specs import build_container_spec
from dockbase.deploy.stats import StatsBatch, StatsCollector
from dockbase.deploy.templates import Template, all_templates, apply_template, load_custom_templates

logger = get_logger(__name__)

T = TypeVar("T")


class DockbaseService:
    """Database provisioning, migration, compose and inventory operations.

    Example::

        service = DockbaseService()
        result = await service.create_database(
            DatabaseConfig(name="shop", username="app", password="s3cret", port=5440)
        )
        if result.is_err():
            print(result.message)
    """

    def __init__(
        self,
        engine: EngineClient | None = None,
        *,
        settings: DockbaseSettings | None = None,
        store: MigrationStore | None = None,
        source_factory: SourceFactory = default_source_factory,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine or DockerEngine(
            base_url=self.settings.docker_host,
            timeout=self.settings.engine_timeout_seconds,
        )
        self.store = store or MigrationStore()
        self.source_factory = source_factory
        self.sleep = sleep
        self._lock = asyncio.Lock()

        self.images = ImageProvisioner(self.engine, timeout=self.settings.pull_timeout_seconds)
        self.allocator = ResourceAllocator(self.engine, search_limit=self.settings.port_search_limit)
        self.compose = ComposeOrchestrator(self.engine, self.images)
        self.inventory = Inventory(self.engine, self.images)
        self.backups = BackupManager(
            self.engine,
            self.images,
            helper_image=self.settings.helper_image,
            helper_sleep_seconds=self.settings.helper_sleep_seconds,
            settle=self.settings.start_settle_seconds,
            sleep=sleep,
        )
        self.stats_collector = StatsCollector(self.engine)
        self.migrations = MigrationPipeline(
            self.engine,
            self.store,
            settings=self.settings,
            images=self.images,
            allocator=self.allocator,
            source_factory=source_factory,
            sleep=sleep,
        )

    async def _locked(self, operation: str, fn: Callable[[], Awaitable[T]]) -> Result[T]:
        async with self._lock:
            try:
                return Ok(await fn())
            except DockbaseError as exc:
                logger.warning("operation.failed", operation=operation, **exc.to_dict())
                return Err(exc)

    # ------------------------------------------------------------------
    # Engine and catalog
    # ------------------------------------------------------------------

    async def check_engine(self) -> Result[bool]:
        return await self._locked("check_engine", self.engine.ping)

    def database_types(self) -> list[DatabaseTypeInfo]:
        return list_types()

    def templates(self) -> Result[dict[str, Template]]:
        path = self.settings.templates_file
        try:
            custom = load_custom_templates(Path(path)) if path else None
        except DockbaseError as exc:
            return Err(exc)
        return Ok(all_templates(custom))

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    async def create_database(
        self,
        config: DatabaseConfig,
        template: str | None = None,
    ) -> Result[ContainerRecord]:
        """Provision a managed database container and start it.

        Port and name conflicts are rejected before the engine is asked to
        create anything.
        """
        if template:
            available = self.templates()
            if available.is_err():
                return Err(available.error)
            config = apply_template(template, config, available.unwrap())

        async def run() -> ContainerRecord:
            info = get_type_info(config.db_type)
            spec = build_container_spec(config, info)
            await self.allocator.check_conflicts(config.port, spec.name)
            ensured = await self.images.ensure(spec.image)
            if ensured.is_err():
                raise ensured.error
            container_id = await self.engine.create_container(spec)
            try:
                await self.engine.start_container(container_id)
            except DockbaseError as exc:
                raise exc.with_context(container=spec.name)
            logger.info(
                "database.created",
                container=spec.name,
                db_type=info.id.value,
                port=config.port,
                image=spec.image,
            )
            return ContainerRecord(
                id=container_id,
                name=spec.name,
                status="running",
                port=config.port,
                database_name=config.name,
                db_type=info.id.value,
                icon=info.icon,
                labels=spec.labels,
            )

        return await self._locked("create_database", run)

    async def list_databases(self) -> Result[list[ContainerRecord]]:
        async def run() -> list[ContainerRecord]:
            containers = await self.engine.list_containers(
                all=True, labels={MANAGED_LABEL: MANAGED_LABEL_VALUE}
            )
            return sorted((ContainerRecord.from_summary(c) for c in containers), key=lambda r: r.name)

        return await self._locked("list_databases", run)

    async def remove_database(self, container_id: str, remove_volumes: bool = False) -> Result[str]:
        """Stop (best effort), then remove a container and forget its migration record."""

        async def run() -> str:
            info = await self.engine.inspect_container(container_id)
            full_id = info.get("Id", container_id)
            name = (info.get("Name") or "").lstrip("/") or container_id
            try:
                await self.engine.stop_container(full_id)
            except DockbaseError as exc:
                logger.debug("database.stop.ignored", container=name, error=str(exc))
            await self.sleep(self.settings.stop_settle_seconds)
            await self.engine.remove_container(full_id, force=True, volumes=remove_volumes)
            dropped = self.store.remove_container(full_id)
            logger.info("database.removed", container=name, volumes=remove_volumes, records=dropped)
            return name

        return await self._locked("remove_database", run)

    async def update_database_port(self, container_id: str, port: int) -> Result[PortChange]:
        """Republish a managed database on ``port`` by recreating its container.

        Volumes carry over; a migration record follows the new container.
        """

        async def run() -> PortChange:
            info = await self.engine.inspect_container(container_id)
            old_id = info.get("Id", container_id)
            change = await update_database_port(
                self.engine,
                self.allocator,
                old_id,
                port,
                settle=self.settings.stop_settle_seconds,
                sleep=self.sleep,
            )
            self.store.repoint(old_id, change.container_id, change.new_port)
            return change

        return await self._locked("update_database_port", run)

    async def backup_database(self, container_id: str, destination: Path) -> Result[BackupReport]:
        return await self._locked(
            "backup_database", lambda: self.backups.backup_database(container_id, destination)
        )

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    async def migrate_database(self, request: MigrationRequest) -> Result[MigrationResult]:
        return await self._locked("migrate_database", lambda: self.migrations.run(request))

    def list_migrated(self) -> list[MigratedDatabase]:
        return self.store.list()

    async def list_source_databases(self, request: MigrationRequest) -> Result[list[SourceDatabase]]:
        try:
            return Ok(await self.source_factory(request).list_databases())
        except DockbaseError as exc:
            return Err(exc)

    async def drop_source_database(
        self, request: MigrationRequest, *, force: bool = False
    ) -> Result[str]:
        """Drop ``request.source_database`` on the source server.

        Refused while no migration of that database has been recorded,
        unless ``force`` is set.
        """
        migrated = [r for r in self.store.list() if r.source == request.provenance]
        if not migrated and not force:
            return Err(
                ValidationError(
                    f"'{request.provenance}' has not been migrated; refusing to drop it",
                    field="source_database",
                    value=request.source_database,
                )
            )
        try:
            await self.source_factory(request).drop_database(request.source_database)
        except DockbaseError as exc:
            return Err(exc)
        return Ok(request.source_database)

    # ------------------------------------------------------------------
    # Compose
    # ------------------------------------------------------------------

    def validate_compose(self, text: str) -> ComposeValidation:
        return validate_compose(text)

    def parse_compose(self, text: str) -> Result[ComposeConfig]:
        try:
            return Ok(parse_compose_file(text))
        except DockbaseError as exc:
            return Err(exc)

    async def generate_compose(self, container_ids: list[str]) -> Result[str]:
        return await self._locked(
            "generate_compose", lambda: generate_compose_from_containers(self.engine, container_ids)
        )

    async def deploy_compose(self, source: str | ComposeConfig, project: str) -> Result[DeploymentResult]:
        if isinstance(source, str):
            parsed = self.parse_compose(source)
            if parsed.is_err():
                return Err(parsed.error)
            source = parsed.unwrap()
        config = source
        return await self._locked("deploy_compose", lambda: self.compose.deploy(config, project))

    async def list_compose_projects(self) -> Result[list[ComposeProject]]:
        return await self._locked("list_compose_projects", self.compose.list_projects)

    async def start_compose_project(self, project: str) -> Result[list[str]]:
        return await self._locked("start_compose_project", lambda: self.compose.start_project(project))

    async def stop_compose_project(self, project: str) -> Result[list[str]]:
        return await self._locked("stop_compose_project", lambda: self.compose.stop_project(project))

    async def remove_compose_project(self, project: str, remove_volumes: bool = False) -> Result[list[str]]:
        return await self._locked(
            "remove_compose_project", lambda: self.compose.remove_project(project, remove_volumes)
        )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def container_stats(self, container_id: str) -> Result[ContainerStats]:
        return await self._locked("container_stats", lambda: self.stats_collector.collect(container_id))

    async def all_stats(self) -> Result[StatsBatch]:
        return await self._locked("all_stats", self.stats_collector.collect_all)

    # ------------------------------------------------------------------
    # Volumes and images
    # ------------------------------------------------------------------

    async def list_volumes(self) -> Result[list[VolumeInfo]]:
        return await self._locked("list_volumes", self.inventory.list_volumes)

    async def remove_volume(self, name: str, force: bool = False) -> Result[str]:
        async def run() -> str:
            await self.inventory.remove_volume(name, force=force)
            return name

        return await self._locked("remove_volume", run)

    async def prune_volumes(self) -> Result[PruneReport]:
        return await self._locked("prune_volumes", self.inventory.prune_volumes)

    async def backup_volume(self, name: str, destination: Path) -> Result[BackupReport]:
        return await self._locked("backup_volume", lambda: self.backups.backup_volume(name, destination))

    async def restore_volume(self, name: str, source: Path) -> Result[BackupReport]:
        return await self._locked("restore_volume", lambda: self.backups.restore_volume(name, source))

    async def list_images(self) -> Result[list[ImageInfo]]:
        return await self._locked("list_images", self.inventory.list_images)

    async def pull_image(self, image: str) -> Result[bool]:
        return await self._locked("pull_image", lambda: self.inventory.pull_image(image))

    async def remove_image(self, image: str, force: bool = False) -> Result[str]:
        async def run() -> str:
            await self.inventory.remove_image(image, force=force)
            return image

        return await self._locked("remove_image", run)


__all__ = ["DockbaseService"]

"""dockbase.deploy — Database containers, migrations and compose projects.

Everything that talks to the container engine lives here. The engine is
reached only through the :class:`EngineClient` protocol, so the whole
package runs against a fake engine in tests.

Key Concepts:
    CATALOG: Frozen metadata per database type (image, port, versions).
    ContainerSpec: Runtime-agnostic container description, serialised to
        the engine's wire format only at the engine boundary.
    ResourceAllocator: Port and name conflict checks, free-port search.
    ImageProvisioner: Idempotent image pull with a timeout.
    MigrationPipeline: Nine-step PostgreSQL migration into a new container.
    ComposeOrchestrator: Compose parse / generate / deploy, project
        operations by label.
    StatsCollector: CPU, memory, network and block I/O snapshots.
    BackupManager: Volume archives through a helper container, pg_dump
        backups of managed PostgreSQL databases.
    update_database_port: Recreate a database on a new host port.
    DockbaseService: Facade returning ``Ok`` / ``Err`` for the CLI.

Architecture::

    DockbaseService (asyncio.Lock)
        ├── ResourceAllocator ─┐
        ├── ImageProvisioner ──┤
        ├── MigrationPipeline ─┼──► EngineClient ──► DockerEngine (docker SDK)
        ├── ComposeOrchestrator┤
        ├── Inventory ─────────┤
        ├── BackupManager ─────┤
        └── StatsCollector ────┘
        MigrationPipeline ──► SourceDatabaseClient (asyncpg)

Related Modules:
    - :mod:`dockbase.core.errors` — Error taxonomy
    - :mod:`dockbase.cli` — ``dockbase`` command

Tags:
    docker, containers, postgres, migration, compose
"""

from dockbase.deploy.allocator import ResourceAllocator
from dockbase.deploy.backup import BackupManager, BackupReport
from dockbase.deploy.catalog import CATALOG, DatabaseType, DatabaseTypeInfo, get_type_info, list_types
from dockbase.deploy.compose import (
    ComposeOrchestrator,
    dump_compose,
    generate_compose_from_containers,
    parse_compose_file,
    validate_compose,
)
from dockbase.deploy.engine import DockerEngine, EngineClient, ExecResult
from dockbase.deploy.images import ImageProvisioner
from dockbase.deploy.migration import MigrationPipeline, MigrationStore
from dockbase.deploy.models import (
    ComposeConfig,
    ComposeService,
    ContainerRecord,
    DatabaseConfig,
    MigratedDatabase,
    MigrationRequest,
)
from dockbase.deploy.reconfigure import PortChange, update_database_port
from dockbase.deploy.results import DeploymentResult, MigrationResult, OverallStatus
from dockbase.deploy.service import DockbaseService
from dockbase.deploy.specs import ContainerSpec, build_container_spec
from dockbase.deploy.stats import StatsCollector, compute_stats

__all__ = [
    "CATALOG",
    "DatabaseType",
    "DatabaseTypeInfo",
    "get_type_info",
    "list_types",
    "ContainerSpec",
    "build_container_spec",
    "ResourceAllocator",
    "ImageProvisioner",
    "MigrationPipeline",
    "MigrationStore",
    "ComposeOrchestrator",
    "parse_compose_file",
    "validate_compose",
    "dump_compose",
    "generate_compose_from_containers",
    "StatsCollector",
    "compute_stats",
    "BackupManager",
    "BackupReport",
    "PortChange",
    "update_database_port",
    "EngineClient",
    "DockerEngine",
    "ExecResult",
    "DatabaseConfig",
    "ContainerRecord",
    "MigrationRequest",
    "MigratedDatabase",
    "ComposeConfig",
    "ComposeService",
    "MigrationResult",
    "DeploymentResult",
    "OverallStatus",
    "DockbaseService",
]

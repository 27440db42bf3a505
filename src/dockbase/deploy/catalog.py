"""Database type catalog for dockbase.

Immutable metadata for every database variant dockbase can provision:
image name, default port and admin user, selectable versions, data
directory and the rule used to build the container environment.

Why This Matters:
    Every other component keys off this table. The spec builder reads the
    env rule and port, the migration pipeline reads the PostgreSQL data
    directory, and the CLI lists versions for operators. Adding a variant
    is one ``DatabaseTypeInfo`` entry plus one ``EnvRule`` branch in
    :mod:`dockbase.deploy.specs`.

Key Concepts:
    DatabaseType: Closed ``str`` enum of variant ids.
    DatabaseTypeInfo: Frozen dataclass - metadata only, no behaviour beyond
        rendering ``name:version`` image references.
    EnvRule: Names the environment construction rule for a variant.
    CATALOG: Lookup table ``DatabaseType -> DatabaseTypeInfo``.

Architecture Decisions:
    - Frozen dataclasses (not Pydantic): entries are constants, not input.
    - Metadata is data: the spec builder switches on ``env_rule`` instead of
      each variant overriding a method.
    - Case-insensitive lookup: ``get_type_info("PostgreSQL")`` works.

Related Modules:
    - :mod:`dockbase.deploy.specs` - Consumes entries to build ContainerSpecs
    - :mod:`dockbase.deploy.templates` - Presets keyed by type id

Tags:
    catalog, database, docker, registry
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# ---------------------------------------------------------------------------
# Variant ids and env rules
# ---------------------------------------------------------------------------


class DatabaseType(str, Enum):
    """Supported database variants."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    MONGODB = "mongodb"
    REDIS = "redis"


class EnvRule(str, Enum):
    """How the container environment is derived from a DatabaseConfig."""

    POSTGRES = "postgres"  # POSTGRES_USER / PASSWORD / DB
    MYSQL_LIKE = "mysql_like"  # <PREFIX>_ROOT_PASSWORD / DATABASE / USER / PASSWORD
    MONGO = "mongo"  # MONGO_INITDB_* only when credentials are complete
    REDIS_COMMAND = "redis_command"  # no env, password via --requirepass


# ---------------------------------------------------------------------------
# Catalog entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseTypeInfo:
    """Static metadata for one database variant."""

    id: DatabaseType
    """Canonical id (also the ``database_type`` label value)."""

    display_name: str
    """Human-readable name."""

    icon: str
    """Glyph shown next to the database in listings."""

    image_name: str
    """Repository name on Docker Hub (tag is the version)."""

    default_port: int
    """Port the server listens on inside the container."""

    default_user: str
    """Suggested admin user."""

    versions: tuple[str, ...]
    """Selectable versions, newest first."""

    env_rule: EnvRule
    """Environment construction rule."""

    env_prefix: str = ""
    """Env var prefix for MYSQL_LIKE variants (``MYSQL`` / ``MARIADB``)."""

    data_dir: str = ""
    """Data directory inside the container."""

    @property
    def latest_version(self) -> str:
        return self.versions[0]

    def image(self, version: str | None = None) -> str:
        """Render the image reference ``name:version``."""
        return f"{self.image_name}:{version or self.latest_version}"

    def container_name(self, name: str) -> str:
        """Type-prefixed display name for a logical database name."""
        return f"{self.id.value}-{name}"


POSTGRES = DatabaseTypeInfo(
    id=DatabaseType.POSTGRES,
    display_name="PostgreSQL",
    icon="🐘",
    image_name="postgres",
    default_port=5432,
    default_user="postgres",
    versions=("17", "16", "15", "14", "13"),
    env_rule=EnvRule.POSTGRES,
    data_dir="/var/lib/postgresql/data",
)

MYSQL = DatabaseTypeInfo(
    id=DatabaseType.MYSQL,
    display_name="MySQL",
    icon="🐬",
    image_name="mysql",
    default_port=3306,
    default_user="root",
    versions=("8.4", "8.0", "5.7"),
    env_rule=EnvRule.MYSQL_LIKE,
    env_prefix="MYSQL",
    data_dir="/var/lib/mysql",
)

MARIADB = DatabaseTypeInfo(
    id=DatabaseType.MARIADB,
    display_name="MariaDB",
    icon="🦭",
    image_name="mariadb",
    default_port=3306,
    default_user="root",
    versions=("11.4", "10.11", "10.6"),
    env_rule=EnvRule.MYSQL_LIKE,
    env_prefix="MARIADB",
    data_dir="/var/lib/mysql",
)

MONGODB = DatabaseTypeInfo(
    id=DatabaseType.MONGODB,
    display_name="MongoDB",
    icon="🍃",
    image_name="mongo",
    default_port=27017,
    default_user="admin",
    versions=("8.0", "7.0", "6.0"),
    env_rule=EnvRule.MONGO,
    data_dir="/data/db",
)

REDIS = DatabaseTypeInfo(
    id=DatabaseType.REDIS,
    display_name="Redis",
    icon="🔴",
    image_name="redis",
    default_port=6379,
    default_user="",
    versions=("7.4", "7.2", "6.2"),
    env_rule=EnvRule.REDIS_COMMAND,
    data_dir="/data",
)

CATALOG: dict[DatabaseType, DatabaseTypeInfo] = {
    info.id: info for info in (POSTGRES, MYSQL, MARIADB, MONGODB, REDIS)
}


def get_type_info(db_type: DatabaseType | str) -> DatabaseTypeInfo:
    """Look up a catalog entry (case-insensitive).

    Raises:
        KeyError: If the type is unknown.
    """
    if isinstance(db_type, DatabaseType):
        return CATALOG[db_type]
    key = db_type.strip().lower()
    for info in CATALOG.values():
        if key in (info.id.value, info.display_name.lower(), info.image_name):
            return info
    available = ", ".join(t.value for t in CATALOG)
    raise KeyError(f"Unknown database type '{db_type}'. Available: {available}")


def list_types() -> list[DatabaseTypeInfo]:
    """All catalog entries in declaration order."""
    return list(CATALOG.values())


__all__ = [
    "DatabaseType",
    "EnvRule",
    "DatabaseTypeInfo",
    "CATALOG",
    "get_type_info",
    "list_types",
]

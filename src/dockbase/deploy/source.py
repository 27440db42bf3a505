"""Source PostgreSQL access for dockbase.

Direct connections to a PostgreSQL server outside the container engine,
used for exactly three things: probing the server version before a
migration, listing the databases a migration could pick from, and dropping
a source database once the operator is satisfied with its migrated copy.

Dump and restore never go through here; they run inside helper containers.

Tags:
    postgres, asyncpg, source, migration
"""

from __future__ import annotations

import asyncio
import re

import asyncpg

from dockbase.core.errors import ConnectivityError, SourceDatabaseError, ValidationError
from dockbase.core.logging import get_logger
from dockbase.deploy.models import SourceDatabase

logger = get_logger(__name__)

MAINTENANCE_DB = "postgres"

# Raised by a query on an open connection (server error or dropped connection).
_QUERY_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError)

_VERSION_RE = re.compile(r"PostgreSQL\s+(\d+)(?:\.\d+)?")

_LIST_SQL = """
SELECT d.datname AS name,
       pg_database_size(d.datname) AS size_bytes,
       pg_get_userbyid(d.datdba) AS owner
FROM pg_database d
WHERE NOT d.datistemplate AND d.datname <> 'postgres'
ORDER BY d.datname
"""


def parse_major_version(version: str) -> str | None:
    """Major version token of a ``SELECT version()`` string.

    >>> parse_major_version("PostgreSQL 15.4 (Debian 15.4-1.pgdg120+1) on x86_64")
    '15'
    """
    match = _VERSION_RE.search(version or "")
    return match.group(1) if match else None


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class SourceDatabaseClient:
    """Connects to a source PostgreSQL server with asyncpg."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        *,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    async def _connect(self, database: str) -> asyncpg.Connection:
        try:
            return await asyncpg.connect(
                host=self.host,
                port=self.port,
                user=self.user,
                password=self.password,
                database=database,
                timeout=self.timeout,
            )
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as exc:
            raise ConnectivityError(
                f"Cannot connect to PostgreSQL at {self.host}:{self.port}/{database}: {exc}",
                cause=exc,
            ).with_context(database=database) from exc

    async def server_version(self, database: str = MAINTENANCE_DB) -> str:
        """Full ``SELECT version()`` string."""
        conn = await self._connect(database)
        try:
            return await conn.fetchval("SELECT version()")
        except _QUERY_ERRORS as exc:
            raise SourceDatabaseError(f"Version query failed: {exc}", cause=exc) from exc
        finally:
            await conn.close()

    async def list_databases(self) -> list[SourceDatabase]:
        conn = await self._connect(MAINTENANCE_DB)
        try:
            rows = await conn.fetch(_LIST_SQL)
        except _QUERY_ERRORS as exc:
            raise SourceDatabaseError(f"Listing databases failed: {exc}", cause=exc) from exc
        finally:
            await conn.close()
        return [
            SourceDatabase(name=row["name"], size_bytes=row["size_bytes"] or 0, owner=row["owner"])
            for row in rows
        ]

    async def drop_database(self, name: str) -> None:
        if name in (MAINTENANCE_DB, "template0", "template1"):
            raise ValidationError(f"Refusing to drop system database '{name}'", field="name", value=name)
        conn = await self._connect(MAINTENANCE_DB)
        try:
            await conn.execute(f"DROP DATABASE {quote_ident(name)}")
        except _QUERY_ERRORS as exc:
            raise SourceDatabaseError(f"DROP DATABASE {name} failed: {exc}", cause=exc) from exc
        finally:
            await conn.close()
        logger.info("source.database.dropped", database=name, host=self.host)


__all__ = ["SourceDatabaseClient", "parse_major_version", "quote_ident", "MAINTENANCE_DB"]

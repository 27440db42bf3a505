"""
Stand-in for :class:`dockbase.deploy.source.SourceDatabaseClient`.
"""

from __future__ import annotations

from dockbase.core.errors import DockbaseError
from dockbase.deploy.models import SourceDatabase


class FakeSource:
    """Answers version queries and database listings from fixed data."""

    def __init__(
        self,
        version: str = "PostgreSQL 15.4 (Debian 15.4-1.pgdg120+1) on x86_64-pc-linux-gnu",
        databases: list[SourceDatabase] | None = None,
        error: DockbaseError | None = None,
    ) -> None:
        self.version = version
        self.databases = databases or []
        self.error = error
        self.dropped: list[str] = []
        self.requests: list[object] = []

    def factory(self, request: object) -> FakeSource:
        self.requests.append(request)
        return self

    async def server_version(self, database: str = "postgres") -> str:
        if self.error:
            raise self.error
        return self.version

    async def list_databases(self) -> list[SourceDatabase]:
        if self.error:
            raise self.error
        return list(self.databases)

    async def drop_database(self, name: str) -> None:
        if self.error:
            raise self.error
        self.dropped.append(name)

"""Port and name conflict checks for dockbase.

Every provisioning path asks the :class:`ResourceAllocator` before it
creates anything. The allocator lists all containers known to the engine,
stopped ones included, because a stopped container still owns its name and
will reclaim its published port on start.

Key Concepts:
    check_conflicts: Fails with ConflictError if the port is published by
        any container or the display name is taken. Read-only.
    find_free_port: Linear search upward from a base port, bounded by a
        candidate limit; exhaustion is NoPortAvailableError.

Tags:
    ports, conflicts, validation, allocation
"""

from __future__ import annotations

from typing import Any, Iterable

from dockbase.core.errors import ConflictError, NoPortAvailableError
from dockbase.core.logging import get_logger
from dockbase.deploy.engine import EngineClient

logger = get_logger(__name__)

MAX_PORT = 65535


def container_display_name(summary: dict[str, Any]) -> str:
    names = summary.get("Names") or []
    return names[0].lstrip("/") if names else summary.get("Id", "")[:12]


def published_ports(containers: Iterable[dict[str, Any]]) -> dict[int, str]:
    """Map every published host port to the name of the container holding it."""
    ports: dict[int, str] = {}
    for summary in containers:
        for binding in summary.get("Ports") or []:
            public = binding.get("PublicPort")
            if public:
                ports.setdefault(int(public), container_display_name(summary))
    return ports


class ResourceAllocator:
    """Validates host ports and container names against the live engine."""

    def __init__(self, engine: EngineClient, *, search_limit: int = 1000) -> None:
        self.engine = engine
        self.search_limit = search_limit

    async def check_conflicts(self, port: int | None, name: str | None) -> None:
        """Raise ConflictError if ``port`` or ``name`` is already in use.

        Either check can be skipped by passing ``None``.
        """
        containers = await self.engine.list_containers(all=True)

        if port is not None:
            holder = published_ports(containers).get(port)
            if holder is not None:
                raise ConflictError(
                    f"Port {port} is already used by container '{holder}'",
                    field="port",
                    value=port,
                )

        if name is not None:
            for summary in containers:
                if any(n.lstrip("/") == name for n in summary.get("Names") or []):
                    raise ConflictError(
                        f"A container named '{name}' already exists",
                        field="name",
                        value=name,
                    )

    async def find_free_port(self, base_port: int, limit: int | None = None) -> int:
        """First port at or above ``base_port`` not published by any container."""
        limit = limit or self.search_limit
        used = published_ports(await self.engine.list_containers(all=True))
        last = min(base_port + limit - 1, MAX_PORT)
        for candidate in range(base_port, last + 1):
            if candidate not in used:
                logger.debug("port.allocated", port=candidate, base=base_port)
                return candidate
        raise NoPortAvailableError(
            f"No free port between {base_port} and {last}",
            field="port",
            value=base_port,
        )


__all__ = [
    "ResourceAllocator",
    "published_ports",
    "container_display_name",
]

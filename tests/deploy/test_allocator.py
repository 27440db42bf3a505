"""Tests for port and name conflict detection."""

from __future__ import annotations

import pytest

from dockbase.core.errors import ConflictError, NoPortAvailableError, ValidationError
from dockbase.deploy.allocator import ResourceAllocator, published_ports


class TestPublishedPorts:
    def test_maps_port_to_holder(self, engine):
        engine.add_container("postgres-app", port=5440)
        engine.add_container("no-ports")
        summaries = [c.summary() for c in engine.containers.values()]
        assert published_ports(summaries) == {5440: "postgres-app"}


class TestCheckConflicts:
    @pytest.mark.asyncio
    async def test_free_port_and_name(self, engine):
        engine.add_container("postgres-app", port=5440)
        await ResourceAllocator(engine).check_conflicts(5441, "postgres-other")

    @pytest.mark.asyncio
    async def test_port_taken(self, engine):
        engine.add_container("postgres-app", port=5440)
        with pytest.raises(ConflictError, match="Port 5440 is already used by container 'postgres-app'") as info:
            await ResourceAllocator(engine).check_conflicts(5440, "postgres-new")
        assert info.value.field == "port"
        assert engine.mutating_calls == []

    @pytest.mark.asyncio
    async def test_stopped_container_still_holds_port(self, engine):
        engine.add_container("postgres-app", port=5440, running=False)
        with pytest.raises(ConflictError):
            await ResourceAllocator(engine).check_conflicts(5440, None)

    @pytest.mark.asyncio
    async def test_name_taken(self, engine):
        engine.add_container("postgres-app", running=False)
        with pytest.raises(ConflictError, match="named 'postgres-app' already exists") as info:
            await ResourceAllocator(engine).check_conflicts(None, "postgres-app")
        assert info.value.field == "name"

    @pytest.mark.asyncio
    async def test_conflict_is_validation_error(self, engine):
        engine.add_container("postgres-app", port=5440)
        with pytest.raises(ValidationError):
            await ResourceAllocator(engine).check_conflicts(5440, None)


class TestFindFreePort:
    @pytest.mark.asyncio
    async def test_base_port_free(self, engine):
        assert await ResourceAllocator(engine).find_free_port(5433) == 5433

    @pytest.mark.asyncio
    async def test_skips_used_ports(self, engine):
        engine.add_container("a", port=5433)
        engine.add_container("b", port=5434, running=False)
        assert await ResourceAllocator(engine).find_free_port(5433) == 5435

    @pytest.mark.asyncio
    async def test_bounded_search(self, engine):
        for offset in range(3):
            engine.add_container(f"c{offset}", port=5433 + offset)
        allocator = ResourceAllocator(engine, search_limit=3)
        with pytest.raises(NoPortAvailableError, match="No free port between 5433 and 5435"):
            await allocator.find_free_port(5433)

    @pytest.mark.asyncio
    async def test_never_exceeds_max_port(self, engine):
        engine.add_container("top", port=65535)
        with pytest.raises(NoPortAvailableError):
            await ResourceAllocator(engine).find_free_port(65535, limit=10)

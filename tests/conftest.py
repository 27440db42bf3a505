"""
Shared pytest fixtures and configuration for dockbase tests.

This module provides:
- A recording in-memory engine (no Docker required)
- Settings with all pacing delays set to zero
- A recording sleep so tests can assert on pacing without waiting

Usage:
    Fixtures are auto-discovered by pytest. Simply use them as function
    arguments.

    @pytest.mark.asyncio
    async def test_something(engine, settings):
        ...
"""

from pathlib import Path
from typing import Generator

import pytest

from dockbase.core.settings import DockbaseSettings, clear_settings_cache
from dockbase.deploy.migration import MigrationStore
from tests._support.fake_engine import FakeEngine
from tests._support.fake_source import FakeSource


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark every test without an explicit marker as a unit test."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def clean_settings_cache() -> Generator[None, None, None]:
    """Never leak a cached DockbaseSettings between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> DockbaseSettings:
    """Settings with zero pacing and a short readiness budget."""
    return DockbaseSettings(
        stop_settle_seconds=0,
        start_settle_seconds=0,
        readiness_attempts=5,
        readiness_interval_seconds=0,
        pull_timeout_seconds=5,
        migration_base_port=5433,
        port_search_limit=20,
        scratch_dir=None,
        templates_file=None,
    )


# =============================================================================
# Fakes
# =============================================================================


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def engine() -> FakeEngine:
    """Empty engine with the postgres 15 image already present."""
    return FakeEngine(images=["postgres:15"])


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def store() -> MigrationStore:
    return MigrationStore()


@pytest.fixture
def compose_dir(tmp_path: Path) -> Path:
    """Temporary directory for compose files."""
    path = tmp_path / "compose"
    path.mkdir()
    return path

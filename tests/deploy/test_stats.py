"""Tests for container stats derivation and aggregation."""

from __future__ import annotations

import pytest

from dockbase.core.errors import EngineError, PartialFailureError
from dockbase.deploy.models import MANAGED_LABEL, MANAGED_LABEL_VALUE
from dockbase.deploy.stats import StatsCollector, compute_stats

MANAGED = {MANAGED_LABEL: MANAGED_LABEL_VALUE}


def _raw(**overrides):
    raw = {
        "name": "/postgres-shop",
        "cpu_stats": {
            "cpu_usage": {"total_usage": 400_000_000},
            "system_cpu_usage": 20_000_000_000,
            "online_cpus": 2,
        },
        "precpu_stats": {
            "cpu_usage": {"total_usage": 300_000_000},
            "system_cpu_usage": 19_000_000_000,
        },
        "memory_stats": {"usage": 64 * 1024**2, "limit": 256 * 1024**2},
        "networks": {
            "eth0": {"rx_bytes": 1000, "tx_bytes": 200},
            "eth1": {"rx_bytes": 24, "tx_bytes": 56},
        },
        "blkio_stats": {
            "io_service_bytes_recursive": [
                {"major": 8, "minor": 0, "op": "Read", "value": 4096},
                {"major": 8, "minor": 0, "op": "Write", "value": 8192},
                {"major": 8, "minor": 16, "op": "read", "value": 4096},
                {"major": 8, "minor": 0, "op": "Total", "value": 16384},
            ]
        },
    }
    raw.update(overrides)
    return raw


class TestComputeStats:
    def test_cpu_percent(self):
        stats = compute_stats("abc", "postgres-shop", _raw())
        # 100M / 1000M * 2 cpus * 100
        assert stats.cpu_percent == 20.0

    def test_memory(self):
        stats = compute_stats("abc", "postgres-shop", _raw())
        assert stats.memory_usage == 64 * 1024**2
        assert stats.memory_limit == 256 * 1024**2
        assert stats.memory_percent == 25.0

    def test_network_and_block_io_are_summed(self):
        stats = compute_stats("abc", "postgres-shop", _raw())
        assert (stats.network_rx, stats.network_tx) == (1024, 256)
        assert (stats.block_read, stats.block_write) == (8192, 8192)

    def test_zero_system_delta(self):
        raw = _raw()
        raw["precpu_stats"]["system_cpu_usage"] = raw["cpu_stats"]["system_cpu_usage"]
        assert compute_stats("abc", "x", raw).cpu_percent == 0.0

    def test_zero_memory_limit(self):
        stats = compute_stats("abc", "x", _raw(memory_stats={"usage": 10}))
        assert stats.memory_percent == 0.0

    def test_online_cpus_from_percpu(self):
        raw = _raw()
        del raw["cpu_stats"]["online_cpus"]
        raw["cpu_stats"]["cpu_usage"]["percpu_usage"] = [1, 1, 1, 1]
        assert compute_stats("abc", "x", raw).cpu_percent == 40.0

    def test_empty_snapshot(self):
        stats = compute_stats("abc", "", {})
        assert stats.cpu_percent == 0.0
        assert stats.network_rx == 0
        assert stats.name == ""

    def test_name_from_payload(self):
        assert compute_stats("abc", "", _raw()).name == "postgres-shop"


class TestStatsCollector:
    @pytest.mark.asyncio
    async def test_collect(self, engine):
        container = engine.add_container("postgres-shop", labels=MANAGED)
        engine.stats_payloads[container.id] = _raw()

        stats = await StatsCollector(engine).collect(container.id, "postgres-shop")

        assert stats.container_id == container.id
        assert stats.cpu_percent == 20.0

    @pytest.mark.asyncio
    async def test_collect_all_only_running_managed(self, engine):
        running = engine.add_container("postgres-a", labels=MANAGED)
        engine.add_container("postgres-b", labels=MANAGED, running=False)
        engine.add_container("unmanaged")
        engine.stats_payloads[running.id] = _raw()

        batch = await StatsCollector(engine).collect_all()

        assert [s.name for s in batch.stats] == ["postgres-a"]
        assert batch.failures == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, engine, monkeypatch):
        first = engine.add_container("postgres-a", labels=MANAGED)
        second = engine.add_container("postgres-b", labels=MANAGED)
        original = engine.stats

        async def flaky_stats(container_id):
            if container_id == first.id:
                raise EngineError("container is restarting")
            return await original(container_id)

        monkeypatch.setattr(engine, "stats", flaky_stats)

        batch = await StatsCollector(engine).collect_all()

        assert [s.container_id for s in batch.stats] == [second.id]
        assert len(batch.failures) == 1
        failure = batch.failures[0]
        assert isinstance(failure, PartialFailureError)
        assert failure.context.container == "postgres-a"
        assert "container is restarting" in failure.message

"""Container resource statistics for dockbase.

One non-streaming stats snapshot from the engine carries both the current
(``cpu_stats``) and previous (``precpu_stats``) cumulative CPU counters, so
a single call is enough to derive a CPU percentage.

Formulas (all rounded to two decimals):
    cpu%     = cpu_delta / system_delta * online_cpus * 100   (0 if system_delta <= 0)
    memory%  = usage / limit * 100                            (0 if limit == 0)
    net rx/tx, block read/write are summed across interfaces / devices

Aggregation over every running managed container is sequential; a
container whose snapshot fails is logged and reported in
``StatsBatch.failures``, the rest of the batch continues.

Tags:
    stats, metrics, cpu, memory, containers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dockbase.core.errors import DockbaseError, PartialFailureError
from dockbase.core.logging import get_logger
from dockbase.deploy.engine import EngineClient
from dockbase.deploy.models import MANAGED_LABEL, MANAGED_LABEL_VALUE, ContainerStats

logger = get_logger(__name__)


def _cpu_percent(raw: dict[str, Any]) -> float:
    cpu = raw.get("cpu_stats") or {}
    precpu = raw.get("precpu_stats") or {}
    cpu_usage = (cpu.get("cpu_usage") or {}).get("total_usage", 0)
    pre_usage = (precpu.get("cpu_usage") or {}).get("total_usage", 0)
    system = cpu.get("system_cpu_usage", 0)
    pre_system = precpu.get("system_cpu_usage", 0)

    cpu_delta = cpu_usage - pre_usage
    system_delta = system - pre_system
    if system_delta <= 0:
        return 0.0

    online = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    return cpu_delta / system_delta * online * 100.0


def compute_stats(container_id: str, name: str, raw: dict[str, Any]) -> ContainerStats:
    """Derive a ContainerStats from one raw engine snapshot."""
    memory = raw.get("memory_stats") or {}
    usage = int(memory.get("usage") or 0)
    limit = int(memory.get("limit") or 0)
    memory_percent = usage / limit * 100.0 if limit else 0.0

    rx = tx = 0
    for counters in (raw.get("networks") or {}).values():
        rx += int(counters.get("rx_bytes") or 0)
        tx += int(counters.get("tx_bytes") or 0)

    read = write = 0
    entries = (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []
    for entry in entries:
        op = str(entry.get("op", "")).lower()
        if op == "read":
            read += int(entry.get("value") or 0)
        elif op == "write":
            write += int(entry.get("value") or 0)

    return ContainerStats(
        container_id=container_id,
        name=name or str(raw.get("name", "")).lstrip("/"),
        cpu_percent=round(_cpu_percent(raw), 2),
        memory_usage=usage,
        memory_limit=limit,
        memory_percent=round(memory_percent, 2),
        network_rx=rx,
        network_tx=tx,
        block_read=read,
        block_write=write,
    )


@dataclass
class StatsBatch:
    """Stats for many containers plus the ones that could not be read."""

    stats: list[ContainerStats] = field(default_factory=list)
    failures: list[PartialFailureError] = field(default_factory=list)


class StatsCollector:
    """Reads stats snapshots through the engine."""

    def __init__(self, engine: EngineClient) -> None:
        self.engine = engine

    async def collect(self, container_id: str, name: str = "") -> ContainerStats:
        raw = await self.engine.stats(container_id)
        return compute_stats(container_id, name, raw)

    async def collect_all(self) -> StatsBatch:
        """Stats for every running managed container, one at a time."""
        batch = StatsBatch()
        containers = await self.engine.list_containers(
            all=False, labels={MANAGED_LABEL: MANAGED_LABEL_VALUE}
        )
        for summary in containers:
            container_id = summary.get("Id", "")
            names = summary.get("Names") or []
            name = names[0].lstrip("/") if names else container_id[:12]
            try:
                batch.stats.append(await self.collect(container_id, name))
            except DockbaseError as exc:
                logger.warning("stats.container.failed", container=name, error=str(exc))
                batch.failures.append(
                    PartialFailureError(f"Stats unavailable for '{name}': {exc.message}", cause=exc)
                    .with_context(container=name)
                )
        return batch


__all__ = ["compute_stats", "StatsCollector", "StatsBatch"]

"""Changing the published port of a managed database.

The engine cannot rebind a container's ports in place, so a port change
recreates the container: same image, environment, command, labels, limits,
restart policy and network, and the same volumes re-mounted by name so the
data directory carries over. Only the host port differs.

Steps:
    1. inspect the container; it must carry the managed label
    2. check the new port against every container (ResourceAllocator)
    3. stop it and rename it out of the way (``<name>-replaced-<hex>``)
    4. create the replacement under the original name, start it if the
       original was running
    5. remove the original container, keeping its volumes

If step 4 fails the original gets its name back and is restarted, so a
failed change leaves the database where it was.

Tags:
    ports, recreate, containers
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from dockbase.core.errors import DockbaseError, ValidationError
from dockbase.core.logging import get_logger
from dockbase.deploy.allocator import ResourceAllocator
from dockbase.deploy.catalog import get_type_info
from dockbase.deploy.engine import EngineClient, inspect_env
from dockbase.deploy.models import LABEL_DATABASE_TYPE, MANAGED_LABEL, MANAGED_LABEL_VALUE
from dockbase.deploy.specs import DEFAULT_HOST_IP, ContainerSpec, port_key

logger = get_logger(__name__)


@dataclass
class PortChange:
    name: str
    old_port: int | None
    new_port: int
    container_id: str


def spec_from_inspect(info: dict[str, Any]) -> ContainerSpec:
    """Rebuild the ContainerSpec an inspected container was created from."""
    config = info.get("Config") or {}
    host_config = info.get("HostConfig") or {}
    cmd = config.get("Cmd")
    spec = ContainerSpec(
        name=(info.get("Name") or "").lstrip("/"),
        image=config.get("Image") or info.get("Image", ""),
        env=inspect_env(info),
        command=list(cmd) if cmd else None,
        labels=dict(config.get("Labels") or {}),
    )

    for key, bindings in (host_config.get("PortBindings") or {}).items():
        spec.expose(key)
        for binding in bindings or []:
            if binding.get("HostPort"):
                spec.expose(key, int(binding["HostPort"]), binding.get("HostIp") or DEFAULT_HOST_IP)

    for mount in info.get("Mounts") or []:
        mode = "" if mount.get("RW", True) else ":ro"
        if mount.get("Type") == "volume" and mount.get("Name"):
            spec.binds.append(f"{mount['Name']}:{mount['Destination']}{mode}")
        elif mount.get("Type") == "bind":
            spec.binds.append(f"{mount['Source']}:{mount['Destination']}{mode}")

    restart = (host_config.get("RestartPolicy") or {}).get("Name")
    if restart and restart != "no":
        spec.restart_policy = restart
    if host_config.get("Memory"):
        spec.memory_bytes = int(host_config["Memory"])
    if host_config.get("NanoCpus"):
        spec.nano_cpus = int(host_config["NanoCpus"])
    network_mode = host_config.get("NetworkMode")
    if network_mode and network_mode not in ("default", "bridge"):
        spec.network_mode = network_mode
    return spec


def _database_port_key(spec: ContainerSpec) -> str:
    db_type = spec.labels.get(LABEL_DATABASE_TYPE)
    if db_type:
        try:
            return port_key(get_type_info(db_type).default_port)
        except KeyError:
            pass
    if spec.port_bindings:
        return next(iter(spec.port_bindings))
    if spec.exposed_ports:
        return spec.exposed_ports[0]
    raise ValidationError(f"Container '{spec.name}' exposes no port", field="container", value=spec.name)


async def update_database_port(
    engine: EngineClient,
    allocator: ResourceAllocator,
    container: str,
    new_port: int,
    *,
    settle: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PortChange:
    """Recreate a managed database container published on ``new_port``."""
    info = await engine.inspect_container(container)
    spec = spec_from_inspect(info)
    if spec.labels.get(MANAGED_LABEL) != MANAGED_LABEL_VALUE:
        raise ValidationError(
            f"Container '{spec.name}' is not managed by dockbase", field="container", value=container
        )

    key = _database_port_key(spec)
    previous = spec.port_bindings.get(key) or []
    old_port = previous[0][1] if previous else None
    if old_port == new_port:
        raise ValidationError(
            f"Container '{spec.name}' is already published on port {new_port}", field="port", value=new_port
        )
    await allocator.check_conflicts(new_port, None)

    host_ip = previous[0][0] if previous else DEFAULT_HOST_IP
    spec.port_bindings[key] = []
    spec.expose(key, new_port, host_ip)

    old_id = info.get("Id", container)
    was_running = bool((info.get("State") or {}).get("Running"))
    if was_running:
        await engine.stop_container(old_id)
        if settle:
            await sleep(settle)
    parked = f"{spec.name}-replaced-{uuid.uuid4().hex[:6]}"
    await engine.rename_container(old_id, parked)

    new_id: str | None = None
    try:
        new_id = await engine.create_container(spec)
        if was_running:
            await engine.start_container(new_id)
    except DockbaseError as exc:
        logger.warning("port.update.rollback", container=spec.name, port=new_port, error=str(exc))
        if new_id is not None:
            await engine.remove_container(new_id, force=True)
        await engine.rename_container(old_id, spec.name)
        if was_running:
            await engine.start_container(old_id)
        raise

    await engine.remove_container(old_id, force=True)
    logger.info("port.updated", container=spec.name, old_port=old_port, new_port=new_port)
    return PortChange(name=spec.name, old_port=old_port, new_port=new_port, container_id=new_id)


__all__ = [
    "PortChange",
    "spec_from_inspect",
    "update_database_port",
]

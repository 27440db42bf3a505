"""Container specifications for dockbase.

``ContainerSpec`` is the runtime-agnostic description of one container:
image, environment, command, ports, limits, restart policy, labels, binds
and networking. Every container dockbase creates, whether a database, a
dump helper, a migration destination or a compose service, is described by
one and serialised to the engine's wire format only in
:meth:`DockerEngine.create_container`.

``build_container_spec`` turns a :class:`DatabaseConfig` plus its catalog
entry into a ContainerSpec. It is pure and deterministic: no I/O, same
input, same spec.

Key Concepts:
    ContainerSpec: Dataclass with optional fields. Unset limits are omitted
        from the wire payload rather than sent as zero.
    parse_memory: ``"256m"`` -> 268435456. Suffixes k/kb/m/mb/g/gb,
        case-insensitive, 1024-based. Bare numbers are bytes.
    parse_cpus: ``"0.5"`` -> 500000000 nano-CPUs. A non-numeric value is
        dropped (the container runs without a CPU limit), not rejected.

Related Modules:
    - :mod:`dockbase.deploy.catalog` - Port, env rule, labels source
    - :mod:`dockbase.deploy.engine` - Serialises ContainerSpec

Tags:
    containers, specs, env, resource-limits, labels
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

from dockbase.core.errors import ConfigError
from dockbase.core.logging import get_logger
from dockbase.deploy.catalog import DatabaseTypeInfo, EnvRule
from dockbase.deploy.models import (
    LABEL_DATABASE_ICON,
    LABEL_DATABASE_NAME,
    LABEL_DATABASE_TYPE,
    MANAGED_LABEL,
    MANAGED_LABEL_VALUE,
    DatabaseConfig,
)

logger = get_logger(__name__)

NANO_CPUS_PER_CORE = 1_000_000_000
DEFAULT_HOST_IP = "0.0.0.0"

_MEMORY_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "g": 1024**3,
    "gb": 1024**3,
}

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]*)\s*$")


# ---------------------------------------------------------------------------
# ContainerSpec
# ---------------------------------------------------------------------------


@dataclass
class ContainerSpec:
    """Everything needed to create one container."""

    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    command: list[str] | None = None
    exposed_ports: list[str] = field(default_factory=list)
    """Container ports as ``"5432/tcp"``."""

    port_bindings: dict[str, list[tuple[str, int]]] = field(default_factory=dict)
    """Container port (``"5432/tcp"``) -> ``[(host ip, host port), ...]``."""

    memory_bytes: int | None = None
    nano_cpus: int | None = None
    restart_policy: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    binds: list[str] = field(default_factory=list)
    """Volume binds as ``"source:/target[:mode]"``."""

    network_mode: str | None = None
    network_aliases: list[str] = field(default_factory=list)
    """Extra DNS names on the ``network_mode`` network."""

    extra_hosts: dict[str, str] = field(default_factory=dict)

    def expose(
        self,
        container_port: int | str,
        host_port: int | None = None,
        host_ip: str = DEFAULT_HOST_IP,
    ) -> None:
        """Expose a container port, optionally publishing it on the host.

        A container port may be published more than once (different host
        ports or interfaces); each call adds one binding.
        """
        key = port_key(container_port)
        if key not in self.exposed_ports:
            self.exposed_ports.append(key)
        if host_port is not None:
            bindings = self.port_bindings.setdefault(key, [])
            if (host_ip, host_port) not in bindings:
                bindings.append((host_ip, host_port))

    def host_ports(self) -> list[int]:
        """Every published host port."""
        return [port for bindings in self.port_bindings.values() for _, port in bindings]

    def create_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``APIClient.create_container``."""
        ports = []
        for key in self.exposed_ports:
            number, _, proto = key.partition("/")
            ports.append((int(number), proto or "tcp"))
        kwargs: dict[str, Any] = {
            "image": self.image,
            "name": self.name,
            "environment": dict(self.env),
            "labels": dict(self.labels),
            "detach": True,
        }
        if ports:
            kwargs["ports"] = ports
        if self.command:
            kwargs["command"] = list(self.command)
        return kwargs

    def host_config_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``APIClient.create_host_config``."""
        kwargs: dict[str, Any] = {}
        if self.port_bindings:
            kwargs["port_bindings"] = {
                key: list(bindings) for key, bindings in self.port_bindings.items()
            }
        if self.binds:
            kwargs["binds"] = list(self.binds)
        if self.memory_bytes is not None:
            kwargs["mem_limit"] = self.memory_bytes
        if self.nano_cpus is not None:
            kwargs["nano_cpus"] = self.nano_cpus
        if self.restart_policy and self.restart_policy != "no":
            kwargs["restart_policy"] = {"Name": self.restart_policy, "MaximumRetryCount": 0}
        if self.network_mode:
            kwargs["network_mode"] = self.network_mode
        if self.extra_hosts:
            kwargs["extra_hosts"] = dict(self.extra_hosts)
        return kwargs


def port_key(port: int | str) -> str:
    """Normalise a container port to ``"<number>/<proto>"``."""
    text = str(port).strip()
    return text if "/" in text else f"{text}/tcp"


# ---------------------------------------------------------------------------
# Resource limits
# ---------------------------------------------------------------------------


def parse_memory(value: str) -> int:
    """Parse a memory limit into bytes.

    >>> parse_memory("256m")
    268435456
    >>> parse_memory("2GB")
    2147483648
    >>> parse_memory("1024")
    1024

    Raises:
        ConfigError: If the value is not a number with a known suffix.
    """
    match = _MEMORY_RE.match(value.lower())
    if not match or match.group(2) not in _MEMORY_UNITS:
        raise ConfigError(
            f"Invalid memory limit {value!r}: expected a number with optional "
            "suffix k, kb, m, mb, g or gb"
        ).with_context(field="memory")
    return int(float(match.group(1)) * _MEMORY_UNITS[match.group(2)])


def parse_cpus(value: str) -> int | None:
    """Parse a fractional core count into nano-CPUs.

    Returns None for a non-numeric value; the caller omits the limit.
    """
    try:
        cores = float(value)
    except (TypeError, ValueError):
        logger.debug("limits.cpus.ignored", value=value)
        return None
    if not math.isfinite(cores) or cores <= 0:
        logger.debug("limits.cpus.ignored", value=value)
        return None
    return int(cores * NANO_CPUS_PER_CORE)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def managed_labels(info: DatabaseTypeInfo, database_name: str) -> dict[str, str]:
    """The label set that marks a container as a managed database."""
    return {
        MANAGED_LABEL: MANAGED_LABEL_VALUE,
        LABEL_DATABASE_NAME: database_name,
        LABEL_DATABASE_TYPE: info.id.value,
        LABEL_DATABASE_ICON: info.icon,
    }


def _environment(config: DatabaseConfig, info: DatabaseTypeInfo) -> dict[str, str]:
    rule = info.env_rule
    if rule is EnvRule.POSTGRES:
        return {
            "POSTGRES_USER": config.username or info.default_user,
            "POSTGRES_PASSWORD": config.password,
            "POSTGRES_DB": config.name,
        }
    if rule is EnvRule.MYSQL_LIKE:
        prefix = info.env_prefix
        env = {
            f"{prefix}_ROOT_PASSWORD": config.password,
            f"{prefix}_DATABASE": config.name,
        }
        # The images refuse to create "root" a second time.
        if config.username and config.username != "root":
            env[f"{prefix}_USER"] = config.username
            env[f"{prefix}_PASSWORD"] = config.password
        return env
    if rule is EnvRule.MONGO:
        if config.username and config.password:
            return {
                "MONGO_INITDB_ROOT_USERNAME": config.username,
                "MONGO_INITDB_ROOT_PASSWORD": config.password,
                "MONGO_INITDB_DATABASE": config.name,
            }
        return {}
    return {}


def build_container_spec(config: DatabaseConfig, info: DatabaseTypeInfo) -> ContainerSpec:
    """Build the ContainerSpec for a managed database.

    Raises:
        ConfigError: If the memory limit cannot be parsed.
    """
    env = _environment(config, info)
    env.update(config.env)

    command = None
    if info.env_rule is EnvRule.REDIS_COMMAND and config.password:
        command = ["redis-server", "--requirepass", config.password]

    spec = ContainerSpec(
        name=info.container_name(config.name),
        image=info.image(config.version),
        env=env,
        command=command,
        labels=managed_labels(info, config.name),
        restart_policy=config.restart_policy,
    )
    spec.expose(info.default_port, config.port)

    if config.memory:
        spec.memory_bytes = parse_memory(config.memory)
    if config.cpus:
        spec.nano_cpus = parse_cpus(config.cpus)
    return spec


__all__ = [
    "ContainerSpec",
    "NANO_CPUS_PER_CORE",
    "DEFAULT_HOST_IP",
    "port_key",
    "parse_memory",
    "parse_cpus",
    "managed_labels",
    "build_container_spec",
]

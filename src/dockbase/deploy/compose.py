"""Compose manifests and project deployment for dockbase.

Reads, writes and deploys a subset of the Docker Compose file format
directly against the engine API. No ``docker compose`` binary is involved.
Containers created for a project carry the standard compose project and
service labels, so projects deployed here also show up as projects in other
tooling, and project-level operations find their containers by label
rather than by any record kept in this process.

Why This Matters:
    Operators want to snapshot a handful of running database containers
    into a file and bring the same set up elsewhere. The generate -> parse
    -> deploy round trip is the feature; each direction has to preserve
    service names, images and port mappings.

Key Concepts:
    parse_compose_file: YAML text -> ComposeConfig. Duplicate keys are an
        error, not a silent overwrite.
    validate_compose: Lint pass (missing services, tabs, odd indentation)
        plus a full parse.
    dump_compose: ComposeConfig -> YAML text.
    generate_compose_from_containers: Inspect containers -> YAML text.
    ComposeOrchestrator.deploy: volumes, then networks, then services in
        depends_on order. Volume and network names are namespaced
        ``<project>_<name>``.

Architecture Decisions:
    - No rollback: when a service fails, containers created for earlier
      services stay. ``DeploymentError.created`` lists them.
    - Dependency cycles are rejected before anything is created.
    - "Already exists" on a volume or network is not an error; re-deploying
      a project reuses them.

Related Modules:
    - :mod:`dockbase.deploy.models` - ComposeConfig / ComposeService
    - :mod:`dockbase.deploy.images` - Image pulls per service
    - :mod:`dockbase.deploy.results` - DeploymentResult

Tags:
    compose, docker, yaml, deployment, projects, labels
"""

from __future__ import annotations

import os
import re
import shlex
from typing import Any

import yaml
from pydantic import ValidationError as ModelValidationError

from dockbase.core.errors import (
    ConfigError,
    DeploymentError,
    DockbaseError,
    NotFoundError,
    ResourceExistsError,
)
from dockbase.core.logging import LogContext, get_logger
from dockbase.deploy.engine import EngineClient, inspect_env
from dockbase.deploy.images import ImageProvisioner
from dockbase.deploy.models import (
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    ComposeConfig,
    ComposeProject,
    ComposeProjectService,
    ComposeService,
    ComposeValidation,
)
from dockbase.deploy.results import DeploymentResult, OverallStatus, ServiceDeployment
from dockbase.deploy.specs import DEFAULT_HOST_IP, ContainerSpec, port_key

logger = get_logger(__name__)

_PROJECT_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


# ---------------------------------------------------------------------------
# YAML parsing
# ---------------------------------------------------------------------------


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_compose_file(text: str) -> ComposeConfig:
    """Parse compose YAML.

    Raises:
        ConfigError: Invalid YAML, duplicate keys, no services, a service
            without an image, or a dependency on an undeclared service.
    """
    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid compose YAML: {exc}", cause=exc) from exc

    if not isinstance(data, dict):
        raise ConfigError("Compose file must be a mapping with a 'services' section")
    if not isinstance(data.get("services"), dict):
        raise ConfigError("Missing required field: services")

    try:
        return ComposeConfig.model_validate(
            {
                "version": data.get("version"),
                "services": data["services"],
                "volumes": data.get("volumes"),
                "networks": data.get("networks"),
            }
        )
    except ModelValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'compose'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid compose file: {problems}", cause=exc) from exc


def validate_compose(text: str) -> ComposeValidation:
    """Lint a compose document without deploying it."""
    errors: list[str] = []
    warnings: list[str] = []

    if "services:" not in text:
        errors.append("Missing required field: services")
    if "\t" in text:
        errors.append("YAML should use spaces, not tabs for indentation")

    for number, line in enumerate(text.splitlines(), start=1):
        indent = len(line) - len(line.lstrip(" "))
        if line.strip() and indent % 2:
            warnings.append(f"Line {number}: Inconsistent indentation (should be multiples of 2)")

    if not errors:
        try:
            parse_compose_file(text)
        except ConfigError as exc:
            errors.append(exc.message)

    return ComposeValidation(valid=not errors, errors=errors, warnings=warnings)


def dump_compose(config: ComposeConfig, header: str | None = None) -> str:
    """Serialise a ComposeConfig to YAML."""
    data = config.model_dump(mode="json", exclude_defaults=True, exclude_none=True)
    for service in data.get("services", {}).values():
        # keep `image` first for readability
        service.pop("image", None)
    ordered: dict[str, Any] = {}
    if config.version:
        ordered["version"] = config.version
    ordered["services"] = {
        name: {"image": config.services[name].image, **fields}
        for name, fields in data["services"].items()
    }
    if config.volumes:
        ordered["volumes"] = data.get("volumes") or {name: {} for name in config.volumes}
    if config.networks:
        ordered["networks"] = data.get("networks") or {name: {} for name in config.networks}
    body = yaml.safe_dump(ordered, default_flow_style=False, sort_keys=False, allow_unicode=True)
    return (header or "") + body


def dependency_order(config: ComposeConfig) -> list[str]:
    """Service names ordered so every service follows its dependencies.

    Declaration order is kept among services that do not depend on each
    other.

    Raises:
        ConfigError: If depends_on forms a cycle.
    """
    remaining = {name: set(service.depends_on) for name, service in config.services.items()}
    ordered: list[str] = []
    while remaining:
        ready = [name for name, deps in remaining.items() if not deps - set(ordered)]
        if not ready:
            cycle = ", ".join(sorted(remaining))
            raise ConfigError(f"Circular depends_on between services: {cycle}")
        for name in ready:
            ordered.append(name)
            del remaining[name]
    return ordered


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def parse_port_mapping(mapping: str) -> tuple[str, int | None, str | None]:
    """``"[ip:]host:container[/proto]"`` -> (container key, host port, host ip).

    >>> parse_port_mapping("8080:80")
    ('80/tcp', 8080, None)
    >>> parse_port_mapping("127.0.0.1:5433:5432")
    ('5432/tcp', 5433, '127.0.0.1')
    """
    text, _, proto = mapping.strip().partition("/")
    parts = text.split(":")
    try:
        if len(parts) == 1:
            return port_key(f"{int(parts[0])}/{proto or 'tcp'}"), None, None
        if len(parts) == 2:
            host, container = parts
            ip = None
        elif len(parts) == 3:
            ip, host, container = parts
        else:
            raise ValueError(mapping)
        return (
            port_key(f"{int(container)}/{proto or 'tcp'}"),
            int(host) if host else None,
            ip or None,
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid port mapping {mapping!r}", cause=exc) from exc


def namespaced(project: str, name: str) -> str:
    return f"{project}_{name}"


def translate_volume(entry: str, project: str, declared: dict[str, Any]) -> str | None:
    """Turn a compose volume entry into an engine bind string.

    Sources naming a declared volume become ``<project>_<name>``. Relative
    host paths are made absolute. Anonymous volumes (target only) return
    None.
    """
    source, sep, rest = entry.partition(":")
    if not sep:
        return None
    if source in declared:
        source = namespaced(project, source)
    elif source.startswith((".", "~")):
        source = os.path.abspath(os.path.expanduser(source))
    return f"{source}:{rest}"


def container_name_for(project: str, service_name: str, service: ComposeService) -> str:
    return service.container_name or f"{project}-{service_name}-1"


def service_spec(
    project: str,
    service_name: str,
    service: ComposeService,
    config: ComposeConfig,
) -> tuple[ContainerSpec, list[str]]:
    """ContainerSpec for one service plus extra networks to connect after create."""
    spec = ContainerSpec(
        name=container_name_for(project, service_name, service),
        image=service.image,
        env=dict(service.environment),
        labels={
            COMPOSE_PROJECT_LABEL: project,
            COMPOSE_SERVICE_LABEL: service_name,
        },
    )

    if isinstance(service.command, str):
        spec.command = shlex.split(service.command)
    elif service.command:
        spec.command = list(service.command)

    for mapping in service.ports:
        key, host_port, host_ip = parse_port_mapping(mapping)
        spec.expose(key, host_port, host_ip or DEFAULT_HOST_IP)

    for entry in service.volumes:
        bind = translate_volume(entry, project, config.volumes)
        if bind is None:
            logger.warning("compose.volume.anonymous_skipped", service=service_name, volume=entry)
            continue
        spec.binds.append(bind)

    if service.restart:
        spec.restart_policy = service.restart.split(":", 1)[0]

    networks = [
        namespaced(project, n) if n in config.networks else n for n in service.networks
    ]
    if networks:
        spec.network_mode = networks[0]
        spec.network_aliases = [service_name]
    return spec, networks[1:]


# ---------------------------------------------------------------------------
# Generation from running containers
# ---------------------------------------------------------------------------


def _service_from_inspect(info: dict[str, Any]) -> tuple[ComposeService, list[str]]:
    config = info.get("Config") or {}
    host_config = info.get("HostConfig") or {}

    ports: list[str] = []
    for key, bindings in (host_config.get("PortBindings") or {}).items():
        number, _, proto = key.partition("/")
        suffix = f"/{proto}" if proto and proto != "tcp" else ""
        for binding in bindings or []:
            host_port = binding.get("HostPort")
            host_ip = binding.get("HostIp") or DEFAULT_HOST_IP
            prefix = "" if host_ip in (DEFAULT_HOST_IP, "::") else f"{host_ip}:"
            if host_port:
                ports.append(f"{prefix}{host_port}:{number}{suffix}")

    environment = inspect_env(info)

    volumes: list[str] = []
    named: list[str] = []
    for mount in info.get("Mounts") or []:
        destination = mount.get("Destination")
        mode = "" if mount.get("RW", True) else ":ro"
        if mount.get("Type") == "volume" and mount.get("Name"):
            volumes.append(f"{mount['Name']}:{destination}{mode}")
            named.append(mount["Name"])
        elif mount.get("Type") == "bind":
            volumes.append(f"{mount.get('Source')}:{destination}{mode}")

    restart = (host_config.get("RestartPolicy") or {}).get("Name") or None
    if restart == "no":
        restart = None

    service = ComposeService(
        image=config.get("Image") or info.get("Image", ""),
        container_name=(info.get("Name") or "").lstrip("/") or None,
        command=config.get("Cmd") or None,
        ports=ports,
        environment=environment,
        volumes=volumes,
        restart=restart,
    )
    return service, named


async def generate_compose_from_containers(engine: EngineClient, container_ids: list[str]) -> str:
    """Inspect containers and assemble a compose manifest that recreates them."""
    services: dict[str, ComposeService] = {}
    volumes: dict[str, dict[str, Any]] = {}

    for container_id in container_ids:
        info = await engine.inspect_container(container_id)
        labels = (info.get("Config") or {}).get("Labels") or {}
        service, named = _service_from_inspect(info)
        name = labels.get(COMPOSE_SERVICE_LABEL) or service.container_name or container_id[:12]
        base, suffix = name, 2
        while name in services:
            name = f"{base}-{suffix}"
            suffix += 1
        services[name] = service
        for volume in named:
            volumes.setdefault(volume, {})

    if not services:
        raise ConfigError("No containers selected for compose generation")

    config = ComposeConfig(services=services, volumes=volumes)
    header = (
        "# Generated by dockbase\n"
        f"# Services: {', '.join(services)}\n\n"
    )
    logger.info("compose.generated", services=len(services), volumes=len(volumes))
    return dump_compose(config, header=header)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def check_project_name(project: str) -> str:
    if not _PROJECT_RE.match(project or ""):
        raise ConfigError(
            f"Invalid project name {project!r}: use lowercase letters, digits, '-' or '_'"
        )
    return project


class ComposeOrchestrator:
    """Deploys compose manifests and manages projects by label.

    Example::

        orchestrator = ComposeOrchestrator(engine)
        config = parse_compose_file(Path("stack.yml").read_text())
        result = await orchestrator.deploy(config, "shop")
        await orchestrator.stop_project("shop")
    """

    def __init__(self, engine: EngineClient, images: ImageProvisioner | None = None) -> None:
        self.engine = engine
        self.images = images or ImageProvisioner(engine)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy(self, config: ComposeConfig, project: str) -> DeploymentResult:
        """Create volumes, networks and services for ``project``.

        Raises:
            ConfigError: Bad project name or a depends_on cycle (nothing created).
            DeploymentError: A resource or service failed; ``.result`` and
                ``.created`` describe what was left behind.
        """
        check_project_name(project)
        order = dependency_order(config)
        result = DeploymentResult(project=project)
        project_labels = {COMPOSE_PROJECT_LABEL: project}

        async with LogContext(project=project):
            logger.info("compose.deploy.started", services=order)

            for volume in config.volumes:
                name = namespaced(project, volume)
                try:
                    await self.engine.create_volume(name, labels=project_labels)
                except ResourceExistsError:
                    logger.debug("compose.volume.exists", volume=name)
                except DockbaseError as exc:
                    raise self._abort(result, f"Volume '{name}' could not be created: {exc.message}", exc)
                result.volumes.append(name)

            for network in config.networks:
                name = namespaced(project, network)
                try:
                    await self.engine.create_network(name, labels=project_labels)
                except ResourceExistsError:
                    logger.debug("compose.network.exists", network=name)
                except DockbaseError as exc:
                    raise self._abort(result, f"Network '{name}' could not be created: {exc.message}", exc)
                result.networks.append(name)

            for service_name in order:
                await self._deploy_service(result, config, project, service_name)

            result.mark_complete()
            logger.info("compose.deploy.completed", summary=result.summary)
        return result

    async def _deploy_service(
        self,
        result: DeploymentResult,
        config: ComposeConfig,
        project: str,
        service_name: str,
    ) -> None:
        service = config.services[service_name]
        entry = ServiceDeployment(
            name=service_name,
            container_name=container_name_for(project, service_name, service),
            image=service.image,
        )
        result.services.append(entry)
        try:
            spec, extra_networks = service_spec(project, service_name, service, config)
            ensured = await self.images.ensure(service.image)
            if ensured.is_err():
                raise ensured.error
            entry.container_id = await self.engine.create_container(spec)
            for network in extra_networks:
                await self.engine.connect_network(network, entry.container_id, aliases=[service_name])
            await self.engine.start_container(entry.container_id)
        except DockbaseError as exc:
            entry.status = "failed"
            entry.error = exc.message
            raise self._abort(
                result, f"Service '{service_name}' failed: {exc.message}", exc, service=service_name
            )
        entry.status = "running"
        logger.info("compose.service.started", service=service_name, container=entry.container_name)

    def _abort(
        self,
        result: DeploymentResult,
        message: str,
        cause: DockbaseError,
        service: str | None = None,
    ) -> DeploymentError:
        result.error = message
        result.mark_complete(OverallStatus.FAILED)
        created = result.created_containers
        logger.error("compose.deploy.failed", error=message, left_running=created)
        if created:
            message += f" (containers already created, not rolled back: {', '.join(created)})"
        return DeploymentError(
            message,
            service=service,
            created=created,
            result=result,
            cause=cause,
        ).with_context(project=result.project)

    # ------------------------------------------------------------------
    # Project lifecycle
    # ------------------------------------------------------------------

    async def _project_containers(self, project: str) -> list[dict[str, Any]]:
        return await self.engine.list_containers(all=True, labels={COMPOSE_PROJECT_LABEL: project})

    async def list_projects(self) -> list[ComposeProject]:
        containers = await self.engine.list_containers(all=True, labels={COMPOSE_PROJECT_LABEL: None})
        projects: dict[str, ComposeProject] = {}
        for summary in containers:
            labels = summary.get("Labels") or {}
            name = labels.get(COMPOSE_PROJECT_LABEL)
            if not name:
                continue
            names = summary.get("Names") or []
            projects.setdefault(name, ComposeProject(name=name)).services.append(
                ComposeProjectService(
                    name=labels.get(COMPOSE_SERVICE_LABEL, ""),
                    container_id=summary.get("Id", ""),
                    container_name=names[0].lstrip("/") if names else "",
                    image=summary.get("Image", ""),
                    status=summary.get("Status") or summary.get("State") or "",
                )
            )
        return sorted(projects.values(), key=lambda p: p.name)

    async def start_project(self, project: str) -> list[str]:
        containers = await self._require_containers(project)
        for summary in containers:
            await self.engine.start_container(summary["Id"])
        logger.info("compose.project.started", project=project, containers=len(containers))
        return [_name(c) for c in containers]

    async def stop_project(self, project: str) -> list[str]:
        containers = await self._require_containers(project)
        for summary in containers:
            await self.engine.stop_container(summary["Id"])
        logger.info("compose.project.stopped", project=project, containers=len(containers))
        return [_name(c) for c in containers]

    async def remove_project(self, project: str, remove_volumes: bool = False) -> list[str]:
        """Remove a project's containers; with ``remove_volumes`` also its volumes and networks."""
        containers = await self._project_containers(project)
        removed = []
        for summary in containers:
            await self.engine.remove_container(summary["Id"], force=True, volumes=remove_volumes)
            removed.append(_name(summary))

        if remove_volumes:
            prefix = f"{project}_"
            for volume in await self.engine.list_volumes():
                if volume.get("Name", "").startswith(prefix):
                    await self.engine.remove_volume(volume["Name"], force=True)
                    removed.append(volume["Name"])
            for network in await self.engine.list_networks():
                if network.get("Name", "").startswith(prefix):
                    await self.engine.remove_network(network["Name"])
                    removed.append(network["Name"])

        if not removed:
            raise NotFoundError(f"No containers found for project '{project}'")
        logger.info("compose.project.removed", project=project, removed=len(removed))
        return removed

    async def _require_containers(self, project: str) -> list[dict[str, Any]]:
        containers = await self._project_containers(project)
        if not containers:
            raise NotFoundError(f"No containers found for project '{project}'")
        return containers


def _name(summary: dict[str, Any]) -> str:
    names = summary.get("Names") or []
    return names[0].lstrip("/") if names else summary.get("Id", "")[:12]


__all__ = [
    "parse_compose_file",
    "validate_compose",
    "dump_compose",
    "dependency_order",
    "parse_port_mapping",
    "translate_volume",
    "service_spec",
    "generate_compose_from_containers",
    "ComposeOrchestrator",
]

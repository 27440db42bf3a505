"""Docker Engine client for dockbase.

Async adapter over the ``docker`` SDK. Every control-plane call the
orchestration engine makes goes through :class:`EngineClient`, the
protocol, implemented here by :class:`DockerEngine`.

Why This Matters:
    The SDK is synchronous. Running each call through ``asyncio.to_thread``
    keeps the event loop free so pacing sleeps, readiness polls and the
    pull timeout behave as suspension points. Translating SDK exceptions
    at this one boundary means no other module imports ``docker``.

Key Concepts:
    EngineClient: Protocol of every engine operation the engine consumes.
        Tests substitute a recording fake.
    DockerEngine: Implementation over ``docker.APIClient`` (low-level API,
        plain dict payloads).
    ExecResult: Exit code plus separately buffered stdout / stderr.
    ContainerSpec serialisation: ``create_container`` is the only place a
        ContainerSpec turns into the engine's wire format.

Architecture Decisions:
    - Low-level ``APIClient`` over the high-level models: list / inspect
      payloads stay plain dicts and exec output can be demultiplexed.
    - Error translation: ``NotFound`` -> NotFoundError, HTTP 409 ->
      ResourceExistsError, other API errors -> EngineError, transport
      failures -> ConnectivityError.

Related Modules:
    - :mod:`dockbase.deploy.specs` - Builds the ContainerSpec consumed here
    - :mod:`dockbase.deploy.service` - Owns the single engine handle + lock

Tags:
    docker, engine, sdk, async, containers
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterator, Protocol, TypeVar

import docker
from docker.errors import APIError, DockerException, NotFound

from dockbase.core.errors import (
    ConnectivityError,
    EngineError,
    ImagePullError,
    NotFoundError,
    ResourceExistsError,
)
from dockbase.core.logging import get_logger

if TYPE_CHECKING:
    from dockbase.deploy.specs import ContainerSpec

logger = get_logger(__name__)

T = TypeVar("T")

#: network_mode values that are not user-defined networks (no DNS aliases).
_BUILTIN_NETWORK_MODES = (None, "host", "bridge", "none", "default")


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass
class ExecResult:
    """Output of a command executed inside a container."""

    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


def label_filters(labels: dict[str, str | None] | None) -> dict[str, list[str]] | None:
    """Engine list filter for ``labels`` (a ``None`` value matches any value)."""
    if not labels:
        return None
    return {"label": [key if value is None else f"{key}={value}" for key, value in labels.items()]}


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class EngineClient(Protocol):
    """Container-runtime control plane consumed by the orchestration engine."""

    async def ping(self) -> bool: ...
    async def info(self) -> dict[str, Any]: ...

    # Containers
    async def list_containers(
        self, *, all: bool = True, labels: dict[str, str | None] | None = None
    ) -> list[dict[str, Any]]: ...
    async def inspect_container(self, container: str) -> dict[str, Any]: ...
    async def create_container(self, spec: ContainerSpec) -> str: ...
    async def start_container(self, container: str) -> None: ...
    async def stop_container(self, container: str, timeout: int = 10) -> None: ...
    async def rename_container(self, container: str, name: str) -> None: ...
    async def remove_container(
        self, container: str, *, force: bool = False, volumes: bool = False
    ) -> None: ...
    async def exec(
        self, container: str, cmd: list[str], env: dict[str, str] | None = None
    ) -> ExecResult: ...
    async def put_archive(self, container: str, path: str, data: bytes) -> None: ...
    async def get_archive(self, container: str, path: str) -> bytes: ...
    async def stats(self, container: str) -> dict[str, Any]: ...

    # Images
    async def list_images(self) -> list[dict[str, Any]]: ...
    async def pull_image(self, image: str) -> None: ...
    async def remove_image(self, image: str, *, force: bool = False) -> None: ...

    # Volumes
    async def list_volumes(self) -> list[dict[str, Any]]: ...
    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None: ...
    async def remove_volume(self, name: str, *, force: bool = False) -> None: ...
    async def prune_volumes(self) -> dict[str, Any]: ...

    # Networks
    async def list_networks(self) -> list[dict[str, Any]]: ...
    async def create_network(self, name: str, labels: dict[str, str] | None = None) -> str: ...
    async def remove_network(self, name: str) -> None: ...
    async def connect_network(
        self, network: str, container: str, *, aliases: list[str] | None = None
    ) -> None: ...


# ---------------------------------------------------------------------------
# Docker SDK implementation
# ---------------------------------------------------------------------------


class DockerEngine:
    """EngineClient over the Docker SDK's low-level API.

    Parameters
    ----------
    base_url
        Engine URL. ``None`` reads ``DOCKER_HOST`` and friends the way
        ``docker.from_env()`` does.
    timeout
        Per-request HTTP timeout in seconds.

    Example::

        engine = DockerEngine()
        await engine.ping()
        containers = await engine.list_containers(labels={"app": "dockbase"})
    """

    def __init__(self, base_url: str | None = None, timeout: int = 120) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._api: docker.APIClient | None = None

    @property
    def api(self) -> docker.APIClient:
        if self._api is None:
            try:
                if self._base_url:
                    self._api = docker.APIClient(base_url=self._base_url, timeout=self._timeout)
                else:
                    self._api = docker.from_env(timeout=self._timeout).api
            except DockerException as exc:
                raise ConnectivityError(f"Cannot connect to Docker: {exc}", cause=exc) from exc
        return self._api

    async def _call(self, what: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call in a thread and translate its errors."""

        def invoke() -> T:
            return fn(*args, **kwargs)

        try:
            return await asyncio.to_thread(invoke)
        except NotFound as exc:
            raise NotFoundError(f"{what}: {exc.explanation or exc}", status_code=404, cause=exc) from exc
        except APIError as exc:
            message = f"{what}: {exc.explanation or exc}"
            if exc.status_code == 409:
                raise ResourceExistsError(message, status_code=409, cause=exc) from exc
            raise EngineError(message, status_code=exc.status_code, cause=exc) from exc
        except (DockerException, OSError) as exc:
            raise ConnectivityError(f"{what}: Docker engine unreachable ({exc})", cause=exc) from exc

    async def ping(self) -> bool:
        return bool(await self._call("ping", lambda: self.api.ping()))

    async def info(self) -> dict[str, Any]:
        return await self._call("engine info", lambda: self.api.info())

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def list_containers(
        self, *, all: bool = True, labels: dict[str, str | None] | None = None
    ) -> list[dict[str, Any]]:
        return await self._call(
            "list containers",
            lambda: self.api.containers(all=all, filters=label_filters(labels)),
        )

    async def inspect_container(self, container: str) -> dict[str, Any]:
        return await self._call(
            f"inspect container {container}", lambda: self.api.inspect_container(container)
        )

    async def create_container(self, spec: ContainerSpec) -> str:
        def create() -> str:
            host_config = self.api.create_host_config(**spec.host_config_kwargs())
            networking_config = None
            if spec.network_aliases and spec.network_mode not in _BUILTIN_NETWORK_MODES:
                networking_config = self.api.create_networking_config(
                    {spec.network_mode: self.api.create_endpoint_config(aliases=spec.network_aliases)}
                )
            created = self.api.create_container(
                host_config=host_config,
                networking_config=networking_config,
                **spec.create_kwargs(),
            )
            return created["Id"]

        container_id = await self._call(f"create container {spec.name}", create)
        logger.debug("container.created", container=spec.name, image=spec.image, id=container_id[:12])
        return container_id

    async def start_container(self, container: str) -> None:
        await self._call(f"start container {container}", lambda: self.api.start(container))

    async def stop_container(self, container: str, timeout: int = 10) -> None:
        await self._call(
            f"stop container {container}", lambda: self.api.stop(container, timeout=timeout)
        )

    async def rename_container(self, container: str, name: str) -> None:
        await self._call(
            f"rename container {container}", lambda: self.api.rename(container, name)
        )

    async def remove_container(
        self, container: str, *, force: bool = False, volumes: bool = False
    ) -> None:
        await self._call(
            f"remove container {container}",
            lambda: self.api.remove_container(container, v=volumes, force=force),
        )

    async def exec(
        self, container: str, cmd: list[str], env: dict[str, str] | None = None
    ) -> ExecResult:
        def run() -> ExecResult:
            created = self.api.exec_create(
                container, cmd, stdout=True, stderr=True, environment=env or None
            )
            stdout, stderr = self.api.exec_start(created["Id"], demux=True)
            inspected = self.api.exec_inspect(created["Id"])
            return ExecResult(
                exit_code=inspected.get("ExitCode") or 0,
                stdout=stdout or b"",
                stderr=stderr or b"",
            )

        return await self._call(f"exec {cmd[0]} in {container}", run)

    async def put_archive(self, container: str, path: str, data: bytes) -> None:
        ok = await self._call(
            f"upload archive to {container}:{path}",
            lambda: self.api.put_archive(container, path, data),
        )
        if not ok:
            raise EngineError(f"upload archive to {container}:{path} was rejected")

    async def get_archive(self, container: str, path: str) -> bytes:
        """Tar stream of ``path`` inside the container."""

        def fetch() -> bytes:
            stream, _ = self.api.get_archive(container, path)
            return b"".join(stream)

        return await self._call(f"download archive {container}:{path}", fetch)

    async def stats(self, container: str) -> dict[str, Any]:
        return await self._call(
            f"stats for {container}", lambda: self.api.stats(container, stream=False)
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def list_images(self) -> list[dict[str, Any]]:
        return await self._call("list images", lambda: self.api.images())

    async def pull_image(self, image: str) -> None:
        repository, tag = split_image(image)

        def pull() -> None:
            stream: Iterator[dict[str, Any]] = self.api.pull(
                repository, tag=tag, stream=True, decode=True
            )
            last_status = None
            for event in stream:
                if "error" in event:
                    raise ImagePullError(
                        f"Failed to pull {image}: {event['error']}"
                    ).with_context(image=image)
                status = event.get("status")
                if status and status != last_status:
                    logger.debug("image.pull.progress", image=image, status=status)
                    last_status = status

        await self._call(f"pull image {image}", pull)

    async def remove_image(self, image: str, *, force: bool = False) -> None:
        await self._call(
            f"remove image {image}", lambda: self.api.remove_image(image, force=force)
        )

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    async def list_volumes(self) -> list[dict[str, Any]]:
        payload = await self._call("list volumes", lambda: self.api.volumes())
        return (payload or {}).get("Volumes") or []

    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None:
        await self._call(
            f"create volume {name}",
            lambda: self.api.create_volume(name=name, driver="local", labels=labels),
        )

    async def remove_volume(self, name: str, *, force: bool = False) -> None:
        await self._call(
            f"remove volume {name}", lambda: self.api.remove_volume(name, force=force)
        )

    async def prune_volumes(self) -> dict[str, Any]:
        return await self._call("prune volumes", lambda: self.api.prune_volumes())

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    async def list_networks(self) -> list[dict[str, Any]]:
        return await self._call("list networks", lambda: self.api.networks())

    async def create_network(self, name: str, labels: dict[str, str] | None = None) -> str:
        created = await self._call(
            f"create network {name}",
            lambda: self.api.create_network(name, driver="bridge", labels=labels),
        )
        return created.get("Id", name)

    async def remove_network(self, name: str) -> None:
        await self._call(f"remove network {name}", lambda: self.api.remove_network(name))

    async def connect_network(
        self, network: str, container: str, *, aliases: list[str] | None = None
    ) -> None:
        await self._call(
            f"connect {container} to network {network}",
            lambda: self.api.connect_container_to_network(container, network, aliases=aliases),
        )


def split_image(image: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` into (repository, tag); tag defaults to ``latest``.

    >>> split_image("postgres:16")
    ('postgres', '16')
    >>> split_image("localhost:5000/app")
    ('localhost:5000/app', 'latest')
    """
    if "@" in image:
        repository, digest = image.split("@", 1)
        return repository, digest
    head, sep, tail = image.rpartition(":")
    if sep and "/" not in tail:
        return head, tail
    return image, "latest"


def normalize_image(image: str) -> str:
    """Fully qualify an image reference with its tag (``redis`` -> ``redis:latest``)."""
    repository, tag = split_image(image)
    if "@" in image:
        return image
    return f"{repository}:{tag}"


def inspect_env(info: dict[str, Any]) -> dict[str, str]:
    """Environment of an inspected container as a dict."""
    env: dict[str, str] = {}
    for item in (info.get("Config") or {}).get("Env") or []:
        key, _, value = item.partition("=")
        env[key] = value
    return env


__all__ = [
    "EngineClient",
    "DockerEngine",
    "ExecResult",
    "label_filters",
    "split_image",
    "normalize_image",
    "inspect_env",
]

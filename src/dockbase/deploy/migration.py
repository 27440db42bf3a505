"""Local-database migration pipeline for dockbase.

Moves a database from a reachable PostgreSQL server into a new managed
container without any database client tooling on the host. ``pg_dump``,
``pg_isready`` and ``psql`` all run inside containers built from the same
``postgres:<major>`` image as the source server, so dump and restore formats
always match.

Why This Matters:
    Operators usually have a development database on a host-installed
    PostgreSQL and want it in a container. Getting a matching ``pg_dump``
    onto the host is the part that fails in practice; borrowing one from the
    official image sidesteps it.

Key Concepts:
    MigrationStore: Lock-guarded list of MigratedDatabase records, owned by
        whoever constructs it and passed to the pipeline and the service.
    ephemeral_container: Scoped helper container. Created on entry, removed
        exactly once on every exit path.
    ReadinessPoll: Bounded poll state machine (attempt / max_attempts /
        interval, terminal READY or TIMED_OUT).
    MigrationPipeline.run: The nine steps below, strictly in order.

Steps:
    1. version_check             SELECT version() on the source, pick postgres:<major>
    2. dump_extraction           pg_dump inside a helper on the host network
    3. port_allocation           first free host port from the migration base port
    4. destination_provisioning  postgres-<name> with a <name>-data volume
    5. readiness_poll            pg_isready until ready or the attempt bound
    6. artifact_transfer         dump.sql uploaded as an in-memory tar to /tmp
    7. restore                   psql -f /tmp/dump.sql, fatal markers abort
    8. verification              user table count, diagnostic only
    9. cleanup                   scratch dump removed, record appended

Architecture Decisions:
    - Steps 1-2 and 4-7 abort the run with MigrationStepError naming the
      step; readiness exhaustion is MigrationTimeoutError.
    - The destination is never rolled back. A failed run leaves it running
      so the operator can inspect it.
    - The destination name is checked for conflicts before the first
      container is created.
    - The store lock is independent of the engine lock and never held
      across an engine call.

Related Modules:
    - :mod:`dockbase.deploy.source` - Version query connection
    - :mod:`dockbase.deploy.images` - Ensures postgres:<major>
    - :mod:`dockbase.deploy.allocator` - Port search and name checks
    - :mod:`dockbase.deploy.results` - MigrationResult / StepResult

Tags:
    migration, postgres, pg_dump, containers, pipeline
"""

from __future__ import annotations

import asyncio
import io
import tarfile
import threading
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from dockbase.core.errors import (
    ConnectivityError,
    DockbaseError,
    MigrationStepError,
    MigrationTimeoutError,
    SourceDatabaseError,
)
from dockbase.core.logging import LogContext, get_logger
from dockbase.core.settings import DockbaseSettings, get_settings
from dockbase.deploy.allocator import ResourceAllocator
from dockbase.deploy.catalog import POSTGRES
from dockbase.deploy.engine import EngineClient, ExecResult
from dockbase.deploy.images import ImageProvisioner
from dockbase.deploy.models import (
    LABEL_MIGRATED,
    LABEL_MIGRATED_FROM,
    DatabaseConfig,
    MigratedDatabase,
    MigrationRequest,
)
from dockbase.deploy.results import MigrationResult, MigrationStep, StepStatus
from dockbase.deploy.source import SourceDatabaseClient, parse_major_version
from dockbase.deploy.specs import ContainerSpec, build_container_spec

logger = get_logger(__name__)

DUMP_FILENAME = "dump.sql"
DUMP_DIR = "/tmp"
HELPER_ROLE_LABEL = "dockbase.role"
LOOPBACK_HOSTS = ("localhost", "127.0.0.1")

#: Restore stderr containing any of these means psql never got to run the dump.
FATAL_RESTORE_MARKERS = (
    "FATAL:",
    "could not connect",
    "connection to server",
    "No such file or directory",
)

_USER_TABLES_SQL = (
    "SELECT count(*) FROM information_schema.tables "
    "WHERE table_schema NOT IN ('pg_catalog', 'information_schema')"
)


# ---------------------------------------------------------------------------
# Migration record store
# ---------------------------------------------------------------------------


class MigrationStore:
    """In-memory list of migrated databases, safe to share between tasks and threads."""

    def __init__(self, records: list[MigratedDatabase] | None = None) -> None:
        self._lock = threading.Lock()
        self._records: list[MigratedDatabase] = list(records or [])

    def add(self, record: MigratedDatabase) -> None:
        with self._lock:
            self._records.append(record)

    def list(self) -> list[MigratedDatabase]:
        with self._lock:
            return list(self._records)

    def get(self, container_id: str) -> MigratedDatabase | None:
        with self._lock:
            for record in self._records:
                if _same_container(record.container_id, container_id):
                    return record
        return None

    def remove_container(self, container_id: str) -> int:
        """Drop records for a container; returns how many were removed."""
        with self._lock:
            before = len(self._records)
            self._records = [
                r for r in self._records if not _same_container(r.container_id, container_id)
            ]
            return before - len(self._records)

    def repoint(self, container_id: str, new_id: str, port: int | None) -> int:
        """Move records to a recreated container; returns how many moved."""
        with self._lock:
            moved = 0
            for index, record in enumerate(self._records):
                if _same_container(record.container_id, container_id):
                    self._records[index] = record.model_copy(update={"container_id": new_id, "port": port})
                    moved += 1
            return moved

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _same_container(stored: str, wanted: str) -> bool:
    # the engine accepts id prefixes, so do we
    return bool(wanted) and (stored == wanted or stored.startswith(wanted))


# ---------------------------------------------------------------------------
# Readiness polling
# ---------------------------------------------------------------------------


class PollState(str, Enum):
    POLLING = "polling"
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass
class ReadinessPoll:
    """Bounded readiness poll.

    ``record()`` advances the machine by one check outcome; ``run()`` drives
    it with a check coroutine, sleeping ``interval`` between attempts.

    >>> poll = ReadinessPoll(max_attempts=2, interval=0)
    >>> poll.record(False), poll.record(False)
    (<PollState.POLLING: 'polling'>, <PollState.TIMED_OUT: 'timed_out'>)
    """

    max_attempts: int
    interval: float
    attempt: int = 0
    state: PollState = PollState.POLLING

    @property
    def done(self) -> bool:
        return self.state is not PollState.POLLING

    def record(self, ready: bool) -> PollState:
        if self.done:
            return self.state
        self.attempt += 1
        if ready:
            self.state = PollState.READY
        elif self.attempt >= self.max_attempts:
            self.state = PollState.TIMED_OUT
        return self.state

    async def run(
        self,
        check: Callable[[], Awaitable[bool]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> PollState:
        while not self.done:
            self.record(await check())
            if not self.done:
                await sleep(self.interval)
        return self.state


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@asynccontextmanager
async def ephemeral_container(
    engine: EngineClient,
    spec: ContainerSpec,
    *,
    settle: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncIterator[str]:
    """Create and start a helper container, remove it on the way out.

    Removal happens exactly once whether the body returns or raises. A
    failed removal is logged; it never masks the body's own error.
    """
    container_id = await engine.create_container(spec)
    logger.debug("helper.created", container=spec.name, image=spec.image)
    try:
        await engine.start_container(container_id)
        if settle:
            await sleep(settle)
        yield container_id
    finally:
        try:
            await engine.remove_container(container_id, force=True)
            logger.debug("helper.removed", container=spec.name)
        except DockbaseError as exc:
            logger.warning("helper.remove_failed", container=spec.name, error=str(exc))


def build_dump_archive(payload: bytes, filename: str = DUMP_FILENAME) -> bytes:
    """Single-entry tar archive holding ``payload`` as ``filename``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        info = tarfile.TarInfo(name=filename)
        info.size = len(payload)
        info.mtime = int(time.time())
        info.mode = 0o644
        archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def loopback_reaches_host(info: dict[str, Any]) -> bool:
    """True when a host-network container shares the host's loopback.

    Holds for a native Linux engine; Docker Desktop runs containers in a VM
    whose loopback is not the host's.
    """
    operating_system = str(info.get("OperatingSystem") or "")
    return "Docker Desktop" not in operating_system and info.get("Name") != "docker-desktop"


def resolve_source_host(host: str, gateway_alias: str) -> str:
    """Source host as seen from inside a helper container."""
    if gateway_alias and host in LOOPBACK_HOSTS:
        return gateway_alias
    return host


def restore_warnings(stderr: str, limit: int = 20) -> list[str]:
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    warnings = lines[:limit]
    if len(lines) > limit:
        warnings.append(f"... {len(lines) - limit} more lines")
    return warnings


@dataclass
class _StepOutcome:
    detail: str = ""
    status: StepStatus = StepStatus.SUCCEEDED
    warnings: list[str] = field(default_factory=list)


SourceFactory = Callable[[MigrationRequest], SourceDatabaseClient]


def default_source_factory(request: MigrationRequest) -> SourceDatabaseClient:
    return SourceDatabaseClient(
        request.source_host,
        request.source_port,
        request.source_user,
        request.source_password,
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class MigrationPipeline:
    """Runs one migration at a time against an engine.

    Parameters
    ----------
    engine
        Engine client (the caller holds the engine lock for the whole run).
    store
        Where completed migrations are recorded.
    settings
        Pacing, port range and gateway alias. Defaults to ``get_settings()``.
    source_factory
        Builds the source connection for the version query.
    sleep
        Pacing sleep, replaceable in tests.
    """

    def __init__(
        self,
        engine: EngineClient,
        store: MigrationStore,
        *,
        settings: DockbaseSettings | None = None,
        images: ImageProvisioner | None = None,
        allocator: ResourceAllocator | None = None,
        source_factory: SourceFactory = default_source_factory,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.store = store
        self.settings = settings or get_settings()
        self.images = images or ImageProvisioner(engine, timeout=self.settings.pull_timeout_seconds)
        self.allocator = allocator or ResourceAllocator(
            engine, search_limit=self.settings.port_search_limit
        )
        self.source_factory = source_factory
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, request: MigrationRequest) -> MigrationResult:
        """Run every step; raises on the first fatal failure.

        Raises:
            ConflictError: The destination name is taken (nothing created).
            MigrationStepError: A fatal step failed; ``.result`` has the partial run.
            MigrationTimeoutError: The destination never became ready.
        """
        target = request.effective_target_name
        result = MigrationResult(
            migration_id=uuid.uuid4().hex[:12],
            source=request.provenance,
            target_name=target,
            container_name=POSTGRES.container_name(target),
        )

        async with LogContext(migration_id=result.migration_id, target=target):
            logger.info("migration.started", source=result.source)
            await self.allocator.check_conflicts(None, result.container_name)
            try:
                await self._run_steps(request, result)
            except (MigrationStepError, MigrationTimeoutError) as exc:
                exc.result = result
                result.mark_complete(error=exc.message)
                logger.error(
                    "migration.failed",
                    step=result.failed_step.value if result.failed_step else None,
                    error=exc.message,
                    container=result.container_name if result.container_id else None,
                )
                raise
            result.mark_complete()
            logger.info(
                "migration.completed",
                status=result.overall_status.value,
                port=result.port,
                duration_s=result.duration_seconds,
                warnings=len(result.warnings),
            )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _step(self, result: MigrationResult, step: MigrationStep) -> AsyncIterator[_StepOutcome]:
        started = datetime.now(UTC).isoformat()
        outcome = _StepOutcome()
        logger.info("migration.step.started", step=step.value)
        try:
            yield outcome
        except (MigrationStepError, MigrationTimeoutError) as exc:
            result.add_step(step, started, status=StepStatus.FAILED, detail=exc.message)
            raise
        except DockbaseError as exc:
            result.add_step(step, started, status=StepStatus.FAILED, detail=exc.message)
            raise MigrationStepError(step.value, exc.message, cause=exc) from exc
        result.warnings.extend(outcome.warnings)
        result.add_step(step, started, status=outcome.status, detail=outcome.detail)
        logger.info("migration.step.completed", step=step.value, detail=outcome.detail or None)

    async def _run_steps(self, request: MigrationRequest, result: MigrationResult) -> None:
        settings = self.settings

        async with self._step(result, MigrationStep.VERSION_CHECK) as outcome:
            major = await self._detect_version(request)
            image = f"{POSTGRES.image_name}:{major}"
            ensured = await self.images.ensure(image)
            if ensured.is_err():
                raise MigrationStepError(
                    MigrationStep.VERSION_CHECK.value, ensured.message, cause=ensured.error
                )
            result.postgres_version = major
            result.image = image
            outcome.detail = f"PostgreSQL {major}, image {image}"

        async with self._step(result, MigrationStep.DUMP_EXTRACTION) as outcome:
            dump = await self._dump(request, image)
            result.dump_size_bytes = len(dump)
            scratch = self._write_scratch(result.migration_id, dump)
            outcome.detail = f"{len(dump)} bytes"

        async with self._step(result, MigrationStep.PORT_ALLOCATION) as outcome:
            port = await self.allocator.find_free_port(settings.migration_base_port)
            result.port = port
            outcome.detail = f"port {port}"

        async with self._step(result, MigrationStep.DESTINATION_PROVISIONING) as outcome:
            spec = self._destination_spec(request, major, port)
            result.container_id = await self.engine.create_container(spec)
            await self.engine.start_container(result.container_id)
            outcome.detail = f"{spec.name} ({result.container_id[:12]})"

        user = self._db_user(request)
        target = request.effective_target_name
        container_id = result.container_id

        async with self._step(result, MigrationStep.READINESS_POLL) as outcome:
            poll = await self._wait_ready(container_id, user, target)
            outcome.detail = f"ready after {poll.attempt} attempt(s)"

        async with self._step(result, MigrationStep.ARTIFACT_TRANSFER) as outcome:
            archive = build_dump_archive(dump)
            await self.engine.put_archive(container_id, DUMP_DIR, archive)
            outcome.detail = f"{DUMP_DIR}/{DUMP_FILENAME}"

        async with self._step(result, MigrationStep.RESTORE) as outcome:
            restored = await self.engine.exec(
                container_id,
                ["psql", "-U", user, "-d", target, "-v", "ON_ERROR_STOP=0", "-f", f"{DUMP_DIR}/{DUMP_FILENAME}"],
            )
            self._check_restore(restored, outcome)

        async with self._step(result, MigrationStep.VERIFICATION) as outcome:
            result.verification = await self._verify(container_id, user, target)
            if result.verification is None:
                outcome.status = StepStatus.WARNED
                outcome.detail = "verification query failed"
            else:
                outcome.detail = f"{result.verification} user table(s)"

        async with self._step(result, MigrationStep.CLEANUP) as outcome:
            if scratch is not None:
                scratch.unlink(missing_ok=True)
            record = MigratedDatabase(
                original_name=request.source_database,
                container_id=container_id,
                container_name=result.container_name,
                port=result.port,
                size_bytes=result.dump_size_bytes,
                source=request.provenance,
            )
            self.store.add(record)
            result.record = record
            outcome.detail = "recorded"

    # ------------------------------------------------------------------
    # Step internals
    # ------------------------------------------------------------------

    async def _detect_version(self, request: MigrationRequest) -> str:
        source = self.source_factory(request)
        try:
            version = await source.server_version(request.source_database)
        except (ConnectivityError, SourceDatabaseError) as exc:
            raise MigrationStepError(MigrationStep.VERSION_CHECK.value, exc.message, cause=exc) from exc
        major = parse_major_version(version)
        if major is None:
            major = self.settings.default_postgres_major
            logger.warning("migration.version.unparsed", version=version, fallback=major)
        return major

    async def _dump(self, request: MigrationRequest, image: str) -> bytes:
        settings = self.settings
        alias = settings.host_gateway_alias
        if alias and request.source_host in LOOPBACK_HOSTS:
            # host networking already reaches the host's loopback on native Linux
            if loopback_reaches_host(await self.engine.info()):
                alias = ""
        host = resolve_source_host(request.source_host, alias)
        helper = ContainerSpec(
            name=f"dockbase-dump-{uuid.uuid4().hex[:8]}",
            image=image,
            command=["sleep", str(settings.helper_sleep_seconds)],
            labels={HELPER_ROLE_LABEL: "dump-helper"},
            network_mode="host",
        )
        if alias:
            helper.extra_hosts[alias] = "host-gateway"

        async with ephemeral_container(
            self.engine, helper, settle=settings.start_settle_seconds, sleep=self.sleep
        ) as helper_id:
            dumped = await self.engine.exec(
                helper_id,
                [
                    "pg_dump",
                    "-h", host,
                    "-p", str(request.source_port),
                    "-U", request.source_user,
                    "-d", request.source_database,
                    "--no-owner",
                    "--no-acl",
                ],
                env={"PGPASSWORD": request.source_password},
            )

        if not dumped.stdout.strip():
            raise MigrationStepError(
                MigrationStep.DUMP_EXTRACTION.value,
                f"pg_dump produced no output (exit code {dumped.exit_code})",
                stdout=dumped.stdout_text,
                stderr=dumped.stderr_text,
            )
        if not dumped.ok:
            raise MigrationStepError(
                MigrationStep.DUMP_EXTRACTION.value,
                f"pg_dump exited with code {dumped.exit_code}",
                stderr=dumped.stderr_text,
            )
        return dumped.stdout

    def _write_scratch(self, migration_id: str, dump: bytes) -> Path | None:
        if not self.settings.scratch_dir:
            return None
        path = Path(self.settings.scratch_dir) / f"dockbase-{migration_id}.sql"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(dump)
        logger.debug("migration.scratch.written", path=str(path))
        return path

    def _db_user(self, request: MigrationRequest) -> str:
        return request.source_user or POSTGRES.default_user

    def _destination_spec(self, request: MigrationRequest, major: str, port: int) -> ContainerSpec:
        config = DatabaseConfig(
            name=request.effective_target_name,
            username=self._db_user(request),
            password=request.effective_target_password,
            port=port,
            version=major,
        )
        spec = build_container_spec(config, POSTGRES)
        spec.binds.append(f"{spec.name}-data:{POSTGRES.data_dir}")
        spec.labels[LABEL_MIGRATED] = "true"
        spec.labels[LABEL_MIGRATED_FROM] = request.provenance
        return spec

    async def _wait_ready(self, container_id: str, user: str, database: str) -> ReadinessPoll:
        poll = ReadinessPoll(
            max_attempts=self.settings.readiness_attempts,
            interval=self.settings.readiness_interval_seconds,
        )

        async def check() -> bool:
            try:
                checked = await self.engine.exec(
                    container_id, [
                        "pg_isready",
                        "-h", "127.0.0.1",
                        "-p", str(POSTGRES.default_port),
                        "-U", user,
                        "-d", database,
                    ]
                )
            except DockbaseError as exc:
                logger.debug("migration.readiness.check_error", attempt=poll.attempt + 1, error=str(exc))
                return False
            return checked.ok

        state = await poll.run(check, sleep=self.sleep)
        if state is PollState.TIMED_OUT:
            raise MigrationTimeoutError(
                f"Migration step '{MigrationStep.READINESS_POLL.value}' failed: "
                f"destination not ready after {poll.attempt} attempts; container left running",
                attempts=poll.attempt,
            ).with_context(step=MigrationStep.READINESS_POLL.value, container=container_id)
        return poll

    def _check_restore(self, restored: ExecResult, outcome: _StepOutcome) -> None:
        stderr = restored.stderr_text
        fatal = [marker for marker in FATAL_RESTORE_MARKERS if marker in stderr]
        if fatal or restored.exit_code == 2:
            raise MigrationStepError(
                MigrationStep.RESTORE.value,
                f"psql could not apply the dump (exit code {restored.exit_code})",
                stdout=restored.stdout_text,
                stderr=stderr,
            )
        if stderr.strip():
            outcome.status = StepStatus.WARNED
            outcome.warnings.extend(restore_warnings(stderr))
            outcome.detail = "restore completed with warnings"
            logger.warning("migration.restore.warnings", lines=len(outcome.warnings))
        else:
            outcome.detail = "restored"

    async def _verify(self, container_id: str, user: str, database: str) -> str | None:
        try:
            checked = await self.engine.exec(
                container_id, ["psql", "-U", user, "-d", database, "-tAc", _USER_TABLES_SQL]
            )
        except DockbaseError as exc:
            logger.warning("migration.verification.failed", error=str(exc))
            return None
        if not checked.ok:
            logger.warning("migration.verification.failed", stderr=checked.stderr_text.strip())
            return None
        count = checked.stdout_text.strip()
        logger.info("migration.verification", user_tables=count)
        return count


__all__ = [
    "MigrationStore",
    "MigrationPipeline",
    "ReadinessPoll",
    "PollState",
    "ephemeral_container",
    "build_dump_archive",
    "resolve_source_host",
    "FATAL_RESTORE_MARKERS",
]

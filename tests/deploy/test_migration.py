"""Unit tests for the local-database migration pipeline.

The pipeline runs against the in-memory engine and a fake source server,
so every step (including helper containers and psql output) is scripted.
"""

from __future__ import annotations

import io
import tarfile

import pytest

from dockbase.core.errors import (
    ConflictError,
    ConnectivityError,
    MigrationStepError,
    MigrationTimeoutError,
    SourceDatabaseError,
)
from dockbase.deploy.engine import ExecResult
from dockbase.deploy.migration import (
    MigrationPipeline,
    MigrationStore,
    PollState,
    ReadinessPoll,
    build_dump_archive,
    ephemeral_container,
    loopback_reaches_host,
    resolve_source_host,
    restore_warnings,
)
from dockbase.deploy.models import MigratedDatabase, MigrationRequest
from dockbase.deploy.results import MigrationStep, OverallStatus, StepStatus
from dockbase.deploy.specs import ContainerSpec


DUMP = b"CREATE TABLE orders (id int);\nINSERT INTO orders VALUES (1);\n"


def _request(**overrides) -> MigrationRequest:
    fields = {"source_database": "shop", "source_password": "pw"}
    fields.update(overrides)
    return MigrationRequest(**fields)


@pytest.fixture
def pipeline(engine, store, settings, source, sleep):
    engine.script_exec("pg_dump", ExecResult(0, stdout=DUMP))
    engine.script_exec("psql", ExecResult(0), ExecResult(0, stdout=b"3\n"))
    return MigrationPipeline(
        engine,
        store,
        settings=settings,
        source_factory=source.factory,
        sleep=sleep,
    )


def _helpers(engine) -> list[str]:
    return [
        args[0].name
        for name, args in engine.calls
        if name == "create_container" and args[0].name.startswith("dockbase-dump-")
    ]


# =============================================================================
# Happy path
# =============================================================================


class TestMigrationHappyPath:
    """A reachable source with a non-empty dump."""

    @pytest.mark.asyncio
    async def test_all_steps_succeed_in_order(self, pipeline):
        result = await pipeline.run(_request())

        assert [s.step for s in result.steps] == list(MigrationStep)
        assert all(s.status == StepStatus.SUCCEEDED for s in result.steps)
        assert result.overall_status == OverallStatus.PASSED

    @pytest.mark.asyncio
    async def test_destination_container(self, pipeline, engine):
        result = await pipeline.run(_request())

        container = engine.by_name("postgres-shop")
        assert container is not None
        assert container.running
        assert container.image == "postgres:15"
        assert container.port_bindings == {"5432/tcp": [("0.0.0.0", 5433)]}
        assert container.binds == ["postgres-shop-data:/var/lib/postgresql/data"]
        assert container.labels["migrated"] == "true"
        assert container.labels["migrated_from"] == "localhost:5432/shop"
        assert container.env["POSTGRES_DB"] == "shop"
        assert result.container_id == container.id
        assert result.port == 5433

    @pytest.mark.asyncio
    async def test_dump_uploaded_as_tar(self, pipeline, engine):
        await pipeline.run(_request())

        path, data = engine.by_name("postgres-shop").archives[0]
        assert path == "/tmp"
        with tarfile.open(fileobj=io.BytesIO(data)) as archive:
            member = archive.getmember("dump.sql")
            assert archive.extractfile(member).read() == DUMP

    @pytest.mark.asyncio
    async def test_helper_removed_after_dump(self, pipeline, engine):
        await pipeline.run(_request())

        helpers = _helpers(engine)
        assert len(helpers) == 1
        assert engine.by_name(helpers[0]) is None
        dump_env = next(env for _, cmd, env in engine.exec_log if cmd[0] == "pg_dump")
        assert dump_env == {"PGPASSWORD": "pw"}

    @pytest.mark.asyncio
    async def test_record_stored(self, pipeline, store):
        result = await pipeline.run(_request(target_name="shop_copy"))

        assert len(store) == 1
        record = store.list()[0]
        assert record.original_name == "shop"
        assert record.container_name == "postgres-shop_copy"
        assert record.size_bytes == len(DUMP)
        assert record.source == "localhost:5432/shop"
        assert result.record == record
        assert result.verification == "3"

    @pytest.mark.asyncio
    async def test_next_free_port(self, pipeline, engine):
        engine.add_container("other", port=5433)
        result = await pipeline.run(_request())
        assert result.port == 5434

    @pytest.mark.asyncio
    async def test_missing_image_is_pulled(self, pipeline, engine, source):
        source.version = "PostgreSQL 16.2 on x86_64-pc-linux-gnu"
        result = await pipeline.run(_request())
        assert result.image == "postgres:16"
        assert engine.count("pull_image") == 1

    @pytest.mark.asyncio
    async def test_unparsed_version_falls_back(self, pipeline, source, settings):
        source.version = "EnterpriseDB something"
        settings.default_postgres_major = "15"
        result = await pipeline.run(_request())
        assert result.postgres_version == "15"

    @pytest.mark.asyncio
    async def test_scratch_dump_removed(self, engine, store, settings, source, sleep, tmp_path):
        engine.script_exec("pg_dump", ExecResult(0, stdout=DUMP))
        settings.scratch_dir = str(tmp_path)
        pipeline = MigrationPipeline(engine, store, settings=settings, source_factory=source.factory, sleep=sleep)

        await pipeline.run(_request())

        assert list(tmp_path.iterdir()) == []


# =============================================================================
# Source host inside the dump helper
# =============================================================================


def _dump_host(engine) -> str:
    dump_cmd = next(cmd for _, cmd, _ in engine.exec_log if cmd[0] == "pg_dump")
    return dump_cmd[dump_cmd.index("-h") + 1]


def _dump_helper_spec(engine) -> ContainerSpec:
    return next(
        args[0]
        for name, args in engine.calls
        if name == "create_container" and args[0].name.startswith("dockbase-dump-")
    )


class TestSourceHost:
    """localhost is only rewritten where host networking cannot reach it."""

    @pytest.mark.asyncio
    async def test_native_linux_keeps_localhost(self, pipeline, engine):
        await pipeline.run(_request())

        assert _dump_host(engine) == "localhost"
        assert _dump_helper_spec(engine).network_mode == "host"
        assert _dump_helper_spec(engine).extra_hosts == {}
        assert engine.count("info") == 1

    @pytest.mark.asyncio
    async def test_docker_desktop_uses_gateway_alias(self, pipeline, engine):
        engine.engine_info = {"Name": "docker-desktop", "OperatingSystem": "Docker Desktop"}

        await pipeline.run(_request(source_host="127.0.0.1"))

        assert _dump_host(engine) == "host.docker.internal"
        assert _dump_helper_spec(engine).extra_hosts == {"host.docker.internal": "host-gateway"}

    @pytest.mark.asyncio
    async def test_remote_host_untouched(self, pipeline, engine):
        engine.engine_info = {"Name": "docker-desktop", "OperatingSystem": "Docker Desktop"}

        await pipeline.run(_request(source_host="db.internal"))

        assert _dump_host(engine) == "db.internal"
        assert engine.count("info") == 0

    @pytest.mark.asyncio
    async def test_empty_alias_disables_rewrite(self, pipeline, engine, settings):
        engine.engine_info = {"Name": "docker-desktop", "OperatingSystem": "Docker Desktop"}
        settings.host_gateway_alias = ""

        await pipeline.run(_request())

        assert _dump_host(engine) == "localhost"
        assert _dump_helper_spec(engine).extra_hosts == {}

    @pytest.mark.parametrize(
        "info,expected",
        [
            ({"Name": "build-01", "OperatingSystem": "Ubuntu 24.04 LTS"}, True),
            ({"Name": "docker-desktop", "OperatingSystem": "Docker Desktop"}, False),
            ({"Name": "mac", "OperatingSystem": "Docker Desktop 4.30"}, False),
            ({}, True),
        ],
    )
    def test_loopback_detection(self, info, expected):
        assert loopback_reaches_host(info) is expected


# =============================================================================
# Readiness
# =============================================================================


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready_on_third_attempt(self, pipeline, engine, sleep):
        engine.script_exec("pg_isready", ExecResult(1), ExecResult(1), ExecResult(0))

        result = await pipeline.run(_request())

        step = next(s for s in result.steps if s.step == MigrationStep.READINESS_POLL)
        assert step.detail == "ready after 3 attempt(s)"
        assert engine.count("exec") >= 3
        assert sleep.delays.count(0) >= 2

    @pytest.mark.asyncio
    async def test_readiness_checked_over_tcp(self, pipeline, engine):
        await pipeline.run(_request())

        check = next(cmd for _, cmd, _ in engine.exec_log if cmd[0] == "pg_isready")
        assert check[check.index("-h") + 1] == "127.0.0.1"
        assert check[check.index("-p") + 1] == "5432"
        assert check[check.index("-d") + 1] == "shop"

    @pytest.mark.asyncio
    async def test_timeout_leaves_destination_running(self, pipeline, engine, store):
        engine.script_exec("pg_isready", ExecResult(2))

        with pytest.raises(MigrationTimeoutError) as info:
            await pipeline.run(_request())

        assert info.value.attempts == 5
        assert "readiness_poll" in info.value.message
        assert engine.by_name("postgres-shop").running
        assert len(store) == 0
        result = info.value.result
        assert result.failed_step == MigrationStep.READINESS_POLL
        assert result.overall_status == OverallStatus.FAILED

    def test_poll_state_machine(self):
        poll = ReadinessPoll(max_attempts=3, interval=0)
        assert poll.record(False) is PollState.POLLING
        assert poll.record(True) is PollState.READY
        assert poll.record(False) is PollState.READY
        assert poll.attempt == 2


# =============================================================================
# Failures
# =============================================================================


class TestDumpFailures:
    @pytest.mark.asyncio
    async def test_empty_dump_removes_helper_once(self, pipeline, engine):
        engine.script_exec("pg_dump", ExecResult(1, stderr=b"FATAL: password authentication failed"))

        with pytest.raises(MigrationStepError) as info:
            await pipeline.run(_request())

        assert info.value.step == "dump_extraction"
        assert "password authentication failed" in info.value.message
        helper = _helpers(engine)[0]
        removals = [args for name, args in engine.calls if name == "remove_container"]
        assert len(removals) == 1
        assert engine.by_name(helper) is None
        assert engine.by_name("postgres-shop") is None

    @pytest.mark.asyncio
    async def test_nonzero_exit_with_output_is_fatal(self, pipeline, engine):
        engine.script_exec("pg_dump", ExecResult(1, stdout=DUMP, stderr=b"pg_dump: error: aborting"))
        with pytest.raises(MigrationStepError, match="exited with code 1"):
            await pipeline.run(_request())

    @pytest.mark.asyncio
    async def test_unreachable_source(self, pipeline, engine, source):
        source.error = ConnectivityError("Cannot connect to PostgreSQL at localhost:5432/shop")

        with pytest.raises(MigrationStepError) as info:
            await pipeline.run(_request())

        assert info.value.step == "version_check"
        assert engine.mutating_calls == []

    @pytest.mark.asyncio
    async def test_version_query_error_is_step_error(self, pipeline, engine, source):
        source.error = SourceDatabaseError("Version query failed: connection was closed in the middle of operation")

        with pytest.raises(MigrationStepError) as info:
            await pipeline.run(_request())

        assert info.value.step == "version_check"
        assert "connection was closed" in info.value.message
        assert engine.mutating_calls == []


class TestRestore:
    @pytest.mark.asyncio
    async def test_fatal_restore(self, pipeline, engine, store):
        engine.script_exec(
            "psql",
            ExecResult(2, stderr=b'psql: error: connection to server on socket failed'),
        )

        with pytest.raises(MigrationStepError) as info:
            await pipeline.run(_request())

        assert info.value.step == "restore"
        assert "connection to server" in info.value.message
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_statement_errors_are_warnings(self, pipeline, engine):
        engine.script_exec(
            "psql",
            ExecResult(0, stderr=b'ERROR:  role "app" does not exist\n'),
            ExecResult(0, stdout=b"1\n"),
        )

        result = await pipeline.run(_request())

        assert result.overall_status == OverallStatus.PARTIAL
        assert result.warnings == ['ERROR:  role "app" does not exist']
        restore = next(s for s in result.steps if s.step == MigrationStep.RESTORE)
        assert restore.status == StepStatus.WARNED

    @pytest.mark.asyncio
    async def test_failed_verification_is_not_fatal(self, pipeline, engine, store):
        engine.script_exec("psql", ExecResult(0), ExecResult(1, stderr=b"boom"))

        result = await pipeline.run(_request())

        assert result.verification is None
        assert result.overall_status == OverallStatus.PARTIAL
        assert len(store) == 1

    def test_restore_warnings_truncated(self):
        stderr = "\n".join(f"ERROR: {i}" for i in range(25))
        warnings = restore_warnings(stderr)
        assert len(warnings) == 21
        assert warnings[-1] == "... 5 more lines"


class TestPreflight:
    @pytest.mark.asyncio
    async def test_name_conflict_creates_nothing(self, pipeline, engine, source):
        engine.add_container("postgres-shop", port=5440)

        with pytest.raises(ConflictError):
            await pipeline.run(_request())

        assert engine.mutating_calls == []
        assert source.requests == []

    @pytest.mark.asyncio
    async def test_port_exhaustion_is_step_error(self, pipeline, engine, settings):
        settings.port_search_limit = 1
        pipeline.allocator.search_limit = 1
        engine.add_container("other", port=5433)

        with pytest.raises(MigrationStepError) as info:
            await pipeline.run(_request())

        assert info.value.step == "port_allocation"


# =============================================================================
# Helpers
# =============================================================================


class TestEphemeralContainer:
    @pytest.mark.asyncio
    async def test_removed_when_body_raises(self, engine):
        spec = ContainerSpec(name="helper", image="postgres:15")
        with pytest.raises(RuntimeError):
            async with ephemeral_container(engine, spec):
                raise RuntimeError("body failed")
        assert engine.count("remove_container") == 1
        assert engine.containers == {}


class TestHelpers:
    def test_resolve_source_host(self):
        assert resolve_source_host("localhost", "host.docker.internal") == "host.docker.internal"
        assert resolve_source_host("127.0.0.1", "host.docker.internal") == "host.docker.internal"
        assert resolve_source_host("db.internal", "host.docker.internal") == "db.internal"
        assert resolve_source_host("localhost", "") == "localhost"

    def test_dump_archive(self):
        with tarfile.open(fileobj=io.BytesIO(build_dump_archive(b"x"))) as archive:
            assert archive.getnames() == ["dump.sql"]


class TestMigrationStore:
    def test_prefix_lookup_and_removal(self):
        store = MigrationStore()
        store.add(MigratedDatabase(original_name="a", container_id="abc123", container_name="postgres-a"))
        store.add(MigratedDatabase(original_name="b", container_id="def456", container_name="postgres-b"))

        assert store.get("abc").original_name == "a"
        assert store.remove_container("abc") == 1
        assert [r.original_name for r in store.list()] == ["b"]
        assert store.get("") is None

    def test_repoint_follows_recreated_container(self):
        store = MigrationStore()
        store.add(MigratedDatabase(original_name="a", container_id="abc123", container_name="postgres-a", port=5433))

        assert store.repoint("abc", "fff999", 5500) == 1
        record = store.get("fff999")
        assert record.original_name == "a"
        assert record.port == 5500
        assert store.get("abc123") is None
        assert store.repoint("nope", "x", 1) == 0

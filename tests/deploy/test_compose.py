"""Unit tests for compose parsing, generation and project deployment."""

from __future__ import annotations

import pytest
import pytest_asyncio

from dockbase.core.errors import ConfigError, DeploymentError, EngineError, NotFoundError
from dockbase.deploy.compose import (
    ComposeOrchestrator,
    dependency_order,
    dump_compose,
    generate_compose_from_containers,
    parse_compose_file,
    parse_port_mapping,
    service_spec,
    translate_volume,
    validate_compose,
)
from dockbase.deploy.models import COMPOSE_PROJECT_LABEL, COMPOSE_SERVICE_LABEL, ComposeConfig
from dockbase.deploy.results import OverallStatus

STACK = """\
version: "3.8"
services:
  app:
    image: redis:7.4
    command: redis-server --appendonly yes
    depends_on:
      - db
    networks:
      - backend
      - frontend
  db:
    image: postgres:15
    ports:
      - "5440:5432"
    environment:
      POSTGRES_PASSWORD: secret
    volumes:
      - data:/var/lib/postgresql/data
    networks:
      - backend
    restart: unless-stopped
volumes:
  data:
networks:
  backend:
  frontend:
"""


# ===========================================================================
# Parsing
# ===========================================================================


class TestParseComposeFile:
    def test_parses_stack(self):
        config = parse_compose_file(STACK)
        assert config.version == "3.8"
        assert list(config.services) == ["app", "db"]
        assert config.services["db"].environment == {"POSTGRES_PASSWORD": "secret"}
        assert config.services["app"].depends_on == ["db"]
        assert config.volumes == {"data": {}}

    def test_list_environment_and_long_depends_on(self):
        config = parse_compose_file(
            "services:\n"
            "  db:\n"
            "    image: postgres:15\n"
            "    environment:\n"
            "      - POSTGRES_DB=shop\n"
            "  app:\n"
            "    image: app:1\n"
            "    depends_on:\n"
            "      db:\n"
            "        condition: service_healthy\n"
        )
        assert config.services["db"].environment == {"POSTGRES_DB": "shop"}
        assert config.services["app"].depends_on == ["db"]

    def test_invalid_yaml(self):
        with pytest.raises(ConfigError, match="Invalid compose YAML"):
            parse_compose_file("services: [unclosed")

    def test_duplicate_keys_rejected(self):
        text = "services:\n  db:\n    image: a\n  db:\n    image: b\n"
        with pytest.raises(ConfigError, match="duplicate key 'db'"):
            parse_compose_file(text)

    def test_missing_services(self):
        with pytest.raises(ConfigError, match="Missing required field: services"):
            parse_compose_file("volumes:\n  data:\n")

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError, match="must be a mapping"):
            parse_compose_file("- just\n- a list\n")

    def test_service_without_image(self):
        with pytest.raises(ConfigError, match=r"services\.db\.image"):
            parse_compose_file("services:\n  db:\n    ports:\n      - '5432:5432'\n")

    def test_undeclared_dependency(self):
        with pytest.raises(ConfigError, match="undeclared service 'cache'"):
            parse_compose_file("services:\n  app:\n    image: a\n    depends_on: [cache]\n")


class TestValidateCompose:
    def test_valid(self):
        report = validate_compose(STACK)
        assert report.valid
        assert report.errors == []
        assert report.warnings == []

    def test_missing_services(self):
        report = validate_compose("volumes:\n  data:\n")
        assert not report.valid
        assert report.errors == ["Missing required field: services"]

    def test_tabs(self):
        report = validate_compose("services:\n\tdb:\n\t\timage: postgres\n")
        assert not report.valid
        assert "YAML should use spaces, not tabs for indentation" in report.errors

    def test_odd_indentation_is_a_warning(self):
        text = "services:\n  db:\n     image: postgres:15\n"
        report = validate_compose(text)
        assert report.valid
        assert report.warnings == ["Line 3: Inconsistent indentation (should be multiples of 2)"]

    def test_parse_errors_reported(self):
        report = validate_compose("services:\n  db:\n    ports: []\n")
        assert not report.valid
        assert report.errors[0].startswith("Invalid compose file")


class TestDependencyOrder:
    def test_dependencies_first(self):
        assert dependency_order(parse_compose_file(STACK)) == ["db", "app"]

    def test_declaration_order_kept(self):
        config = parse_compose_file("services:\n  b:\n    image: x\n  a:\n    image: y\n")
        assert dependency_order(config) == ["b", "a"]

    def test_cycle(self):
        config = parse_compose_file(
            "services:\n"
            "  a:\n    image: x\n    depends_on: [b]\n"
            "  b:\n    image: y\n    depends_on: [a]\n"
        )
        with pytest.raises(ConfigError, match="Circular depends_on between services: a, b"):
            dependency_order(config)


# ===========================================================================
# Translation
# ===========================================================================


class TestTranslation:
    @pytest.mark.parametrize(
        "mapping,expected",
        [
            ("8080:80", ("80/tcp", 8080, None)),
            ("127.0.0.1:5433:5432", ("5432/tcp", 5433, "127.0.0.1")),
            ("53:53/udp", ("53/udp", 53, None)),
            ("6379", ("6379/tcp", None, None)),
        ],
    )
    def test_port_mapping(self, mapping, expected):
        assert parse_port_mapping(mapping) == expected

    def test_bad_port_mapping(self):
        with pytest.raises(ConfigError, match="Invalid port mapping"):
            parse_port_mapping("http:80")

    def test_volume_translation(self):
        declared = {"data": {}}
        assert translate_volume("data:/var/lib/data", "shop", declared) == "shop_data:/var/lib/data"
        assert translate_volume("/srv/x:/x:ro", "shop", declared) == "/srv/x:/x:ro"
        assert translate_volume("/anonymous", "shop", declared) is None
        assert translate_volume("./conf:/etc/conf", "shop", declared).startswith("/")

    def test_service_spec(self):
        config = parse_compose_file(STACK)
        spec, extra = service_spec("shop", "app", config.services["app"], config)
        assert spec.name == "shop-app-1"
        assert spec.command == ["redis-server", "--appendonly", "yes"]
        assert spec.network_mode == "shop_backend"
        assert extra == ["shop_frontend"]
        assert spec.labels == {COMPOSE_PROJECT_LABEL: "shop", COMPOSE_SERVICE_LABEL: "app"}

        db_spec, _ = service_spec("shop", "db", config.services["db"], config)
        assert db_spec.port_bindings == {"5432/tcp": [("0.0.0.0", 5440)]}
        assert db_spec.binds == ["shop_data:/var/lib/postgresql/data"]
        assert db_spec.restart_policy == "unless-stopped"

    def test_explicit_container_name_and_restart_retries(self):
        config = parse_compose_file(
            "services:\n  db:\n    image: x\n    container_name: main-db\n    restart: on-failure:3\n"
        )
        spec, _ = service_spec("shop", "db", config.services["db"], config)
        assert spec.name == "main-db"
        assert spec.restart_policy == "on-failure"

    def test_host_ip_kept_per_mapping(self):
        config = parse_compose_file(
            "services:\n  web:\n    image: x\n    ports:\n      - \"127.0.0.1:5433:5432\"\n      - \"8080:80\"\n"
        )
        spec, _ = service_spec("shop", "web", config.services["web"], config)
        assert spec.host_config_kwargs()["port_bindings"] == {
            "5432/tcp": [("127.0.0.1", 5433)],
            "80/tcp": [("0.0.0.0", 8080)],
        }

    def test_container_port_published_twice(self):
        config = parse_compose_file(
            "services:\n  web:\n    image: x\n    ports:\n      - \"8080:80\"\n      - \"8081:80\"\n"
        )
        spec, _ = service_spec("shop", "web", config.services["web"], config)
        assert spec.exposed_ports == ["80/tcp"]
        assert spec.host_config_kwargs()["port_bindings"] == {
            "80/tcp": [("0.0.0.0", 8080), ("0.0.0.0", 8081)],
        }

    def test_service_name_is_network_alias(self):
        config = parse_compose_file(STACK)
        spec, _ = service_spec("shop", "app", config.services["app"], config)
        assert spec.network_aliases == ["app"]

        bare = parse_compose_file("services:\n  db:\n    image: x\n")
        spec, _ = service_spec("shop", "db", bare.services["db"], bare)
        assert spec.network_aliases == []


# ===========================================================================
# Generation
# ===========================================================================


class TestGenerateCompose:
    @pytest.mark.asyncio
    async def test_round_trip(self, engine):
        db = engine.add_container("postgres-shop", image="postgres:15", port=5440, binds=["shop-data:/var/lib/postgresql/data"])
        db.env = {"POSTGRES_DB": "shop"}
        db.restart_policy = "always"
        cache = engine.add_container(
            "redis-cache", image="redis:7.4", port=6380, container_port="6379/tcp",
        )
        cache.command = ["redis-server", "--requirepass", "pw"]

        text = await generate_compose_from_containers(engine, [db.id, cache.id])

        assert text.startswith("# Generated by dockbase\n# Services: postgres-shop, redis-cache\n")
        config = parse_compose_file(text)
        assert set(config.services) == {"postgres-shop", "redis-cache"}
        service = config.services["postgres-shop"]
        assert service.image == "postgres:15"
        assert service.ports == ["5440:5432"]
        assert service.environment == {"POSTGRES_DB": "shop"}
        assert service.volumes == ["shop-data:/var/lib/postgresql/data"]
        assert service.restart == "always"
        assert config.volumes == {"shop-data": {}}
        assert config.services["redis-cache"].command == ["redis-server", "--requirepass", "pw"]
        assert config.services["redis-cache"].ports == ["6380:6379"]
        assert engine.mutating_calls == []

    @pytest.mark.asyncio
    async def test_service_label_names_service(self, engine):
        first = engine.add_container("shop-db-1", image="postgres:15", labels={COMPOSE_SERVICE_LABEL: "db"})
        second = engine.add_container("other-db-1", image="postgres:15", labels={COMPOSE_SERVICE_LABEL: "db"})

        config = parse_compose_file(await generate_compose_from_containers(engine, [first.id, second.id]))

        assert list(config.services) == ["db", "db-2"]

    @pytest.mark.asyncio
    async def test_no_containers(self, engine):
        with pytest.raises(ConfigError):
            await generate_compose_from_containers(engine, [])

    @pytest.mark.asyncio
    async def test_unknown_container(self, engine):
        with pytest.raises(NotFoundError):
            await generate_compose_from_containers(engine, ["nope"])

    def test_dump_keeps_image_first(self):
        config = ComposeConfig.model_validate(
            {"services": {"db": {"restart": "always", "image": "postgres:15"}}}
        )
        lines = dump_compose(config).splitlines()
        assert lines[:3] == ["services:", "  db:", "    image: postgres:15"]

    @pytest.mark.asyncio
    async def test_bindings_keep_interface_and_every_host_port(self, engine):
        web = engine.add_container("web", image="nginx:1.27")
        web.port_bindings = {
            "5432/tcp": [("127.0.0.1", 5433)],
            "80/tcp": [("0.0.0.0", 8080), ("0.0.0.0", 8081)],
        }

        config = parse_compose_file(await generate_compose_from_containers(engine, [web.id]))

        assert config.services["web"].ports == ["127.0.0.1:5433:5432", "8080:80", "8081:80"]


# ===========================================================================
# Deployment
# ===========================================================================


class TestComposeDeploy:
    @pytest.mark.asyncio
    async def test_deploys_in_dependency_order(self, engine):
        result = await ComposeOrchestrator(engine).deploy(parse_compose_file(STACK), "shop")

        assert result.overall_status == OverallStatus.PASSED
        assert result.summary == "2/2 services running"
        assert result.volumes == ["shop_data"]
        assert result.networks == ["shop_backend", "shop_frontend"]
        created = [args[0].name for name, args in engine.calls if name == "create_container"]
        assert created == ["shop-db-1", "shop-app-1"]

        db = engine.by_name("shop-db-1")
        assert db.running
        assert db.binds == ["shop_data:/var/lib/postgresql/data"]
        assert db.labels[COMPOSE_PROJECT_LABEL] == "shop"
        app = engine.by_name("shop-app-1")
        assert app.network_mode == "shop_backend"
        assert app.networks == ["shop_frontend"]
        assert app.aliases == {"shop_backend": ["app"], "shop_frontend": ["app"]}
        assert db.aliases == {"shop_backend": ["db"]}
        assert engine.count("pull_image") == 1

    @pytest.mark.asyncio
    async def test_existing_volume_and_network_are_reused(self, engine):
        engine.volumes["shop_data"] = {}
        engine.networks["shop_backend"] = {}
        engine.networks["shop_frontend"] = {}

        result = await ComposeOrchestrator(engine).deploy(parse_compose_file(STACK), "shop")

        assert result.overall_status == OverallStatus.PASSED

    @pytest.mark.asyncio
    async def test_failure_is_not_rolled_back(self, engine):
        text = STACK.replace("image: redis:7.4", "image: missing/app:1")

        with pytest.raises(DeploymentError) as info:
            await ComposeOrchestrator(engine).deploy(parse_compose_file(text), "shop")

        error = info.value
        assert error.service == "app"
        assert error.created == ["shop-db-1"]
        assert "not rolled back: shop-db-1" in error.message
        assert error.context.project == "shop"
        assert engine.by_name("shop-db-1").running
        statuses = {s.name: s.status for s in error.result.services}
        assert statuses == {"db": "running", "app": "failed"}
        assert error.result.overall_status == OverallStatus.FAILED

    @pytest.mark.asyncio
    async def test_volume_failure_aborts(self, engine):
        engine.fail("create_volume", EngineError("disk full"))
        with pytest.raises(DeploymentError, match="Volume 'shop_data' could not be created"):
            await ComposeOrchestrator(engine).deploy(parse_compose_file(STACK), "shop")
        assert engine.count("create_container") == 0

    @pytest.mark.asyncio
    async def test_cycle_creates_nothing(self, engine):
        config = parse_compose_file(
            "services:\n"
            "  a:\n    image: x\n    depends_on: [b]\n"
            "  b:\n    image: y\n    depends_on: [a]\n"
        )
        with pytest.raises(ConfigError):
            await ComposeOrchestrator(engine).deploy(config, "shop")
        assert engine.mutating_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("project", ["", "Shop", "-shop", "my shop"])
    async def test_invalid_project_name(self, engine, project):
        with pytest.raises(ConfigError, match="Invalid project name"):
            await ComposeOrchestrator(engine).deploy(parse_compose_file(STACK), project)


class TestComposeProjects:
    @pytest_asyncio.fixture
    async def deployed(self, engine):
        orchestrator = ComposeOrchestrator(engine)
        await orchestrator.deploy(parse_compose_file(STACK), "shop")
        return orchestrator

    @pytest.mark.asyncio
    async def test_list_projects(self, engine, deployed):
        engine.add_container("loose", labels={COMPOSE_PROJECT_LABEL: "alpha", COMPOSE_SERVICE_LABEL: "web"})

        projects = await deployed.list_projects()

        assert [p.name for p in projects] == ["alpha", "shop"]
        shop = projects[1]
        assert sorted(s.name for s in shop.services) == ["app", "db"]
        assert shop.running == 2

    @pytest.mark.asyncio
    async def test_stop_and_start(self, engine, deployed):
        stopped = await deployed.stop_project("shop")
        assert sorted(stopped) == ["shop-app-1", "shop-db-1"]
        assert not engine.by_name("shop-db-1").running

        await deployed.start_project("shop")
        assert engine.by_name("shop-db-1").running

    @pytest.mark.asyncio
    async def test_unknown_project(self, deployed):
        with pytest.raises(NotFoundError, match="No containers found for project 'nope'"):
            await deployed.stop_project("nope")

    @pytest.mark.asyncio
    async def test_remove_keeps_volumes_by_default(self, engine, deployed):
        removed = await deployed.remove_project("shop")

        assert sorted(removed) == ["shop-app-1", "shop-db-1"]
        assert "shop_data" in engine.volumes
        assert "shop_backend" in engine.networks

    @pytest.mark.asyncio
    async def test_remove_with_volumes(self, engine, deployed):
        removed = await deployed.remove_project("shop", remove_volumes=True)

        assert "shop_data" in removed
        assert "shop_backend" in removed
        assert engine.volumes == {}
        assert engine.networks == {}

    @pytest.mark.asyncio
    async def test_remove_unknown_project(self, deployed):
        with pytest.raises(NotFoundError):
            await deployed.remove_project("nope")

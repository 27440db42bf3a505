"""Tests for provisioning templates."""

from __future__ import annotations

import pytest

from dockbase.core.errors import ConfigError
from dockbase.deploy.catalog import DatabaseType
from dockbase.deploy.models import DatabaseConfig
from dockbase.deploy.templates import (
    PREDEFINED,
    all_templates,
    apply_template,
    load_custom_templates,
    template_from_mapping,
)


def _config(**fields) -> DatabaseConfig:
    fields.setdefault("name", "shop")
    fields.setdefault("port", 5440)
    return DatabaseConfig(**fields)


class TestPredefined:
    def test_ids(self):
        assert list(PREDEFINED) == ["development", "testing", "production", "high-availability"]

    @pytest.mark.parametrize("template", list(PREDEFINED.values()), ids=lambda t: t.id)
    def test_every_type_configured(self, template):
        assert set(template.configurations) == set(DatabaseType)
        assert not template.custom

    def test_high_availability_restarts_always(self):
        settings = PREDEFINED["high-availability"].configurations[DatabaseType.POSTGRES]
        assert settings.restart_policy == "always"


class TestApplyTemplate:
    def test_merges_limits_and_env(self):
        config = _config(env={"TZ": "UTC", "POSTGRES_MAX_CONNECTIONS": "10"})

        applied = apply_template("development", config)

        assert applied.memory == "256m"
        assert applied.cpus == "1"
        assert applied.env["TZ"] == "UTC"
        assert applied.env["POSTGRES_MAX_CONNECTIONS"] == "100"
        assert applied.env["POSTGRES_SHARED_BUFFERS"] == "128MB"
        assert config.env == {"TZ": "UTC", "POSTGRES_MAX_CONNECTIONS": "10"}

    def test_restart_policy(self):
        applied = apply_template("high-availability", _config(db_type=DatabaseType.REDIS))
        assert applied.restart_policy == "always"
        assert applied.memory == "1g"

    def test_unknown_template_leaves_config(self):
        config = _config()
        assert apply_template("nope", config) is config

    def test_type_missing_leaves_config(self):
        custom = {"pg-only": template_from_mapping("pg-only", {"configurations": {"postgres": {"memory": "1g"}}})}
        config = _config(db_type=DatabaseType.REDIS)
        assert apply_template("pg-only", config, custom) is config


class TestCustomTemplates:
    def test_from_mapping(self):
        template = template_from_mapping(
            "ci",
            {
                "name": "CI",
                "configurations": {
                    "Postgres": {"memory": "512m", "cpus": 2, "env": {"A": 1}, "restartPolicy": "no"},
                },
            },
        )
        assert template.custom
        assert template.name == "CI"
        settings = template.configurations[DatabaseType.POSTGRES]
        assert settings.cpus == "2"
        assert settings.env == {"A": "1"}
        assert settings.restart_policy == "no"

    def test_missing_configurations(self):
        with pytest.raises(ConfigError, match="has no configurations"):
            template_from_mapping("x", {"name": "X"})

    def test_unknown_type(self):
        with pytest.raises(ConfigError, match="unknown database type 'oracle'"):
            template_from_mapping("x", {"configurations": {"oracle": {}}})

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "templates.yml"
        path.write_text(
            "small:\n"
            "  name: Small\n"
            "  configurations:\n"
            "    redis:\n"
            "      memory: 32m\n",
            encoding="utf-8",
        )
        custom = load_custom_templates(path)
        assert list(custom) == ["small"]
        merged = all_templates(custom)
        assert "development" in merged
        assert apply_template("small", _config(db_type=DatabaseType.REDIS), merged).memory == "32m"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read templates"):
            load_custom_templates(tmp_path / "missing.yml")

    def test_load_non_mapping(self, tmp_path):
        path = tmp_path / "templates.yml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_custom_templates(path)

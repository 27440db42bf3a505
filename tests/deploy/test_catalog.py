"""Tests for the database type catalog."""

from __future__ import annotations

import pytest

from dockbase.deploy.catalog import (
    CATALOG,
    MARIADB,
    POSTGRES,
    DatabaseType,
    EnvRule,
    get_type_info,
    list_types,
)


class TestCatalogEntries:
    """Every supported type has a complete, immutable entry."""

    def test_all_types_present(self):
        assert set(CATALOG) == set(DatabaseType)

    def test_list_types_in_declaration_order(self):
        assert [t.id for t in list_types()] == [
            DatabaseType.POSTGRES,
            DatabaseType.MYSQL,
            DatabaseType.MARIADB,
            DatabaseType.MONGODB,
            DatabaseType.REDIS,
        ]

    @pytest.mark.parametrize("info", list(CATALOG.values()), ids=lambda i: i.id.value)
    def test_entries_have_versions_and_port(self, info):
        assert info.versions
        assert 0 < info.default_port <= 65535
        assert info.image_name

    def test_entries_are_frozen(self):
        with pytest.raises(AttributeError):
            POSTGRES.default_port = 1  # type: ignore[misc]

    def test_mysql_like_entries_carry_prefix(self):
        assert MARIADB.env_rule is EnvRule.MYSQL_LIKE
        assert MARIADB.env_prefix == "MARIADB"
        assert CATALOG[DatabaseType.MYSQL].env_prefix == "MYSQL"


class TestImageAndNames:
    def test_image_defaults_to_latest_version(self):
        assert POSTGRES.image() == f"postgres:{POSTGRES.versions[0]}"

    def test_image_with_version(self):
        assert POSTGRES.image("15") == "postgres:15"

    def test_mongodb_image_name(self):
        assert CATALOG[DatabaseType.MONGODB].image("7.0") == "mongo:7.0"

    def test_container_name_is_type_prefixed(self):
        assert POSTGRES.container_name("shop") == "postgres-shop"


class TestLookup:
    @pytest.mark.parametrize("key", ["postgres", "POSTGRES", "PostgreSQL", " postgres "])
    def test_case_insensitive(self, key):
        assert get_type_info(key) is POSTGRES

    def test_lookup_by_enum(self):
        assert get_type_info(DatabaseType.MARIADB) is MARIADB

    def test_lookup_by_image_name(self):
        assert get_type_info("mongo").id is DatabaseType.MONGODB

    def test_unknown_type(self):
        with pytest.raises(KeyError, match="Unknown database type 'oracle'"):
            get_type_info("oracle")

"""Tests for structlog configuration and context binding."""

from __future__ import annotations

import json
import logging

import structlog

from dockbase.core.logging import LogContext, configure_logging, get_logger


def _reset() -> None:
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestConfigureLogging:
    def test_json_lines_carry_service_and_context(self, caplog):
        configure_logging(level="DEBUG", json_format=True, service="dockbase-test")
        try:
            with caplog.at_level(logging.DEBUG):
                with LogContext(migration_id="3f2a"):
                    get_logger("dockbase.tests").info("migration.started", source="localhost:5432/shop")
            record = json.loads(caplog.records[-1].getMessage())
            assert record["event"] == "migration.started"
            assert record["migration_id"] == "3f2a"
            assert record["service"] == "dockbase-test"
            assert record["level"] == "info"
            assert record["logger"] == "dockbase.tests"
            assert "timestamp" in record
        finally:
            _reset()

    def test_level_filters(self, caplog):
        configure_logging(level="WARNING", json_format=True)
        try:
            with caplog.at_level(logging.DEBUG):
                get_logger("dockbase.tests.filter").info("ignored")
                get_logger("dockbase.tests.filter").warning("kept")
            events = [json.loads(r.getMessage())["event"] for r in caplog.records]
            assert events == ["kept"]
        finally:
            _reset()

    def test_context_is_unbound_on_exit(self):
        with LogContext(project="shop"):
            assert structlog.contextvars.get_contextvars()["project"] == "shop"
        assert "project" not in structlog.contextvars.get_contextvars()

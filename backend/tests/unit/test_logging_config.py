"""Unit tests for the structlog logging configuration."""

import json

import structlog

from subsync.logging_config import setup_logging


class TestSetupLogging:
    def test_debug_mode_renders_for_the_console(self, capsys):
        setup_logging(debug=True)

        structlog.get_logger("test").debug("subscription_merged", account_id="account-1")

        out = capsys.readouterr().out
        assert "subscription_merged" in out
        assert "account-1" in out

    def test_production_mode_emits_json_with_bound_context(self, capsys):
        setup_logging(debug=False)

        with structlog.contextvars.bound_contextvars(event_id="evt_1", attempt=2):
            structlog.get_logger("test").info("provider_event_processed")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "provider_event_processed"
        assert record["event_id"] == "evt_1"
        assert record["attempt"] == 2
        assert record["level"] == "info"
        assert "timestamp" in record

    def test_production_mode_drops_debug(self, capsys):
        setup_logging(debug=False)

        structlog.get_logger("test").debug("cache_hit")

        assert "cache_hit" not in capsys.readouterr().out


class TestStructlogContextBinding:
    def test_bound_context_is_restored_after_event(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="req-1")

        with structlog.contextvars.bound_contextvars(event_id="evt_1"):
            assert structlog.contextvars.get_contextvars()["event_id"] == "evt_1"

        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}
        structlog.contextvars.clear_contextvars()

"""Tests for shipyard.core.logging processors."""

from __future__ import annotations

import json
from types import SimpleNamespace

import structlog

from shipyard.core.logging import LogContext, _redact_secrets, build_processors, get_logger


class TestRedactSecretsProcessor:
    """The processor that keeps credentials out of every sink."""

    def test_sensitive_key_masked(self):
        event = _redact_secrets(None, "info", {"event": "x", "telegram_bot_token": "123:abc"})
        assert event["telegram_bot_token"] == "******"

    def test_embedded_secret_masked(self):
        event = _redact_secrets(None, "info", {"event": "x", "detail": "DB_PASSWORD=hunter2"})
        assert "hunter2" not in event["detail"]

    def test_plain_values_kept(self):
        event = _redact_secrets(None, "info", {"event": "deploy.started", "app_name": "demo", "port": 3000})
        assert event == {"event": "deploy.started", "app_name": "demo", "port": 3000}


class TestBuildProcessors:
    def test_json_chain_ends_with_renderer(self):
        processors = build_processors(json_format=True)
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_chain(self):
        processors = build_processors(json_format=False, add_timestamp=False)
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


class TestJsonOutput:
    def test_json_output_is_redacted(self):
        event: object = {"event": "probe.failed", "detail": "API_KEY=sk-live-123", "app_name": "demo"}
        logger = SimpleNamespace(name="test")
        for processor in build_processors(json_format=True):
            event = processor(logger, "info", event)

        record = json.loads(event)
        assert record["event"] == "probe.failed"
        assert record["app_name"] == "demo"
        assert "sk-live-123" not in event
        assert record["service.name"] == "shipyard"
        assert "@timestamp" in record

    def test_logger_name_bound(self):
        with structlog.testing.capture_logs() as logs:
            get_logger("shipyard.deploy.ports").warning("ports.reassigned", port=3001)
        assert logs[0]["log.logger"] == "shipyard.deploy.ports"

    def test_log_context_binds_and_unbinds(self):
        with LogContext(app_name="demo", run_id="abc"):
            assert structlog.contextvars.get_contextvars()["app_name"] == "demo"
        assert "app_name" not in structlog.contextvars.get_contextvars()

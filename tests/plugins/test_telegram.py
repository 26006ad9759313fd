"""Tests for the telegram-notifier plugin (HTTP calls mocked)."""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from shipyard.deploy.config import AppConfig
from shipyard.deploy.hooks import HookEvent
from shipyard.plugins.telegram import API_BASE, TelegramNotifierPlugin

TOKEN = "123456:AAEexampletoken"


@pytest.fixture
def plugin():
    return TelegramNotifierPlugin()


def _event(detail: str = "", data: dict | None = None, **args) -> HookEvent:
    plugin_args = {
        **TelegramNotifierPlugin.args,
        "telegram_enabled": True,
        "telegram_bot_token": TOKEN,
        "telegram_chat_id": "-10042",
        **args,
    }
    config = AppConfig(app_name="demo", domain="example.com", route="demo", image="nginx", tag="v2", plugin_args=plugin_args)
    return HookEvent(app_name="demo", config=config, detail=detail, data=data or {})


def _sent_text(mock_post) -> str:
    return mock_post.call_args[1]["data"]["text"]


class TestSend:
    @patch("httpx.post", return_value=httpx.Response(200, json={"ok": True}))
    def test_delivers(self, mock_post, plugin):
        assert plugin.send(_event(), "hello") is True
        assert mock_post.call_args[0][0] == f"{API_BASE}/bot{TOKEN}/sendMessage"
        assert mock_post.call_args[1]["data"]["chat_id"] == "-10042"
        assert "*demo*: hello" in _sent_text(mock_post)

    @patch("httpx.post")
    def test_disabled(self, mock_post, plugin):
        assert plugin.send(_event(telegram_enabled=False), "hello") is False
        mock_post.assert_not_called()

    @patch("httpx.post")
    def test_enabled_as_string(self, mock_post, plugin):
        mock_post.return_value = httpx.Response(200)
        assert plugin.send(_event(telegram_enabled="yes"), "hello") is True

    @patch("httpx.post")
    def test_unconfigured(self, mock_post, plugin):
        assert plugin.send(_event(telegram_chat_id=""), "hello") is False
        mock_post.assert_not_called()

    @pytest.mark.parametrize(
        "minimum, level, sent",
        [
            ("info", "debug", False),
            ("info", "success", True),
            ("warning", "info", False),
            ("warning", "error", True),
        ],
    )
    def test_level_filter(self, plugin, minimum, level, sent):
        with patch("httpx.post", return_value=httpx.Response(200)) as mock_post:
            plugin.send(_event(telegram_notify_level=minimum), "hello", level)
        assert mock_post.called is sent

    def test_message_redacted(self, plugin):
        with patch("httpx.post", return_value=httpx.Response(200)) as mock_post:
            plugin.send(_event(), "DB_PASSWORD=hunter2 leaked")
        assert "hunter2" not in _sent_text(mock_post)

    def test_api_error(self, plugin):
        response = httpx.Response(400, json={"ok": False, "description": "chat not found"})
        with patch("httpx.post", return_value=response):
            assert plugin.send(_event(), "hello") is False

    def test_network_error_swallowed(self, plugin):
        error = httpx.ConnectError(f"failed to reach {API_BASE}/bot{TOKEN}/sendMessage")
        with patch("httpx.post", side_effect=error):
            with patch("shipyard.plugins.telegram.logger") as mock_logger:
                assert plugin.send(_event(), "hello") is False
        logged = str(mock_logger.warning.call_args)
        assert TOKEN not in logged


class TestHooks:
    def test_success_includes_url(self, plugin):
        with patch("httpx.post", return_value=httpx.Response(200)) as mock_post:
            plugin.on_deploy_success(_event())
        assert "https://example.com/demo" in _sent_text(mock_post)

    def test_health_failure_includes_log_tail(self, plugin):
        logs = "\n".join(f"line {n}" for n in range(30))
        with patch("httpx.post", return_value=httpx.Response(200)) as mock_post:
            plugin.on_health_check_failed(_event(detail="HTTP 503", data={"logs": logs}))
        text = _sent_text(mock_post)
        assert "HTTP 503" in text
        assert "line 29" in text
        assert "line 19" not in text

    def test_health_failure_without_logs(self, plugin):
        with patch("httpx.post", return_value=httpx.Response(200)) as mock_post:
            plugin.on_health_check_failed(_event(data={"logs": "boom"}, telegram_include_logs=False))
        assert "boom" not in _sent_text(mock_post)

    def test_rollback_is_warning(self, plugin):
        with patch("httpx.post", return_value=httpx.Response(200)) as mock_post:
            plugin.on_rollback(_event(detail="v2 -> v1", telegram_notify_level="warning"))
        assert "v2 -> v1" in _sent_text(mock_post)

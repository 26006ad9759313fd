"""Tests for the ssl-check plugin."""

from __future__ import annotations

import pytest

from shipyard.core.errors import HookRejected
from shipyard.deploy.config import AppConfig
from shipyard.deploy.hooks import HookDispatcher, HookEvent
from shipyard.plugins.ssl_check import SSLCheckPlugin


@pytest.fixture
def plugin():
    return SSLCheckPlugin()


def _event(cert_root, required=False, **config) -> HookEvent:
    base = {"app_name": "demo", "domain": "example.com", "route": "demo", "image": "nginx"}
    app = AppConfig(**{**base, **config}, plugin_args={"ssl_cert_dir": str(cert_root), "ssl_required": required})
    return HookEvent(app_name="demo", config=app)


def _issue(cert_root, server_name):
    cert_dir = cert_root / server_name
    cert_dir.mkdir(parents=True)
    for name in ("fullchain.pem", "privkey.pem"):
        (cert_dir / name).write_text("-----BEGIN-----")


class TestSSLCheck:
    def test_present(self, plugin, tmp_path):
        _issue(tmp_path, "example.com")
        event = _event(tmp_path, required=True)
        assert plugin.missing_files(event) == []
        plugin.check(event)

    def test_subdomain_server_name(self, plugin, tmp_path):
        _issue(tmp_path, "demo.example.com")
        assert plugin.missing_files(_event(tmp_path, route_type="subdomain")) == []

    def test_missing_required(self, plugin, tmp_path):
        with pytest.raises(HookRejected, match="fullchain.pem"):
            plugin.check(_event(tmp_path, required=True))

    def test_missing_not_required(self, plugin, tmp_path):
        plugin.check(_event(tmp_path))

    def test_partial(self, plugin, tmp_path):
        (tmp_path / "example.com").mkdir()
        (tmp_path / "example.com" / "fullchain.pem").write_text("x")
        missing = plugin.missing_files(_event(tmp_path))
        assert [p.name for p in missing] == ["privkey.pem"]

    def test_plain_http_skipped(self, plugin, tmp_path):
        plugin.check(_event(tmp_path, required=True, ssl=False))

    def test_required_as_blocking_hook(self, tmp_path):
        dispatcher = HookDispatcher()
        SSLCheckPlugin().register(dispatcher)
        with pytest.raises(HookRejected):
            dispatcher.execute("pre_deploy", _event(tmp_path, required=True))

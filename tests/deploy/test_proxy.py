"""Tests for shipyard.deploy.proxy — nginx site rendering and reloads."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from shipyard.deploy.config import AppConfig
from shipyard.deploy.models import RouteType
from shipyard.deploy.proxy import NginxProxy, location_for, render_site, server_name_for


def _completed(returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout="", stderr=stderr)


@pytest.fixture
def proxy(ctx):
    return NginxProxy(ctx)


class TestRouting:
    @pytest.mark.parametrize(
        "route_type, route, expected",
        [
            (RouteType.PATH, "demo", "example.com"),
            (RouteType.SUBDOMAIN, "demo", "demo.example.com"),
            (RouteType.SUBDOMAIN, "", "example.com"),
        ],
    )
    def test_server_name(self, route_type, route, expected):
        assert server_name_for("example.com", route_type, route) == expected

    @pytest.mark.parametrize(
        "route_type, route, expected",
        [
            (RouteType.PATH, "demo", "/demo"),
            (RouteType.PATH, "/api//v1/", "/api/v1"),
            (RouteType.PATH, "", "/"),
            (RouteType.SUBDOMAIN, "demo", "/"),
        ],
    )
    def test_location(self, route_type, route, expected):
        assert location_for(route_type, route) == expected


class TestRenderSite:
    def test_path_route_with_tls(self, app_config):
        site = render_site(app_config, 3001, Path("/etc/certs"))
        assert "server_name example.com;" in site
        assert "return 301 https://$host$request_uri;" in site
        assert "ssl_certificate /etc/certs/example.com/fullchain.pem;" in site
        assert "location /demo {" in site
        assert "rewrite ^/demo(/.*)?$ $1 break;" in site
        assert "proxy_pass http://localhost:3001;" in site

    def test_subdomain_plain_http(self):
        config = AppConfig(app_name="api", domain="example.com", route="api", route_type="subdomain", ssl=False)
        site = render_site(config, 8080, Path("/etc/certs"))
        assert "server_name api.example.com;" in site
        assert "listen 443" not in site
        assert "location / {" in site
        assert "rewrite" not in site


class TestNginxProxy:
    def test_apply_writes_site(self, proxy, ctx, app_config):
        result = proxy.apply(app_config, 3000)
        assert result.success
        assert result.path == ctx.proxy_dir / "demo.conf"
        assert "proxy_pass http://localhost:3000;" in result.path.read_text()

    def test_apply_dry_run(self, dry_ctx, app_config):
        result = NginxProxy(dry_ctx).apply(app_config, 3000)
        assert result.message == "dry run"
        assert not result.path.exists()

    def test_remove(self, proxy, app_config):
        proxy.apply(app_config, 3000)
        assert proxy.remove("demo").message == "removed"
        assert proxy.remove("demo").message == "absent"

    @patch("shutil.which", return_value=None)
    def test_reload_without_nginx(self, _which, proxy):
        result = proxy.reload()
        assert not result.success
        assert "nginx not found" in result.message

    @patch("shutil.which", return_value="/usr/sbin/nginx")
    def test_reload_validates_first(self, _which, proxy):
        with patch("subprocess.run", return_value=_completed(0)) as mock_run:
            assert proxy.reload().success
        commands = [c[0][0] for c in mock_run.call_args_list]
        assert commands == [["/usr/sbin/nginx", "-t"], ["/usr/sbin/nginx", "-s", "reload"]]

    @patch("shutil.which", return_value="/usr/sbin/nginx")
    def test_config_test_failure_skips_reload(self, _which, proxy):
        with patch("subprocess.run", return_value=_completed(1, "unexpected }")) as mock_run:
            result = proxy.reload()
        assert not result.success
        assert "config test" in result.message
        assert mock_run.call_count == 1

    @patch("shutil.which", return_value="/usr/bin/docker")
    def test_reload_in_container(self, _which, ctx):
        proxy = NginxProxy(ctx, proxy_container="edge")
        with patch("subprocess.run", return_value=_completed(0)) as mock_run:
            proxy.reload()
        assert mock_run.call_args[0][0][:4] == ["/usr/bin/docker", "exec", "edge", "nginx"]

    def test_reload_dry_run(self, dry_ctx):
        with patch("subprocess.run") as mock_run:
            assert NginxProxy(dry_ctx).reload().success
        mock_run.assert_not_called()

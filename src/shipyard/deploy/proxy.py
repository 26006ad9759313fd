"""Reverse proxy configuration (nginx).

Each deployed app gets one site file, ``<proxy_dir>/<app_name>.conf``,
routing its public identity to the app's primary host port:

- ``path`` routing: ``location /<route>`` on the bare domain, with the
  prefix stripped before proxying.
- ``subdomain`` routing: ``server_name <route>.<domain>``, ``location /``.
- ``ssl``: port 80 redirects to 443; certificates are read from
  ``<certs_dir>/<server_name>/{fullchain,privkey}.pem``.

Reloads validate first (``nginx -t``) and then ``nginx -s reload``, either
on the host or inside ``proxy_container``. A failed reload is reported as
a :class:`ProxyResult`, not raised: the orchestrator decides whether it is
fatal.

Tags:
    proxy, nginx, routing, tls
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from shipyard.core.context import DeployContext
from shipyard.core.errors import PermissionDeniedError
from shipyard.core.logging import get_logger
from shipyard.deploy.config import AppConfig
from shipyard.deploy.models import RouteType

logger = get_logger(__name__)

_PROXY_HEADERS = """\
        proxy_pass http://localhost:{port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;
"""

_TLS_BLOCK = """\
    ssl_certificate {cert_dir}/fullchain.pem;
    ssl_certificate_key {cert_dir}/privkey.pem;
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers on;
    ssl_ciphers EECDH+AESGCM:EDH+AESGCM;
    ssl_session_cache shared:SSL:10m;
    ssl_session_timeout 1d;

    add_header Strict-Transport-Security "max-age=31536000; includeSubDomains" always;
    add_header X-Content-Type-Options nosniff;
    add_header X-Frame-Options SAMEORIGIN;
"""


@dataclass
class ProxyResult:
    """Outcome of a proxy operation."""

    success: bool
    message: str = ""
    path: Path | None = None

    @classmethod
    def ok(cls, message: str = "ok", path: Path | None = None) -> ProxyResult:
        return cls(success=True, message=message, path=path)

    @classmethod
    def fail(cls, message: str, path: Path | None = None) -> ProxyResult:
        return cls(success=False, message=message, path=path)


def server_name_for(domain: str, route_type: RouteType, route: str) -> str:
    label = route.strip("/")
    if route_type == RouteType.SUBDOMAIN and label:
        return f"{label}.{domain}"
    return domain


def location_for(route_type: RouteType, route: str) -> str:
    label = "/".join(part for part in route.split("/") if part)
    if route_type == RouteType.PATH and label:
        return f"/{label}"
    return "/"


def render_site(config: AppConfig, port: int, certs_dir: Path) -> str:
    """nginx site configuration for one app."""
    server_name = server_name_for(config.domain, config.route_type, config.route)
    location = location_for(config.route_type, config.route)

    lines = [
        "# Generated by shipyard",
        f"# App: {config.app_name}",
        f"# Domain: {server_name}",
        f"# Route: {location}",
        "",
        "server {",
        "    listen 80;",
        "    listen [::]:80;",
        f"    server_name {server_name};",
    ]
    if config.ssl:
        lines += [
            "",
            "    location / {",
            "        return 301 https://$host$request_uri;",
            "    }",
            "}",
            "",
            "server {",
            "    listen 443 ssl http2;",
            "    listen [::]:443 ssl http2;",
            f"    server_name {server_name};",
            "",
            _TLS_BLOCK.format(cert_dir=certs_dir / server_name).rstrip("\n"),
        ]
    lines += ["", f"    location {location} {{"]
    if location != "/":
        lines.append(f"        rewrite ^{location}(/.*)?$ $1 break;")
    lines.append(_PROXY_HEADERS.format(port=port).rstrip("\n"))
    lines += ["    }", "}", ""]
    return "\n".join(lines)


class NginxProxy:
    """Writes, removes and reloads per-app nginx site files.

    Parameters
    ----------
    ctx
        Supplies ``proxy_dir`` and ``dry_run``.
    certs_dir
        Root of per-server-name certificate directories.
    proxy_container
        When set, nginx commands run via ``docker exec`` in this container.
    """

    def __init__(
        self,
        ctx: DeployContext,
        certs_dir: Path | None = None,
        proxy_container: str | None = None,
        timeout: int = 30,
    ) -> None:
        self.ctx = ctx
        self.certs_dir = certs_dir or ctx.base_dir / "certs"
        self.proxy_container = proxy_container
        self.timeout = timeout

    def site_path(self, app_name: str) -> Path:
        return self.ctx.proxy_dir / f"{app_name}.conf"

    def apply(self, config: AppConfig, port: int) -> ProxyResult:
        """Write (or, on dry run, only render) the app's site file."""
        path = self.site_path(config.app_name)
        content = render_site(config, port, self.certs_dir)
        if self.ctx.dry_run:
            logger.info("proxy.dry_run", app_name=config.app_name, path=str(path), port=port)
            return ProxyResult.ok("dry run", path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot write proxy config {path}", cause=e).with_context(
                app_name=config.app_name, path=str(path)
            )
        logger.info("proxy.site_written", app_name=config.app_name, path=str(path), port=port)
        return ProxyResult.ok("written", path)

    def remove(self, app_name: str) -> ProxyResult:
        path = self.site_path(app_name)
        if self.ctx.dry_run:
            logger.info("proxy.dry_run_remove", app_name=app_name, path=str(path))
            return ProxyResult.ok("dry run", path)
        if not path.exists():
            return ProxyResult.ok("absent", path)
        path.unlink()
        logger.info("proxy.site_removed", app_name=app_name, path=str(path))
        return ProxyResult.ok("removed", path)

    def reload(self) -> ProxyResult:
        """Validate then reload nginx."""
        if self.ctx.dry_run:
            logger.info("proxy.dry_run_reload")
            return ProxyResult.ok("dry run")
        base = self._nginx_base()
        if base is None:
            logger.warning("proxy.nginx_not_found")
            return ProxyResult.fail("nginx not found on host and no proxy container configured")

        for args, step in ((["-t"], "config test"), (["-s", "reload"], "reload")):
            try:
                result = subprocess.run(
                    [*base, *args],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.warning("proxy.reload_failed", step=step, error=str(e))
                return ProxyResult.fail(f"nginx {step} failed: {e}")
            if result.returncode != 0:
                stderr = result.stderr.strip()
                logger.warning("proxy.reload_failed", step=step, stderr=stderr[-500:])
                return ProxyResult.fail(f"nginx {step} failed: {stderr}")
        logger.info("proxy.reloaded", container=self.proxy_container)
        return ProxyResult.ok("reloaded")

    def _nginx_base(self) -> list[str] | None:
        if self.proxy_container:
            docker = shutil.which("docker")
            return None if docker is None else [docker, "exec", self.proxy_container, "nginx"]
        nginx = shutil.which("nginx")
        return None if nginx is None else [nginx]


__all__ = ["NginxProxy", "ProxyResult", "render_site", "server_name_for", "location_for"]

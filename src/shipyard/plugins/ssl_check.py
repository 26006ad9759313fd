"""SSL check plugin: certificate presence before an HTTPS deploy.

Issuance is not handled here. For ``ssl`` apps the plugin looks for
``fullchain.pem`` and ``privkey.pem`` under ``<ssl_cert_dir>/<server_name>``
and, when ``ssl_required`` is set, rejects the deploy if either is missing.
"""

from __future__ import annotations

from pathlib import Path

from shipyard.core.errors import HookRejected
from shipyard.core.logging import get_logger
from shipyard.deploy.hooks import HookEvent, HookName
from shipyard.deploy.proxy import server_name_for
from shipyard.plugins.base import Plugin
from shipyard.plugins.registry import register_plugin

logger = get_logger(__name__)

CERT_FILES = ("fullchain.pem", "privkey.pem")


@register_plugin("ssl-check")
class SSLCheckPlugin(Plugin):
    description = "Verify TLS certificates exist for ssl-enabled apps"
    args = {
        "ssl_cert_dir": "/etc/letsencrypt/live",
        "ssl_required": False,
    }
    hooks = {HookName.PRE_DEPLOY: "check"}

    def missing_files(self, event: HookEvent) -> list[Path]:
        config = event.config
        if config is None:
            return []
        server_name = server_name_for(config.domain, config.route_type, config.route)
        cert_dir = Path(str(event.arg("ssl_cert_dir", "/etc/letsencrypt/live"))) / server_name
        return [cert_dir / name for name in CERT_FILES if not (cert_dir / name).is_file()]

    def check(self, event: HookEvent) -> None:
        if event.config is None or not event.config.ssl:
            return
        missing = self.missing_files(event)
        if not missing:
            logger.info("ssl.certificates_present", app_name=event.app_name)
            return
        names = ", ".join(str(p) for p in missing)
        if event.arg("ssl_required", False):
            raise HookRejected(f"Missing TLS certificate files: {names}").with_context(app_name=event.app_name)
        logger.warning("ssl.certificates_missing", app_name=event.app_name, missing=names)

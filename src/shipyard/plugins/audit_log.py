"""Audit log plugin: an append-only record of who deployed what, and when.

Every deploy, rollback and cleanup milestone is appended to a JSON-lines
file (one object per line, mode 0600) with the acting user, host, run id,
category and action. Details pass through secret redaction first. The file
is rotated by size: ``audit.log`` becomes ``audit.log.1`` and so on, keeping
at most ``audit_max_files`` old files.

Insecure settings are flagged as ``security`` events: a config loaded with
``ssl`` off, or ``ssl`` on with no ``ssl_email``.

Args:
    audit_log_path: Audit file (default: ``<base_dir>/logs/audit.log``).
    audit_max_bytes: Rotate once the file reaches this size; 0 disables rotation.
    audit_max_files: Rotated files to keep.
"""

from __future__ import annotations

import getpass
import json
import os
import socket
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shipyard.core.logging import get_logger
from shipyard.core.redaction import redact_mapping
from shipyard.deploy.hooks import HookEvent, HookName
from shipyard.plugins.base import Plugin
from shipyard.plugins.registry import register_plugin

logger = get_logger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        # no passwd entry (e.g. an arbitrary uid in a container)
        return str(os.getuid())


@register_plugin("audit-log")
class AuditLogPlugin(Plugin):
    description = "Append deploy, rollback and cleanup events to an audit file"
    args = {
        "audit_log_path": "",
        "audit_max_bytes": DEFAULT_MAX_BYTES,
        "audit_max_files": 5,
    }
    hooks = {
        HookName.CONFIG_LOADED: "on_config_loaded",
        HookName.PRE_DEPLOY: "on_pre_deploy",
        HookName.POST_DEPLOY: "on_post_deploy",
        HookName.HEALTH_CHECK_FAILED: "on_health_check_failed",
        HookName.POST_ROLLBACK: "on_rollback",
        HookName.PRE_CLEANUP: "on_pre_cleanup",
        HookName.POST_CLEANUP: "on_post_cleanup",
    }

    def log_path(self, event: HookEvent) -> Path | None:
        configured = str(event.arg("audit_log_path", "") or "")
        if configured:
            return Path(configured)
        return self.ctx.base_dir / "logs" / "audit.log" if self.ctx is not None else None

    def record(self, event: HookEvent, category: str, action: str, **fields: Any) -> dict[str, Any] | None:
        """Append one audit entry; returns it, or ``None`` when nothing was written."""
        if self.ctx is not None and self.ctx.dry_run:
            return None
        path = self.log_path(event)
        if path is None:
            logger.warning("audit.no_path", app_name=event.app_name, action=action)
            return None

        entry = {
            "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
            "user": _current_user(),
            "host": socket.gethostname(),
            "run_id": self.ctx.run_id if self.ctx is not None else "",
            "category": category,
            "action": action,
            "app_name": event.app_name,
            "stage": event.stage,
            "detail": event.detail,
            **redact_mapping(fields),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        self._rotate(path, event)
        new_file = not path.exists()
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, default=str) + "\n")
        if new_file:
            os.chmod(path, 0o600)
        return entry

    def on_config_loaded(self, event: HookEvent) -> None:
        self.record(event, "configuration", "config_loaded")
        if event.config is not None and not event.config.ssl:
            self.record(event, "security", "ssl_disabled")
            logger.warning("audit.ssl_disabled", app_name=event.app_name)

    def on_pre_deploy(self, event: HookEvent) -> None:
        config = event.config
        self.record(event, "deployment", "pre_deploy", image=config.image if config else "", tag=config.tag if config else "")
        if config is not None and config.ssl and not config.ssl_email:
            self.record(event, "security", "ssl_without_email")

    def on_post_deploy(self, event: HookEvent) -> None:
        self.record(event, "deployment", "post_deploy")

    def on_health_check_failed(self, event: HookEvent) -> None:
        self.record(event, "deployment", "health_check_failed")

    def on_rollback(self, event: HookEvent) -> None:
        self.record(event, "deployment", "rollback")

    def on_pre_cleanup(self, event: HookEvent) -> None:
        self.record(event, "deployment", "pre_cleanup")

    def on_post_cleanup(self, event: HookEvent) -> None:
        self.record(event, "deployment", "post_cleanup")

    @staticmethod
    def _rotate(path: Path, event: HookEvent) -> None:
        max_bytes = int(event.arg("audit_max_bytes", DEFAULT_MAX_BYTES) or 0)
        if max_bytes <= 0 or not path.exists() or path.stat().st_size < max_bytes:
            return
        keep = max(int(event.arg("audit_max_files", 5) or 0), 0)
        if keep == 0:
            path.unlink()
            return
        oldest = path.with_name(f"{path.name}.{keep}")
        if oldest.exists():
            oldest.unlink()
        for index in range(keep - 1, 0, -1):
            src = path.with_name(f"{path.name}.{index}")
            if src.exists():
                os.replace(src, path.with_name(f"{path.name}.{index + 1}"))
        os.replace(path, path.with_name(f"{path.name}.1"))
        logger.info("audit.rotated", path=str(path), keep=keep)

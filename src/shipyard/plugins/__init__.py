"""Deployment plugins.

Importing this package registers the built-in plugins:

- ``persistence`` — data directories for persistent services
- ``ssl-check`` — certificate presence for HTTPS apps
- ``telegram-notifier`` — milestone notifications via the Telegram Bot API
- ``postgres-backup`` — ``pg_dump`` before deploy, optional migration after
- ``audit-log`` — JSON-lines audit trail of deploy, rollback and cleanup events
"""

from shipyard.plugins.base import Plugin
from shipyard.plugins.registry import (
    clear_registry,
    discover_plugins,
    get_plugin,
    list_plugins,
    register_plugin,
    resolve_order,
)

from shipyard.plugins import audit_log, persistence, postgres_backup, ssl_check, telegram  # noqa: E402,F401  (registration)

__all__ = [
    "Plugin",
    "clear_registry",
    "discover_plugins",
    "get_plugin",
    "list_plugins",
    "register_plugin",
    "resolve_order",
]

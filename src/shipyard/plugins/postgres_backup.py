"""Postgres backup plugin: dump the live database before a redeploy.

Before deploy, the running production container of a postgres app (or the
container named by ``pg_container``) is asked for a ``pg_dump``; the dump
lands in ``<pg_backup_dir>/<app>_<YYYYmmdd_HHMMSS>.sql`` with mode 0600.
A failed dump is logged and the deploy continues unless
``pg_backup_required`` is set. After deploy an optional migration command
runs inside the new app container.

Args:
    pg_backup_enabled: Take a dump before each deploy.
    pg_backup_required: Reject the deploy when the dump fails.
    pg_backup_dir: Dump directory (default: ``<base_dir>/backups``).
    pg_user: Role passed to ``pg_dump -U``.
    pg_database: Database to dump (default: the role's database).
    pg_container: Container running postgres (default: the app's primary container).
    pg_migration_command: Shell command run in the app container after deploy.
    pg_migration_container: Container for the migration (default: the app's primary container).
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

from shipyard.core.context import DeployContext
from shipyard.core.errors import ContainerError, HookRejected
from shipyard.core.logging import get_logger
from shipyard.core.redaction import redact
from shipyard.deploy.compose import primary_container
from shipyard.deploy.container import ContainerManager, InstanceStatus
from shipyard.deploy.hooks import HookEvent, HookName
from shipyard.plugins.base import Plugin, truthy
from shipyard.plugins.registry import register_plugin

logger = get_logger(__name__)


@register_plugin("postgres-backup")
class PostgresBackupPlugin(Plugin):
    description = "Dump postgres databases before deploy and run migrations after"
    args = {
        "pg_backup_enabled": True,
        "pg_backup_required": False,
        "pg_backup_dir": "",
        "pg_user": "postgres",
        "pg_database": "",
        "pg_container": "",
        "pg_migration_command": "",
        "pg_migration_container": "",
    }
    hooks = {
        HookName.PRE_DEPLOY: "backup",
        HookName.POST_DEPLOY: "migrate",
    }

    dump_timeout = 600

    def __init__(self, ctx: DeployContext | None = None, containers: ContainerManager | None = None) -> None:
        super().__init__(ctx)
        self._containers = containers

    @property
    def containers(self) -> ContainerManager:
        if self._containers is None:
            self._containers = ContainerManager()
        return self._containers

    def backup_dir_for(self, event: HookEvent) -> Path | None:
        configured = str(event.arg("pg_backup_dir", "") or "")
        if configured:
            return Path(configured)
        return self.ctx.base_dir / "backups" if self.ctx is not None else None

    def database_container(self, event: HookEvent) -> str | None:
        """Container to dump from; ``None`` when the app runs no postgres."""
        explicit = str(event.arg("pg_container", "") or "")
        if explicit:
            return explicit
        config = event.config
        if config is None or not any("postgres" in image for image in config.images()):
            return None
        return primary_container(config)

    def backup(self, event: HookEvent) -> Path | None:
        if not self._should_run(event) or not truthy(event.arg("pg_backup_enabled", True)):
            return None
        container = self.database_container(event)
        if container is None:
            return None
        backup_dir = self.backup_dir_for(event)
        if backup_dir is None:
            logger.warning("postgres.backup_skipped", app_name=event.app_name, reason="no backup directory")
            return None

        command = ["pg_dump", "-U", str(event.arg("pg_user", "postgres"))]
        database = str(event.arg("pg_database", "") or "")
        if database:
            command += ["-d", database]
        try:
            if self.containers.status(container) != InstanceStatus.RUNNING:
                logger.info("postgres.backup_skipped", app_name=event.app_name, container=container, reason="not running")
                return None
            result = self.containers.exec(container, command, timeout=self.dump_timeout)
        except ContainerError as e:
            return self._backup_failed(event, container, e.message)
        if result.returncode != 0:
            return self._backup_failed(event, container, result.stderr.strip()[-500:])

        stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        path = backup_dir / f"{event.app_name}_{stamp}.sql"
        backup_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(result.stdout, encoding="utf-8")
        os.chmod(path, 0o600)
        logger.info("postgres.backup_written", app_name=event.app_name, path=str(path), bytes=len(result.stdout))
        return path

    def migrate(self, event: HookEvent) -> None:
        command = str(event.arg("pg_migration_command", "") or "")
        if not command or not self._should_run(event):
            return
        container = str(event.arg("pg_migration_container", "") or "") or primary_container(event.config)
        logger.info("postgres.migrating", app_name=event.app_name, container=container)
        result = self.containers.exec(container, ["sh", "-c", command], timeout=self.dump_timeout)
        if result.returncode != 0:
            raise ContainerError(
                f"Migration in {container} exited {result.returncode}: {redact(result.stderr.strip()[-500:])}"
            ).with_context(app_name=event.app_name)
        logger.info("postgres.migrated", app_name=event.app_name)

    def _should_run(self, event: HookEvent) -> bool:
        if event.config is None or event.config.dry_run:
            return False
        return not (self.ctx is not None and self.ctx.dry_run)

    def _backup_failed(self, event: HookEvent, container: str, reason: str) -> None:
        reason = redact(reason)
        if truthy(event.arg("pg_backup_required", False)):
            raise HookRejected(f"Database backup of {container} failed: {reason}").with_context(
                app_name=event.app_name
            )
        logger.warning("postgres.backup_failed", app_name=event.app_name, container=container, error=reason)

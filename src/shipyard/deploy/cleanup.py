"""Cleanup: remove a deployed application from the host.

Order of operations::

    refuse persistent service unless force
    pre_cleanup (blocking)
    compose down (production and any leftover staging)
    remove proxy site + reload
    remove data directory unless keep_data
    remove app, staging and backup directories
    unregister
    post_cleanup

A persistent service is the one record the registry lifecycle never
removes implicitly; ``force`` is the explicit override.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path

from shipyard.core.context import DeployContext
from shipyard.core.errors import ConfigError, PermissionDeniedError
from shipyard.core.locks import FileLock
from shipyard.deploy.compose import InstanceRole, project_name
from shipyard.deploy.config import AppConfig
from shipyard.deploy.container import ContainerManager
from shipyard.deploy.hooks import HookDispatcher, HookEvent, HookName
from shipyard.deploy.proxy import NginxProxy
from shipyard.deploy.registry import RegistryStore


@dataclass
class CleanupResult:
    """Steps a cleanup performed (or, on dry run, would perform)."""

    app_name: str
    steps: list[str] = field(default_factory=list)
    dry_run: bool = False
    unregistered: bool = False


class CleanupManager:
    """Tears down an application and its registry record."""

    def __init__(
        self,
        ctx: DeployContext,
        registry: RegistryStore,
        containers: ContainerManager,
        proxy: NginxProxy | None = None,
        dispatcher: HookDispatcher | None = None,
        lock_timeout: float = 30.0,
    ) -> None:
        self.ctx = ctx
        self.registry = registry
        self.containers = containers
        self.proxy = proxy
        self.dispatcher = dispatcher or HookDispatcher()
        self.lock_timeout = lock_timeout

    def data_dir_for(self, app_name: str, config: AppConfig | None = None) -> Path:
        root = config.arg("persistence_data_dir", "") if config else ""
        return Path(root) / app_name if root else self.ctx.data_path(app_name)

    def cleanup(
        self,
        app_name: str,
        force: bool = False,
        keep_data: bool = False,
        config: AppConfig | None = None,
    ) -> CleanupResult:
        """Remove ``app_name`` from the host.

        Raises:
            ConfigError: the service is persistent and ``force`` is not set.
            HookRejected: a ``pre_cleanup`` callback refused.
        """
        record = self.registry.find(app_name)
        persistent = record.persistent if record else bool(config and config.persistent)
        if persistent and not force:
            raise ConfigError(f"{app_name} is a persistent service. Use --force to remove it.").with_context(
                app_name=app_name
            )

        result = CleanupResult(app_name=app_name, dry_run=self.ctx.dry_run)
        app_dir = self.ctx.app_dir(app_name)
        event = HookEvent(app_name=app_name, app_dir=app_dir, stage="cleanup", config=config)
        self.dispatcher.execute(HookName.PRE_CLEANUP, event)

        if self.ctx.dry_run:
            result.steps = ["stop", "proxy", "data" if not keep_data else "keep-data", "app_dir", "unregister"]
            self.ctx.logger.info("cleanup.dry_run", app_name=app_name, steps=result.steps)
            return result

        with FileLock(self.ctx.locks_dir / f"app-{app_name}.lock", timeout=self.lock_timeout, owner=self.ctx.run_id):
            use_profiles = config.use_profiles if config else True
            self.containers.stop(app_dir, project_name(app_name), use_profiles)
            staging_dir = self.ctx.staging_dir(app_name)
            self.containers.stop(staging_dir, project_name(app_name, InstanceRole.STAGING), use_profiles)
            result.steps.append("stop")

            if self.proxy is not None:
                removed = self.proxy.remove(app_name)
                if removed.message == "removed":
                    reload = self.proxy.reload()
                    if not reload.success:
                        self.ctx.logger.warning(
                            "cleanup.proxy_reload_failed", app_name=app_name, detail=reload.message
                        )
                result.steps.append("proxy")

            if keep_data:
                self.ctx.logger.info("cleanup.data_kept", app_name=app_name)
            else:
                if self._remove_tree(self.data_dir_for(app_name, config)):
                    result.steps.append("data")

            for directory in (app_dir, staging_dir, self.ctx.backup_dir(app_name)):
                if self._remove_tree(directory):
                    result.steps.append(directory.name)

            if record is not None:
                self.registry.delete(app_name)
                result.unregistered = True
                result.steps.append("unregister")

        self.dispatcher.execute(HookName.POST_CLEANUP, event)
        self.ctx.logger.info("cleanup.completed", app_name=app_name, steps=result.steps)
        return result

    def _remove_tree(self, path: Path) -> bool:
        if not path.exists():
            return False
        try:
            shutil.rmtree(path)
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot remove {path}", cause=e).with_context(path=str(path))
        self.ctx.logger.info("cleanup.removed", path=str(path))
        return True


__all__ = ["CleanupManager", "CleanupResult"]

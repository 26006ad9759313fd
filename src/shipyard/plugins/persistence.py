"""Persistence plugin: data directories for services that outlive redeploys.

Before deploy, a persistent app gets ``<data_dir>/<app_name>`` created and
mounted at ``/data`` in every service of its compose file that declares no
volumes of its own. After deploy the directory is stamped with a marker
file so operators (and cleanup) can tell it holds state.

Args:
    persistence_profile: Compose profile added to detected stateful services.
    persistence_data_dir: Root for data directories (default: context data dir).
    persistence_auto_setup: Profile stateful images of non-persistent apps.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from shipyard.core.errors import PermissionDeniedError
from shipyard.core.logging import get_logger
from shipyard.deploy.compose import COMPOSE_FILENAME, dump_compose, write_compose_file
from shipyard.deploy.hooks import HookEvent, HookName
from shipyard.plugins.base import Plugin
from shipyard.plugins.registry import register_plugin

logger = get_logger(__name__)

MARKER_FILE = ".shipyard-persistent"
STATEFUL_IMAGES = ("postgres", "mysql", "mariadb", "mongo", "redis", "elasticsearch", "rabbitmq", "memcached")


@register_plugin("persistence")
class PersistencePlugin(Plugin):
    description = "Create and mount data directories for persistent services"
    args = {
        "persistence_profile": "persistence",
        "persistence_data_dir": "",
        "persistence_auto_setup": True,
    }
    hooks = {
        HookName.PRE_DEPLOY: "setup",
        HookName.POST_DEPLOY: "mark",
    }

    def data_dir_for(self, event: HookEvent) -> Path:
        root = event.arg("persistence_data_dir") or ""
        if root:
            return Path(root) / event.app_name
        if self.ctx is not None:
            return self.ctx.data_path(event.app_name)
        raise PermissionDeniedError("No data directory configured for persistence plugin")

    def setup(self, event: HookEvent) -> None:
        config = event.config
        if config is None or config.dry_run or self._dry_run:
            return
        if config.persistent:
            data_dir = self.data_dir_for(event)
            try:
                data_dir.mkdir(parents=True, exist_ok=True)
            except PermissionError as e:
                raise PermissionDeniedError(f"Cannot create data directory {data_dir}", cause=e).with_context(
                    app_name=event.app_name, path=str(data_dir)
                )
            logger.info("persistence.data_dir_ready", app_name=event.app_name, path=str(data_dir))
            self._edit_compose(event, lambda svc: self._mount_data(svc, data_dir))
        elif event.arg("persistence_auto_setup", True):
            profile = str(event.arg("persistence_profile", "persistence"))
            self._edit_compose(event, lambda svc: self._add_profile(svc, profile))

    def mark(self, event: HookEvent) -> None:
        config = event.config
        if config is None or not config.persistent or config.dry_run or self._dry_run:
            return
        data_dir = self.data_dir_for(event)
        if data_dir.is_dir():
            (data_dir / MARKER_FILE).write_text(f"{event.app_name}\n", encoding="utf-8")
            logger.debug("persistence.marked", app_name=event.app_name, path=str(data_dir))

    @property
    def _dry_run(self) -> bool:
        return bool(self.ctx and self.ctx.dry_run)

    @staticmethod
    def _mount_data(service: dict[str, Any], data_dir: Path) -> bool:
        if service.get("volumes"):
            return False
        service["volumes"] = [f"{data_dir}:/data"]
        return True

    @staticmethod
    def _add_profile(service: dict[str, Any], profile: str) -> bool:
        image = str(service.get("image", ""))
        if not any(name in image for name in STATEFUL_IMAGES):
            return False
        profiles = service.setdefault("profiles", [])
        if profile in profiles:
            return False
        profiles.append(profile)
        return True

    def _edit_compose(self, event: HookEvent, edit: Any) -> None:
        if event.app_dir is None:
            return
        path = event.app_dir / COMPOSE_FILENAME
        if not path.is_file():
            return
        compose = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        changed = [name for name, svc in (compose.get("services") or {}).items() if edit(svc)]
        if changed:
            write_compose_file(dump_compose(compose), path)
            logger.info("persistence.compose_updated", app_name=event.app_name, services=changed)

"""Rollback Manager: restore a recorded version from the registry.

Two entry points:

- ``rollback(app_name, target_tag=None)`` is the operator-initiated path
  (``shipyard rollback``). It picks a snapshot from ``version_history``,
  fires ``pre_rollback``/``post_rollback`` and restores it.
- ``restore(app_name, snapshot, config)`` is the mechanism, also used by
  the orchestrator when a rollout fails after cutover.

Target selection:
    With ``target_tag``, the newest snapshot carrying that tag. Otherwise the
    newest snapshot older than the current version whose (image, tag)
    differs from what the record says is running. Nothing suitable is
    ``NoPriorVersion``.

Restore steps:
    pull image(s) -> render compose for the snapshot's image/tag/ports ->
    start -> point the proxy at the snapshot's port -> update the registry
    record (status ``rolled_back``, no new history entry). Any failure is
    ``RestoreFailed`` and is not retried.

Related Modules:
    - :mod:`shipyard.deploy.registry` — version history
    - :mod:`shipyard.deploy.orchestrator` — automatic post-cutover restores

Tags:
    rollback, restore, version-history
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass, field

from shipyard.core.context import DeployContext
from shipyard.core.errors import NoPriorVersion, RestoreFailed, ShipyardError
from shipyard.core.locks import FileLock
from shipyard.core.logging import get_logger
from shipyard.deploy.compose import InstanceRole, prepare_compose, project_name
from shipyard.deploy.config import AppConfig
from shipyard.deploy.container import ContainerManager
from shipyard.deploy.hooks import HookDispatcher, HookEvent, HookName
from shipyard.deploy.models import PortMapping, ServiceRecord, ServiceStatus, VersionSnapshot
from shipyard.deploy.proxy import NginxProxy
from shipyard.deploy.registry import RegistryStore

logger = get_logger(__name__)


@dataclass
class Restored:
    """What a restore put back in place."""

    app_name: str
    snapshot: VersionSnapshot
    replaced_image: str = ""
    replaced_tag: str = ""
    ports: list[PortMapping] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ref(self) -> str:
        return f"{self.snapshot.image}:{self.snapshot.tag}"


def config_from_record(record: ServiceRecord) -> AppConfig:
    """Minimal configuration able to re-render a registered service."""
    return AppConfig(
        app_name=record.app_name,
        domain=record.domain,
        route_type=record.route_type,
        route=record.route,
        ssl=record.ssl,
        persistent=record.persistent,
        image=record.image,
        tag=record.tag,
        port=",".join(str(p) for p in record.ports) or "3000",
    )


def select_target(record: ServiceRecord, target_tag: str | None = None) -> VersionSnapshot:
    """Pick the snapshot a rollback should restore.

    Raises:
        NoPriorVersion: nothing in the history qualifies.
    """
    history = record.version_history
    if target_tag:
        for snapshot in reversed(history):
            if snapshot.tag == target_tag:
                return snapshot
        raise NoPriorVersion(
            f"No recorded version of '{record.app_name}' with tag '{target_tag}'"
        ).with_context(app_name=record.app_name)

    # start below the newest entry describing what is running now
    start = len(history)
    for index in range(len(history) - 1, -1, -1):
        if history[index].same_artifact(record.image, record.tag):
            start = index
            break
    for snapshot in reversed(history[:start]):
        if not snapshot.same_artifact(record.image, record.tag):
            return snapshot
    raise NoPriorVersion(f"No prior version of '{record.app_name}' to roll back to").with_context(
        app_name=record.app_name
    )


class RollbackManager:
    """Restores versions recorded in the registry.

    Parameters
    ----------
    ctx
        Deployment context (paths, ``dry_run``, ``run_id``).
    registry
        Source of ``version_history`` and the record to rewrite.
    containers
        Runtime used to pull and start the restored version.
    proxy
        Optional reverse proxy to repoint at the restored port.
    dispatcher
        Fires ``pre_rollback``/``post_rollback`` for operator rollbacks.
    lock_timeout
        Seconds to wait for the per-app lock an operator rollback holds.
    """

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

    def rollback(
        self,
        app_name: str,
        target_tag: str | None = None,
        config: AppConfig | None = None,
    ) -> Restored:
        """Restore the previous (or ``target_tag``) version of ``app_name``.

        Raises:
            ServiceNotFound: the app is not registered.
            NoPriorVersion: no suitable snapshot.
            RestoreFailed: the restore itself failed.
            LockTimeout: a deploy or cleanup of the app holds its lock.
        """
        lock = (
            nullcontext()
            if self.ctx.dry_run
            else FileLock(self.ctx.locks_dir / f"app-{app_name}.lock", timeout=self.lock_timeout, owner=self.ctx.run_id)
        )
        with lock:
            return self._rollback(app_name, target_tag, config)

    def _rollback(self, app_name: str, target_tag: str | None, config: AppConfig | None) -> Restored:
        record = self.registry.get(app_name)
        target = select_target(record, target_tag)
        logger.info(
            "rollback.started",
            app_name=app_name,
            current=f"{record.image}:{record.tag}",
            target=f"{target.image}:{target.tag}",
        )
        event = HookEvent(
            app_name=app_name,
            app_dir=self.ctx.app_dir(app_name),
            stage="rolling_back",
            detail=f"{record.tag} -> {target.tag}",
            config=config,
        )
        self.dispatcher.execute(HookName.PRE_ROLLBACK, event)
        restored = self.restore(app_name, target, config)
        self.dispatcher.execute(HookName.POST_ROLLBACK, event)
        return restored

    def restore(
        self,
        app_name: str,
        snapshot: VersionSnapshot,
        config: AppConfig | None = None,
        discard_latest: bool = False,
    ) -> Restored:
        """Bring ``snapshot`` back into production.

        Args:
            discard_latest: Drop the newest history entry (the version that
                failed and is being replaced).
        """
        record = self.registry.find(app_name)
        if record is None:
            raise RestoreFailed(f"Cannot restore '{app_name}': not registered").with_context(app_name=app_name)
        base = config or config_from_record(record)
        restored_config = base.with_artifact(snapshot.image, snapshot.tag, snapshot.ports)
        result = Restored(
            app_name=app_name,
            snapshot=snapshot,
            replaced_image=record.image,
            replaced_tag=record.tag,
            ports=[p.model_copy() for p in snapshot.ports],
            dry_run=self.ctx.dry_run,
        )

        if self.ctx.dry_run:
            logger.info("rollback.dry_run", app_name=app_name, target=result.ref)
        else:
            try:
                self._bring_up(restored_config, snapshot)
            except RestoreFailed:
                raise
            except (ShipyardError, OSError) as e:
                message = e.message if isinstance(e, ShipyardError) else str(e)
                raise RestoreFailed(f"Restore of {app_name} to {result.ref} failed: {message}", cause=e).with_context(
                    app_name=app_name
                ) from e

        history = list(record.version_history)
        if discard_latest and history:
            history.pop()
        self.registry.update(
            app_name,
            image=snapshot.image,
            tag=snapshot.tag,
            ports=[p.model_copy() for p in snapshot.ports],
            status=ServiceStatus.ROLLED_BACK,
            version_history=history,
        )
        logger.info("rollback.restored", app_name=app_name, target=result.ref)
        return result

    def _bring_up(self, config: AppConfig, snapshot: VersionSnapshot) -> None:
        for ref in config.image_refs():
            if not self.containers.pull(ref):
                raise RestoreFailed(f"Image {ref} is not available for restore").with_context(
                    app_name=config.app_name
                )
        app_dir = self.ctx.app_dir(config.app_name)
        prepare_compose(config, snapshot.ports, app_dir, InstanceRole.PRODUCTION, self.ctx.run_id)
        self.containers.start(app_dir, project_name(config.app_name), config.use_profiles)
        if self.proxy is not None and snapshot.ports:
            self.proxy.apply(config, snapshot.ports[0].host_port)
            reload = self.proxy.reload()
            if not reload.success:
                logger.warning("rollback.proxy_reload_failed", app_name=config.app_name, detail=reload.message)


__all__ = ["Restored", "RollbackManager", "config_from_record", "select_target"]

"""Deployment Orchestrator: the rollout state machine.

Drives one application from "configuration accepted" to a terminal state,
invoking the Registry Store, Port Resolver, Health Verifier, Hook Dispatcher
and Rollback Manager at each stage boundary.

Why This Matters:
    Every failure has exactly one place it leads. Before cutover nothing
    touches production, so a failure only discards staging. After cutover a
    failure restores the version captured before the run started.

Stages::

    validating ─► preparing ─┬─► staging_deploy ─► health_check ─► cutover ─► verify ─► done
                             └─────────────── (single-stage) ──► cutover ─┘
         │            │              │                │              │          │
         ▼            ▼              └──────────┬─────┴──────────────┴──────────┘
       failed       failed                      ▼
                                          rolling_back ─► rolled_back
                                                │
                                                ▼
                                              failed

Key Concepts:
    Stage / DeploymentAttempt: the current state plus everything captured
        on the way (ports, previous snapshot, health result, stage history).
    previous_snapshot: what production ran before this attempt; the only
        thing a post-cutover rollback restores.
    cancel(): thread-safe; honoured between stages.
    deploy_timeout: a deadline checked between stages; expiry is a failure.
    Per-app lock: ``<locks_dir>/app-<name>.lock`` for the whole run.

Architecture Decisions:
    - Stage handlers return the next stage; any exception is a failure
      transition decided in one place (:meth:`_failure_target`).
    - Rolling back is never subject to cancellation or the deadline.
    - Multi-stage cutover promotes the verified staging definition rather
      than re-rendering, so edits made by ``pre_deploy`` plugins survive.
    - dry_run renders and logs, starts nothing and writes nothing.

Related Modules:
    - :mod:`shipyard.deploy.results` — Stage, DeploymentResult
    - :mod:`shipyard.deploy.rollback` — post-cutover restores
    - :mod:`shipyard.deploy.health` — staging and verify probes

Tags:
    orchestrator, state-machine, blue-green, rollback, deployment
"""

from __future__ import annotations

import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from shipyard.core.context import DeployContext
from shipyard.core.errors import (
    ConfigError,
    DeploymentCancelled,
    HealthCheckFailed,
    NoPriorVersion,
    RollbackError,
    ShipyardError,
    exit_code_for,
)
from shipyard.core.locks import FileLock
from shipyard.core.logging import bind_context, get_logger, unbind_context
from shipyard.core.redaction import redact
from shipyard.deploy.compose import (
    COMPOSE_FILENAME,
    InstanceRole,
    dump_compose,
    prepare_compose,
    primary_container,
    project_name,
    promote_compose_file,
    render_compose,
)
from shipyard.deploy.config import AppConfig, HealthCheckType, OrchestratorSettings
from shipyard.deploy.container import ContainerManager
from shipyard.deploy.dependencies import check_dependencies
from shipyard.deploy.health import HealthResult, HealthVerifier
from shipyard.deploy.hooks import HookDispatcher, HookEvent, HookName
from shipyard.deploy.models import PortMapping, ServiceStatus, VersionSnapshot
from shipyard.deploy.ports import PortResolver
from shipyard.deploy.proxy import NginxProxy
from shipyard.deploy.registry import RegistryStore
from shipyard.deploy.results import DeploymentResult, Stage, StageTransition
from shipyard.deploy.rollback import RollbackManager
from shipyard.execution.timeout import Deadline, TimeoutExpired

logger = get_logger(__name__)

PRE_CUTOVER_STAGES = frozenset({Stage.STAGING_DEPLOY, Stage.HEALTH_CHECK})


@dataclass
class DeploymentAttempt:
    """Mutable state of one orchestrator run."""

    run_id: str
    app_name: str
    stage: Stage = Stage.VALIDATING
    target: VersionSnapshot | None = None
    previous_snapshot: VersionSnapshot | None = None
    ports: list[PortMapping] = field(default_factory=list)
    staging_ports: list[PortMapping] = field(default_factory=list)
    history: list[StageTransition] = field(default_factory=list)
    detail: str = ""
    health: HealthResult | None = None
    cutover_started: bool = False
    recorded: bool = False
    staged: bool = False
    error: BaseException | None = None
    cancelled: bool = False


class DeploymentOrchestrator:
    """Runs deployments through the stage machine.

    Parameters
    ----------
    ctx
        Deployment context. Components not passed explicitly are built from it.
    settings
        Process settings (timeouts, attempts, backoff, retention).
    sleep
        Injected into the default Health Verifier; tests pass a no-op.

    Example::

        orchestrator = DeploymentOrchestrator(ctx, settings, dispatcher=dispatcher)
        result = orchestrator.run(config)
        result.final_stage      # Stage.DONE
    """

    def __init__(
        self,
        ctx: DeployContext,
        settings: OrchestratorSettings | None = None,
        *,
        registry: RegistryStore | None = None,
        containers: ContainerManager | None = None,
        verifier: HealthVerifier | None = None,
        ports: PortResolver | None = None,
        proxy: NginxProxy | None = None,
        dispatcher: HookDispatcher | None = None,
        rollback: RollbackManager | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ctx = ctx
        self.settings = settings or OrchestratorSettings()
        s = self.settings
        self.registry = registry or RegistryStore(
            ctx, retention=s.history_retention, lock_timeout=s.lock_timeout, lock_stale_after=s.lock_stale_after
        )
        self.containers = containers or ContainerManager(compose_command=s.compose_command)
        self.verifier = verifier or HealthVerifier(
            self.containers,
            host=s.probe_host,
            base_delay=s.health_base_delay,
            max_delay=s.health_max_delay,
            sleep=sleep,
        )
        self.ports = ports or PortResolver(
            self.registry, host=s.probe_host, max_port=s.port_range_max, increment=s.port_increment
        )
        self.proxy = proxy if proxy is not None else NginxProxy(ctx, proxy_container=s.proxy_container)
        self.dispatcher = dispatcher or HookDispatcher(max_attempts=s.hook_max_attempts)
        self.rollback = rollback or RollbackManager(
            ctx, self.registry, self.containers, proxy=self.proxy, dispatcher=self.dispatcher
        )
        self._cancel = threading.Event()
        self._handlers: dict[Stage, Callable[[DeploymentAttempt, AppConfig], Stage]] = {
            Stage.VALIDATING: self._validate,
            Stage.PREPARING: self._prepare,
            Stage.STAGING_DEPLOY: self._staging_deploy,
            Stage.HEALTH_CHECK: self._health_check,
            Stage.CUTOVER: self._cutover,
            Stage.VERIFY: self._verify,
            Stage.ROLLING_BACK: self._rolling_back,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next stage boundary.

        A cancelled orchestrator stays cancelled; use a new one per run.
        """
        self._cancel.set()
        logger.info("deploy.cancel_requested")

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def run(self, config: AppConfig) -> DeploymentResult:
        """Drive ``config`` to a terminal stage and report the outcome."""
        if config.dry_run and not self.ctx.dry_run:
            return self._dry_run_copy().run(config)

        attempt = DeploymentAttempt(run_id=self.ctx.run_id, app_name=config.app_name)
        result = DeploymentResult(
            app_name=config.app_name,
            run_id=self.ctx.run_id,
            dry_run=self.ctx.dry_run,
            image=config.image,
            tag=config.tag,
        )
        log = logger.bind(app_name=config.app_name, run_id=self.ctx.run_id)
        log.info("deploy.started", multi_stage=config.multi_stage, dry_run=self.ctx.dry_run)

        deadline = Deadline(self.settings.deploy_timeout, f"deploy {config.app_name}")
        lock: FileLock | None = None
        bind_context(app_name=config.app_name, run_id=self.ctx.run_id)
        try:
            stage = Stage.VALIDATING
            while not stage.terminal:
                self._enter(attempt, stage)
                try:
                    if stage != Stage.ROLLING_BACK:
                        self._checkpoint(attempt, deadline)
                    if stage == Stage.PREPARING and not self.ctx.dry_run:
                        lock = self._app_lock(config.app_name)
                        lock.acquire()
                    stage = self._handlers[stage](attempt, config)
                except (ShipyardError, TimeoutExpired, OSError) as e:
                    stage = self._fail(attempt, config, stage, e)
            self._enter(attempt, stage)
            if stage == Stage.FAILED:
                self._on_failed(attempt, config)
        finally:
            if lock is not None:
                lock.release()
            unbind_context("app_name", "run_id")

        result.final_stage = attempt.stage
        result.stages = list(attempt.history)
        result.ports = [p.model_copy() for p in attempt.ports]
        result.health = attempt.health.to_dict() if attempt.health else None
        result.cancelled = attempt.cancelled
        result.detail = attempt.detail
        error_code = exit_code_for(attempt.error) if attempt.error is not None else None
        result.mark_complete(exit_code=None if attempt.stage == Stage.DONE else error_code)
        log.info(
            "deploy.finished",
            final_stage=attempt.stage.value,
            status=result.overall_status.value,
            exit_code=result.exit_code,
            duration=round(result.duration_seconds, 3),
        )
        return result

    # ------------------------------------------------------------------
    # Stage machinery
    # ------------------------------------------------------------------

    def _enter(self, attempt: DeploymentAttempt, stage: Stage, detail: str = "") -> None:
        attempt.stage = stage
        attempt.history.append(StageTransition(stage=stage, detail=detail))
        logger.info("deploy.stage_entered", app_name=attempt.app_name, stage=stage.value)

    def _checkpoint(self, attempt: DeploymentAttempt, deadline: Deadline) -> None:
        if self._cancel.is_set():
            attempt.cancelled = True
            raise DeploymentCancelled("Deployment cancelled").with_context(
                app_name=attempt.app_name, stage=attempt.stage.value
            )
        deadline.check(f"deploy {attempt.app_name} ({attempt.stage.value})")

    def _fail(self, attempt: DeploymentAttempt, config: AppConfig, stage: Stage, error: BaseException) -> Stage:
        if attempt.error is None:
            attempt.error = error
        message = error.message if isinstance(error, ShipyardError) else str(error)
        attempt.detail = redact(message)
        target = self._failure_target(attempt, config, stage, error)
        logger.warning(
            "deploy.stage_failed",
            app_name=attempt.app_name,
            stage=stage.value,
            next_stage=target.value,
            error_type=type(error).__name__,
            error=attempt.detail,
        )
        return target

    def _failure_target(
        self,
        attempt: DeploymentAttempt,
        config: AppConfig,
        stage: Stage,
        error: BaseException,
    ) -> Stage:
        if stage in (Stage.VALIDATING, Stage.PREPARING, Stage.ROLLING_BACK):
            return Stage.FAILED
        if isinstance(error, DeploymentCancelled) and not attempt.cutover_started:
            return Stage.ROLLING_BACK if attempt.previous_snapshot else Stage.FAILED
        if stage in PRE_CUTOVER_STAGES:
            return Stage.ROLLING_BACK
        if not attempt.cutover_started:
            return Stage.ROLLING_BACK if attempt.staged else Stage.FAILED
        if config.multi_stage:
            return Stage.ROLLING_BACK
        if attempt.previous_snapshot is not None and config.auto_rollback:
            return Stage.ROLLING_BACK
        return Stage.FAILED

    def _app_lock(self, app_name: str) -> FileLock:
        s = self.settings
        return FileLock(
            self.ctx.locks_dir / f"app-{app_name}.lock",
            timeout=s.lock_timeout,
            stale_after=max(s.lock_stale_after, s.deploy_timeout),
            owner=self.ctx.run_id,
        )

    def _event(self, attempt: DeploymentAttempt, config: AppConfig, detail: str = "", **data: Any) -> HookEvent:
        app_dir = (
            self.ctx.staging_dir(config.app_name)
            if config.multi_stage and not attempt.cutover_started
            else self.ctx.app_dir(config.app_name)
        )
        return HookEvent(
            app_name=config.app_name,
            app_dir=app_dir,
            stage=attempt.stage.value,
            detail=detail,
            config=config,
            data=data,
        )

    def _dry_run_copy(self) -> DeploymentOrchestrator:
        ctx = self.ctx.child(dry_run=True)
        return DeploymentOrchestrator(
            ctx,
            self.settings,
            containers=self.containers,
            verifier=self.verifier,
            dispatcher=self.dispatcher,
        )

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    def _validate(self, attempt: DeploymentAttempt, config: AppConfig) -> Stage:
        missing = [name for name in ("app_name", "domain") if not getattr(config, name)]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
        if not config.images() and not config.compose_file:
            raise ConfigError("Either image or compose_file must be set").with_context(app_name=config.app_name)
        if config.multi_stage and config.compose_file:
            raise ConfigError(
                "multi_stage needs a rendered definition; it cannot be combined with compose_file"
            ).with_context(app_name=config.app_name)
        if config.health_check_type == HealthCheckType.COMMAND and not config.health_check_command:
            raise ConfigError("health_check_type 'command' requires health_check_command").with_context(
                app_name=config.app_name
            )
        self.dispatcher.execute(HookName.CONFIG_LOADED, self._event(attempt, config))
        return Stage.PREPARING

    def _prepare(self, attempt: DeploymentAttempt, config: AppConfig) -> Stage:
        app = config.app_name
        if config.check_dependencies:
            check_dependencies(self.ctx, config, self.containers, self.settings.min_free_disk_mb)

        attempt.ports = self.ports.assign(config)
        if config.multi_stage:
            attempt.staging_ports = self.ports.staging_ports(attempt.ports, app)
        attempt.target = VersionSnapshot(
            tag=config.tag, image=config.image, ports=attempt.ports, config_digest=config.config_digest()
        )
        logger.info(
            "deploy.ports_resolved",
            app_name=app,
            ports=[str(p) for p in attempt.ports],
            staging_ports=[str(p) for p in attempt.staging_ports],
        )

        self.dispatcher.execute(HookName.PRE_SETUP, self._event(attempt, config))
        if config.multi_stage:
            target_dir, role, ports = self.ctx.staging_dir(app), InstanceRole.STAGING, attempt.staging_ports
        else:
            target_dir, role, ports = self.ctx.app_dir(app), InstanceRole.PRODUCTION, attempt.ports

        if self.ctx.dry_run:
            if not config.compose_file:
                rendered = dump_compose(render_compose(config, ports, role, self.ctx.run_id), self.ctx.run_id)
                logger.info("deploy.dry_run_render", app_name=app, path=str(target_dir / COMPOSE_FILENAME))
                logger.debug("deploy.dry_run_compose", app_name=app, compose=redact(rendered))
        else:
            if config.multi_stage:
                self._discard_staging(config)
            prepare_compose(config, ports, target_dir, role, self.ctx.run_id)
        self.dispatcher.execute(HookName.POST_SETUP, self._event(attempt, config))

        self.dispatcher.execute(HookName.PRE_DEPLOY, self._event(attempt, config))
        return Stage.STAGING_DEPLOY if config.multi_stage else Stage.CUTOVER

    def _capture_previous(self, attempt: DeploymentAttempt, config: AppConfig) -> None:
        record = self.registry.find(config.app_name)
        if record is not None and record.status != ServiceStatus.FAILED and record.image:
            attempt.previous_snapshot = record.snapshot()
        logger.info(
            "deploy.previous_captured",
            app_name=config.app_name,
            previous=(
                f"{attempt.previous_snapshot.image}:{attempt.previous_snapshot.tag}"
                if attempt.previous_snapshot
                else None
            ),
        )

    def _staging_deploy(self, attempt: DeploymentAttempt, config: AppConfig) -> Stage:
        self._capture_previous(attempt, config)
        attempt.staged = True
        staging_dir = self.ctx.staging_dir(config.app_name)
        project = project_name(config.app_name, InstanceRole.STAGING)
        if self.ctx.dry_run:
            logger.info("deploy.dry_run_start", app_name=config.app_name, project=project)
        else:
            self.containers.start(staging_dir, project, config.use_profiles)
        return Stage.HEALTH_CHECK

    def _health_check(self, attempt: DeploymentAttempt, config: AppConfig) -> Stage:
        attempts = config.health_check_attempts or self.settings.health_max_attempts
        self._probe(attempt, config, InstanceRole.STAGING, attempt.staging_ports, attempts, config.health_check_timeout)
        return Stage.CUTOVER

    def _cutover(self, attempt: DeploymentAttempt, config: AppConfig) -> Stage:
        app = config.app_name
        app_dir = self.ctx.app_dir(app)
        if not config.multi_stage:
            self._capture_previous(attempt, config)
        attempt.cutover_started = True

        if self.ctx.dry_run:
            logger.info("deploy.dry_run_cutover", app_name=app, ports=[str(p) for p in attempt.ports])
            return Stage.VERIFY

        if config.multi_stage:
            self._swap_in_staging(attempt, config)
        self.containers.start(app_dir, project_name(app), config.use_profiles)

        self.registry.record_deployment(config, attempt.ports, ServiceStatus.ACTIVE)
        attempt.recorded = True

        if self.proxy is not None and attempt.ports:
            self.proxy.apply(config, attempt.ports[0].host_port)
            reload = self.proxy.reload()
            if not reload.success:
                logger.warning("deploy.proxy_reload_failed", app_name=app, detail=reload.message)

        if config.multi_stage:
            self.dispatcher.execute(HookName.POST_CUTOVER, self._event(attempt, config))
        return Stage.VERIFY

    def _swap_in_staging(self, attempt: DeploymentAttempt, config: AppConfig) -> None:
        app = config.app_name
        app_dir = self.ctx.app_dir(app)
        staging_dir = self.ctx.staging_dir(app)
        backup_dir = self.ctx.backup_dir(app)

        self.containers.stop(staging_dir, project_name(app, InstanceRole.STAGING), config.use_profiles)
        self.containers.stop(app_dir, project_name(app), config.use_profiles)
        if backup_dir.exists():
            shutil.rmtree(backup_dir)
        if app_dir.exists():
            app_dir.rename(backup_dir)
        staging_dir.rename(app_dir)
        attempt.staged = False
        promote_compose_file(app_dir / COMPOSE_FILENAME, config, attempt.ports, InstanceRole.PRODUCTION, self.ctx.run_id)
        logger.info("deploy.swapped", app_name=app, backup=str(backup_dir))

    def _verify(self, attempt: DeploymentAttempt, config: AppConfig) -> Stage:
        attempts = config.health_check_attempts or self.settings.verify_max_attempts
        timeout = config.health_check_timeout * self.settings.verify_timeout_factor
        self._probe(attempt, config, InstanceRole.PRODUCTION, attempt.ports, attempts, timeout)

        if not self.ctx.dry_run:
            backup_dir = self.ctx.backup_dir(config.app_name)
            if not config.keep_backup and backup_dir.exists():
                shutil.rmtree(backup_dir)
        self.dispatcher.execute(HookName.POST_DEPLOY, self._event(attempt, config))
        return Stage.DONE

    def _rolling_back(self, attempt: DeploymentAttempt, config: AppConfig) -> Stage:
        app = config.app_name
        event = self._event(attempt, config, detail=attempt.detail)
        self.dispatcher.execute(HookName.PRE_ROLLBACK, event)

        if self.ctx.dry_run:
            logger.info("deploy.dry_run_rollback", app_name=app, cutover_started=attempt.cutover_started)
        elif not attempt.cutover_started:
            self._discard_staging(config)
        else:
            if not config.auto_rollback:
                raise RollbackError(f"Automatic rollback is disabled for '{app}'").with_context(app_name=app)
            if attempt.previous_snapshot is None:
                raise NoPriorVersion(f"No previous version of '{app}' to restore").with_context(app_name=app)
            self.rollback.restore(
                app,
                attempt.previous_snapshot,
                config,
                discard_latest=attempt.recorded and config.version_tracking,
            )
            backup_dir = self.ctx.backup_dir(app)
            if not config.keep_backup and backup_dir.exists():
                shutil.rmtree(backup_dir)

        self.dispatcher.execute(HookName.POST_ROLLBACK, event)
        return Stage.ROLLED_BACK

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _probe(
        self,
        attempt: DeploymentAttempt,
        config: AppConfig,
        role: InstanceRole,
        ports: list[PortMapping],
        max_attempts: int,
        timeout: float,
    ) -> HealthResult:
        check_type = HealthCheckType.NONE if config.health_disabled else config.health_check_type
        if self.ctx.dry_run:
            check_type = HealthCheckType.NONE
        images = config.images()
        result = self.verifier.check_with_retry(
            config.app_name,
            ports[0].host_port if ports else None,
            endpoint=config.health_check,
            max_attempts=max_attempts,
            timeout=timeout,
            check_type=check_type,
            container_ref=primary_container(config, role),
            command=config.health_check_command,
            image=images[0] if images else "",
        )
        attempt.health = result
        if result.healthy:
            return result

        self.dispatcher.execute(
            HookName.HEALTH_CHECK_FAILED,
            self._event(attempt, config, detail=result.detail, logs=result.diagnostics.get("logs", "")),
        )
        raise HealthCheckFailed(
            f"{role.value} instance of '{config.app_name}' unhealthy after {result.attempts} attempts: {result.detail}"
        ).with_context(app_name=config.app_name, stage=attempt.stage.value)

    def _discard_staging(self, config: AppConfig) -> None:
        staging_dir = self.ctx.staging_dir(config.app_name)
        if not staging_dir.exists():
            return
        self.containers.stop(staging_dir, project_name(config.app_name, InstanceRole.STAGING), config.use_profiles)
        shutil.rmtree(staging_dir)
        logger.info("deploy.staging_discarded", app_name=config.app_name)

    def _on_failed(self, attempt: DeploymentAttempt, config: AppConfig) -> None:
        if self.ctx.dry_run:
            return
        try:
            if attempt.staged:
                self._discard_staging(config)
            if attempt.recorded:
                self.registry.update(config.app_name, status=ServiceStatus.FAILED)
        except (ShipyardError, OSError) as e:
            logger.error("deploy.failure_cleanup_error", app_name=config.app_name, error=redact(str(e)))


__all__ = ["DeploymentAttempt", "DeploymentOrchestrator", "Stage"]

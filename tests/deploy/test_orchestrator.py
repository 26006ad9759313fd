"""Tests for the DeploymentOrchestrator stage machine.

Containers, health probes and the reverse proxy are mocks; the registry,
port resolver, compose rendering and locks are real and live in tmp_path.
"""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch

import pytest
import yaml

from shipyard.core.errors import ContainerError, ExitCode
from shipyard.core.locks import FileLock
from shipyard.deploy.compose import COMPOSE_FILENAME
from shipyard.deploy.config import HealthCheckType, OrchestratorSettings
from shipyard.deploy.container import ContainerManager
from shipyard.deploy.health import HealthResult, HealthVerifier
from shipyard.deploy.hooks import HookDispatcher
from shipyard.deploy.models import ServiceStatus
from shipyard.deploy.orchestrator import DeploymentOrchestrator
from shipyard.deploy.ports import PortResolver
from shipyard.deploy.proxy import NginxProxy, ProxyResult
from shipyard.deploy.registry import RegistryStore
from shipyard.deploy.results import OverallStatus, Stage

HEALTHY = HealthResult(healthy=True, attempts=1, check_type=HealthCheckType.HTTP, detail="HTTP 200")
UNHEALTHY = HealthResult(
    healthy=False,
    attempts=2,
    check_type=HealthCheckType.HTTP,
    detail="HTTP 503 from /health",
    diagnostics={"container": "demo-app", "logs": "Error: DB_PASSWORD=hunter2 rejected"},
)


@pytest.fixture(autouse=True)
def free_ports():
    with patch.object(PortResolver, "is_available", return_value=True):
        yield


@pytest.fixture
def registry(ctx, settings):
    return RegistryStore(ctx, retention=settings.history_retention, lock_timeout=settings.lock_timeout)


@pytest.fixture
def containers():
    fake = MagicMock(spec=ContainerManager)
    fake.pull.return_value = True
    fake.is_available.return_value = True
    return fake


@pytest.fixture
def verifier():
    fake = MagicMock(spec=HealthVerifier)
    fake.check_with_retry.return_value = HEALTHY
    return fake


@pytest.fixture
def proxy():
    fake = MagicMock(spec=NginxProxy)
    fake.reload.return_value = ProxyResult.ok("reloaded")
    return fake


@pytest.fixture
def dispatcher():
    return HookDispatcher()


@pytest.fixture
def orchestrator(ctx, settings, registry, containers, verifier, proxy, dispatcher):
    return DeploymentOrchestrator(
        ctx,
        settings,
        registry=registry,
        containers=containers,
        verifier=verifier,
        ports=PortResolver(registry, max_port=3100),
        proxy=proxy,
        dispatcher=dispatcher,
    )


@pytest.fixture
def multi_config(app_config):
    return app_config.model_copy(update={"multi_stage": True})


def _seed_previous(registry, app_config, tag="v1"):
    """Record an earlier deployment of the app as the running production version."""
    registry.record_deployment(app_config.model_copy(update={"tag": tag}), app_config.port_mappings())


def _record_hook(dispatcher, name):
    seen: list = []
    dispatcher.register_hook("probe", name, lambda event: seen.append(event))
    return seen


# ===========================================================================
# Successful rollouts
# ===========================================================================


class TestSingleStage:
    """validating -> preparing -> cutover -> verify -> done."""

    def test_success(self, orchestrator, app_config, ctx, registry, containers, proxy):
        result = orchestrator.run(app_config)

        assert result.final_stage == Stage.DONE
        assert result.overall_status == OverallStatus.SUCCEEDED
        assert result.exit_code == 0
        assert result.stage_names == ["validating", "preparing", "cutover", "verify", "done"]
        assert [p.host_port for p in result.ports] == [3000]

        containers.start.assert_called_once_with(ctx.app_dir("demo"), "demo", True)
        proxy.apply.assert_called_once_with(app_config, 3000)
        record = registry.get("demo")
        assert record.tag == "v2"
        assert record.status == ServiceStatus.ACTIVE
        assert [s.tag for s in record.version_history] == ["v2"]
        assert (ctx.app_dir("demo") / COMPOSE_FILENAME).exists()

    def test_lock_released(self, orchestrator, app_config, ctx):
        orchestrator.run(app_config)
        assert not (ctx.locks_dir / "app-demo.lock").exists()

    def test_verify_probe_arguments(self, orchestrator, app_config, verifier, settings):
        orchestrator.run(app_config)
        args, kwargs = verifier.check_with_retry.call_args
        assert args == ("demo", 3000)
        assert kwargs["endpoint"] == "/health"
        assert kwargs["max_attempts"] == settings.verify_max_attempts
        assert kwargs["timeout"] == app_config.health_check_timeout * settings.verify_timeout_factor
        assert kwargs["container_ref"] == "demo-app"
        assert kwargs["image"] == "ghcr.io/acme/demo"

    def test_configured_attempts_override_verify_default(self, orchestrator, app_config, verifier):
        orchestrator.run(app_config.model_copy(update={"health_check_attempts": 4}))
        assert verifier.check_with_retry.call_args[1]["max_attempts"] == 4

    def test_disabled_health_check(self, orchestrator, app_config, verifier):
        orchestrator.run(app_config.model_copy(update={"health_check": "none"}))
        assert verifier.check_with_retry.call_args[1]["check_type"] == HealthCheckType.NONE

    def test_hooks_in_order(self, orchestrator, app_config, dispatcher):
        order: list = []
        for name in ("config_loaded", "pre_setup", "post_setup", "pre_deploy", "post_deploy"):
            dispatcher.register_hook("audit", name, lambda event, n=name: order.append(n))
        orchestrator.run(app_config)
        assert order == ["config_loaded", "pre_setup", "post_setup", "pre_deploy", "post_deploy"]

    def test_non_blocking_hook_failure_ignored(self, orchestrator, app_config, dispatcher):
        def broken(event):
            raise RuntimeError("chat service down")

        dispatcher.register_hook("notifier", "post_deploy", broken)
        assert orchestrator.run(app_config).final_stage == Stage.DONE

    def test_reload_failure_is_a_warning(self, orchestrator, app_config, proxy):
        proxy.reload.return_value = ProxyResult.fail("nginx config test failed")
        assert orchestrator.run(app_config).final_stage == Stage.DONE

    def test_port_conflict_resolved(self, orchestrator, app_config, registry):
        registry.record_deployment(app_config.model_copy(update={"app_name": "other"}), app_config.port_mappings())
        result = orchestrator.run(app_config)
        assert [p.host_port for p in result.ports] == [3001]

    def test_redeploy_same_version_keeps_port(self, orchestrator, app_config, registry):
        orchestrator.run(app_config)
        result = orchestrator.run(app_config)

        assert result.final_stage == Stage.DONE
        assert [p.host_port for p in result.ports] == [3000]
        assert [s.tag for s in registry.get("demo").version_history] == ["v2", "v2"]


class TestMultiStage:
    """Staging instance verified beside production before cutover."""

    def test_success(self, orchestrator, multi_config, ctx, registry, containers, verifier, dispatcher):
        cutovers = _record_hook(dispatcher, "post_cutover")
        _seed_previous(registry, multi_config)

        result = orchestrator.run(multi_config)

        assert result.stage_names == [
            "validating",
            "preparing",
            "staging_deploy",
            "health_check",
            "cutover",
            "verify",
            "done",
        ]
        starts = [c[0] for c in containers.start.call_args_list]
        assert starts == [
            (ctx.staging_dir("demo"), "demo-staging", True),
            (ctx.app_dir("demo"), "demo", True),
        ]
        # staging is probed on its own port, production on the real one
        probed_ports = [c[0][1] for c in verifier.check_with_retry.call_args_list]
        assert probed_ports == [3001, 3000]
        assert verifier.check_with_retry.call_args_list[0][1]["container_ref"] == "demo-staging-app"

        assert not ctx.staging_dir("demo").exists()
        assert not ctx.backup_dir("demo").exists()
        compose = yaml.safe_load((ctx.app_dir("demo") / COMPOSE_FILENAME).read_text())
        assert compose["services"]["app"]["container_name"] == "demo-app"
        assert compose["services"]["app"]["ports"] == ["3000:3000"]
        assert registry.get("demo").tag == "v2"
        assert len(cutovers) == 1

    def test_keep_backup(self, orchestrator, multi_config, ctx, registry):
        _seed_previous(registry, multi_config)
        ctx.app_dir("demo").mkdir(parents=True)
        (ctx.app_dir("demo") / "marker").write_text("v1")

        orchestrator.run(multi_config.model_copy(update={"keep_backup": True}))

        assert (ctx.backup_dir("demo") / "marker").read_text() == "v1"

    def test_staging_health_failure_rolls_back(self, orchestrator, multi_config, ctx, registry, containers, verifier, proxy, dispatcher):
        failures = _record_hook(dispatcher, "health_check_failed")
        _seed_previous(registry, multi_config)
        before = registry.get("demo").model_dump()
        verifier.check_with_retry.return_value = UNHEALTHY

        result = orchestrator.run(multi_config)

        assert result.final_stage == Stage.ROLLED_BACK
        assert result.overall_status == OverallStatus.ROLLED_BACK
        assert result.exit_code != 0
        assert "health_check" in result.stage_names
        assert "cutover" not in result.stage_names

        # production untouched
        containers.start.assert_called_once()
        proxy.apply.assert_not_called()
        assert registry.get("demo").model_dump() == before
        assert not ctx.staging_dir("demo").exists()

        assert len(failures) == 1
        assert failures[0].data["logs"] == UNHEALTHY.diagnostics["logs"]
        assert "hunter2" not in result.detail

    def test_post_cutover_failure_restores_previous(self, orchestrator, multi_config, registry, verifier):
        _seed_previous(registry, multi_config)
        verifier.check_with_retry.side_effect = [HEALTHY, UNHEALTHY]

        result = orchestrator.run(multi_config)

        assert result.final_stage == Stage.ROLLED_BACK
        record = registry.get("demo")
        assert record.tag == "v1"
        assert record.status == ServiceStatus.ROLLED_BACK
        assert [s.tag for s in record.version_history] == ["v1"]

    def test_first_deploy_post_cutover_failure(self, orchestrator, multi_config, registry, verifier):
        verifier.check_with_retry.side_effect = [HEALTHY, UNHEALTHY]

        result = orchestrator.run(multi_config)

        assert result.final_stage == Stage.FAILED
        assert registry.get("demo").status == ServiceStatus.FAILED


# ===========================================================================
# Failures
# ===========================================================================


class TestFailures:
    def test_single_stage_verify_failure_restores(self, orchestrator, app_config, registry, verifier, dispatcher):
        rollbacks = _record_hook(dispatcher, "post_rollback")
        _seed_previous(registry, app_config)
        verifier.check_with_retry.return_value = UNHEALTHY

        result = orchestrator.run(app_config)

        assert result.final_stage == Stage.ROLLED_BACK
        assert registry.get("demo").tag == "v1"
        assert len(rollbacks) == 1

    def test_auto_rollback_disabled(self, orchestrator, app_config, registry, verifier):
        _seed_previous(registry, app_config)
        verifier.check_with_retry.return_value = UNHEALTHY

        result = orchestrator.run(app_config.model_copy(update={"auto_rollback": False}))

        assert result.final_stage == Stage.FAILED
        assert registry.get("demo").status == ServiceStatus.FAILED

    def test_first_deploy_verify_failure(self, orchestrator, app_config, registry, verifier):
        verifier.check_with_retry.return_value = UNHEALTHY
        result = orchestrator.run(app_config)
        assert result.final_stage == Stage.FAILED
        assert result.overall_status == OverallStatus.FAILED
        assert registry.get("demo").status == ServiceStatus.FAILED

    @pytest.mark.parametrize(
        "update",
        [
            {"domain": ""},
            {"image": "", "compose_file": None},
            {"multi_stage": True, "compose_file": "/srv/compose.yml"},
            {"health_check_type": HealthCheckType.COMMAND, "health_check_command": None},
        ],
    )
    def test_validation_errors(self, orchestrator, app_config, containers, update):
        result = orchestrator.run(app_config.model_copy(update=update))

        assert result.final_stage == Stage.FAILED
        assert result.exit_code == int(ExitCode.CONFIG)
        assert result.stage_names == ["validating", "failed"]
        containers.start.assert_not_called()

    def test_pre_deploy_rejection(self, orchestrator, app_config, containers, registry, dispatcher):
        def gate(event):
            raise RuntimeError("change freeze in effect")

        dispatcher.register_hook("gate", "pre_deploy", gate)
        result = orchestrator.run(app_config)

        assert result.final_stage == Stage.FAILED
        assert "change freeze" in result.detail
        containers.start.assert_not_called()
        assert not registry.exists("demo")

    def test_dependency_failure(self, orchestrator, app_config, containers):
        containers.is_available.return_value = False
        result = orchestrator.run(app_config.model_copy(update={"check_dependencies": True}))
        assert result.final_stage == Stage.FAILED
        assert result.exit_code == int(ExitCode.DEPENDENCY)

    def test_cutover_start_failure_without_previous(self, orchestrator, app_config, containers, registry):
        containers.start.side_effect = ContainerError("image has no entrypoint")
        result = orchestrator.run(app_config)
        assert result.final_stage == Stage.FAILED
        assert not registry.exists("demo")

    def test_app_locked_by_another_run(self, orchestrator, app_config, ctx, containers):
        holder = FileLock(ctx.locks_dir / "app-demo.lock", owner="other-run")
        holder.acquire()
        try:
            result = orchestrator.run(app_config)
        finally:
            holder.release()
        assert result.final_stage == Stage.FAILED
        containers.start.assert_not_called()


# ===========================================================================
# Cancellation and deadline
# ===========================================================================


class TestCancellation:
    def test_cancel_before_start(self, orchestrator, app_config, containers):
        orchestrator.cancel()
        result = orchestrator.run(app_config)
        assert result.cancelled
        assert result.overall_status == OverallStatus.CANCELLED
        assert result.final_stage == Stage.FAILED
        containers.start.assert_not_called()

    def test_cancel_during_staging_discards_staging(self, orchestrator, multi_config, ctx, registry, containers, verifier):
        _seed_previous(registry, multi_config)

        def probe_then_cancel(*args, **kwargs):
            orchestrator.cancel()
            return HEALTHY

        verifier.check_with_retry.side_effect = probe_then_cancel
        result = orchestrator.run(multi_config)

        assert result.cancelled
        assert result.final_stage == Stage.ROLLED_BACK
        assert result.overall_status == OverallStatus.CANCELLED
        assert "cutover" in result.stage_names
        assert containers.start.call_count == 1
        assert not ctx.staging_dir("demo").exists()
        assert registry.get("demo").tag == "v1"

    def test_deadline_expiry(self, ctx, registry, containers, verifier, proxy, multi_config):
        settings = OrchestratorSettings(base_dir=ctx.base_dir, deploy_timeout=0.3, lock_timeout=1.0)

        def slow_probe(*args, **kwargs):
            time.sleep(0.5)
            return HEALTHY

        verifier.check_with_retry.side_effect = slow_probe
        orchestrator = DeploymentOrchestrator(
            ctx, settings, registry=registry, containers=containers, verifier=verifier, proxy=proxy
        )
        result = orchestrator.run(multi_config)

        assert result.final_stage == Stage.ROLLED_BACK
        assert result.exit_code != 0
        proxy.apply.assert_not_called()


# ===========================================================================
# Dry run
# ===========================================================================


class TestDryRun:
    def test_changes_nothing(self, orchestrator, app_config, ctx, containers, verifier):
        result = orchestrator.run(app_config.model_copy(update={"dry_run": True}))

        assert result.final_stage == Stage.DONE
        assert result.dry_run
        containers.start.assert_not_called()
        containers.pull.assert_not_called()
        assert verifier.check_with_retry.call_args[1]["check_type"] == HealthCheckType.NONE
        assert not ctx.registry_path.exists()
        assert not ctx.app_dir("demo").exists()
        assert not (ctx.proxy_dir / "demo.conf").exists()

    def test_multi_stage_dry_run(self, orchestrator, multi_config, ctx, containers):
        result = orchestrator.run(multi_config.model_copy(update={"dry_run": True}))
        assert "staging_deploy" in result.stage_names
        containers.start.assert_not_called()
        assert not ctx.staging_dir("demo").exists()

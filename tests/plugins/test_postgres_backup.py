"""Tests for the postgres-backup plugin (docker calls mocked)."""

from __future__ import annotations

import stat
import subprocess
from unittest.mock import MagicMock

import pytest

from shipyard.core.errors import ContainerError, HookRejected
from shipyard.deploy.config import AppConfig
from shipyard.deploy.container import ContainerManager, InstanceStatus
from shipyard.deploy.hooks import HookEvent
from shipyard.plugins.postgres_backup import PostgresBackupPlugin

DUMP = "-- PostgreSQL database dump\nCREATE TABLE users (id int);\n"


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def containers():
    manager = MagicMock(spec=ContainerManager)
    manager.status.return_value = InstanceStatus.RUNNING
    manager.exec.return_value = _completed(stdout=DUMP)
    return manager


@pytest.fixture
def plugin(ctx, containers):
    return PostgresBackupPlugin(ctx, containers=containers)


def _event(image: str = "postgres", **args) -> HookEvent:
    plugin_args = {**PostgresBackupPlugin.args, **args}
    config = AppConfig(app_name="db", image=image, tag="16", port="5432", persistent=True, plugin_args=plugin_args)
    return HookEvent(app_name="db", config=config)


class TestBackup:
    def test_dump_written(self, plugin, ctx, containers):
        path = plugin.backup(_event(pg_database="app"))

        assert path is not None
        assert path.parent == ctx.base_dir / "backups"
        assert path.name.startswith("db_") and path.suffix == ".sql"
        assert path.read_text() == DUMP
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        container, command = containers.exec.call_args[0]
        assert container == "db-app"
        assert command == ["pg_dump", "-U", "postgres", "-d", "app"]

    def test_custom_dir_and_container(self, plugin, containers, tmp_path):
        path = plugin.backup(_event(pg_backup_dir=str(tmp_path / "dumps"), pg_container="shared-pg"))
        assert path.parent == tmp_path / "dumps"
        assert containers.exec.call_args[0][0] == "shared-pg"

    def test_non_postgres_app_skipped(self, plugin, containers):
        assert plugin.backup(_event(image="ghcr.io/acme/web")) is None
        containers.exec.assert_not_called()

    def test_first_deploy_skipped(self, plugin, containers):
        containers.status.return_value = InstanceStatus.MISSING
        assert plugin.backup(_event()) is None
        containers.exec.assert_not_called()

    def test_disabled(self, plugin, containers):
        assert plugin.backup(_event(pg_backup_enabled="false")) is None
        containers.status.assert_not_called()

    def test_dry_run(self, dry_ctx, containers):
        assert PostgresBackupPlugin(dry_ctx, containers=containers).backup(_event()) is None
        containers.exec.assert_not_called()

    def test_failure_continues(self, plugin, ctx, containers):
        containers.exec.return_value = _completed(1, stderr='pg_dump: error: password="hunter2" rejected')
        assert plugin.backup(_event()) is None
        assert not (ctx.base_dir / "backups").exists()

    def test_required_failure_rejects(self, plugin, containers):
        containers.exec.return_value = _completed(1, stderr='pg_dump: error: password="hunter2" rejected')
        with pytest.raises(HookRejected) as exc_info:
            plugin.backup(_event(pg_backup_required=True))
        assert "db-app" in exc_info.value.message
        assert "hunter2" not in exc_info.value.message

    def test_docker_error_treated_as_failure(self, plugin, containers):
        containers.status.side_effect = ContainerError("Docker command could not be executed")
        assert plugin.backup(_event()) is None


class TestMigrate:
    def test_runs_command_in_app_container(self, plugin, containers):
        containers.exec.return_value = _completed()
        plugin.migrate(_event(pg_migration_command="alembic upgrade head"))
        containers.exec.assert_called_once_with("db-app", ["sh", "-c", "alembic upgrade head"], timeout=600)

    def test_no_command(self, plugin, containers):
        plugin.migrate(_event())
        containers.exec.assert_not_called()

    def test_failure_raises(self, plugin, containers):
        containers.exec.return_value = _completed(2, stderr="relation already exists")
        with pytest.raises(ContainerError, match="exited 2"):
            plugin.migrate(_event(pg_migration_command="alembic upgrade head", pg_migration_container="worker"))
        assert containers.exec.call_args[0][0] == "worker"

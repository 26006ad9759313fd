"""Tests for ContainerManager (all Docker calls mocked)."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from shipyard.core.errors import ContainerError
from shipyard.deploy.compose import COMPOSE_FILENAME
from shipyard.deploy.container import ContainerManager, DockerNotFoundError, InstanceStatus


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def mgr():
    manager = ContainerManager()
    manager._docker_cmd = "docker"
    return manager


class TestDiscovery:
    @patch("shutil.which", return_value=None)
    def test_docker_missing(self, _which):
        with pytest.raises(DockerNotFoundError):
            ContainerManager().docker_cmd

    @patch("shutil.which", return_value=None)
    def test_is_available_false_without_cli(self, _which):
        assert ContainerManager().is_available() is False

    @patch("subprocess.run", return_value=_completed(0))
    @patch("shutil.which", return_value="/usr/bin/docker")
    def test_is_available(self, _which, _run):
        assert ContainerManager().is_available() is True


class TestLifecycle:
    """start/stop build the right compose invocation."""

    @patch("subprocess.run", return_value=_completed(0))
    def test_start(self, mock_run, mgr, tmp_path):
        mgr.start(tmp_path, "demo-staging")
        cmd = mock_run.call_args[0][0]
        assert cmd[:2] == ["docker", "compose"]
        assert cmd[cmd.index("-p") + 1] == "demo-staging"
        assert "--profile" in cmd
        assert cmd[-3:] == ["up", "-d", "--remove-orphans"]

    @patch("subprocess.run", return_value=_completed(0))
    def test_start_without_profiles(self, mock_run, mgr, tmp_path):
        mgr.start(tmp_path, "demo", use_profiles=False)
        assert "--profile" not in mock_run.call_args[0][0]

    @patch("subprocess.run", return_value=_completed(1, stderr="DB_PASSWORD=hunter2 invalid"))
    def test_start_failure_is_redacted(self, _run, mgr, tmp_path):
        with pytest.raises(ContainerError) as exc_info:
            mgr.start(tmp_path, "demo")
        assert "hunter2" not in str(exc_info.value)

    @patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="docker", timeout=1))
    def test_timeout(self, _run, mgr, tmp_path):
        with pytest.raises(ContainerError, match="timed out"):
            mgr.start(tmp_path, "demo")

    @patch("subprocess.run")
    def test_stop_skips_without_definition(self, mock_run, mgr, tmp_path):
        mgr.stop(tmp_path, "demo")
        mock_run.assert_not_called()

    @patch("subprocess.run", return_value=_completed(0))
    def test_stop(self, mock_run, mgr, tmp_path):
        (tmp_path / COMPOSE_FILENAME).write_text("services: {}\n")
        mgr.stop(tmp_path, "demo")
        assert mock_run.call_args[0][0][-2:] == ["down", "--remove-orphans"]


class TestInspection:
    @pytest.mark.parametrize(
        "result, expected",
        [
            (_completed(0, "running\n"), InstanceStatus.RUNNING),
            (_completed(0, "exited\n"), InstanceStatus.EXITED),
            (_completed(1, "", "No such object"), InstanceStatus.MISSING),
        ],
    )
    def test_status(self, mgr, result, expected):
        with patch("subprocess.run", return_value=result):
            assert mgr.status("demo-app") == expected

    def test_inspect_health(self, mgr):
        state = '{"Status": "running", "Health": {"Status": "healthy"}, "ExitCode": 0}'
        with patch("subprocess.run", return_value=_completed(0, state)):
            assert mgr.inspect_health("demo-app") == "healthy"
            assert mgr.has_healthcheck("demo-app") is True
            assert mgr.exit_code("demo-app") == 0

    def test_inspect_missing(self, mgr):
        with patch("subprocess.run", return_value=_completed(1)):
            assert mgr.inspect_health("demo-app") == "missing"
            assert mgr.exit_code("demo-app") is None

    def test_logs_redacted(self, mgr):
        with patch("subprocess.run", return_value=_completed(0, "boot API_KEY=sk-123\n", "")) as mock_run:
            out = mgr.logs("demo-app", tail=5)
        assert "sk-123" not in out
        assert mock_run.call_args[0][0][1:4] == ["logs", "--tail", "5"]

    def test_exec_never_raises(self, mgr):
        with patch("subprocess.run", return_value=_completed(2, "", "not ready")):
            result = mgr.exec("demo-app", ["pg_isready"])
        assert result.returncode == 2

    def test_pull(self, mgr):
        with patch("subprocess.run", side_effect=[_completed(0), _completed(1, stderr="not found")]):
            assert mgr.pull("nginx:1.25") is True
            assert mgr.pull("nginx:missing") is False


class TestComposeCommand:
    def test_legacy_binary(self, tmp_path):
        manager = ContainerManager(compose_command="docker-compose")
        manager._docker_cmd = "docker"
        with patch("subprocess.run", return_value=_completed(0)) as mock_run:
            manager.start(tmp_path, "demo")
        assert mock_run.call_args[0][0][0] == "docker-compose"

    def test_run_uses_text_mode(self, mgr, tmp_path):
        with patch("subprocess.run", return_value=_completed(0)) as mock_run:
            mgr.start(tmp_path, "demo")
        kwargs = mock_run.call_args[1]
        assert kwargs["text"] is True
        assert kwargs["capture_output"] is True
        assert isinstance(kwargs["timeout"], int)

"""Container runtime access for Shipyard.

Drives instances through the ``docker`` CLI (subprocess). This is the
Artifact Renderer's runtime half: the orchestrator only ever asks it to
``start`` a rendered definition, ``stop`` a project, and report
``status`` as running, exited or missing.

Key Concepts:
    ContainerManager: ``start()``, ``stop()``, ``status()``, ``exec()``,
        ``inspect_health()``, ``logs()``, ``pull()``, ``is_available()``.
    InstanceStatus: running, exited, missing.
    DockerNotFoundError: ``docker`` is not on PATH.

Architecture Decisions:
    - subprocess, not docker-py: works with any runtime exposing a
      ``docker`` CLI (Docker Engine, Podman, Colima).
    - Every call has a timeout; a hung CLI surfaces as ``ContainerError``.
    - ``check=False`` calls return the CompletedProcess so probes can
      interpret exit codes themselves.

Related Modules:
    - :mod:`shipyard.deploy.compose` — renders what ``start()`` runs
    - :mod:`shipyard.deploy.health` — uses ``exec()`` and ``inspect_health()``

Tags:
    container, docker, compose, subprocess, lifecycle
"""

from __future__ import annotations

import json
import shlex
import shutil
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any

from shipyard.core.errors import ContainerError, DependencyError
from shipyard.core.logging import get_logger
from shipyard.core.redaction import redact
from shipyard.deploy.compose import COMPOSE_FILENAME

logger = get_logger(__name__)


class InstanceStatus(str, Enum):
    """Coarse runtime state of an instance."""

    RUNNING = "running"
    EXITED = "exited"
    MISSING = "missing"


class DockerNotFoundError(DependencyError):
    """Raised when Docker CLI is not available."""


class ContainerManager:
    """Starts, stops and inspects app instances via the docker CLI.

    Parameters
    ----------
    compose_command
        Compose invocation, ``"docker compose"`` or ``"docker-compose"``.
    default_timeout
        Seconds before any single CLI call is abandoned.

    Example::

        mgr = ContainerManager()
        mgr.start(app_dir, project="demo")
        mgr.status("demo-app")       # InstanceStatus.RUNNING
        mgr.stop(app_dir, project="demo")
    """

    def __init__(self, compose_command: str = "docker compose", default_timeout: int = 300) -> None:
        self.compose_command = shlex.split(compose_command)
        self.default_timeout = default_timeout
        self._docker_cmd: str | None = None

    # ------------------------------------------------------------------
    # Docker CLI discovery
    # ------------------------------------------------------------------

    @property
    def docker_cmd(self) -> str:
        if self._docker_cmd is None:
            self._docker_cmd = self._find_docker()
        return self._docker_cmd

    @staticmethod
    def _find_docker() -> str:
        """Find the docker CLI binary."""
        docker = shutil.which("docker")
        if docker is None:
            raise DockerNotFoundError(
                "Docker CLI not found on PATH. Install Docker or add it to PATH."
            )
        return docker

    def is_available(self) -> bool:
        """Check if Docker is installed and the daemon is responding."""
        if shutil.which("docker") is None:
            return False
        try:
            result = subprocess.run(
                [self.docker_cmd, "info"],
                capture_output=True,
                timeout=10,
            )
        except (subprocess.TimeoutExpired, OSError):
            return False
        return result.returncode == 0

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------

    def start(self, app_dir: Path, project: str, use_profiles: bool = True) -> None:
        """``compose up -d`` the definition in ``app_dir`` under ``project``."""
        args = self._compose_args(app_dir, project, use_profiles)
        self._run_compose([*args, "up", "-d", "--remove-orphans"])
        logger.info("instance.started", project=project, app_dir=str(app_dir))

    def stop(self, app_dir: Path, project: str, use_profiles: bool = True) -> None:
        """``compose down`` a project. Missing definitions are not an error."""
        compose_file = app_dir / COMPOSE_FILENAME
        if not compose_file.exists():
            logger.debug("instance.stop_skipped", project=project, reason="no compose file")
            return
        args = self._compose_args(app_dir, project, use_profiles)
        self._run_compose([*args, "down", "--remove-orphans"])
        logger.info("instance.stopped", project=project)

    def status(self, container: str) -> InstanceStatus:
        """Map ``State.Status`` onto running / exited / missing."""
        result = self._run_docker(
            ["inspect", "--format", "{{.State.Status}}", container],
            check=False,
        )
        if result.returncode != 0:
            return InstanceStatus.MISSING
        state = result.stdout.strip()
        if state in ("running", "restarting"):
            return InstanceStatus.RUNNING
        return InstanceStatus.EXITED

    def inspect_state(self, container: str) -> dict[str, Any] | None:
        """Full ``State`` object of a container, or ``None`` when missing."""
        result = self._run_docker(
            ["inspect", "--format", "{{json .State}}", container],
            check=False,
        )
        if result.returncode != 0 or not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("container.inspect_unparseable", container=container)
            return None

    def has_healthcheck(self, container: str) -> bool:
        state = self.inspect_state(container)
        return bool(state and state.get("Health"))

    def inspect_health(self, container: str) -> str:
        """``healthy``, ``unhealthy``, ``starting``, ``none`` or ``missing``."""
        state = self.inspect_state(container)
        if state is None:
            return "missing"
        health = state.get("Health") or {}
        return health.get("Status") or "none"

    def exit_code(self, container: str) -> int | None:
        state = self.inspect_state(container)
        return None if state is None else state.get("ExitCode")

    def exec(
        self, container: str, command: list[str], timeout: int | None = None
    ) -> subprocess.CompletedProcess[str]:
        """Run ``command`` inside ``container``; never raises on non-zero exit."""
        return self._run_docker(["exec", container, *command], check=False, timeout=timeout)

    def logs(self, container: str, tail: int = 20) -> str:
        """Last ``tail`` lines of a container's output (redacted)."""
        result = self._run_docker(
            ["logs", "--tail", str(tail), container],
            check=False,
        )
        return redact((result.stdout + result.stderr).strip())

    def pull(self, image_ref: str, timeout: int | None = None) -> bool:
        """Pull an image; ``True`` when it is available locally afterwards."""
        result = self._run_docker(["pull", image_ref], check=False, timeout=timeout)
        if result.returncode == 0:
            logger.info("image.pulled", image=image_ref)
            return True
        logger.warning("image.pull_failed", image=image_ref, stderr=result.stderr.strip()[-500:])
        return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _compose_args(self, app_dir: Path, project: str, use_profiles: bool) -> list[str]:
        args = ["-f", str(app_dir / COMPOSE_FILENAME), "-p", project]
        if use_profiles:
            args.extend(["--profile", "app"])
        return args

    def _run_compose(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        base = list(self.compose_command)
        if base and base[0] == "docker":
            base[0] = self.docker_cmd
        return self._run(base + args, check=True, timeout=self.default_timeout)

    def _run_docker(
        self,
        args: list[str],
        check: bool = True,
        timeout: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a docker CLI command."""
        return self._run([self.docker_cmd, *args], check=check, timeout=timeout or self.default_timeout)

    def _run(self, cmd: list[str], check: bool, timeout: int) -> subprocess.CompletedProcess[str]:
        logger.debug("docker.exec", cmd=" ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ContainerError(f"Docker command timed out after {timeout}s: {' '.join(cmd[1:])}") from exc
        except OSError as exc:
            raise ContainerError(f"Docker command could not be executed: {exc}", cause=exc) from exc
        if check and result.returncode != 0:
            raise ContainerError(
                f"Docker command failed (exit {result.returncode}): "
                f"{' '.join(cmd[1:])}\n{redact(result.stderr.strip())}"
            )
        return result


__all__ = ["ContainerManager", "InstanceStatus", "DockerNotFoundError"]

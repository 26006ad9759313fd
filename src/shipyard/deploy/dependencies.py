"""Deployment preconditions checked before anything is started.

Runs in the ``preparing`` stage when ``check_dependencies`` is enabled:

1. The container runtime answers (``docker info``).
2. The filesystem holding the app directory has at least
   ``min_free_disk_mb`` free.
3. Every image reference pulls (skipped on dry run).
4. The app directory can be created and written.

The first failing check raises; checks that passed are logged.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from shipyard.core.context import DeployContext
from shipyard.core.errors import DependencyError, PermissionDeniedError
from shipyard.core.logging import get_logger
from shipyard.deploy.config import AppConfig
from shipyard.deploy.container import ContainerManager

logger = get_logger(__name__)


@dataclass
class DependencyReport:
    """Checks that passed, in order."""

    app_name: str
    passed: list[str] = field(default_factory=list)
    free_disk_mb: int | None = None


def free_disk_mb(path: Path) -> int:
    """Free space on the filesystem holding ``path`` (or its nearest existing parent)."""
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free // (1024 * 1024)


def check_dependencies(
    ctx: DeployContext,
    config: AppConfig,
    containers: ContainerManager,
    min_free_disk_mb: int = 1000,
) -> DependencyReport:
    """Verify the host can run this deployment.

    Raises:
        DependencyError: runtime unavailable, disk too full, or image not pullable.
        PermissionDeniedError: the app directory cannot be created or written.
    """
    report = DependencyReport(app_name=config.app_name)
    app_dir = ctx.app_dir(config.app_name)

    if not containers.is_available():
        raise DependencyError("Docker is not running or not accessible").with_context(app_name=config.app_name)
    report.passed.append("docker")

    available = free_disk_mb(app_dir)
    report.free_disk_mb = available
    if available < min_free_disk_mb:
        raise DependencyError(
            f"Insufficient disk space: {available}MB available, {min_free_disk_mb}MB required"
        ).with_context(app_name=config.app_name, path=str(app_dir))
    report.passed.append("disk")

    if ctx.dry_run:
        logger.info("dependencies.pull_skipped", app_name=config.app_name, images=config.image_refs())
    else:
        for ref in config.image_refs():
            if not containers.pull(ref):
                raise DependencyError(f"Failed to pull image {ref}").with_context(app_name=config.app_name)
        report.passed.append("images")

    if not ctx.dry_run:
        try:
            app_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise PermissionDeniedError(f"Failed to create directory {app_dir}", cause=e).with_context(
                app_name=config.app_name, path=str(app_dir)
            )
        if not os.access(app_dir, os.W_OK):
            raise PermissionDeniedError(f"No write permission to {app_dir}").with_context(
                app_name=config.app_name, path=str(app_dir)
            )
        report.passed.append("app_dir")

    logger.info("dependencies.satisfied", app_name=config.app_name, checks=report.passed)
    return report


__all__ = ["DependencyReport", "check_dependencies", "free_disk_mb"]

"""Compose file rendering for Shipyard.

Turns an :class:`~shipyard.deploy.config.AppConfig` plus the host ports the
Port Resolver assigned into a ``docker-compose.yml``. The orchestrator
treats the result as an opaque running-instance definition.

Key Concepts:
    InstanceRole: production or staging. Staging instances get their own
        container names and compose project so they run side by side with
        production during a multi-stage rollout.
    render_compose: Builds the compose mapping (one service per image).
    write_compose_file: Persists YAML with 0600 permissions.
    prepare_compose: Renders or copies a user-provided compose file into
        an app directory.

Architecture Decisions:
    - One service per image: multi-container apps pair ``image[i]`` with
      ``ports[i]`` positionally; the first service is named ``app`` for
      single-image apps, otherwise services are named after their image.
    - Labels ``shipyard.*`` identify containers for cleanup and status.
    - ``restart: unless-stopped`` so instances survive host reboots.

Related Modules:
    - :mod:`shipyard.deploy.container` — starts what is rendered here
    - :mod:`shipyard.deploy.orchestrator` — decides which role to render

Tags:
    compose, docker, yaml, generation, deployment
"""

from __future__ import annotations

import os
import shutil
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from shipyard.core.errors import ConfigError, PermissionDeniedError
from shipyard.core.logging import get_logger
from shipyard.deploy.config import AppConfig, service_name_for
from shipyard.deploy.models import PortMapping

logger = get_logger(__name__)

COMPOSE_FILENAME = "docker-compose.yml"


class InstanceRole(str, Enum):
    """Which position an instance definition is rendered for."""

    PRODUCTION = "production"
    STAGING = "staging"


def project_name(app_name: str, role: InstanceRole = InstanceRole.PRODUCTION) -> str:
    """Compose project name for an app in a given role."""
    if role == InstanceRole.STAGING:
        return f"{app_name}-staging"
    return app_name


def primary_container(config: AppConfig, role: InstanceRole = InstanceRole.PRODUCTION) -> str:
    """Name of the container health checks and log collection target."""
    images = config.images()
    service = service_name_for(images[0]) if len(images) > 1 else "app"
    return f"{project_name(config.app_name, role)}-{service}"


def render_compose(
    config: AppConfig,
    ports: list[PortMapping],
    role: InstanceRole = InstanceRole.PRODUCTION,
    run_id: str = "",
) -> dict[str, Any]:
    """Build the compose mapping for ``config`` on the given host ports.

    Parameters
    ----------
    config
        Validated application configuration.
    ports
        Resolved port mappings, paired positionally with ``config.images()``.
    role
        Production or staging naming.
    run_id
        Deployment run identifier, recorded as a label.
    """
    images = config.images()
    if not images:
        raise ConfigError("image is required to render a compose file").with_context(
            app_name=config.app_name
        )

    project = project_name(config.app_name, role)
    network = f"{project}-network"
    prefix = project

    compose: dict[str, Any] = {
        "name": project,
        "services": {},
        "networks": {network: {"name": network}},
    }

    multi = len(images) > 1
    for index, (image, tag) in enumerate(zip(images, config.tags(), strict=False)):
        service_name = service_name_for(image) if multi else "app"
        if service_name in compose["services"]:
            service_name = f"{service_name}-{index}"

        service: dict[str, Any] = {
            "image": f"{image}:{tag}",
            "container_name": f"{prefix}-{service_name}",
            "restart": "unless-stopped",
            "networks": [network],
            "labels": [
                f"shipyard.app={config.app_name}",
                f"shipyard.role={role.value}",
                f"shipyard.service={service_name}",
            ],
        }
        if run_id:
            service["labels"].append(f"shipyard.run_id={run_id}")
        if config.use_profiles:
            service["profiles"] = ["app"]
        if index < len(ports):
            service["ports"] = [str(ports[index])]
        if config.env_vars:
            service["environment"] = dict(config.env_vars)
        if config.volumes:
            service["volumes"] = list(config.volumes)
        if config.extra_hosts:
            service["extra_hosts"] = list(config.extra_hosts)

        compose["services"][service_name] = service

    return compose


def dump_compose(compose: dict[str, Any], run_id: str = "") -> str:
    """Serialize a compose mapping with a short header comment."""
    header = (
        f"# Generated by shipyard{f' for run {run_id}' if run_id else ''}\n"
        f"# Project: {compose.get('name', '')}\n\n"
    )
    return header + yaml.safe_dump(compose, default_flow_style=False, sort_keys=False, allow_unicode=True)


def write_compose_file(content: str, output_path: str | Path) -> Path:
    """Write compose YAML to ``output_path`` readable only by the owner."""
    path = Path(output_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        os.chmod(path, 0o600)
    except PermissionError as e:
        raise PermissionDeniedError(f"Cannot write compose file {path}", cause=e).with_context(path=str(path))
    logger.info("compose.written", path=str(path))
    return path


def prepare_compose(
    config: AppConfig,
    ports: list[PortMapping],
    app_dir: Path,
    role: InstanceRole = InstanceRole.PRODUCTION,
    run_id: str = "",
) -> Path:
    """Render (or copy a user-provided) compose file into ``app_dir``."""
    target = app_dir / COMPOSE_FILENAME
    if config.compose_file:
        source = Path(config.compose_file)
        if not source.is_file():
            raise ConfigError(f"compose_file not found: {source}").with_context(
                app_name=config.app_name, path=str(source)
            )
        app_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        os.chmod(target, 0o600)
        logger.info("compose.copied", source=str(source), path=str(target))
        return target

    compose = render_compose(config, ports, role=role, run_id=run_id)
    return write_compose_file(dump_compose(compose, run_id), target)


def retarget_compose(
    compose: dict[str, Any],
    app_name: str,
    ports: list[PortMapping],
    role: InstanceRole,
    run_id: str = "",
) -> dict[str, Any]:
    """Rename a rendered definition for another role and host ports.

    Service bodies are kept, so edits made after rendering (volumes added by
    plugins, for example) survive promotion from staging to production.
    """
    project = project_name(app_name, role)
    network = f"{project}-network"
    compose["name"] = project
    compose["networks"] = {network: {"name": network}}
    for index, (service_name, service) in enumerate((compose.get("services") or {}).items()):
        service["container_name"] = f"{project}-{service_name}"
        service["networks"] = [network]
        if index < len(ports):
            service["ports"] = [str(ports[index])]
        labels = [
            label
            for label in service.get("labels", [])
            if not label.startswith(("shipyard.role=", "shipyard.run_id="))
        ]
        labels.append(f"shipyard.role={role.value}")
        if run_id:
            labels.append(f"shipyard.run_id={run_id}")
        service["labels"] = labels
    return compose


def promote_compose_file(
    path: Path,
    config: AppConfig,
    ports: list[PortMapping],
    role: InstanceRole = InstanceRole.PRODUCTION,
    run_id: str = "",
) -> Path:
    """Rewrite the compose file at ``path`` in place for ``role``.

    User-provided compose files are left untouched.
    """
    if config.compose_file:
        return path
    compose = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    retarget_compose(compose, config.app_name, ports, role, run_id)
    return write_compose_file(dump_compose(compose, run_id), path)


__all__ = [
    "COMPOSE_FILENAME",
    "InstanceRole",
    "project_name",
    "primary_container",
    "render_compose",
    "dump_compose",
    "write_compose_file",
    "prepare_compose",
    "retarget_compose",
    "promote_compose_file",
]

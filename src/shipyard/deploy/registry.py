"""Registry Store: the durable record of what is deployed.

One JSON document (``{"services": {<app_name>: ServiceRecord}}``) holds every
deployed application, its host ports and its version history. Deployments
consult it for port ownership and persistence; rollbacks consult it for the
version to restore.

Why This Matters:
    The registry is the only place rollback history lives. A half-written
    document or a "helpful" reinitialisation after a parse error would
    silently strand every service on its current version.

Key Concepts:
    RegistryStore: ``get``, ``put``, ``delete``, ``list`` plus ``history``,
        ``service_url``, ``reserved_ports`` and ``record_deployment``.
    Atomic writes: the full document is staged in a temp file in the same
        directory, fsynced, then ``os.replace``-d over the original under an
        exclusive lock, so readers see either the old or the new document.
    RegistryCorrupt: raised on read and write when the existing document
        cannot be parsed. Never auto-healed.

Architecture Decisions:
    - File mode 0600: the document names every app, domain and port.
    - Lock file per registry (not per key): writes are rare and small.
    - Missing file reads as an empty registry; an empty file is corrupt.

Related Modules:
    - :mod:`shipyard.deploy.models` — ServiceRecord / VersionSnapshot
    - :mod:`shipyard.deploy.ports` — reads ``reserved_ports``
    - :mod:`shipyard.deploy.rollback` — reads ``version_history``

Tags:
    registry, persistence, json, atomic-write, versioning
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from shipyard.core.context import DeployContext
from shipyard.core.errors import PermissionDeniedError, RegistryCorrupt, ServiceNotFound
from shipyard.core.locks import FileLock
from shipyard.core.logging import get_logger
from shipyard.deploy.config import AppConfig
from shipyard.deploy.models import (
    PortMapping,
    RouteType,
    ServiceRecord,
    ServiceStatus,
    VersionSnapshot,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_RETENTION = 10


class RegistryStore:
    """JSON-document store of :class:`ServiceRecord` keyed by ``app_name``.

    Parameters
    ----------
    ctx
        Deployment context; supplies ``registry_path`` and ``locks_dir``.
    retention
        Maximum ``version_history`` entries kept per service.
    lock_timeout
        Seconds to wait for the registry write lock.

    Example::

        store = RegistryStore(ctx)
        store.put(ServiceRecord(app_name="demo", domain="example.com"))
        store.get("demo").domain      # "example.com"
        store.list()                  # ["demo"]
    """

    def __init__(
        self,
        ctx: DeployContext,
        retention: int = DEFAULT_RETENTION,
        lock_timeout: float = 30.0,
        lock_stale_after: float = 300.0,
    ) -> None:
        self.ctx = ctx
        self.path = Path(ctx.registry_path)
        self.retention = retention
        self._lock = FileLock(
            ctx.locks_dir / "registry.lock",
            timeout=lock_timeout,
            stale_after=lock_stale_after,
            owner=ctx.run_id,
        )

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    def get(self, app_name: str) -> ServiceRecord:
        """Return the record for ``app_name`` or raise ``ServiceNotFound``."""
        services = self._read()
        if app_name not in services:
            raise ServiceNotFound(f"No service registered as '{app_name}'").with_context(app_name=app_name)
        return services[app_name]

    def put(self, record: ServiceRecord) -> None:
        """Atomically insert or replace ``record``."""

        def _apply(services: dict[str, ServiceRecord]) -> None:
            services[record.app_name] = record

        self._mutate(_apply)
        logger.info("registry.put", app_name=record.app_name, status=record.status.value, tag=record.tag)

    def delete(self, app_name: str) -> None:
        """Remove ``app_name``; raises ``ServiceNotFound`` when absent."""

        def _apply(services: dict[str, ServiceRecord]) -> None:
            if app_name not in services:
                raise ServiceNotFound(f"No service registered as '{app_name}'").with_context(
                    app_name=app_name
                )
            del services[app_name]

        self._mutate(_apply)
        logger.info("registry.deleted", app_name=app_name)

    def list(self) -> list[str]:
        """Registered app names, sorted."""
        return sorted(self._read())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def exists(self, app_name: str) -> bool:
        return app_name in self._read()

    def find(self, app_name: str) -> ServiceRecord | None:
        return self._read().get(app_name)

    def records(self) -> list[ServiceRecord]:
        services = self._read()
        return [services[name] for name in sorted(services)]

    def history(self, app_name: str, max_entries: int = 10) -> list[VersionSnapshot]:
        """Newest-first view of an app's version history."""
        record = self.get(app_name)
        return list(reversed(record.version_history))[:max_entries]

    def service_url(self, app_name: str) -> str:
        """Public URL derived from the record's routing identity."""
        record = self.get(app_name)
        proto = "https" if record.ssl else "http"
        route = record.route.strip("/")
        if record.route_type == RouteType.SUBDOMAIN and route:
            return f"{proto}://{route}.{record.domain}"
        if route:
            return f"{proto}://{record.domain}/{route}"
        return f"{proto}://{record.domain}"

    def reserved_ports(self, exclude: str | None = None) -> dict[int, str]:
        """Map of host_port -> owning app for every port-holding record."""
        owners: dict[int, str] = {}
        for name, record in self._read().items():
            if name == exclude or not record.status.holds_ports:
                continue
            for port in record.host_ports:
                owners[port] = name
        return owners

    def record_deployment(
        self,
        config: AppConfig,
        ports: list[PortMapping],
        status: ServiceStatus = ServiceStatus.ACTIVE,
    ) -> ServiceRecord:
        """Create or update the record for a deploy and append one snapshot.

        Every call appends exactly one :class:`VersionSnapshot`, identical
        redeploys included; the oldest entries beyond ``retention`` are
        evicted.
        """
        snapshot = VersionSnapshot(
            tag=config.tag,
            image=config.image,
            ports=[p.model_copy() for p in ports],
            config_digest=config.config_digest(),
        )
        result: dict[str, ServiceRecord] = {}

        def _apply(services: dict[str, ServiceRecord]) -> None:
            existing = services.get(config.app_name)
            now = utcnow()
            history = list(existing.version_history) if existing else []
            if config.version_tracking:
                history.append(snapshot)
            history = history[-self.retention:]
            record = ServiceRecord(
                app_name=config.app_name,
                domain=config.domain,
                route_type=config.route_type,
                route=config.route,
                ports=[p.model_copy() for p in ports],
                image=config.image,
                tag=config.tag,
                persistent=config.persistent,
                ssl=config.ssl,
                status=status,
                version_history=history,
                registered_at=existing.registered_at if existing else now,
                updated_at=now,
            )
            services[config.app_name] = record
            result["record"] = record

        self._mutate(_apply)
        record = result["record"]
        logger.info(
            "registry.deployment_recorded",
            app_name=record.app_name,
            tag=record.tag,
            ports=[str(p) for p in record.ports],
            history_len=len(record.version_history),
        )
        return record

    def update(self, app_name: str, **changes: Any) -> ServiceRecord:
        """Apply field changes to an existing record atomically."""
        result: dict[str, ServiceRecord] = {}

        def _apply(services: dict[str, ServiceRecord]) -> None:
            if app_name not in services:
                raise ServiceNotFound(f"No service registered as '{app_name}'").with_context(
                    app_name=app_name
                )
            record = services[app_name].model_copy(update={**changes, "updated_at": utcnow()})
            services[app_name] = record
            result["record"] = record

        self._mutate(_apply)
        return result["record"]

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _read(self) -> dict[str, ServiceRecord]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot read registry {self.path}", cause=e).with_context(
                path=str(self.path)
            )
        return self._parse(text)

    def _parse(self, text: str) -> dict[str, ServiceRecord]:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise RegistryCorrupt(
                f"Registry document {self.path} is not valid JSON (line {e.lineno}); refusing to continue",
                cause=e,
            ).with_context(path=str(self.path))
        if not isinstance(document, dict) or not isinstance(document.get("services", {}), dict):
            raise RegistryCorrupt(f"Registry document {self.path} has an unexpected shape").with_context(
                path=str(self.path)
            )
        services: dict[str, ServiceRecord] = {}
        for name, raw in document.get("services", {}).items():
            try:
                services[name] = ServiceRecord.model_validate({"app_name": name, **raw})
            except (ValidationError, TypeError) as e:
                raise RegistryCorrupt(
                    f"Registry entry '{name}' in {self.path} is invalid", cause=e
                ).with_context(path=str(self.path), app_name=name)
        return services

    def _mutate(self, apply: Callable[[dict[str, ServiceRecord]], None]) -> None:
        if self.ctx.dry_run:
            apply(self._read())
            logger.info("registry.dry_run_skip", path=str(self.path))
            return
        with self._lock:
            services = self._read()
            apply(services)
            self._write(services)

    def _write(self, services: dict[str, ServiceRecord]) -> None:
        document = {
            "services": {
                name: record.model_dump(mode="json") for name, record in sorted(services.items())
            }
        }
        payload = json.dumps(document, indent=2)
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".registry-", suffix=".tmp", dir=directory)
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot write registry in {directory}", cause=e).with_context(
                path=str(directory)
            )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


__all__ = ["RegistryStore", "DEFAULT_RETENTION"]

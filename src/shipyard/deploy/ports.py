"""Port Resolver: host port assignment without cross-service collisions.

Host port space is the principal shared resource on a deployment host. The
Registry Store is the single source of truth for who owns which port; a
live bind test catches everything else listening on the host.

Key Concepts:
    is_available(port, host): bind + listen probe. ``EADDRINUSE`` means
        taken; any other socket error is a ``NetworkError``.
    find_available(base, max, increment, host): first port in the range
        that is neither reserved in the registry nor bound on the host.
    resolve_conflicts(requested_port, app_name): keep the requested port
        when free or already owned by the same app, otherwise search onward.
    assign(config): resolve every container's host port for one app.

Architecture Decisions:
    - The registry is re-read on every call: a port may be bind-available
      yet reserved by a service whose container has not started listening.
    - No retries: the resolver fails fast and the orchestrator decides.

Tags:
    ports, sockets, allocation, registry
"""

from __future__ import annotations

import errno
import socket

from shipyard.core.errors import ConfigError, NetworkError, PortExhaustion
from shipyard.core.logging import get_logger
from shipyard.deploy.config import AppConfig
from shipyard.deploy.models import PortMapping
from shipyard.deploy.registry import RegistryStore

logger = get_logger(__name__)

MAX_PORT = 65535


def _check_port(port: int) -> None:
    if not 1 <= port <= MAX_PORT:
        raise ConfigError(f"Port {port} is outside 1-{MAX_PORT}").with_context(port=port)


class PortResolver:
    """Finds free host ports, consulting live binds and the registry.

    Parameters
    ----------
    registry
        Store whose records reserve host ports.
    host
        Interface used for bind tests.
    max_port
        Upper bound of every search.
    increment
        Step between candidate ports.
    """

    def __init__(
        self,
        registry: RegistryStore,
        host: str = "127.0.0.1",
        max_port: int = MAX_PORT,
        increment: int = 1,
    ) -> None:
        self.registry = registry
        self.host = host
        self.max_port = max_port
        self.increment = increment

    def is_available(self, port: int, host: str | None = None) -> bool:
        """True when ``(host, port)`` can be bound right now."""
        _check_port(port)
        target = host or self.host
        family = socket.AF_INET6 if ":" in target else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.bind((target, port))
            sock.listen(1)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                return False
            raise NetworkError(f"Cannot test port {port} on {target}: {e.strerror or e}", cause=e).with_context(
                port=port
            )
        finally:
            sock.close()
        return True

    def find_available(
        self,
        base: int,
        max: int | None = None,
        increment: int | None = None,
        host: str | None = None,
        owner: str | None = None,
        skip: set[int] | None = None,
    ) -> int | None:
        """First free port in ``base, base+increment, ... <= max`` or ``None``.

        Ports reserved by any registry record other than ``owner`` are
        skipped, as are ports in ``skip``.
        """
        _check_port(base)
        upper = min(self.max_port if max is None else max, MAX_PORT)
        step = self.increment if increment is None else increment
        if step < 1:
            raise ConfigError(f"Port increment must be positive, got {step}")
        reserved = self.registry.reserved_ports(exclude=owner)
        excluded = skip or set()

        port = base
        while port <= upper:
            if port not in reserved and port not in excluded and self.is_available(port, host):
                return port
            port += step
        logger.warning("ports.range_exhausted", base=base, max=upper, increment=step)
        return None

    def resolve_conflicts(
        self,
        requested_port: int,
        app_name: str,
        skip: set[int] | None = None,
    ) -> int:
        """Return ``requested_port`` if usable by ``app_name``, else the next free port.

        Raises:
            PortExhaustion: nothing is free between ``requested_port`` and the max.
        """
        _check_port(requested_port)
        excluded = skip or set()
        reserved = self.registry.reserved_ports()
        owner = reserved.get(requested_port)

        if requested_port not in excluded:
            if owner == app_name:
                return requested_port
            if owner is None and self.is_available(requested_port):
                return requested_port

        logger.info(
            "ports.conflict",
            app_name=app_name,
            requested=requested_port,
            owner=owner or "host process",
        )
        start = requested_port + self.increment
        port = None
        if start <= self.max_port:
            port = self.find_available(start, owner=app_name, skip=excluded)
        if port is None:
            raise PortExhaustion(
                f"No free port between {requested_port} and {self.max_port} for '{app_name}'"
            ).with_context(app_name=app_name, port=requested_port)
        logger.info("ports.reassigned", app_name=app_name, requested=requested_port, assigned=port)
        return port

    def assign(self, config: AppConfig) -> list[PortMapping]:
        """Resolve host ports for every container of ``config``.

        With ``port_auto_assign`` disabled a conflict is an error rather
        than a reason to move.
        """
        assigned: list[PortMapping] = []
        taken: set[int] = set()
        for mapping in config.port_mappings():
            if config.port_auto_assign:
                host_port = self.resolve_conflicts(mapping.host_port, config.app_name, skip=taken)
            else:
                host_port = mapping.host_port
                if host_port in taken or not self._usable_by(host_port, config.app_name):
                    raise PortExhaustion(
                        f"Port {host_port} is in use and port_auto_assign is disabled"
                    ).with_context(app_name=config.app_name, port=host_port)
            taken.add(host_port)
            assigned.append(PortMapping(host_port=host_port, container_port=mapping.container_port))
        return assigned

    def staging_ports(self, production: list[PortMapping], app_name: str) -> list[PortMapping]:
        """Distinct free host ports for a staging instance running beside production."""
        taken = {p.host_port for p in production}
        staged: list[PortMapping] = []
        for mapping in production:
            start = mapping.host_port + self.increment
            port = self.find_available(start, skip=taken) if start <= self.max_port else None
            if port is None:
                raise PortExhaustion(f"No free staging port for '{app_name}'").with_context(
                    app_name=app_name, port=mapping.host_port
                )
            taken.add(port)
            staged.append(PortMapping(host_port=port, container_port=mapping.container_port))
        return staged

    def _usable_by(self, port: int, app_name: str) -> bool:
        owner = self.registry.reserved_ports().get(port)
        if owner == app_name:
            return True
        return owner is None and self.is_available(port)


__all__ = ["PortResolver", "MAX_PORT"]

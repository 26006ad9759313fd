"""Registry data models for Shipyard.

Pydantic v2 models persisted inside the Registry Store document. A
``ServiceRecord`` is the durable answer to "what is deployed for this app,
on which host ports, and what ran before it".

Key Concepts:
    PortMapping: One ``host_port -> container_port`` pair.
    VersionSnapshot: Image, tag, ports and config digest of one deploy,
        the unit a rollback restores.
    ServiceRecord: One per ``app_name``. ``image`` and ``tag`` may be
        comma-separated sets for multi-container services, paired
        positionally with ``ports``.
    ServiceStatus: active, staging, rolled_back, failed.

Architecture Decisions:
    - ``version_history`` is ordered oldest first, newest last, and bounded
      by the store's retention count.
    - Only ``active`` and ``staging`` records hold host ports; the Port
      Resolver treats those as reserved.

Tags:
    registry, models, pydantic, versioning, rollback
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class RouteType(str, Enum):
    """How the reverse proxy routes traffic to an app."""

    PATH = "path"  # https://domain/route
    SUBDOMAIN = "subdomain"  # https://route.domain


class ServiceStatus(str, Enum):
    """Lifecycle status of a registered service."""

    ACTIVE = "active"
    STAGING = "staging"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def holds_ports(self) -> bool:
        return self in (ServiceStatus.ACTIVE, ServiceStatus.STAGING, ServiceStatus.ROLLED_BACK)


class PortMapping(BaseModel):
    """One published port: host side and container side."""

    host_port: int = Field(ge=1, le=65535)
    container_port: int = Field(ge=1, le=65535)

    def __str__(self) -> str:
        return f"{self.host_port}:{self.container_port}"

    @classmethod
    def parse(cls, spec: str | int) -> PortMapping:
        """Parse ``"8080"``, ``8080`` or ``"8080:80"``."""
        text = str(spec).strip()
        if ":" in text:
            host, container = text.split(":", 1)
            return cls(host_port=int(host), container_port=int(container))
        return cls(host_port=int(text), container_port=int(text))


class VersionSnapshot(BaseModel):
    """What was deployed at one point in time."""

    tag: str
    image: str
    ports: list[PortMapping] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    config_digest: str = ""

    def same_artifact(self, image: str, tag: str) -> bool:
        return self.image == image and self.tag == tag


class ServiceRecord(BaseModel):
    """Durable record of one deployed application."""

    app_name: str
    domain: str = ""
    route_type: RouteType = RouteType.PATH
    route: str = ""
    ports: list[PortMapping] = Field(default_factory=list)
    image: str = ""
    tag: str = "latest"
    persistent: bool = False
    ssl: bool = True
    status: ServiceStatus = ServiceStatus.ACTIVE
    version_history: list[VersionSnapshot] = Field(default_factory=list)
    registered_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("ports", mode="before")
    @classmethod
    def _coerce_ports(cls, value: object) -> object:
        # legacy documents stored a bare "3000" or "3000,3001"
        if isinstance(value, (str, int)):
            return [PortMapping.parse(p) for p in str(value).split(",") if p.strip()]
        return value

    @property
    def host_ports(self) -> list[int]:
        return [p.host_port for p in self.ports]

    @property
    def primary_port(self) -> int | None:
        return self.ports[0].host_port if self.ports else None

    def snapshot(self, config_digest: str = "") -> VersionSnapshot:
        """Snapshot of what this record currently describes."""
        return VersionSnapshot(
            tag=self.tag,
            image=self.image,
            ports=[p.model_copy() for p in self.ports],
            config_digest=config_digest,
        )

    def latest_snapshot(self) -> VersionSnapshot | None:
        return self.version_history[-1] if self.version_history else None


__all__ = [
    "RouteType",
    "ServiceStatus",
    "PortMapping",
    "VersionSnapshot",
    "ServiceRecord",
    "utcnow",
]

"""
Explicit deployment context.

Every component call receives a :class:`DeployContext`. It carries the base
paths, the run identifier, the dry-run flag and a bound logger, so no core
logic ever looks up ambient directories or environment variables on its
own. Two contexts with different ``base_dir`` values are fully isolated,
which is what the test suite relies on.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from shipyard.core.logging import get_logger

if TYPE_CHECKING:
    from shipyard.deploy.config import OrchestratorSettings


@dataclass
class DeployContext:
    """Context passed to every registry, resolver, verifier and orchestrator call.

    Attributes:
        base_dir: Root of all Shipyard state on the host.
        apps_dir: Per-application working directories (compose files live here).
        data_dir: Persistent data directories for persistent services.
        proxy_dir: Directory the reverse proxy reads site configs from.
        registry_path: JSON document holding every ServiceRecord.
        locks_dir: Lock files for registry writes and per-app serialization.
        run_id: Identifier of the current invocation (auto-generated).
        dry_run: When ``True``, operations log what they would do and mutate nothing.
        metadata: Arbitrary key/value pairs forwarded to logging.
    """

    base_dir: Path
    apps_dir: Path
    data_dir: Path
    proxy_dir: Path
    registry_path: Path
    locks_dir: Path
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    dry_run: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    logger: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger("shipyard").bind(run_id=self.run_id)

    @classmethod
    def for_base_dir(cls, base_dir: str | Path, **kwargs: Any) -> DeployContext:
        """Build a context with the standard layout under ``base_dir``."""
        base = Path(base_dir)
        return cls(
            base_dir=base,
            apps_dir=base / "apps",
            data_dir=base / "data",
            proxy_dir=base / "nginx" / "conf.d",
            registry_path=base / "service-registry.json",
            locks_dir=base / "locks",
            **kwargs,
        )

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings, **kwargs: Any) -> DeployContext:
        """Build a context from process settings, honouring explicit overrides."""
        ctx = cls.for_base_dir(settings.base_dir, **kwargs)
        if settings.registry_file:
            ctx.registry_path = Path(settings.registry_file)
        if settings.proxy_dir:
            ctx.proxy_dir = Path(settings.proxy_dir)
        return ctx

    def app_dir(self, app_name: str) -> Path:
        return self.apps_dir / app_name

    def staging_dir(self, app_name: str) -> Path:
        return self.apps_dir / f"{app_name}.staging"

    def backup_dir(self, app_name: str) -> Path:
        return self.apps_dir / f"{app_name}.backup"

    def data_path(self, app_name: str) -> Path:
        return self.data_dir / app_name

    def child(self, **changes: Any) -> DeployContext:
        """Copy of this context with some fields replaced (e.g. ``dry_run``)."""
        new = replace(self, **changes)
        new.logger = get_logger("shipyard").bind(run_id=new.run_id)
        return new

    def ensure_dirs(self) -> None:
        """Create the standard directory layout (skipped on dry run)."""
        if self.dry_run:
            return
        for path in (self.apps_dir, self.data_dir, self.locks_dir, self.registry_path.parent):
            path.mkdir(parents=True, exist_ok=True)


__all__ = ["DeployContext"]

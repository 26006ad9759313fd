"""Result models for Shipyard operations.

Pydantic v2 models that capture the structured outcome of a deployment,
rollback or cleanup. The CLI renders them as rich tables or JSON; CI
reads ``exit_code``.

Key Concepts:
    Stage: Every state of the deployment state machine. ``done``,
        ``failed`` and ``rolled_back`` are terminal.
    StageTransition: One entry of the stage history, with timestamp.
    OverallStatus: SUCCEEDED, ROLLED_BACK, FAILED, CANCELLED plus the
        in-flight PENDING and RUNNING.
    DeploymentResult: What ``DeploymentOrchestrator.run()`` returns.
        ``mark_complete()`` finalises timestamps, duration, status and
        exit code from the terminal stage.

Architecture Decisions:
    - ``mark_complete()`` pattern: the caller invokes it once, at the
      end, and it derives everything else from ``final_stage``.
    - A ``rolled_back`` deploy still exits non-zero: the requested version
      is not what is running.

Tags:
    results, models, pydantic, deployment, status
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from shipyard.core.errors import ExitCode
from shipyard.deploy.models import PortMapping


class Stage(str, Enum):
    """States of the deployment state machine."""

    VALIDATING = "validating"
    PREPARING = "preparing"
    STAGING_DEPLOY = "staging_deploy"
    HEALTH_CHECK = "health_check"
    CUTOVER = "cutover"
    VERIFY = "verify"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (Stage.DONE, Stage.FAILED, Stage.ROLLED_BACK)


class OverallStatus(str, Enum):
    """Overall status of a deployment operation."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StageTransition(BaseModel):
    """One stage entered during a run."""

    stage: Stage
    entered_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    detail: str = ""


class DeploymentResult(BaseModel):
    """Result of a deploy, rollback or cleanup."""

    app_name: str
    run_id: str
    mode: str = "deploy"  # deploy, rollback, cleanup
    dry_run: bool = False
    final_stage: Stage | None = None
    overall_status: OverallStatus = OverallStatus.PENDING
    exit_code: int = 0
    detail: str = ""
    stages: list[StageTransition] = Field(default_factory=list)
    ports: list[PortMapping] = Field(default_factory=list)
    image: str = ""
    tag: str = ""
    health: dict[str, Any] | None = None
    cancelled: bool = False
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.overall_status == OverallStatus.SUCCEEDED

    @property
    def stage_names(self) -> list[str]:
        return [t.stage.value for t in self.stages]

    def mark_complete(self, status: OverallStatus | None = None, exit_code: int | None = None) -> None:
        """Mark the operation complete, compute duration, status and exit code."""
        self.completed_at = datetime.now(UTC).isoformat()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()

        if status:
            self.overall_status = status
        elif self.final_stage == Stage.DONE:
            self.overall_status = OverallStatus.SUCCEEDED
        elif self.cancelled:
            self.overall_status = OverallStatus.CANCELLED
        elif self.final_stage == Stage.ROLLED_BACK:
            self.overall_status = OverallStatus.ROLLED_BACK
        else:
            self.overall_status = OverallStatus.FAILED

        if exit_code is not None:
            self.exit_code = exit_code
        elif self.overall_status == OverallStatus.SUCCEEDED:
            self.exit_code = int(ExitCode.SUCCESS)
        elif self.exit_code == 0:
            self.exit_code = int(ExitCode.GENERAL)


__all__ = ["DeploymentResult", "OverallStatus", "Stage", "StageTransition"]

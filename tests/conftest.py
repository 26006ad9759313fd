"""
Shared pytest fixtures for shipyard tests.

This module provides:
- A throwaway deployment context rooted in ``tmp_path``
- Orchestrator settings with zero backoff delays
- Plugin registry isolation
- A structlog configuration that keeps test output quiet

Nothing here talks to Docker, binds real ports or sleeps.
"""

from __future__ import annotations

import sys
from collections.abc import Generator
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from shipyard.core.context import DeployContext  # noqa: E402
from shipyard.core.logging import configure_logging  # noqa: E402
from shipyard.deploy.config import AppConfig, OrchestratorSettings  # noqa: E402
from shipyard.plugins import registry as plugin_registry  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    configure_logging(level="WARNING", json_format=True)


# =============================================================================
# Registry Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def plugin_registry_snapshot() -> Generator[None, None, None]:
    """Restore the plugin registry after every test.

    Built-in plugins register at import time, so the registry is restored
    to its imported state rather than cleared.
    """
    saved = dict(plugin_registry._registry)
    yield
    plugin_registry._registry.clear()
    plugin_registry._registry.update(saved)


# =============================================================================
# Context / Settings
# =============================================================================


@pytest.fixture
def ctx(tmp_path: Path) -> DeployContext:
    """Deployment context whose every path lives under ``tmp_path``."""
    context = DeployContext.for_base_dir(tmp_path, run_id="testrun0001")
    context.ensure_dirs()
    return context


@pytest.fixture
def dry_ctx(ctx: DeployContext) -> DeployContext:
    return ctx.child(dry_run=True)


@pytest.fixture
def settings(tmp_path: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        base_dir=tmp_path,
        health_base_delay=0.0,
        health_max_delay=0.0,
        health_max_attempts=2,
        verify_max_attempts=2,
        lock_timeout=1.0,
    )


@pytest.fixture
def app_config() -> AppConfig:
    """Single-container app on port 3000."""
    return AppConfig(
        app_name="demo",
        domain="example.com",
        route="demo",
        image="ghcr.io/acme/demo",
        tag="v2",
        port="3000",
        health_check="/health",
    )

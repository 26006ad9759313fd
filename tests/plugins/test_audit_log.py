"""Tests for the audit-log plugin."""

from __future__ import annotations

import json
import stat

import pytest

from shipyard.deploy.config import AppConfig
from shipyard.deploy.hooks import HookDispatcher, HookEvent
from shipyard.plugins import discover_plugins
from shipyard.plugins.audit_log import AuditLogPlugin


@pytest.fixture
def plugin(ctx):
    return AuditLogPlugin(ctx)


def _event(detail: str = "", stage: str = "", **overrides) -> HookEvent:
    args = {**AuditLogPlugin.args, **overrides.pop("plugin_args", {})}
    fields = {"app_name": "demo", "domain": "example.com", "image": "nginx", "tag": "v2", **overrides}
    config = AppConfig(**fields, plugin_args=args)
    return HookEvent(app_name="demo", stage=stage, detail=detail, config=config)


def _entries(path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestRecord:
    def test_appends_json_lines(self, plugin, ctx):
        plugin.on_pre_deploy(_event(stage="preparing", ssl_email="ops@example.com"))
        plugin.on_post_deploy(_event(stage="verify"))

        path = ctx.base_dir / "logs" / "audit.log"
        entries = _entries(path)
        assert [e["action"] for e in entries] == ["pre_deploy", "post_deploy"]
        assert entries[0]["image"] == "nginx"
        assert entries[0]["tag"] == "v2"
        assert entries[0]["run_id"] == "testrun0001"
        assert entries[0]["category"] == "deployment"
        assert entries[0]["user"]
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_detail_redacted(self, plugin, ctx):
        plugin.on_health_check_failed(_event(detail="connect failed: postgres://app:hunter2@db:5432/app"))
        raw = (ctx.base_dir / "logs" / "audit.log").read_text()
        assert "hunter2" not in raw
        assert _entries(ctx.base_dir / "logs" / "audit.log")[0]["action"] == "health_check_failed"

    def test_custom_path(self, plugin, tmp_path):
        path = tmp_path / "var" / "audit.jsonl"
        plugin.on_rollback(_event(plugin_args={"audit_log_path": str(path)}))
        assert _entries(path)[0]["action"] == "rollback"

    def test_dry_run_writes_nothing(self, dry_ctx):
        assert AuditLogPlugin(dry_ctx).record(_event(), "deployment", "pre_deploy") is None
        assert not (dry_ctx.base_dir / "logs").exists()

    def test_no_context_and_no_path(self):
        assert AuditLogPlugin().record(_event(), "deployment", "pre_deploy") is None


class TestSecurityEvents:
    def test_ssl_disabled_flagged(self, plugin, ctx):
        plugin.on_config_loaded(_event(ssl=False))
        actions = [(e["category"], e["action"]) for e in _entries(ctx.base_dir / "logs" / "audit.log")]
        assert actions == [("configuration", "config_loaded"), ("security", "ssl_disabled")]

    def test_ssl_without_email_flagged(self, plugin, ctx):
        plugin.on_pre_deploy(_event())
        actions = [e["action"] for e in _entries(ctx.base_dir / "logs" / "audit.log")]
        assert actions == ["pre_deploy", "ssl_without_email"]


class TestRotation:
    def test_rotates_by_size(self, plugin, ctx):
        event = _event(plugin_args={"audit_max_bytes": 200, "audit_max_files": 2})
        path = ctx.base_dir / "logs" / "audit.log"
        for _ in range(12):
            plugin.on_post_cleanup(event)

        assert path.exists()
        assert path.with_name("audit.log.1").exists()
        assert path.with_name("audit.log.2").exists()
        assert not path.with_name("audit.log.3").exists()
        assert path.stat().st_size < 200 + 400

    def test_rotation_disabled(self, plugin, ctx):
        event = _event(plugin_args={"audit_max_bytes": 0})
        for _ in range(5):
            plugin.on_pre_cleanup(event)
        assert len(_entries(ctx.base_dir / "logs" / "audit.log")) == 5
        assert not (ctx.base_dir / "logs" / "audit.log.1").exists()


class TestRegistration:
    def test_hooks_wired(self, ctx):
        dispatcher = HookDispatcher()
        discover_plugins(["audit-log"], dispatcher, ctx)
        assert dispatcher.hooks_for("post_rollback") == ["audit-log:on_rollback"]
        assert dispatcher.hooks_for("pre_cleanup") == ["audit-log:on_pre_cleanup"]
        assert dispatcher.args_for("audit-log")["audit_max_files"] == 5

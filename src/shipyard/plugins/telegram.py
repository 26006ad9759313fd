"""Telegram notifier plugin.

Posts one message per deployment milestone to a Telegram chat through the
Bot API (``sendMessage``). Messages below ``telegram_notify_level`` are
dropped; every message passes through secret redaction before it leaves
the host. Delivery failures are logged and otherwise ignored.

Args:
    telegram_enabled: Master switch.
    telegram_bot_token: Bot API token.
    telegram_chat_id: Destination chat.
    telegram_notify_level: debug, info, warning or error.
    telegram_include_logs: Attach recent container logs to failure messages.
"""

from __future__ import annotations

import httpx

from shipyard.core.logging import get_logger
from shipyard.core.redaction import redact
from shipyard.deploy.hooks import HookEvent, HookName
from shipyard.deploy.proxy import location_for, server_name_for
from shipyard.plugins.base import Plugin, truthy
from shipyard.plugins.registry import register_plugin

logger = get_logger(__name__)

API_BASE = "https://api.telegram.org"
LEVELS = ("debug", "info", "warning", "error")
EMOJI = {"debug": "🔍", "info": "ℹ️", "warning": "⚠️", "error": "🚨", "success": "✅"}


def _rank(level: str) -> int:
    # "success" ranks with info
    return LEVELS.index(level) if level in LEVELS else 1


@register_plugin("telegram-notifier")
class TelegramNotifierPlugin(Plugin):
    description = "Send deployment notifications to Telegram"
    args = {
        "telegram_enabled": False,
        "telegram_bot_token": "",
        "telegram_chat_id": "",
        "telegram_notify_level": "info",
        "telegram_include_logs": True,
    }
    hooks = {
        HookName.PRE_DEPLOY: "on_deploy_start",
        HookName.POST_DEPLOY: "on_deploy_success",
        HookName.HEALTH_CHECK_FAILED: "on_health_check_failed",
        HookName.POST_CUTOVER: "on_cutover",
        HookName.POST_ROLLBACK: "on_rollback",
        HookName.POST_CLEANUP: "on_cleanup",
    }

    timeout = 10.0

    def send(self, event: HookEvent, message: str, level: str = "info") -> bool:
        """Deliver one message; ``False`` when skipped or not delivered."""
        if not truthy(event.arg("telegram_enabled", False)):
            return False
        token = str(event.arg("telegram_bot_token", "") or "")
        chat_id = str(event.arg("telegram_chat_id", "") or "")
        if not token or not chat_id:
            logger.debug("telegram.not_configured", app_name=event.app_name)
            return False
        minimum = str(event.arg("telegram_notify_level", "info"))
        if _rank(level) < _rank(minimum):
            return False

        text = redact(f"{EMOJI.get(level, EMOJI['info'])} *{event.app_name}*: {message}")
        try:
            response = httpx.post(
                f"{API_BASE}/bot{token}/sendMessage",
                data={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("telegram.delivery_failed", app_name=event.app_name, error=redact(str(e)))
            return False
        if response.status_code != 200:
            description = ""
            try:
                description = str(response.json().get("description", ""))
            except ValueError:
                description = response.text[:200]
            logger.warning(
                "telegram.delivery_failed",
                app_name=event.app_name,
                status_code=response.status_code,
                error=redact(description),
            )
            return False
        logger.debug("telegram.sent", app_name=event.app_name, level=level)
        return True

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def on_deploy_start(self, event: HookEvent) -> None:
        tag = event.config.tag if event.config else "latest"
        self.send(event, f"Deployment started for version {tag}", "info")

    def on_deploy_success(self, event: HookEvent) -> None:
        message = "Deployment completed successfully!"
        url = self._public_url(event)
        if url:
            message += f"\nApplication is available at: {url}"
        self.send(event, message, "success")

    def on_health_check_failed(self, event: HookEvent) -> None:
        message = "Health check failed for deployment"
        if event.detail:
            message += f"\n{event.detail}"
        logs = event.data.get("logs")
        if logs and truthy(event.arg("telegram_include_logs", True)):
            tail = "\n".join(str(logs).splitlines()[-10:])
            message += f"\n\nLast 10 log lines:\n```\n{tail}\n```"
        self.send(event, message, "error")

    def on_cutover(self, event: HookEvent) -> None:
        self.send(event, "Cutover completed successfully", "info")

    def on_rollback(self, event: HookEvent) -> None:
        message = "Rolled back to the previous version"
        if event.detail:
            message += f": {event.detail}"
        self.send(event, message, "warning")

    def on_cleanup(self, event: HookEvent) -> None:
        self.send(event, "Cleanup completed successfully", "info")

    @staticmethod
    def _public_url(event: HookEvent) -> str:
        config = event.config
        if config is None or not config.domain:
            return ""
        proto = "https" if config.ssl else "http"
        host = server_name_for(config.domain, config.route_type, config.route)
        path = location_for(config.route_type, config.route).rstrip("/")
        return f"{proto}://{host}{path}"

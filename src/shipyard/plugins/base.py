"""Plugin base class.

A plugin is a named bundle of argument declarations and hook callbacks.
Subclasses declare both as class attributes; :meth:`Plugin.register` wires
them into a :class:`~shipyard.deploy.hooks.HookDispatcher`.

Example::

    @register_plugin("notifier")
    class Notifier(Plugin):
        description = "Post deploy results to chat"
        args = {"notify_level": "info"}
        hooks = {HookName.POST_DEPLOY: "on_post_deploy"}

        def on_post_deploy(self, event: HookEvent) -> None:
            ...
"""

from __future__ import annotations

from typing import Any, ClassVar

from shipyard.core.context import DeployContext
from shipyard.core.logging import get_logger
from shipyard.deploy.hooks import HookDispatcher, HookName

logger = get_logger(__name__)


def truthy(value: Any) -> bool:
    """Plugin arguments may arrive as strings from YAML or the environment."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class Plugin:
    """Base class for deployment plugins."""

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    depends_on: ClassVar[tuple[str, ...]] = ()
    args: ClassVar[dict[str, Any]] = {}
    hooks: ClassVar[dict[HookName, str]] = {}

    def __init__(self, ctx: DeployContext | None = None) -> None:
        self.ctx = ctx

    def register(self, dispatcher: HookDispatcher) -> None:
        for arg, default in self.args.items():
            dispatcher.register_arg(self.name, arg, default)
        for hook, method in self.hooks.items():
            dispatcher.register_hook(self.name, hook, getattr(self, method))
        logger.debug("plugin.registered", plugin=self.name, hooks=[h.value for h in self.hooks])

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


__all__ = ["Plugin", "truthy"]

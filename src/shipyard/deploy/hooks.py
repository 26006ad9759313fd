"""Hook Dispatcher: named extension points fired by the orchestrator.

Plugins register callbacks against a fixed set of hook names and declare
their arguments with defaults. The orchestrator fires hooks at its stage
boundaries; callbacks run in strict registration order and all receive the
same arguments.

Key Concepts:
    HookName: The closed set of extension points. Anything else is a
        ``ConfigError`` at registration or dispatch time.
    BLOCKING_HOOKS: Hooks whose failure aborts the surrounding operation
        (``pre_deploy``, ``pre_cleanup``). Every other hook is
        fire-and-log: a failing callback is recorded and dispatch moves on.
    HookEvent: What callbacks receive. ``detail`` is redacted at
        construction.
    freeze(): Called once discovery finishes; later registration raises
        ``RuntimeError``.

Architecture Decisions:
    - Registration order is execution order; duplicates fire twice.
    - Argument defaults are overwritten on re-registration (last wins), so
      re-importing a plugin module is harmless.
    - Retry of an individual callback is opt-in via ``max_attempts``;
      ``HookRejected`` is never retried.

Related Modules:
    - :mod:`shipyard.plugins` — built-in plugins and discovery
    - :mod:`shipyard.deploy.orchestrator` — fires the hooks

Tags:
    hooks, plugins, extension-points, dispatch
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from shipyard.core.errors import ConfigError, HookRejected
from shipyard.core.logging import get_logger
from shipyard.core.redaction import redact
from shipyard.execution.retry import ConstantBackoff

if TYPE_CHECKING:
    from shipyard.deploy.config import AppConfig

logger = get_logger(__name__)

HookCallback = Callable[..., Any]


class HookName(str, Enum):
    """Extension points fired during deploy, rollback and cleanup."""

    CONFIG_LOADED = "config_loaded"
    PRE_SETUP = "pre_setup"
    POST_SETUP = "post_setup"
    PRE_DEPLOY = "pre_deploy"
    POST_DEPLOY = "post_deploy"
    PRE_CLEANUP = "pre_cleanup"
    POST_CLEANUP = "post_cleanup"
    PRE_ROLLBACK = "pre_rollback"
    POST_ROLLBACK = "post_rollback"
    POST_CUTOVER = "post_cutover"
    HEALTH_CHECK_FAILED = "health_check_failed"


BLOCKING_HOOKS: frozenset[HookName] = frozenset({HookName.PRE_DEPLOY, HookName.PRE_CLEANUP})


def hook_name(name: str | HookName) -> HookName:
    """Coerce ``name`` to a :class:`HookName` or raise ``ConfigError``."""
    if isinstance(name, HookName):
        return name
    try:
        return HookName(name)
    except ValueError:
        valid = ", ".join(h.value for h in HookName)
        raise ConfigError(f"Unknown hook '{name}'. Valid hooks: {valid}") from None


@dataclass
class HookEvent:
    """Payload handed to every hook callback."""

    app_name: str
    app_dir: Path | None = None
    stage: str = ""
    detail: str = ""
    config: AppConfig | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.detail = redact(self.detail)

    def arg(self, name: str, default: Any = None) -> Any:
        if self.config is None:
            return default
        return self.config.arg(name, default)


@dataclass
class _Registration:
    plugin: str
    callback: HookCallback

    @property
    def label(self) -> str:
        return f"{self.plugin}:{getattr(self.callback, '__name__', repr(self.callback))}"


@dataclass
class HookOutcome:
    """Result of one ``execute`` call."""

    hook: HookName
    invoked: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class HookDispatcher:
    """Registry of plugin arguments and hook callbacks.

    Example::

        dispatcher = HookDispatcher()
        dispatcher.register_arg("notifier", "notify_level", "info")
        dispatcher.register_hook("notifier", "post_deploy", send_message)
        dispatcher.freeze()
        dispatcher.execute(HookName.POST_DEPLOY, HookEvent(app_name="demo"))
    """

    def __init__(
        self,
        max_attempts: int = 1,
        retry_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self._backoff = ConstantBackoff(max_attempts=max_attempts, delay=retry_delay)
        self._sleep = sleep
        self._hooks: dict[HookName, list[_Registration]] = {h: [] for h in HookName}
        self._args: dict[str, dict[str, Any]] = {}
        self._plugins: list[str] = []
        self._frozen = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_arg(self, plugin: str, name: str, default: Any) -> None:
        """Declare a plugin argument with its default. Re-declaring overwrites."""
        with self._lock:
            self._check_mutable()
            self._track(plugin)
            self._args.setdefault(plugin, {})[name] = default
        logger.debug("hook.arg_registered", plugin=plugin, arg=name)

    def register_hook(self, plugin: str, name: str | HookName, callback: HookCallback) -> None:
        """Append ``callback`` to the hook's callback list."""
        hook = hook_name(name)
        if not callable(callback):
            raise ConfigError(f"Hook callback for '{hook.value}' from '{plugin}' is not callable")
        with self._lock:
            self._check_mutable()
            self._track(plugin)
            self._hooks[hook].append(_Registration(plugin=plugin, callback=callback))
        logger.debug("hook.registered", plugin=plugin, hook=hook.value)

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True
        logger.debug("hook.registry_frozen", plugins=self._plugins)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RuntimeError("Hook registry is frozen; register plugins before discovery completes")

    def _track(self, plugin: str) -> None:
        if plugin not in self._plugins:
            self._plugins.append(plugin)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def plugins(self) -> list[str]:
        return list(self._plugins)

    def hooks_for(self, name: str | HookName) -> list[str]:
        """Labels (``plugin:callback``) registered on a hook, in order."""
        return [r.label for r in self._hooks[hook_name(name)]]

    def args_for(self, plugin: str) -> dict[str, Any]:
        return dict(self._args.get(plugin, {}))

    def arg_names(self) -> set[str]:
        return {name for args in self._args.values() for name in args}

    def effective_args(self, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Plugin defaults overlaid by configured values (configuration wins)."""
        merged: dict[str, Any] = {}
        for args in self._args.values():
            merged.update(args)
        merged.update(overrides or {})
        return merged

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def execute(self, name: str | HookName, *args: Any, **kwargs: Any) -> HookOutcome:
        """Invoke every callback registered on ``name`` in registration order.

        Raises:
            HookRejected: A callback on a blocking hook failed.
            ConfigError: ``name`` is not a known hook.
        """
        hook = hook_name(name)
        registrations = list(self._hooks[hook])
        outcome = HookOutcome(hook=hook)
        blocking = hook in BLOCKING_HOOKS
        if registrations:
            logger.debug("hook.dispatch", hook=hook.value, callbacks=len(registrations))

        for registration in registrations:
            outcome.invoked += 1
            error = self._invoke(registration, hook, args, kwargs)
            if error is None:
                continue
            message = redact(str(error))
            outcome.failures.append((registration.label, message))
            if blocking:
                logger.warning(
                    "hook.rejected", hook=hook.value, callback=registration.label, error=message
                )
                if isinstance(error, HookRejected):
                    raise error
                raise HookRejected(
                    f"Hook '{hook.value}' rejected by {registration.label}: {message}", cause=error
                ) from error
            logger.warning(
                "hook.callback_failed", hook=hook.value, callback=registration.label, error=message
            )
        return outcome

    def _invoke(
        self,
        registration: _Registration,
        hook: HookName,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Exception | None:
        attempt = 1
        while True:
            try:
                registration.callback(*args, **kwargs)
                return None
            except HookRejected as e:
                return e
            except Exception as e:
                if not self._backoff.allows(attempt + 1):
                    return e
                attempt += 1
                delay = self._backoff.delay_before(attempt)
                logger.info(
                    "hook.callback_retry",
                    hook=hook.value,
                    callback=registration.label,
                    attempt=attempt,
                    delay=delay,
                )
                if delay > 0:
                    self._sleep(delay)


__all__ = [
    "BLOCKING_HOOKS",
    "HookCallback",
    "HookDispatcher",
    "HookEvent",
    "HookName",
    "HookOutcome",
    "hook_name",
]

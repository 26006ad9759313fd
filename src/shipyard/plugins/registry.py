"""Plugin registry and discovery.

Manifesto:
    Plugins register by name through a decorator; a deployment names the
    plugins it wants and discovery turns those names into an ordered,
    frozen hook registry.

Discovery orders plugins so that every plugin registers after the plugins
it ``depends_on``; a cycle or an unknown dependency is a ``ConfigError``.
Dependencies that are registered but not named are pulled in.

Tags:
    plugins, registry, discovery, dependency-order
"""

from collections.abc import Callable, Iterable

from shipyard.core.context import DeployContext
from shipyard.core.errors import ConfigError
from shipyard.core.logging import get_logger
from shipyard.deploy.hooks import HookDispatcher
from shipyard.plugins.base import Plugin

logger = get_logger(__name__)

# Global plugin registry
_registry: dict[str, type[Plugin]] = {}


def register_plugin(name: str) -> Callable[[type[Plugin]], type[Plugin]]:
    """Decorator to register a plugin class under ``name``."""

    def decorator(cls: type[Plugin]) -> type[Plugin]:
        if name in _registry and _registry[name] is not cls:
            raise ValueError(f"Plugin '{name}' is already registered")
        cls.name = name
        _registry[name] = cls
        logger.debug("plugin_registered", name=name, cls=cls.__name__)
        return cls

    return decorator


def get_plugin(name: str) -> type[Plugin]:
    if name not in _registry:
        available = ", ".join(sorted(_registry)) or "none"
        raise ConfigError(f"Unknown plugin '{name}'. Available: {available}")
    return _registry[name]


def list_plugins() -> list[str]:
    """List all registered plugin names."""
    return sorted(_registry)


def clear_registry() -> None:
    """Clear registry (for testing)."""
    _registry.clear()


def resolve_order(names: Iterable[str]) -> list[str]:
    """Dependency-first order of ``names`` and their transitive dependencies.

    Raises:
        ConfigError: unknown plugin, unknown dependency, or a cycle.
    """
    ordered: list[str] = []
    state: dict[str, str] = {}

    def visit(name: str, path: list[str]) -> None:
        if state.get(name) == "done":
            return
        if state.get(name) == "visiting":
            cycle = " -> ".join([*path[path.index(name):], name])
            raise ConfigError(f"Plugin dependency cycle: {cycle}")
        plugin = get_plugin(name)
        state[name] = "visiting"
        for dep in plugin.depends_on:
            if dep not in _registry:
                raise ConfigError(f"Plugin '{name}' depends on unknown plugin '{dep}'")
            visit(dep, [*path, name])
        state[name] = "done"
        ordered.append(name)

    for name in names:
        visit(name, [])
    return ordered


def discover_plugins(
    names: Iterable[str],
    dispatcher: HookDispatcher,
    ctx: DeployContext | None = None,
) -> list[Plugin]:
    """Instantiate, register and freeze the requested plugins."""
    instances: list[Plugin] = []
    for name in resolve_order(names):
        plugin = _registry[name](ctx)
        plugin.register(dispatcher)
        instances.append(plugin)
    dispatcher.freeze()
    logger.info("plugins.discovered", plugins=[p.name for p in instances])
    return instances


__all__ = [
    "register_plugin",
    "get_plugin",
    "list_plugins",
    "clear_registry",
    "resolve_order",
    "discover_plugins",
]

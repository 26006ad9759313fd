"""Configuration models for Shipyard.

Provides the Pydantic v2 models every deployment starts from. Process-level
knobs live in :class:`OrchestratorSettings` (overridable through
``SHIPYARD_*`` environment variables); the per-application description
lives in :class:`AppConfig`, produced once by :func:`load_config` and
validated before the orchestrator touches anything.

Why This Matters:
    Deployment configs arrive from CI as JSON documents written by humans,
    so ``"true"``, ``"3000"`` and ``"8080:80"`` all show up as strings. They
    are coerced here, once. Nothing downstream parses loosely-typed values
    mid-flow.

Key Concepts:
    OrchestratorSettings: Base directory, history retention, backoff
        constants, timeouts. ``from_env()`` reads ``SHIPYARD_*``.
    AppConfig: One application: image, routing, ports, health policy,
        plugins and plugin arguments.
    HealthCheckType: auto, none, http, tcp, database, container,
        rabbitmq, elasticsearch, kafka, command.
    load_config(): JSON file -> plugin defaults merged underneath ->
        validated AppConfig, or ``ConfigError``.

Architecture Decisions:
    - from_env() classmethod: Explicit env-var parsing rather than
      ``pydantic-settings``, keeping the dependency surface small.
    - Override precedence: kwargs > env vars > field defaults.
    - ``app_name`` and ``domain`` default to empty so that their absence is
      reported by the orchestrator's validating stage as ``ConfigError``
      rather than as a construction failure.

Related Modules:
    - :mod:`shipyard.deploy.hooks` — supplies plugin argument defaults
    - :mod:`shipyard.deploy.orchestrator` — consumes AppConfig

Tags:
    config, settings, pydantic, environment
"""

from __future__ import annotations

import hashlib
import json
import os
import re
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from shipyard.core.errors import ConfigError
from shipyard.deploy.models import PortMapping, RouteType

if TYPE_CHECKING:
    from shipyard.deploy.hooks import HookDispatcher

_APP_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")

# endpoint values that switch health checking off entirely
DISABLED_ENDPOINTS = frozenset({"none", "disabled"})


class HealthCheckType(str, Enum):
    """Health probe kinds understood by the Health Verifier."""

    AUTO = "auto"
    NONE = "none"
    HTTP = "http"
    TCP = "tcp"
    DATABASE = "database"
    CONTAINER = "container"
    RABBITMQ = "rabbitmq"
    ELASTICSEARCH = "elasticsearch"
    KAFKA = "kafka"
    COMMAND = "command"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class OrchestratorSettings(BaseModel):
    """Process-level settings shared by every deployment.

    Example::

        settings = OrchestratorSettings.from_env(base_dir="/tmp/shipyard")
    """

    base_dir: Path = Field(
        default=Path("/opt/shipyard"),
        description="Root directory for apps, data, locks and the registry",
    )
    registry_file: Path | None = Field(
        default=None,
        description="Registry document path (default: <base_dir>/service-registry.json)",
    )
    proxy_dir: Path | None = Field(
        default=None,
        description="Reverse proxy site config directory (default: <base_dir>/nginx/conf.d)",
    )
    history_retention: int = Field(default=10, ge=1, description="Version snapshots kept per service")

    # Health probing
    health_base_delay: float = Field(default=2.0, ge=0, description="Backoff base delay in seconds")
    health_max_delay: float = Field(default=30.0, ge=0, description="Backoff delay cap in seconds")
    health_max_attempts: int = Field(default=5, ge=1, description="Probe attempts per health check")
    verify_max_attempts: int = Field(default=8, ge=1, description="Probe attempts during verify")
    verify_timeout_factor: float = Field(
        default=2.0, gt=0, description="Multiplier applied to the per-attempt timeout during verify"
    )
    probe_host: str = Field(default="127.0.0.1", description="Host probes connect to")

    # Limits
    deploy_timeout: float = Field(default=1800.0, gt=0, description="Overall deployment deadline in seconds")
    port_range_max: int = Field(default=65535, ge=1, le=65535, description="Highest port searched")
    port_increment: int = Field(default=1, ge=1, description="Step between candidate ports")
    lock_timeout: float = Field(default=30.0, gt=0, description="Seconds to wait for a lock")
    lock_stale_after: float = Field(default=300.0, gt=0, description="Age after which a lock is broken")
    hook_max_attempts: int = Field(default=1, ge=1, description="Attempts per hook callback")
    min_free_disk_mb: int = Field(default=1000, ge=0, description="Free disk required by dependency check")

    # Runtime
    compose_command: str = Field(default="docker compose", description="Compose CLI invocation")
    proxy_container: str | None = Field(
        default=None, description="Container running nginx (reload via docker exec)"
    )
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool | None = Field(default=None, description="JSON logs (None = auto-detect)")

    @classmethod
    def from_env(cls, **overrides: Any) -> OrchestratorSettings:
        """Create settings from ``SHIPYARD_*`` environment variables.

        Override precedence: kwargs > env vars > defaults.
        """
        env_map: dict[str, tuple[str, Any]] = {
            "SHIPYARD_BASE_DIR": ("base_dir", Path),
            "SHIPYARD_REGISTRY_FILE": ("registry_file", Path),
            "SHIPYARD_PROXY_DIR": ("proxy_dir", Path),
            "SHIPYARD_HISTORY_RETENTION": ("history_retention", int),
            "SHIPYARD_HEALTH_BASE_DELAY": ("health_base_delay", float),
            "SHIPYARD_HEALTH_MAX_DELAY": ("health_max_delay", float),
            "SHIPYARD_HEALTH_MAX_ATTEMPTS": ("health_max_attempts", int),
            "SHIPYARD_VERIFY_MAX_ATTEMPTS": ("verify_max_attempts", int),
            "SHIPYARD_DEPLOY_TIMEOUT": ("deploy_timeout", float),
            "SHIPYARD_LOCK_TIMEOUT": ("lock_timeout", float),
            "SHIPYARD_HOOK_MAX_ATTEMPTS": ("hook_max_attempts", int),
            "SHIPYARD_MIN_FREE_DISK_MB": ("min_free_disk_mb", int),
            "SHIPYARD_COMPOSE_COMMAND": ("compose_command", str),
            "SHIPYARD_PROXY_CONTAINER": ("proxy_container", str),
            "SHIPYARD_LOG_LEVEL": ("log_level", str),
            "SHIPYARD_LOG_JSON": ("log_json", _env_bool),
        }
        kwargs: dict[str, Any] = {}
        for env_var, (field_name, converter) in env_map.items():
            value = os.environ.get(env_var)
            if value is None or value == "":
                continue
            try:
                kwargs[field_name] = converter(value)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_var}", cause=e) from e
        kwargs.update(overrides)
        try:
            return cls(**kwargs)
        except ValidationError as e:
            raise ConfigError(f"Invalid orchestrator settings: {_first_error(e)}", cause=e) from e


class AppConfig(BaseModel):
    """Effective configuration of one application.

    Example::

        config = AppConfig(
            app_name="demo",
            domain="example.com",
            image="nginx",
            port="8080:80",
            multi_stage=True,
        )
    """

    # Identity and routing
    command: str | None = Field(default=None, description="Action the document was written for")
    app_name: str = Field(default="", description="Unique application identifier")
    domain: str = Field(default="", description="Domain the app is served on")
    route_type: RouteType = Field(default=RouteType.PATH, description="path or subdomain routing")
    route: str = Field(default="", description="Path segment or subdomain label")
    ssl: bool = Field(default=True, description="Serve over HTTPS")
    ssl_email: str = Field(default="", description="Contact email for certificate issuance")

    # Artifact
    image: str = Field(default="", description="Image reference(s), comma-separated for multi-container")
    tag: str = Field(default="latest", description="Image tag(s), comma-separated or shared")
    port: str = Field(default="3000", description="Port spec: '3000', '8080:80' or comma list")
    env_vars: dict[str, str] = Field(default_factory=dict, description="Container environment")
    volumes: list[str] = Field(default_factory=list, description="Volume mappings")
    extra_hosts: list[str] = Field(default_factory=list, description="Extra /etc/hosts entries")
    compose_file: str | None = Field(default=None, description="User-provided compose file to use verbatim")
    use_profiles: bool = Field(default=True, description="Put services under the 'app' compose profile")
    persistent: bool = Field(default=False, description="Data survives redeploys; cleanup needs --force")

    # Rollout policy
    multi_stage: bool = Field(default=False, description="Deploy to staging, verify, then cut over")
    check_dependencies: bool = Field(default=False, description="Run precondition checks in preparing")
    auto_rollback: bool = Field(default=True, description="Restore the previous version on failure")
    keep_backup: bool = Field(default=False, description="Keep the pre-cutover app directory")
    port_auto_assign: bool = Field(default=True, description="Pick another port when the requested one is taken")
    version_tracking: bool = Field(default=True, description="Record deploys in the registry")
    dry_run: bool = Field(default=False, description="Render and log, change nothing")

    # Health policy
    health_check: str | None = Field(
        default=None, description="HTTP path, 'none'/'disabled', or None for detection"
    )
    health_check_type: HealthCheckType = Field(default=HealthCheckType.AUTO, description="Probe kind")
    health_check_timeout: float = Field(default=60.0, gt=0, description="Per-attempt probe timeout in seconds")
    health_check_attempts: int | None = Field(default=None, ge=1, description="Override probe attempts")
    health_check_command: str | None = Field(default=None, description="Command for 'command' probes")

    # Plugins
    plugins: list[str] = Field(default_factory=list, description="Plugins to activate")
    plugin_args: dict[str, Any] = Field(default_factory=dict, description="Plugin arguments")

    @field_validator("app_name")
    @classmethod
    def _check_app_name(cls, value: str) -> str:
        if value and not _APP_NAME_RE.match(value):
            raise ValueError("app_name must match [a-z0-9][a-z0-9_-]*")
        return value

    @field_validator("port", mode="before")
    @classmethod
    def _coerce_port(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        if isinstance(value, list):
            return ",".join(str(v) for v in value)
        return value

    @field_validator("port")
    @classmethod
    def _check_port(cls, value: str) -> str:
        try:
            _parse_ports(value)
        except ValueError as e:
            raise ValueError(f"invalid port spec {value!r}") from e
        return value

    @field_validator("volumes", "extra_hosts", "plugins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value

    @field_validator("env_vars", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else {}
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def health_disabled(self) -> bool:
        return (
            self.health_check_type == HealthCheckType.NONE
            or (self.health_check or "").strip().lower() in DISABLED_ENDPOINTS
        )

    def port_mappings(self) -> list[PortMapping]:
        return _parse_ports(self.port)

    def images(self) -> list[str]:
        return [i.strip() for i in self.image.split(",") if i.strip()]

    def tags(self) -> list[str]:
        """One tag per image; a single tag is shared by all images."""
        tags = [t.strip() for t in self.tag.split(",") if t.strip()] or ["latest"]
        images = self.images()
        if len(tags) == 1:
            return tags * max(len(images), 1)
        return tags

    def image_refs(self) -> list[str]:
        return [f"{image}:{tag}" for image, tag in zip(self.images(), self.tags(), strict=False)]

    def arg(self, name: str, default: Any = None) -> Any:
        return self.plugin_args.get(name, default)

    def config_digest(self) -> str:
        """SHA-256 of the canonical effective configuration."""
        payload = self.model_dump(mode="json", exclude={"dry_run"})
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def with_artifact(self, image: str, tag: str, ports: list[PortMapping]) -> AppConfig:
        """Copy of this config pointing at another image/tag/ports (for restores)."""
        return self.model_copy(
            update={"image": image, "tag": tag, "port": ",".join(str(p) for p in ports)}
        )


def service_name_for(image: str) -> str:
    """Compose service name derived from an image reference."""
    name = image.rsplit("/", 1)[-1].split(":", 1)[0]
    return re.sub(r"[^a-z0-9_-]", "-", name.lower()) or "app"


def _parse_ports(spec: str) -> list[PortMapping]:
    parts = [p.strip() for p in str(spec).split(",") if p.strip()]
    if not parts:
        raise ValueError("empty port spec")
    return [PortMapping.parse(p) for p in parts]


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    location = ".".join(str(p) for p in err.get("loc", ())) or "config"
    return f"{location}: {err.get('msg', 'invalid value')}"


def read_config_document(source: str | Path) -> dict[str, Any]:
    """Read a JSON configuration document without validating it."""
    path = Path(source)
    try:
        text = path.read_text()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}", cause=e).with_context(path=str(path))
    except PermissionError as e:
        raise ConfigError(f"Config file not readable: {path}", cause=e).with_context(path=str(path))
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e.msg} (line {e.lineno})", cause=e).with_context(
            path=str(path)
        )
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be an object: {path}")
    return raw


def load_config(
    source: str | Path | dict[str, Any],
    dispatcher: HookDispatcher | None = None,
    **overrides: Any,
) -> AppConfig:
    """Load, merge and validate an application configuration.

    Args:
        source: Path to a JSON document, or an already-parsed mapping.
        dispatcher: Supplies plugin argument defaults. Top-level keys that
            match a registered plugin argument are moved into ``plugin_args``.
        **overrides: Values that win over the document (CLI flags).

    Raises:
        ConfigError: Unreadable file, invalid JSON or failed validation.
    """
    raw = dict(source) if isinstance(source, dict) else read_config_document(source)
    raw.update({k: v for k, v in overrides.items() if v is not None})

    known = set(AppConfig.model_fields)
    plugin_args: dict[str, Any] = dict(raw.pop("plugin_args", None) or {})
    if dispatcher is not None:
        arg_names = dispatcher.arg_names()
        for key in list(raw):
            if key not in known and key in arg_names:
                plugin_args[key] = raw.pop(key)
        plugin_args = dispatcher.effective_args(plugin_args)
    raw["plugin_args"] = plugin_args

    unknown = sorted(k for k in raw if k not in known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_first_error(e)}", cause=e) from e


__all__ = [
    "DISABLED_ENDPOINTS",
    "HealthCheckType",
    "OrchestratorSettings",
    "AppConfig",
    "load_config",
    "read_config_document",
    "service_name_for",
]

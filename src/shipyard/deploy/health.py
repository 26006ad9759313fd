"""Health Verifier: one detection + retry/backoff probe cycle.

Runs before every irreversible transition of a rollout. The verifier picks
a probe kind for the instance (or uses the configured one), then probes it
up to ``max_attempts`` times with exponential backoff between attempts.
Transient probe errors are absorbed here; callers only ever see a final
:class:`HealthResult` with the last diagnostic attached.

Why This Matters:
    "The container started" is not "the service works". A Postgres image
    accepts TCP connections long before it accepts queries; an app can
    answer 502 while its workers boot. Each probe kind looks for an
    unambiguous success signal for its backend.

Key Concepts:
    detect_type(): image/endpoint heuristics -> HealthCheckType, tcp fallback.
    check_once(): a single probe attempt -> ProbeResult.
    check_with_retry(): attempts with a hard per-attempt deadline; wait before
        attempt *i* (i >= 2) is ``base_delay * 2**(i-1)`` capped at
        ``max_delay``; attempt 1 has no prior wait.
    HealthResult: healthy flag, attempt count, cumulative wait, detail and
        container diagnostics (last log lines, status, exit code).

Probe success markers:
    ============== ==================================================
    http           2xx or 3xx from ``http://host:port{endpoint}``
    tcp            connection accepted
    database       pg_isready / mysqladmin ping / mongo ping "ok"
    container      Health.Status == healthy, or no healthcheck + running
    rabbitmq       ``rabbitmqctl status`` mentions RabbitMQ
    elasticsearch  ``/_cluster/health`` body contains "status"
    kafka          ``kafka-topics.sh --list`` exits 0
    command        configured command exits 0
    ============== ==================================================

Related Modules:
    - :mod:`shipyard.execution.retry` — ExponentialBackoff
    - :mod:`shipyard.execution.timeout` — per-attempt hard deadline
    - :mod:`shipyard.deploy.container` — exec/inspect for in-container probes

Tags:
    health, probes, retry, backoff, httpx
"""

from __future__ import annotations

import socket
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from shipyard.core.errors import ShipyardError
from shipyard.core.logging import get_logger
from shipyard.core.redaction import redact
from shipyard.deploy.config import DISABLED_ENDPOINTS, HealthCheckType
from shipyard.deploy.container import ContainerManager
from shipyard.execution.retry import ExponentialBackoff
from shipyard.execution.timeout import TimeoutExpired, run_with_timeout

logger = get_logger(__name__)

DEFAULT_ENDPOINT = "/health"
DIAGNOSTIC_LOG_LINES = 20

# (image substring, probe kind), first match wins
_IMAGE_RULES: list[tuple[tuple[str, ...], HealthCheckType]] = [
    (("redis",), HealthCheckType.TCP),
    (("postgres", "mysql", "mariadb", "mongo"), HealthCheckType.DATABASE),
    (("rabbitmq",), HealthCheckType.RABBITMQ),
    (("kafka",), HealthCheckType.KAFKA),
    (("elasticsearch",), HealthCheckType.ELASTICSEARCH),
    (("nginx", "httpd", "caddy"), HealthCheckType.HTTP),
]


@dataclass
class ProbeResult:
    """Outcome of a single probe attempt."""

    ok: bool
    detail: str = ""

    @classmethod
    def passed(cls, detail: str = "ok") -> ProbeResult:
        return cls(ok=True, detail=detail)

    @classmethod
    def failed(cls, detail: str) -> ProbeResult:
        return cls(ok=False, detail=redact(detail))


@dataclass
class HealthResult:
    """Final verdict of a probe cycle.

    ``detail`` always holds the last diagnostic so callers can log an
    actionable failure, not just a boolean.
    """

    healthy: bool
    attempts: int
    check_type: HealthCheckType
    detail: str = ""
    waited: float = 0.0
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "attempts": self.attempts,
            "check_type": self.check_type.value,
            "detail": self.detail,
            "waited": round(self.waited, 3),
            "diagnostics": self.diagnostics,
        }


class HealthVerifier:
    """Detects probe kinds and runs retrying health checks.

    Parameters
    ----------
    containers
        Runtime used by in-container probes and failure diagnostics.
    host
        Host the http/tcp/elasticsearch probes connect to.
    base_delay, max_delay
        Backoff constants in seconds.
    sleep
        Injected for tests; defaults to ``time.sleep``.
    """

    def __init__(
        self,
        containers: ContainerManager | None = None,
        host: str = "127.0.0.1",
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.containers = containers
        self.host = host
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._probes: dict[HealthCheckType, Callable[..., ProbeResult]] = {
            HealthCheckType.HTTP: self._probe_http,
            HealthCheckType.TCP: self._probe_tcp,
            HealthCheckType.DATABASE: self._probe_database,
            HealthCheckType.CONTAINER: self._probe_container,
            HealthCheckType.RABBITMQ: self._probe_rabbitmq,
            HealthCheckType.ELASTICSEARCH: self._probe_elasticsearch,
            HealthCheckType.KAFKA: self._probe_kafka,
            HealthCheckType.COMMAND: self._probe_command,
        }

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_type(
        self,
        app_name: str,
        image: str,
        endpoint: str | None,
        container_ref: str | None = None,
    ) -> HealthCheckType:
        """Classify an instance into a probe kind.

        Image signals win, then a healthcheck declared by the container, then
        an explicit HTTP path; with no signal at all the probe is ``tcp``.
        """
        if endpoint is not None and endpoint.strip().lower() in DISABLED_ENDPOINTS:
            return HealthCheckType.NONE

        lowered = image.lower()
        for needles, check_type in _IMAGE_RULES:
            if any(n in lowered for n in needles):
                return check_type

        container = container_ref or f"{app_name}-app"
        if self.containers is not None:
            try:
                if self.containers.has_healthcheck(container):
                    return HealthCheckType.CONTAINER
            except ShipyardError as e:
                logger.debug("health.detect_inspect_failed", container=container, error=str(e))

        if endpoint and endpoint.startswith("/"):
            return HealthCheckType.HTTP
        return HealthCheckType.TCP

    def resolve_type(
        self,
        configured: HealthCheckType,
        app_name: str,
        image: str,
        endpoint: str | None,
        container_ref: str | None = None,
    ) -> HealthCheckType:
        """Explicit configuration overrides detection."""
        if configured != HealthCheckType.AUTO:
            return configured
        detected = self.detect_type(app_name, image, endpoint, container_ref)
        logger.debug("health.type_detected", app_name=app_name, check_type=detected.value)
        return detected

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    def check_once(
        self,
        check_type: HealthCheckType,
        port: int | None,
        endpoint: str | None = None,
        timeout: float = 5.0,
        container_ref: str | None = None,
        command: str | None = None,
    ) -> ProbeResult:
        """One probe attempt. Probe-level errors become a failed result."""
        probe = self._probes.get(check_type)
        if probe is None:
            return ProbeResult.failed(f"No probe for check type '{check_type.value}'")
        try:
            return probe(
                port=port,
                endpoint=endpoint or DEFAULT_ENDPOINT,
                timeout=timeout,
                container_ref=container_ref,
                command=command,
            )
        except (OSError, httpx.HTTPError, subprocess.SubprocessError, ShipyardError) as e:
            return ProbeResult.failed(f"{check_type.value} probe error: {e}")

    def check_with_retry(
        self,
        app_name: str,
        port: int | None,
        endpoint: str | None = None,
        max_attempts: int = 5,
        timeout: float = 60.0,
        check_type: HealthCheckType = HealthCheckType.AUTO,
        container_ref: str | None = None,
        command: str | None = None,
        image: str = "",
    ) -> HealthResult:
        """Probe up to ``max_attempts`` times; never a further attempt.

        Each attempt is bounded by ``timeout`` seconds; the loop as a whole
        is bounded only by the caller's deployment deadline.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        container = container_ref or f"{app_name}-app"
        resolved = self.resolve_type(check_type, app_name, image, endpoint, container)
        if resolved == HealthCheckType.NONE:
            logger.info("health.disabled", app_name=app_name)
            return HealthResult(healthy=True, attempts=0, check_type=resolved, detail="health check disabled")

        backoff = ExponentialBackoff(
            max_attempts=max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )
        waited = 0.0
        last = ProbeResult.failed("no attempt made")

        for attempt, delay in backoff.schedule():
            if attempt > 1:
                logger.info("health.waiting", app_name=app_name, attempt=attempt, delay=delay)
                self._sleep(delay)
                waited += delay

            try:
                last = run_with_timeout(
                    self.check_once,
                    timeout,
                    resolved,
                    port,
                    endpoint,
                    timeout,
                    container,
                    command,
                    operation=f"{resolved.value} probe",
                )
            except TimeoutExpired as e:
                last = ProbeResult.failed(str(e))

            if last.ok:
                logger.info(
                    "health.passed",
                    app_name=app_name,
                    check_type=resolved.value,
                    attempt=attempt,
                    waited=waited,
                )
                return HealthResult(
                    healthy=True,
                    attempts=attempt,
                    check_type=resolved,
                    detail=last.detail,
                    waited=waited,
                )

            logger.warning(
                "health.attempt_failed",
                app_name=app_name,
                check_type=resolved.value,
                attempt=attempt,
                max_attempts=max_attempts,
                detail=last.detail,
            )

        diagnostics = self.collect_diagnostics(container)
        logger.error(
            "health.failed",
            app_name=app_name,
            check_type=resolved.value,
            attempts=max_attempts,
            detail=last.detail,
        )
        return HealthResult(
            healthy=False,
            attempts=max_attempts,
            check_type=resolved,
            detail=last.detail,
            waited=waited,
            diagnostics=diagnostics,
        )

    def collect_diagnostics(self, container: str) -> dict[str, Any]:
        """Last log lines, status and exit code of a failing container."""
        if self.containers is None:
            return {}
        try:
            return {
                "container": container,
                "status": self.containers.status(container).value,
                "exit_code": self.containers.exit_code(container),
                "logs": self.containers.logs(container, tail=DIAGNOSTIC_LOG_LINES),
            }
        except ShipyardError as e:
            logger.warning("health.diagnostics_unavailable", container=container, error=str(e))
            return {"container": container, "error": redact(str(e))}

    # ------------------------------------------------------------------
    # Probe kinds
    # ------------------------------------------------------------------

    def _url(self, port: int | None, path: str) -> str:
        if port is None:
            raise OSError("no port to probe")
        if not path.startswith("/"):
            path = "/" + path
        return f"http://{self.host}:{port}{path}"

    def _probe_http(self, *, port: int | None, endpoint: str, timeout: float, **_: Any) -> ProbeResult:
        response = httpx.get(self._url(port, endpoint), timeout=timeout, follow_redirects=False)
        if 200 <= response.status_code < 400:
            return ProbeResult.passed(f"HTTP {response.status_code}")
        return ProbeResult.failed(f"HTTP {response.status_code} from {endpoint}")

    def _probe_tcp(self, *, port: int | None, timeout: float, **_: Any) -> ProbeResult:
        if port is None:
            return ProbeResult.failed("no port to probe")
        with socket.create_connection((self.host, port), timeout=timeout):
            return ProbeResult.passed(f"port {port} accepting connections")

    def _probe_elasticsearch(self, *, port: int | None, timeout: float, **_: Any) -> ProbeResult:
        response = httpx.get(self._url(port, "/_cluster/health"), timeout=timeout)
        if "status" in response.text:
            return ProbeResult.passed(f"cluster health HTTP {response.status_code}")
        return ProbeResult.failed(f"cluster health missing status (HTTP {response.status_code})")

    def _require_containers(self) -> ContainerManager:
        if self.containers is None:
            raise OSError("container runtime not configured")
        return self.containers

    def _probe_database(self, *, container_ref: str, timeout: float, **_: Any) -> ProbeResult:
        containers = self._require_containers()
        t = int(max(timeout, 1))
        if containers.exec(container_ref, ["pg_isready"], timeout=t).returncode == 0:
            return ProbeResult.passed("pg_isready")
        if containers.exec(container_ref, ["mysqladmin", "ping", "--silent"], timeout=t).returncode == 0:
            return ProbeResult.passed("mysqladmin ping")
        mongo = containers.exec(
            container_ref, ["mongo", "--quiet", "--eval", "db.adminCommand('ping')"], timeout=t
        )
        if mongo.returncode == 0 and "ok" in mongo.stdout:
            return ProbeResult.passed("mongo ping")
        return ProbeResult.failed(f"database in {container_ref} not accepting queries")

    def _probe_container(self, *, container_ref: str, **_: Any) -> ProbeResult:
        containers = self._require_containers()
        state = containers.inspect_state(container_ref)
        if state is None:
            return ProbeResult.failed(f"container {container_ref} not found")
        health = state.get("Health")
        if health:
            status = health.get("Status", "unknown")
            if status == "healthy":
                return ProbeResult.passed("container healthy")
            return ProbeResult.failed(f"container health is {status}")
        if state.get("Running"):
            return ProbeResult.passed("container running (no healthcheck)")
        return ProbeResult.failed(f"container {container_ref} is {state.get('Status', 'not running')}")

    def _probe_rabbitmq(self, *, container_ref: str, timeout: float, **_: Any) -> ProbeResult:
        result = self._require_containers().exec(
            container_ref, ["rabbitmqctl", "status"], timeout=int(max(timeout, 1))
        )
        if "RabbitMQ" in result.stdout:
            return ProbeResult.passed("rabbitmqctl status")
        return ProbeResult.failed("rabbitmqctl status did not report RabbitMQ")

    def _probe_kafka(self, *, container_ref: str, timeout: float, **_: Any) -> ProbeResult:
        result = self._require_containers().exec(
            container_ref,
            ["kafka-topics.sh", "--bootstrap-server", "localhost:9092", "--list"],
            timeout=int(max(timeout, 1)),
        )
        if result.returncode == 0:
            return ProbeResult.passed("kafka topics listed")
        return ProbeResult.failed(f"kafka-topics.sh exited {result.returncode}")

    def _probe_command(self, *, command: str | None, timeout: float, **_: Any) -> ProbeResult:
        if not command:
            return ProbeResult.failed("no health check command configured")
        result = subprocess.run(
            ["sh", "-c", command],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        if result.returncode == 0:
            return ProbeResult.passed("command exited 0")
        return ProbeResult.failed(f"command exited {result.returncode}: {result.stderr.strip()[-200:]}")


__all__ = [
    "DEFAULT_ENDPOINT",
    "HealthResult",
    "HealthVerifier",
    "ProbeResult",
]

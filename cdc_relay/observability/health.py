"""Health check endpoints and relay status surface."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from threading import Lock, Thread
from typing import Any, Callable, Dict, Optional

from cdc_relay.common.config import get_settings


class HealthStatus(str, Enum):
    """Health status enum."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for a component."""

    name: str
    status: HealthStatus
    message: str
    checked_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)


class HealthChecker:
    """Health check orchestrator.

    Relays and partition lanes register here as components; the registry and
    the HTTP endpoint read from it. Updates come from many lane threads, so
    every access goes through one lock.
    """

    def __init__(self) -> None:
        """Initialize health checker."""
        self._components: Dict[str, ComponentHealth] = {}
        self._lock = Lock()

    def register_component(self, name: str) -> None:
        """
        Register a component for health checking.

        Args:
            name: Component name
        """
        self.update_component_health(name, HealthStatus.HEALTHY, "Component registered")

    def update_component_health(
        self,
        name: str,
        status: HealthStatus,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Update component health status.

        Args:
            name: Component name
            status: Health status
            message: Status message
            details: Extra status fields (state, positions, last error)
        """
        with self._lock:
            self._components[name] = ComponentHealth(
                name=name,
                status=status,
                message=message,
                checked_at=datetime.now(timezone.utc),
                details=dict(details or {}),
            )

    def remove_component(self, name: str) -> None:
        with self._lock:
            self._components.pop(name, None)

    def get_component_health(self, name: str) -> Optional[ComponentHealth]:
        """
        Get health status for a component.

        Args:
            name: Component name

        Returns:
            Component health or None if not registered
        """
        with self._lock:
            return self._components.get(name)

    def get_overall_health(self) -> HealthStatus:
        """
        Get overall system health.

        Returns:
            Overall health status
        """
        with self._lock:
            statuses = [comp.status for comp in self._components.values()]

        if all(s == HealthStatus.HEALTHY for s in statuses):
            return HealthStatus.HEALTHY
        elif any(s == HealthStatus.UNHEALTHY for s in statuses):
            return HealthStatus.UNHEALTHY
        else:
            return HealthStatus.DEGRADED

    def get_health_report(self) -> Dict[str, Any]:
        """
        Get full health report.

        Returns:
            Health report dictionary
        """
        overall_status = self.get_overall_health()
        with self._lock:
            components = list(self._components.values())

        return {
            "status": overall_status.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": [
                {
                    "name": comp.name,
                    "status": comp.status.value,
                    "message": comp.message,
                    "checked_at": comp.checked_at.isoformat(),
                    "details": comp.details,
                }
                for comp in components
            ],
        }


class HealthCheckHandler(BaseHTTPRequestHandler):
    """HTTP handler for health check and status endpoints."""

    health_checker: HealthChecker
    status_provider: Optional[Callable[[], Dict[str, Any]]] = None

    def do_GET(self) -> None:
        """Handle GET requests."""
        if self.path == "/health":
            report = self.health_checker.get_health_report()
            # Return 200 for healthy, 503 for unhealthy/degraded
            status_code = 200 if report["status"] == "healthy" else 503
            self._send_json(status_code, report)

        elif self.path == "/health/ready":
            report = self.health_checker.get_health_report()
            status_code = 200 if report["status"] != "unhealthy" else 503
            self._send_json(status_code, {"ready": status_code == 200})

        elif self.path == "/health/live":
            self._send_json(200, {"alive": True})

        elif self.path == "/status":
            provider = type(self).status_provider
            if provider is None:
                self._send_json(404, {"error": "no status provider"})
            else:
                self._send_json(200, provider())

        else:
            self.send_response(404)
            self.end_headers()

    def _send_json(self, status_code: int, body: Dict[str, Any]) -> None:
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(body, default=str).encode())

    def log_message(self, format: str, *args) -> None:  # type: ignore
        """Suppress default logging."""
        pass


class HealthCheckServer:
    """HTTP server for health check endpoints."""

    def __init__(
        self,
        health_checker: HealthChecker,
        port: Optional[int] = None,
        status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        host: str = "0.0.0.0",
    ) -> None:
        """
        Initialize health check server.

        Args:
            health_checker: Health checker instance
            port: Port to listen on (default from config, 0 picks a free port)
            status_provider: Callable returning the ``/status`` document
            host: Interface to bind
        """
        settings = get_settings()
        self.port = settings.observability.health_check_port if port is None else port
        self.health_checker = health_checker

        # One handler class per server so two servers never share state
        handler = type(
            "BoundHealthCheckHandler",
            (HealthCheckHandler,),
            {"health_checker": health_checker, "status_provider": staticmethod(status_provider)
             if status_provider else None},
        )

        self.server = HTTPServer((host, self.port), handler)
        self.port = self.server.server_address[1]
        self._thread: Optional[Thread] = None

    def start(self) -> None:
        """Start health check server in background thread."""
        self._thread = Thread(target=self.server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop health check server."""
        self.server.shutdown()
        self.server.server_close()
        if self._thread:
            self._thread.join()

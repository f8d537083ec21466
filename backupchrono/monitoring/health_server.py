"""
Health check HTTP endpoint for the backup service
"""

import json
import socket
from datetime import datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from threading import Thread
from typing import Any

from backupchrono import __version__
from backupchrono.utils import get_logger


class HealthCheckHandler(BaseHTTPRequestHandler):
    """HTTP handler for health check endpoints"""

    def __init__(self, *args: Any, orchestrator: Any = None, **kwargs: Any) -> None:
        self.orchestrator = orchestrator
        self.logger = get_logger("health_server")
        super().__init__(*args, **kwargs)

    def do_GET(self) -> None:
        """Handle GET requests"""
        if self.path == "/health":
            self._handle_health()
        elif self.path == "/ready":
            self._handle_ready()
        elif self.path == "/status":
            self._handle_status()
        else:
            self._send_response(404, {"error": "Not Found"})

    def _handle_health(self) -> None:
        """Liveness - healthy whenever the server answers"""
        self._send_response(
            200,
            {
                "status": "healthy",
                "timestamp": datetime.now().isoformat(),
                "service": "backupchrono",
                "version": __version__,
            },
        )

    def _handle_ready(self) -> None:
        """Readiness - the scheduler loop must be running"""
        if not self.orchestrator:
            self._send_response(
                503, {"status": "not_ready", "reason": "orchestrator_not_initialized"}
            )
            return

        health = self.orchestrator.health()
        if not health["scheduler_running"]:
            self._send_response(
                503, {"status": "not_ready", "reason": "scheduler_not_running"}
            )
            return

        self._send_response(
            200,
            {
                "status": "ready",
                "timestamp": datetime.now().isoformat(),
                "suspended": health["suspended"],
                "uptime_seconds": health["uptime_seconds"],
            },
        )

    def _handle_status(self) -> None:
        """Locked resources, active jobs and suspension state"""
        if not self.orchestrator:
            self._send_response(503, {"error": "orchestrator_not_available"})
            return

        status = {"timestamp": datetime.now().isoformat(), **self.orchestrator.health()}
        self._send_response(200, status)

    def _send_response(self, status_code: int, data: dict[str, Any]) -> None:
        """Send JSON response"""
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-cache")
        self.end_headers()

        response_body = json.dumps(data, ensure_ascii=False, indent=2, default=str)
        self.wfile.write(response_body.encode("utf-8"))

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use our logger instead of stderr"""
        self.logger.debug(f"Health server: {format % args}")


class HealthServer:
    """Serves the health endpoints from a background thread"""

    def __init__(self, orchestrator: Any = None, port: int = 8080, host: str = "0.0.0.0") -> None:  # nosec: B104
        self.orchestrator = orchestrator
        self.host = host
        self.port = self._find_available_port(port) if port else 0
        self.server: HTTPServer | None = None
        self.thread: Thread | None = None
        self.logger = get_logger("health_server")

    def _find_available_port(self, start_port: int) -> int:
        """Find an available port starting from start_port"""
        for port in range(start_port, start_port + 10):
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                    s.bind(("", port))
                    return port
            except OSError:
                continue
        raise OSError(
            f"No available ports found in range {start_port}-{start_port + 9}"
        )

    def start(self) -> None:
        """Start the health check server"""

        def handler(*args: Any, **kwargs: Any) -> HealthCheckHandler:
            return HealthCheckHandler(*args, orchestrator=self.orchestrator, **kwargs)

        try:
            self.server = HTTPServer((self.host, self.port), handler)
            self.port = self.server.server_address[1]
            self.thread = Thread(target=self.server.serve_forever, daemon=True)
            self.thread.start()

            self.logger.info(
                "Health check server started",
                port=self.port,
                endpoints=["/health", "/ready", "/status"],
            )
        except Exception as e:
            self.logger.error(f"Failed to start health server: {e}")
            raise

    def stop(self) -> None:
        """Stop the health check server"""
        if self.server:
            self.logger.info("Stopping health check server")
            self.server.shutdown()
            self.server.server_close()

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5.0)

        self.logger.info("Health check server stopped")

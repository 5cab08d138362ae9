#!/usr/bin/env python3
"""
QueueSync - Health & Trigger HTTP Server

Exposes pipeline health for external monitoring and lets the scheduler
trigger jobs over HTTP.

Endpoints:
    GET /ping                → Simple liveness check
    GET /health              → Database connectivity, queue sizes, breaker state
    GET /metrics             → Prometheus-compatible metrics
    GET|POST /jobs/<name>    → Run a job (?hours_back=&batch_size=&dry_run=)

Returns:
    200 OK          → Healthy / job succeeded
    404 Not Found   → Unknown path or job
    400 Bad Request → Invalid job options
    500             → Job failed
    503 Unavailable → A database is unreachable

Server: Runs on HEALTH_PORT (8080 by default). Single-threaded, so jobs
never overlap inside one server process.
"""

import json
import logging
import signal
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlsplit

from pydantic import ValidationError

from .core import (
    JobOptions,
    Settings,
    create_replica_repository,
    create_repository,
    get_all_circuit_stats,
    get_job_logger,
    get_settings,
)
from .worker import JOBS, build_job

logger = logging.getLogger("queuesync.health")

TRUE_VALUES = {"1", "true", "yes", "on"}


# =============================================================================
# HEALTH CHECK LOGIC
# =============================================================================
def check_connection(name: str, ping: Callable[[], Any]) -> bool:
    """Verify a database is reachable."""
    try:
        ping()
        return True
    except Exception as e:
        logger.error(f"{name} connection failed: {e}")
        return False


def perform_health_check(local, replica) -> dict[str, Any]:
    """
    Perform comprehensive health check.

    Returns dict with:
        - status: "healthy" | "warning" | "critical"
        - databases: connected bool per database
        - queue: active row counts per queue type
        - circuits: breaker stats
        - timestamp: check time
    """
    local_ok = check_connection("local_store", local.ping)
    replica_ok = check_connection("replica", replica.ping)

    queue = local.get_queue_stats() if local_ok else {"error": "local store not connected"}
    circuits = get_all_circuit_stats()

    status = "healthy"
    issues = []

    if not local_ok:
        status = "critical"
        issues.append("Local store unreachable")
    if not replica_ok:
        status = "critical"
        issues.append("Replica unreachable")

    open_circuits = [c["name"] for c in circuits if c["state"] != "closed"]
    if open_circuits:
        if status == "healthy":
            status = "warning"
        issues.append(f"Circuits not closed: {', '.join(open_circuits)}")

    return {
        "status": status,
        "issues": issues,
        "databases": {
            "local_store": local_ok,
            "replica": replica_ok,
        },
        "queue": queue,
        "circuits": circuits,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def format_prometheus_metrics(health: dict) -> str:
    """Format health data as Prometheus metrics."""
    lines = [
        "# HELP queuesync_up Whether the pipeline is up (1=healthy, 0=otherwise)",
        "# TYPE queuesync_up gauge",
        f"queuesync_up {1 if health['status'] == 'healthy' else 0}",
        "",
        "# HELP queuesync_database_connected Database reachability",
        "# TYPE queuesync_database_connected gauge",
    ]

    for name, connected in health["databases"].items():
        lines.append(f'queuesync_database_connected{{database="{name}"}} {1 if connected else 0}')

    if "error" not in health["queue"]:
        lines.append("")
        lines.append("# HELP queuesync_queue_size Active users by queue type")
        lines.append("# TYPE queuesync_queue_size gauge")
        for queue_type, count in health["queue"].items():
            lines.append(f'queuesync_queue_size{{queue="{queue_type}"}} {count}')

    if health["circuits"]:
        lines.append("")
        lines.append("# HELP queuesync_circuit_open Whether a circuit is rejecting calls")
        lines.append("# TYPE queuesync_circuit_open gauge")
        for circuit in health["circuits"]:
            lines.append(f'queuesync_circuit_open{{circuit="{circuit["name"]}"}} {0 if circuit["state"] == "closed" else 1}')
        lines.append("")
        lines.append("# HELP queuesync_circuit_success_rate Success rate over the last minute")
        lines.append("# TYPE queuesync_circuit_success_rate gauge")
        for circuit in health["circuits"]:
            lines.append(f'queuesync_circuit_success_rate{{circuit="{circuit["name"]}"}} {circuit["success_rate"]}')

    return "\n".join(lines) + "\n"


def parse_job_options(query: str) -> JobOptions:
    """Build JobOptions from a query string (raises ValidationError)."""
    params = {k: v[-1] for k, v in parse_qs(query).items()}
    return JobOptions(
        hours_back=params.get("hours_back") or None,
        batch_size=params.get("batch_size") or None,
        dry_run=params.get("dry_run", "").lower() in TRUE_VALUES,
    )


# =============================================================================
# HTTP SERVER
# =============================================================================
class HealthHandler(BaseHTTPRequestHandler):
    """HTTP request handler for health and job endpoints."""

    # Set by make_server()
    settings: Settings
    local: Any = None
    replica: Any = None

    def log_message(self, format, *args):
        """Override to use our logger."""
        logger.info(f"{self.address_string()} - {format % args}")

    def send_json(self, data: dict, status_code: int = 200):
        """Send JSON response."""
        body = json.dumps(data, indent=2, default=str).encode()
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        """Handle GET requests."""
        url = urlsplit(self.path)

        if url.path == "/ping":
            self.send_json({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})

        elif url.path == "/health":
            result = perform_health_check(self.local, self.replica)
            status_code = 200 if result["status"] == "healthy" else 503
            self.send_json(result, status_code)

        elif url.path == "/metrics":
            metrics = format_prometheus_metrics(perform_health_check(self.local, self.replica)).encode()
            self.send_response(200)
            self.send_header("Content-Type", "text/plain; version=0.0.4")
            self.send_header("Content-Length", str(len(metrics)))
            self.end_headers()
            self.wfile.write(metrics)

        elif url.path.startswith("/jobs/"):
            self.handle_job(url.path[len("/jobs/"):], url.query)

        else:
            self.send_json({"error": "Not found", "endpoints": ["/ping", "/health", "/metrics", "/jobs/<name>"]}, 404)

    def do_POST(self):
        """Handle POST requests (job triggers only)."""
        url = urlsplit(self.path)
        if url.path.startswith("/jobs/"):
            self.handle_job(url.path[len("/jobs/"):], url.query)
        else:
            self.send_json({"error": "Not found"}, 404)

    def handle_job(self, name: str, query: str):
        if name not in JOBS:
            self.send_json({"error": f"Unknown job '{name}'", "jobs": sorted(JOBS)}, 404)
            return

        try:
            options = parse_job_options(query)
        except ValidationError as e:
            self.send_json({"error": "Invalid job options", "details": e.errors(include_url=False)}, 400)
            return

        logger.info(f"Triggering {name} via HTTP")
        job = build_job(name, self.settings, local=self.local, replica=self.replica)
        result = job.run(options)
        self.send_json(result.to_wire(), 200 if result.success else 500)


def make_server(
    settings: Settings,
    local=None,
    replica=None,
    host: str = "0.0.0.0",
    port: Optional[int] = None,
) -> HTTPServer:
    """
    Build the HTTP server bound to the given repositories.

    Args:
        settings: Application settings
        local: Local store repository (built from settings if None)
        replica: Replica repository (built from settings if None)
        host: Bind address
        port: Bind port (settings.health_port if None, 0 for ephemeral)
    """
    handler = type(
        "BoundHealthHandler",
        (HealthHandler,),
        {
            "settings": settings,
            "local": local if local is not None else create_repository(settings),
            "replica": replica if replica is not None else create_replica_repository(settings),
        },
    )
    return HTTPServer((host, settings.health_port if port is None else port), handler)


# =============================================================================
# MAIN
# =============================================================================
def main():
    """Start the health check HTTP server."""
    settings = get_settings()
    get_job_logger(settings.log_path, settings.log_level)

    server = make_server(settings)

    # Graceful shutdown
    def shutdown_handler(sig, frame):
        logger.info("Shutting down health server...")
        server.server_close()
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    logger.info(f"Health server starting on port {server.server_address[1]}")
    logger.info("Endpoints: /ping, /health, /metrics, /jobs/<name>")
    logger.info("=" * 50)

    try:
        server.serve_forever()
    finally:
        server.server_close()
        logger.info("Health server stopped")


if __name__ == "__main__":
    main()

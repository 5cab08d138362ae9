"""Tests for the health and job-trigger HTTP server."""

import json
import threading
import urllib.error
import urllib.request

import pytest

from queuesync.core.circuit_breaker import get_database_circuits
from queuesync.core.models import QueueType
from queuesync.health_server import (
    format_prometheus_metrics,
    make_server,
    parse_job_options,
    perform_health_check,
)


@pytest.fixture
def server(settings, local, replica):
    httpd = make_server(settings, local=local, replica=replica, host="127.0.0.1", port=0)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()
    thread.join(timeout=5)


def request(server, path, method="GET"):
    url = f"http://127.0.0.1:{server.server_address[1]}{path}"
    req = urllib.request.Request(url, method=method, data=b"" if method == "POST" else None)
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            return resp.status, resp.headers.get("Content-Type"), resp.read().decode()
    except urllib.error.HTTPError as e:
        return e.code, e.headers.get("Content-Type"), e.read().decode()


@pytest.mark.unit
class TestHealthLogic:
    def test_healthy(self, local, replica):
        local.add_score(1, QueueType.UNSIGNED_USERS)

        health = perform_health_check(local, replica)

        assert health["status"] == "healthy"
        assert health["databases"] == {"local_store": True, "replica": True}
        assert health["queue"] == {"unsigned_users": 1, "outstanding_requests": 0}

    def test_replica_down_is_critical(self, local, replica):
        replica.fail["ping"] = ConnectionError("refused")

        health = perform_health_check(local, replica)

        assert health["status"] == "critical"
        assert "Replica unreachable" in health["issues"]

    def test_open_circuit_is_a_warning(self, local, replica, settings):
        local_breaker, _ = get_database_circuits(settings)
        local_breaker.force_open()

        health = perform_health_check(local, replica)

        assert health["status"] == "warning"

    def test_metrics_format(self, local, replica):
        local.add_score(1, QueueType.OUTSTANDING_REQUESTS)

        metrics = format_prometheus_metrics(perform_health_check(local, replica))

        assert "queuesync_up 1" in metrics
        assert 'queuesync_database_connected{database="replica"} 1' in metrics
        assert 'queuesync_queue_size{queue="outstanding_requests"} 1' in metrics

    def test_parse_job_options(self):
        options = parse_job_options("hours_back=3&batch_size=20&dry_run=true")

        assert options.hours_back == 3
        assert options.batch_size == 20
        assert options.dry_run is True
        assert parse_job_options("").dry_run is False


@pytest.mark.unit
class TestEndpoints:
    def test_ping(self, server):
        status, _, body = request(server, "/ping")
        assert status == 200
        assert json.loads(body)["status"] == "ok"

    def test_health_ok(self, server):
        status, content_type, body = request(server, "/health")
        assert status == 200
        assert content_type == "application/json"
        assert json.loads(body)["status"] == "healthy"

    def test_health_unavailable(self, server, local):
        local.fail["ping"] = ConnectionError("refused")

        status, _, body = request(server, "/health")

        assert status == 503
        assert json.loads(body)["databases"]["local_store"] is False

    def test_metrics(self, server):
        status, content_type, body = request(server, "/metrics")
        assert status == 200
        assert content_type.startswith("text/plain")
        assert "queuesync_up" in body

    def test_run_job(self, server, replica, local):
        replica.add_user(1)

        status, _, body = request(server, "/jobs/new-users?hours_back=2", method="POST")

        assert status == 200
        assert json.loads(body)["newUsersCreated"] == 1
        assert 1 in local.scores

    def test_unknown_job(self, server):
        status, _, body = request(server, "/jobs/reindex")
        assert status == 404
        assert "new-users" in json.loads(body)["jobs"]

    def test_invalid_options(self, server):
        status, _, body = request(server, "/jobs/new-users?batch_size=0")
        assert status == 400
        assert json.loads(body)["error"] == "Invalid job options"

    def test_failed_job(self, server, local):
        local.fail["list_queue_candidates"] = ConnectionError("down")

        status, _, body = request(server, "/jobs/signature-cleanup")

        assert status == 500
        assert json.loads(body)["success"] is False

    def test_unknown_path(self, server):
        status, _, _ = request(server, "/nope")
        assert status == 404

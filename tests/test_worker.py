"""Tests for the job runner CLI."""

import json

import pytest

from queuesync import worker
from queuesync.core.circuit_breaker import get_all_circuit_stats
from queuesync.core.models import QueueType
from queuesync.discovery.new_users import NewUsersDiscovery


@pytest.fixture
def wired(monkeypatch, local, replica):
    """Point build_job at the in-memory stores."""
    real_build_job = worker.build_job

    def build(name, settings, local_=None, replica_=None):
        return real_build_job(name, settings, local=local, replica=replica)

    monkeypatch.setattr(worker, "build_job", build)
    return local, replica


def run_cli(capsys, *argv):
    code = worker.main(list(argv))
    out = capsys.readouterr().out
    return code, json.loads(out)


@pytest.mark.unit
class TestBuildJob:
    def test_registry_covers_every_job(self):
        assert sorted(worker.JOBS) == [
            "agent-attribution",
            "new-requirements",
            "new-users",
            "outstanding-cleanup",
            "signature-cleanup",
        ]

    def test_builds_with_shared_breakers(self, settings, local, replica):
        job = worker.build_job("new-users", settings, local=local, replica=replica)

        assert isinstance(job, NewUsersDiscovery)
        assert job.local_breaker.name == "local_store"
        assert job.replica_breaker.name == "replica"
        assert {s["name"] for s in get_all_circuit_stats()} == {"local_store", "replica"}

    def test_unknown_job(self, settings):
        with pytest.raises(worker.UnknownJobError):
            worker.build_job("reindex", settings)


@pytest.mark.unit
class TestMain:
    def test_prints_camel_case_result(self, wired, capsys):
        _, replica = wired
        replica.add_user(1)

        code, payload = run_cli(capsys, "new-users", "--hours-back", "2")

        assert code == 0
        assert payload["success"] is True
        assert payload["newUsersCreated"] == 1
        assert payload["processingStrategy"] == "complete_processing"
        assert "durationMs" not in payload
        assert isinstance(payload["duration"], int)

    def test_dry_run_flag(self, wired, capsys):
        local, replica = wired
        local.add_score(1, QueueType.UNSIGNED_USERS)
        replica.add_user(1, signature=3)

        code, payload = run_cli(capsys, "signature-cleanup", "--dry-run")

        assert code == 0
        assert payload["dryRun"] is True
        assert payload["conversionsFound"] == 1
        assert local.scores[1].current_queue_type == QueueType.UNSIGNED_USERS

    def test_failed_job_exits_nonzero(self, wired, capsys):
        local, _ = wired
        local.fail["list_unattributed_conversions"] = ConnectionError("down")

        code, payload = run_cli(capsys, "agent-attribution")

        assert code == 1
        assert payload["success"] is False

    def test_invalid_batch_size(self, wired, capsys):
        assert worker.main(["new-users", "--batch-size", "0"]) == 1

    def test_startup_failure_is_reported(self, mocker, capsys):
        build = mocker.patch.object(worker, "build_job", side_effect=RuntimeError("bad credentials"))

        code, payload = run_cli(capsys, "new-users")

        assert code == 1
        assert payload["success"] is False
        assert payload["errors"] == ["bad credentials"]
        build.assert_called_once()

    def test_unknown_job_name_is_rejected_by_parser(self):
        with pytest.raises(SystemExit):
            worker.parse_args(["reindex"])

"""
Tests for ReplicaRepository against an in-memory SQLite database.

The tables mirror the replica columns the queries read.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
)
from sqlalchemy.pool import StaticPool

from queuesync.core.replica import ReplicaError, ReplicaRepository

NOW = datetime(2026, 3, 2, 12, 0)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("current_signature_file_id", Integer, nullable=True),
    Column("is_enabled", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False),
)

claims = Table(
    "claims",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
)

claim_requirements = Table(
    "claim_requirements",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("claim_id", Integer, ForeignKey("claims.id"), nullable=False),
    Column("type", String(64), nullable=False),
    Column("status", String(32), nullable=False),
    Column("created_at", DateTime, nullable=False),
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repo(engine):
    return ReplicaRepository(engine)


def seed(engine, user_rows=(), claim_rows=(), requirement_rows=()):
    with engine.begin() as conn:
        if user_rows:
            conn.execute(users.insert(), list(user_rows))
        if claim_rows:
            conn.execute(claims.insert(), list(claim_rows))
        if requirement_rows:
            conn.execute(claim_requirements.insert(), list(requirement_rows))


def user(user_id, signature=None, enabled=True, minutes_ago=10):
    return {
        "id": user_id,
        "current_signature_file_id": signature,
        "is_enabled": enabled,
        "created_at": NOW - timedelta(minutes=minutes_ago),
    }


def requirement(req_id, claim_id, req_type, status="pending", minutes_ago=10):
    return {
        "id": req_id,
        "claim_id": claim_id,
        "type": req_type,
        "status": status,
        "created_at": NOW - timedelta(minutes=minutes_ago),
    }


@pytest.mark.integration
class TestRecentUsers:
    def test_window_and_enabled_filter(self, engine, repo):
        seed(engine, [
            user(1, minutes_ago=10),
            user(2, signature=4, minutes_ago=30),
            user(3, minutes_ago=120),
            user(4, enabled=False, minutes_ago=5),
        ])

        rows = repo.fetch_recent_users(NOW - timedelta(hours=1))

        assert [r.id for r in rows] == [1, 2]
        assert rows[0].has_signature is False
        assert rows[1].has_signature is True
        assert isinstance(rows[0].created_at, datetime)


@pytest.mark.integration
class TestNewPendingRequirements:
    def test_joins_user_and_filters(self, engine, repo):
        seed(
            engine,
            [user(1, signature=9), user(2, enabled=False)],
            [{"id": 10, "user_id": 1}, {"id": 20, "user_id": 2}],
            [
                requirement(100, 10, "id_document", minutes_ago=5),
                requirement(101, 10, "signature"),
                requirement(102, 10, "letter_of_authority"),
                requirement(103, 10, "proof_of_address", status="completed"),
                requirement(104, 10, "bank_statement", minutes_ago=300),
                requirement(105, 20, "id_document", minutes_ago=15),
            ],
        )

        rows = repo.fetch_new_pending_requirements(NOW - timedelta(hours=1))

        assert [r.requirement_id for r in rows] == ["100", "105"]
        assert rows[0].user_id == 1
        assert rows[0].current_signature_file_id == 9
        assert rows[0].is_enabled is True
        assert rows[1].user_id == 2
        assert rows[1].is_enabled is False


@pytest.mark.integration
class TestCleanupReads:
    def test_signature_status(self, engine, repo):
        seed(engine, [user(1, signature=3), user(2), user(3, signature=8, enabled=False)])

        assert repo.fetch_signature_status([1, 2, 3, 4]) == {1: True, 2: False}

    def test_signature_status_empty_input(self, repo):
        assert repo.fetch_signature_status([]) == {}

    def test_pending_counts_span_all_claims(self, engine, repo):
        seed(
            engine,
            [user(1, signature=1), user(2, signature=1), user(3), user(4, signature=1)],
            [
                {"id": 10, "user_id": 1},
                {"id": 11, "user_id": 1},
                {"id": 20, "user_id": 2},
                {"id": 30, "user_id": 3},
            ],
            [
                requirement(1, 10, "id_document"),
                requirement(2, 11, "proof_of_address"),
                requirement(3, 11, "cfa"),
                requirement(4, 20, "id_document", status="completed"),
                requirement(5, 20, "vehicle_registration"),
                requirement(6, 30, "id_document", status="completed"),
            ],
        )

        counts = repo.fetch_pending_requirement_counts([1, 2, 3, 4])

        assert counts[1].pending_count == 2
        assert counts[2].pending_count == 0
        assert counts[2].has_signature is True
        assert counts[3].pending_count == 0
        assert counts[3].has_signature is False
        # A user without claims has nothing pending
        assert counts[4].pending_count == 0

    def test_pending_counts_skip_disabled_users(self, engine, repo):
        seed(engine, [user(1, signature=1, enabled=False)])

        assert repo.fetch_pending_requirement_counts([1]) == {}


@pytest.mark.integration
class TestErrors:
    def test_ping(self, repo):
        assert repo.ping() is True

    def test_sql_failure_is_wrapped(self, engine, repo):
        metadata.drop_all(engine)

        with pytest.raises(ReplicaError, match="fetch_signature_status failed"):
            repo.fetch_signature_status([1])

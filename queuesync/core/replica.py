"""
QueueSync - Replica Read Operations

Parameterized, read-only SQL against the operational MySQL replica
(users, claims, claim_requirements). Nothing in this module writes.
"""

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import DateTime, bindparam, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .models import (
    EXCLUDED_REQUIREMENT_TYPES,
    PendingRequirement,
    SourceUser,
    UserRequirementStatus,
)

logger = logging.getLogger("queuesync.replica")


class ReplicaError(Exception):
    """A replica query failed (connectivity, SQL, or driver error)."""


# =============================================================================
# QUERIES
# =============================================================================

RECENT_USERS_SQL = text("""
    SELECT u.id, u.current_signature_file_id, u.created_at
    FROM users u
    WHERE u.created_at >= :cutoff
      AND u.is_enabled = 1
    ORDER BY u.created_at DESC
""").bindparams(bindparam("cutoff", type_=DateTime)).columns(created_at=DateTime)

NEW_PENDING_REQUIREMENTS_SQL = text("""
    SELECT
        cr.id AS requirement_id,
        cr.type,
        cr.created_at,
        c.user_id,
        u.current_signature_file_id,
        u.is_enabled
    FROM claim_requirements cr
    JOIN claims c ON cr.claim_id = c.id
    JOIN users u ON c.user_id = u.id
    WHERE cr.created_at >= :cutoff
      AND cr.status = 'pending'
      AND cr.type NOT IN :excluded
    ORDER BY cr.created_at DESC
""").bindparams(
    bindparam("cutoff", type_=DateTime),
    bindparam("excluded", expanding=True),
).columns(created_at=DateTime)

SIGNATURE_STATUS_SQL = text("""
    SELECT id, current_signature_file_id
    FROM users
    WHERE id IN :user_ids
      AND is_enabled = 1
""").bindparams(bindparam("user_ids", expanding=True))

PENDING_REQUIREMENT_COUNTS_SQL = text("""
    SELECT
        u.id AS user_id,
        u.current_signature_file_id,
        COUNT(CASE
            WHEN cr.status = 'pending' AND cr.type NOT IN :excluded
            THEN 1
        END) AS pending_count
    FROM users u
    LEFT JOIN claims c ON u.id = c.user_id
    LEFT JOIN claim_requirements cr ON c.id = cr.claim_id
    WHERE u.id IN :user_ids
      AND u.is_enabled = 1
    GROUP BY u.id, u.current_signature_file_id
""").bindparams(
    bindparam("excluded", expanding=True),
    bindparam("user_ids", expanding=True),
)


class ReplicaRepository:
    """
    Read-only repository over the operational database replica.

    All methods return typed models. SQLAlchemy failures are logged and
    re-raised as ReplicaError; transient connection drops get one retry.
    """

    def __init__(self, engine: Engine):
        """
        Initialize repository with a SQLAlchemy engine.

        Args:
            engine: Engine bound to the replica (pool_pre_ping recommended)
        """
        self.engine = engine

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.25, max=1),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _execute(self, query, params: dict[str, Any]) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(query, params).mappings().all()
            return [dict(r) for r in rows]

    def _fetch(self, operation: str, query, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            return self._execute(query, params)
        except SQLAlchemyError as e:
            logger.error(f"Replica query {operation} failed: {e}")
            raise ReplicaError(f"{operation} failed: {e}") from e

    # =========================================================================
    # DISCOVERY READS
    # =========================================================================

    def fetch_recent_users(self, cutoff: datetime) -> list[SourceUser]:
        """
        Fetch enabled users created at or after cutoff, newest first.

        Args:
            cutoff: Lower bound on users.created_at

        Returns:
            Users with their current signature file reference
        """
        rows = self._fetch("fetch_recent_users", RECENT_USERS_SQL, {"cutoff": cutoff})
        return [SourceUser(**row) for row in rows]

    def fetch_new_pending_requirements(self, cutoff: datetime) -> list[PendingRequirement]:
        """
        Fetch pending, actionable requirements created at or after cutoff.

        Excluded types never block onboarding and are filtered in SQL.
        Each row carries the owning user's signature and enabled state.

        Args:
            cutoff: Lower bound on claim_requirements.created_at

        Returns:
            Requirements newest first
        """
        rows = self._fetch(
            "fetch_new_pending_requirements",
            NEW_PENDING_REQUIREMENTS_SQL,
            {"cutoff": cutoff, "excluded": list(EXCLUDED_REQUIREMENT_TYPES)},
        )
        return [
            PendingRequirement(
                requirement_id=str(row["requirement_id"]),
                user_id=row["user_id"],
                type=row["type"],
                created_at=row.get("created_at"),
                current_signature_file_id=row.get("current_signature_file_id"),
                is_enabled=bool(row.get("is_enabled", 1)),
            )
            for row in rows
        ]

    # =========================================================================
    # CLEANUP READS
    # =========================================================================

    def fetch_signature_status(self, user_ids: Iterable[int]) -> dict[int, bool]:
        """
        Current signature presence for enabled users.

        Disabled or unknown users are absent from the result.

        Returns:
            Dict of user_id -> has_signature
        """
        ids = list(user_ids)
        if not ids:
            return {}
        rows = self._fetch("fetch_signature_status", SIGNATURE_STATUS_SQL, {"user_ids": ids})
        return {row["id"]: row["current_signature_file_id"] is not None for row in rows}

    def fetch_pending_requirement_counts(self, user_ids: Iterable[int]) -> dict[int, UserRequirementStatus]:
        """
        Count pending actionable requirements across all claims of each user.

        One aggregate query per batch. Disabled or unknown users are absent
        from the result.

        Returns:
            Dict of user_id -> UserRequirementStatus
        """
        ids = list(user_ids)
        if not ids:
            return {}
        rows = self._fetch(
            "fetch_pending_requirement_counts",
            PENDING_REQUIREMENT_COUNTS_SQL,
            {"user_ids": ids, "excluded": list(EXCLUDED_REQUIREMENT_TYPES)},
        )
        return {
            row["user_id"]: UserRequirementStatus(
                user_id=row["user_id"],
                pending_count=int(row["pending_count"] or 0),
                has_signature=row["current_signature_file_id"] is not None,
            )
            for row in rows
        }

    def ping(self) -> bool:
        """Connectivity check used by the health endpoint."""
        self._fetch("ping", text("SELECT 1 AS ok"), {})
        return True


def create_replica_repository(settings: Settings) -> ReplicaRepository:
    """
    Factory function to create a ReplicaRepository.

    Args:
        settings: Application settings with the replica URL

    Returns:
        Configured ReplicaRepository instance
    """
    engine = create_engine(
        settings.replica_database_url,
        pool_pre_ping=True,
        pool_recycle=1800,
        echo=False,
    )
    return ReplicaRepository(engine)

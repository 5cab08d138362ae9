"""
QueueSync - Local Store Operations

All Supabase interactions for the reconciliation pipeline.
Implements staleness-ordered queue scans and optimistic "still in
expected state" updates.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from supabase import Client, create_client

from .config import Settings
from .models import CallSession, Conversion, QueueType, UserCallScore

logger = logging.getLogger("queuesync.db")

# PostgREST caps a single response; larger scans are paged
PAGE_SIZE = 1000

# Keep `in.(...)` filters well under URL length limits
IN_FILTER_CHUNK = 200


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class LocalStoreRepository:
    """
    Repository for user_call_scores, conversions and call_sessions.

    Implements the queue invariants:
    - One row per user, never hard-deleted (demoted instead)
    - Demotion only succeeds while the row is still in the expected queue
    - Attribution only writes while primary_agent_id is still NULL
    """

    def __init__(self, client: Client, schema: str = "public"):
        """
        Initialize repository with Supabase client.

        Args:
            client: Authenticated Supabase client
            schema: Postgres schema holding the tables
        """
        self.client = client
        self.schema = client.schema(schema)

    # =========================================================================
    # SCORE ROWS
    # =========================================================================

    def existing_user_ids(self, user_ids: Iterable[int]) -> set[int]:
        """
        Return the subset of user_ids that already have a score row.

        Args:
            user_ids: Candidate user ids

        Returns:
            Set of ids present in user_call_scores
        """
        ids = list(user_ids)
        found: set[int] = set()
        try:
            for chunk in _chunks(ids, IN_FILTER_CHUNK):
                response = (
                    self.schema
                    .from_("user_call_scores")
                    .select("user_id")
                    .in_("user_id", chunk)
                    .execute()
                )
                found.update(row["user_id"] for row in response.data or [])
            return found

        except Exception as e:
            logger.error(f"Failed to check existing score rows ({len(ids)} ids): {e}")
            raise

    def insert_scores(self, rows: list[UserCallScore]) -> int:
        """
        Insert new score rows, skipping any user that already has one.

        Uses ON CONFLICT (user_id) DO NOTHING so a concurrent insert is
        skipped rather than failing the batch.

        Args:
            rows: New score rows

        Returns:
            Number of rows actually inserted
        """
        if not rows:
            return 0

        payload = [row.model_dump(mode="json") for row in rows]
        try:
            response = (
                self.schema
                .from_("user_call_scores")
                .upsert(payload, on_conflict="user_id", ignore_duplicates=True)
                .execute()
            )
            return len(response.data or [])

        except Exception as e:
            logger.error(f"Failed to insert {len(rows)} score rows: {e}")
            raise

    def upsert_outstanding(self, user_id: int, now: datetime) -> None:
        """
        Place a user at the front of the outstanding_requests queue.

        Args:
            user_id: User to re-prioritize
            now: Timestamp for last_queue_check
        """
        try:
            self.schema.from_("user_call_scores").upsert(
                {
                    "user_id": user_id,
                    "current_queue_type": QueueType.OUTSTANDING_REQUESTS.value,
                    "current_score": 0,
                    "is_active": True,
                    "last_queue_check": now.isoformat(),
                },
                on_conflict="user_id",
                default_to_null=False,
            ).execute()

        except Exception as e:
            logger.error(f"Failed to upsert outstanding row for user {user_id}: {e}")
            raise

    def get_score(self, user_id: int) -> Optional[UserCallScore]:
        """Fetch the current score row for a user, or None."""
        try:
            response = (
                self.schema
                .from_("user_call_scores")
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
            return UserCallScore(**response.data[0]) if response.data else None

        except Exception as e:
            logger.error(f"Failed to fetch score row for user {user_id}: {e}")
            raise

    def list_queue_candidates(self, queue_type: QueueType) -> list[UserCallScore]:
        """
        Fetch every active row in a queue, stalest first.

        Query logic:
        - is_active = true AND current_queue_type = queue_type
        - ORDER BY last_queue_check ASC NULLS FIRST, current_score ASC, user_id DESC

        Returns:
            Score rows in processing order
        """
        rows: list[UserCallScore] = []
        start = 0
        try:
            while True:
                response = (
                    self.schema
                    .from_("user_call_scores")
                    .select("user_id, current_score, current_queue_type, is_active, "
                            "total_attempts, last_call_at, last_queue_check")
                    .eq("is_active", True)
                    .eq("current_queue_type", queue_type.value)
                    .order("last_queue_check", desc=False, nullsfirst=True)
                    .order("current_score", desc=False)
                    .order("user_id", desc=True)
                    .range(start, start + PAGE_SIZE - 1)
                    .execute()
                )
                page = response.data or []
                rows.extend(UserCallScore(**row) for row in page)
                if len(page) < PAGE_SIZE:
                    return rows
                start += PAGE_SIZE

        except Exception as e:
            logger.error(f"Failed to list {queue_type.value} candidates: {e}")
            raise

    def touch_queue_check(self, user_ids: list[int], queue_type: QueueType, now: datetime) -> None:
        """
        Stamp last_queue_check on rows still in queue_type.

        Rows that left the queue since the scan are left alone.
        """
        if not user_ids:
            return
        try:
            for chunk in _chunks(user_ids, IN_FILTER_CHUNK):
                (
                    self.schema
                    .from_("user_call_scores")
                    .update({"last_queue_check": now.isoformat()})
                    .in_("user_id", chunk)
                    .eq("current_queue_type", queue_type.value)
                    .execute()
                )

        except Exception as e:
            logger.error(f"Failed to stamp last_queue_check for {len(user_ids)} users: {e}")
            raise

    def demote_if_in_queue(self, user_id: int, expected_queue: QueueType, now: datetime) -> bool:
        """
        Remove a converted user from their queue.

        Uses optimistic locking: only succeeds if current_queue_type is
        still expected_queue. A live call-outcome handler may have moved
        the user already.

        Args:
            user_id: User to demote
            expected_queue: Queue the user must still be in
            now: Timestamp for last_queue_check

        Returns:
            True if a row was updated, False if the race was lost
        """
        try:
            response = (
                self.schema
                .from_("user_call_scores")
                .update({
                    "current_queue_type": None,
                    "current_score": 0,
                    "is_active": False,
                    "last_queue_check": now.isoformat(),
                })
                .eq("user_id", user_id)
                .eq("current_queue_type", expected_queue.value)  # Optimistic lock condition
                .execute()
            )

            if not response.data:
                logger.info(f"User {user_id} no longer in {expected_queue.value} - moved by another process")
                return False

            return True

        except Exception as e:
            logger.error(f"Failed to demote user {user_id} from {expected_queue.value}: {e}")
            raise

    # =========================================================================
    # CONVERSIONS
    # =========================================================================

    def find_recent_conversion(self, user_id: int, since: datetime) -> Optional[dict[str, Any]]:
        """
        Find any conversion for user_id with converted_at >= since.

        Returns:
            Conversion dict (id, conversion_type, converted_at) or None
        """
        try:
            response = (
                self.schema
                .from_("conversions")
                .select("id, conversion_type, converted_at")
                .eq("user_id", user_id)
                .gte("converted_at", since.isoformat())
                .order("converted_at", desc=True)
                .limit(1)
                .execute()
            )
            return response.data[0] if response.data else None

        except Exception as e:
            logger.error(f"Failed to check recent conversions for user {user_id}: {e}")
            raise

    def insert_conversion(self, conversion: Conversion) -> Conversion:
        """
        Append a conversion record.

        Args:
            conversion: Conversion to write (id assigned by the database)

        Returns:
            The stored conversion
        """
        payload = conversion.model_dump(mode="json", exclude={"id"})
        try:
            response = self.schema.from_("conversions").insert(payload).execute()
            return Conversion(**response.data[0]) if response.data else conversion

        except Exception as e:
            logger.error(f"Failed to insert {conversion.conversion_type} conversion for user {conversion.user_id}: {e}")
            raise

    def list_unattributed_conversions(self, since: datetime) -> list[Conversion]:
        """
        Fetch conversions with no primary agent, converted at or after since.

        Query logic:
        - primary_agent_id IS NULL
        - converted_at >= since
        - ORDER BY converted_at DESC (most recent first)
        """
        rows: list[Conversion] = []
        start = 0
        try:
            while True:
                response = (
                    self.schema
                    .from_("conversions")
                    .select("*")
                    .is_("primary_agent_id", "null")
                    .gte("converted_at", since.isoformat())
                    .order("converted_at", desc=True)
                    .range(start, start + PAGE_SIZE - 1)
                    .execute()
                )
                page = response.data or []
                rows.extend(Conversion(**row) for row in page)
                if len(page) < PAGE_SIZE:
                    return rows
                start += PAGE_SIZE

        except Exception as e:
            logger.error(f"Failed to list unattributed conversions: {e}")
            raise

    def set_conversion_attribution(
        self,
        conversion_id: str,
        primary_agent_id: int,
        contributing_agents: list[int],
    ) -> bool:
        """
        Record agent credit on a conversion.

        Conditional on primary_agent_id still being NULL so an attribution
        is never reconsidered.

        Returns:
            True if the row was updated, False if already attributed
        """
        try:
            response = (
                self.schema
                .from_("conversions")
                .update({
                    "primary_agent_id": primary_agent_id,
                    "contributing_agents": contributing_agents,
                })
                .eq("id", conversion_id)
                .is_("primary_agent_id", "null")
                .execute()
            )
            return bool(response.data)

        except Exception as e:
            logger.error(f"Failed to attribute conversion {conversion_id}: {e}")
            raise

    # =========================================================================
    # CALL HISTORY
    # =========================================================================

    def list_call_sessions(
        self,
        user_id: int,
        start: datetime,
        end: datetime,
        min_talk_time_seconds: int,
        status: str = "completed",
    ) -> list[CallSession]:
        """
        Fetch qualifying call sessions for a user, most recent first.

        Query logic:
        - talk_time_seconds > min_talk_time_seconds
        - status = status
        - start <= started_at <= end

        Returns:
            CallSession list ordered by started_at DESC
        """
        try:
            response = (
                self.schema
                .from_("call_sessions")
                .select("agent_id, user_id, started_at, talk_time_seconds, status")
                .eq("user_id", user_id)
                .eq("status", status)
                .gt("talk_time_seconds", min_talk_time_seconds)
                .gte("started_at", start.isoformat())
                .lte("started_at", end.isoformat())
                .order("started_at", desc=True)
                .execute()
            )
            return [CallSession(**row) for row in response.data or []]

        except Exception as e:
            logger.error(f"Failed to fetch call sessions for user {user_id}: {e}")
            raise

    # =========================================================================
    # UTILITY OPERATIONS
    # =========================================================================

    def get_queue_stats(self) -> dict[str, int]:
        """
        Get active row counts per queue type.

        Returns:
            Dict of queue type -> count (-1 if the count failed)
        """
        stats = {}

        for queue_type in QueueType:
            try:
                response = (
                    self.schema
                    .from_("user_call_scores")
                    .select("user_id", count="exact")
                    .eq("is_active", True)
                    .eq("current_queue_type", queue_type.value)
                    .limit(1)
                    .execute()
                )
                stats[queue_type.value] = response.count or 0
            except Exception:
                stats[queue_type.value] = -1

        return stats

    def ping(self) -> bool:
        """Connectivity check used by the health endpoint."""
        try:
            self.schema.from_("user_call_scores").select("user_id").limit(1).execute()
            return True
        except Exception as e:
            logger.error(f"Local store ping failed: {e}")
            raise


def create_repository(settings: Settings) -> LocalStoreRepository:
    """
    Factory function to create a LocalStoreRepository.

    Args:
        settings: Application settings with Supabase credentials

    Returns:
        Configured LocalStoreRepository instance
    """
    client = create_client(settings.supabase_url, settings.supabase_service_role_key)
    return LocalStoreRepository(client, settings.local_schema)

"""
QueueSync - Conversion Logging

Shared by both cleanup jobs: decides whether a queue exit is a conversion
and writes it once, skipping users already converted inside the dedup window.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .circuit_breaker import CircuitBreaker
from .models import Conversion, ConversionType, QueueType, UserCallScore

logger = logging.getLogger("queuesync.conversions")

SIGNATURE_REASON = "User provided signature - moved from unsigned queue"
REQUIREMENTS_REASON = "All outstanding requirements have been fulfilled - user complete"


def should_log_conversion(
    from_queue: QueueType,
    to_queue: Optional[QueueType],
    has_signature: bool,
    pending_requirements: int,
) -> Optional[tuple[ConversionType, str]]:
    """
    Classify a queue transition.

    Returns:
        (conversion type, reason) if the transition is a conversion, else None
    """
    if to_queue is not None:
        return None
    if from_queue == QueueType.UNSIGNED_USERS and has_signature:
        return ConversionType.SIGNATURE_OBTAINED, SIGNATURE_REASON
    if from_queue == QueueType.OUTSTANDING_REQUESTS and pending_requirements == 0:
        return ConversionType.REQUIREMENTS_COMPLETED, REQUIREMENTS_REASON
    return None


class ConversionRecorder:
    """
    Writes conversions with a time-windowed duplicate guard.

    A live call-outcome handler may record the same conversion in real
    time; a conversion for the user inside the window means skip.
    """

    def __init__(
        self,
        local,
        breaker: CircuitBreaker,
        dedup_window: timedelta,
        now: Callable[[], datetime],
    ):
        self.local = local
        self.breaker = breaker
        self.dedup_window = dedup_window
        self._now = now

    def build(
        self,
        score: UserCallScore,
        previous_queue: QueueType,
        conversion_type: ConversionType,
        reason: str,
        converted_at: datetime,
    ) -> Conversion:
        return Conversion(
            user_id=score.user_id,
            previous_queue_type=previous_queue,
            conversion_type=conversion_type,
            conversion_reason=reason,
            final_score=score.current_score,
            total_call_attempts=score.total_attempts,
            last_call_at=score.last_call_at,
            signature_obtained=True,
            converted_at=converted_at,
        )

    def is_duplicate(self, user_id: int) -> bool:
        since = self._now() - self.dedup_window
        existing = self.breaker.execute(
            lambda: self.local.find_recent_conversion(user_id, since),
            "find_recent_conversion",
        )
        if existing:
            logger.info(
                f"Conversion already logged for user {user_id} at {existing.get('converted_at')} - skipping"
            )
            return True
        return False

    def record(self, conversion: Conversion, dry_run: bool = False) -> bool:
        """
        Write a conversion unless one exists for the user inside the window.

        Args:
            conversion: Conversion to write
            dry_run: Check for duplicates but do not write

        Returns:
            True if written (or would be in dry run), False if a duplicate
        """
        if self.is_duplicate(conversion.user_id):
            return False
        if dry_run:
            return True

        self.breaker.execute(lambda: self.local.insert_conversion(conversion), "insert_conversion")
        logger.info(
            f"Logged {conversion.conversion_type} conversion for user {conversion.user_id} "
            f"(score {conversion.final_score}, {conversion.total_call_attempts} attempts)"
        )
        return True

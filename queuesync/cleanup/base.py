"""
QueueSync - Queue Conversion Cleanup

Shared flow for re-validating a whole queue against the replica:
1. Load every active row in the queue, stalest first (no time filter)
2. Truncate to what fits in the budget (priority processing)
3. Per batch, ask the replica which users now satisfy the exit condition
4. For each converted user: optimistic demote, then duplicate-guarded
   conversion record
5. Stamp last_queue_check on the rest so the next run starts elsewhere
"""

from datetime import timedelta
from typing import Optional

from ..core.batching import BatchJob, plan_candidates
from ..core.conversions import ConversionRecorder, should_log_conversion
from ..core.models import (
    CleanupResult,
    DetectedConversion,
    JobOptions,
    ProcessingStrategy,
    QueueType,
    UserCallScore,
)


class QueueCleanupJob(BatchJob[CleanupResult]):
    """Base for jobs that drain converted users out of one queue."""

    queue_type: QueueType = QueueType.UNSIGNED_USERS
    # Result counter holding the queue size at scan time
    total_field: str = "total_unsigned_users"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.recorder = ConversionRecorder(
            self.local,
            self.local_breaker,
            dedup_window=timedelta(minutes=self.settings.conversion_dedup_window_minutes),
            now=self._now,
        )

    def find_converted(self, user_ids: list[int]) -> dict[int, tuple[bool, int]]:
        """
        Return {user_id: (has_signature, pending_requirements)} for users
        in user_ids that meet this queue's exit condition.
        """
        raise NotImplementedError

    def execute(self, options: JobOptions, result: CleanupResult) -> None:
        batch_size = options.batch_size or self.default_batch_size

        candidates = self._local(
            "list_queue_candidates",
            lambda: self.local.list_queue_candidates(self.queue_type),
        )
        setattr(result, self.total_field, len(candidates))
        if not candidates:
            self.logger.info(f"No users in {self.queue_type.value} queue to check")
            return

        self.logger.info(f"Found {len(candidates)} users in {self.queue_type.value} queue")

        selected, strategy = plan_candidates(
            candidates, self.budget_seconds, self.seconds_per_batch, batch_size
        )
        result.processing_strategy = strategy

        runner = self.make_runner(batch_size)
        outcome = runner.run(selected, lambda batch, number: self._process_batch(batch, number, options, result))

        result.batches_processed = outcome.batches_processed
        if strategy == ProcessingStrategy.PRIORITY_PROCESSING or not outcome.completed:
            result.processing_strategy = ProcessingStrategy.PRIORITY_PROCESSING
            result.completed = False

    def _process_batch(
        self,
        batch: list[UserCallScore],
        number: int,
        options: JobOptions,
        result: CleanupResult,
    ) -> None:
        user_ids = [row.user_id for row in batch]
        converted = self.find_converted(user_ids)

        result.users_checked += len(batch)
        result.conversions_found += len(converted)
        self.logger.info(f"Batch {number}: {len(batch)} users checked, {len(converted)} conversions found")

        for row in batch:
            if row.user_id not in converted:
                continue
            has_signature, pending = converted[row.user_id]
            try:
                self._convert(row.user_id, has_signature, pending, options, result)
            except Exception as e:
                self.logger.error(f"Failed to convert user {row.user_id}: {e}")
                result.errors.append(f"User {row.user_id}: {e}")

        if options.dry_run:
            return

        still_queued = [uid for uid in user_ids if uid not in converted]
        try:
            now = self._now()
            self._local(
                "touch_queue_check",
                lambda: self.local.touch_queue_check(still_queued, self.queue_type, now),
            )
        except Exception as e:
            self.logger.error(f"Batch {number}: failed to stamp last_queue_check: {e}")
            result.errors.append(f"Batch {number}: {e}")

    def _convert(
        self,
        user_id: int,
        has_signature: bool,
        pending: int,
        options: JobOptions,
        result: CleanupResult,
    ) -> None:
        decision = should_log_conversion(self.queue_type, None, has_signature, pending)
        if decision is None:
            return
        conversion_type, reason = decision

        score: Optional[UserCallScore] = self._local("get_score", lambda: self.local.get_score(user_id))
        if score is None or score.current_queue_type != self.queue_type:
            self.logger.info(f"User {user_id} already left {self.queue_type.value} - skipping")
            result.race_skipped += 1
            return

        now = self._now()
        conversion = self.recorder.build(score, self.queue_type, conversion_type, reason, now)

        if options.dry_run:
            logged = self.recorder.record(conversion, dry_run=True)
            if not logged:
                result.duplicates_skipped += 1
            result.conversions.append(self._detected(score, conversion_type, logged))
            return

        demoted = self._local(
            "demote_if_in_queue",
            lambda: self.local.demote_if_in_queue(user_id, self.queue_type, now),
        )
        if not demoted:
            result.race_skipped += 1
            return
        result.users_updated += 1

        try:
            logged = self.recorder.record(conversion)
        except Exception as e:
            # The row has already left the queue, so no later run will retry this
            message = f"User {user_id} demoted but conversion not logged: {e}"
            self.logger.error(message)
            result.errors.append(message)
            result.conversions.append(self._detected(score, conversion_type, False))
            return

        if logged:
            result.conversions_logged += 1
        else:
            result.duplicates_skipped += 1
        result.conversions.append(self._detected(score, conversion_type, logged))

    def _detected(self, score: UserCallScore, conversion_type, logged: bool) -> DetectedConversion:
        return DetectedConversion(
            user_id=score.user_id,
            previous_queue_type=self.queue_type,
            conversion_type=conversion_type,
            final_score=score.current_score,
            logged=logged,
        )

    def summarize(self, result: CleanupResult, options: JobOptions) -> str:
        strategy = result.processing_strategy.value
        if getattr(result, self.total_field) == 0:
            return f"No users in {self.queue_type.value} queue to check"
        if options.dry_run:
            return f"DRY RUN: Found {result.conversions_found} conversions ({strategy})"
        return (
            f"{self.name}: {result.conversions_found} conversions found, "
            f"{result.users_updated} users updated, {result.conversions_logged} logged ({strategy})"
        )

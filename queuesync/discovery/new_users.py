"""
QueueSync - New Users Discovery

Seeds user_call_scores for users the operational database created recently.

Flow:
1. Read enabled users created in the last N hours (replica)
2. Drop users that already have a score row
3. Insert a score-0 row per new user:
   - No signature -> unsigned_users queue
   - Has signature -> no queue (New Requirements Discovery handles them
     once an actionable requirement exists)
"""

from datetime import timedelta

from ..core.batching import BatchJob
from ..core.models import (
    JobOptions,
    NewUsersResult,
    ProcessingStrategy,
    QueueType,
    SourceUser,
    UserCallScore,
)


class NewUsersDiscovery(BatchJob[NewUsersResult]):
    name = "new-users"
    result_model = NewUsersResult
    default_hours_back = 1
    default_batch_size = 50
    is_discovery = True

    def execute(self, options: JobOptions, result: NewUsersResult) -> None:
        hours_back = options.hours_back or self.default_hours_back
        batch_size = options.batch_size or self.default_batch_size
        cutoff = self._now() - timedelta(hours=hours_back)

        self.logger.info(f"Checking users created after {cutoff.isoformat()} (last {hours_back}h)")

        recent = self._source("fetch_recent_users", lambda: self.replica.fetch_recent_users(cutoff))
        result.users_checked = len(recent)
        if not recent:
            return

        existing = self._local(
            "existing_user_ids",
            lambda: self.local.existing_user_ids(u.id for u in recent),
        )
        new_users = [u for u in recent if u.id not in existing]
        result.new_users_found = len(new_users)
        result.skipped_existing = len(recent) - len(new_users)

        self.logger.info(
            f"Found {len(new_users)} new users ({result.skipped_existing} already scored, skipped)"
        )
        if not new_users:
            return

        runner = self.make_runner(batch_size)

        def process(batch: list[SourceUser], number: int) -> None:
            rows = [self._seed_row(user) for user in batch]
            for user in batch:
                if user.has_signature:
                    result.signed += 1
                else:
                    result.unsigned += 1

            if options.dry_run:
                return

            try:
                created = self._local("insert_scores", lambda: self.local.insert_scores(rows))
            except Exception as e:
                self.logger.error(f"Batch {number}: failed to create {len(rows)} score rows: {e}")
                result.errors.append(f"Batch {number}: {e}")
                return

            result.new_users_created += created
            if created < len(rows):
                self.logger.info(f"Batch {number}: {len(rows) - created} rows already existed (concurrent insert)")

        outcome = runner.run(new_users, process)
        result.completed = outcome.completed
        if not outcome.completed:
            result.processing_strategy = ProcessingStrategy.PRIORITY_PROCESSING

    @staticmethod
    def _seed_row(user: SourceUser) -> UserCallScore:
        return UserCallScore(
            user_id=user.id,
            current_score=0,  # New users get highest priority
            current_queue_type=None if user.has_signature else QueueType.UNSIGNED_USERS,
            is_active=True,
            total_attempts=0,
        )

    def summarize(self, result: NewUsersResult, options: JobOptions) -> str:
        if result.users_checked == 0:
            return "No new users found in window"
        if result.new_users_found == 0:
            return f"All {result.users_checked} recent users already processed"
        if options.dry_run:
            return (
                f"DRY RUN: {result.new_users_found} new users would be added "
                f"({result.unsigned} unsigned, {result.signed} signed)"
            )
        return (
            f"New Users Discovery: {result.new_users_created} users added "
            f"({result.unsigned} unsigned, {result.signed} signed)"
        )

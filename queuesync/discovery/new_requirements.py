"""
QueueSync - New Requirements Discovery

Promotes signed users into the outstanding_requests queue when a new
actionable requirement appears on one of their claims.

Unsigned users are skipped: the unsigned queue takes strict priority and
is handled by New Users Discovery / Signature Cleanup.
"""

from collections import Counter
from datetime import timedelta

from ..core.batching import BatchJob
from ..core.models import (
    EXCLUDED_REQUIREMENT_TYPES,
    JobOptions,
    NewRequirementsResult,
    PendingRequirement,
    ProcessingStrategy,
)


class NewRequirementsDiscovery(BatchJob[NewRequirementsResult]):
    name = "new-requirements"
    result_model = NewRequirementsResult
    default_hours_back = 1
    default_batch_size = 50
    is_discovery = True

    def execute(self, options: JobOptions, result: NewRequirementsResult) -> None:
        hours_back = options.hours_back or self.default_hours_back
        batch_size = options.batch_size or self.default_batch_size
        cutoff = self._now() - timedelta(hours=hours_back)

        self.logger.info(f"Checking requirements created after {cutoff.isoformat()} (last {hours_back}h)")

        requirements = self._source(
            "fetch_new_pending_requirements",
            lambda: self.replica.fetch_new_pending_requirements(cutoff),
        )
        result.requirements_checked = len(requirements)
        if not requirements:
            return

        self._log_breakdown(requirements, result)

        eligible = self._filter_signed(requirements, result)
        result.new_requirements_found = len(eligible)

        # Distinct users, most recent requirement first
        user_ids = list(dict.fromkeys(req.user_id for req in eligible))
        self.logger.info(
            f"{len(eligible)} eligible requirements across {len(user_ids)} users "
            f"({result.skipped_unsigned} skipped for unsigned users)"
        )
        if not user_ids:
            return

        runner = self.make_runner(batch_size)

        def process(batch: list[int], number: int) -> None:
            if options.dry_run:
                return
            now = self._now()
            for user_id in batch:
                try:
                    self._local("upsert_outstanding", lambda: self.local.upsert_outstanding(user_id, now))
                    result.users_updated += 1
                except Exception as e:
                    self.logger.error(f"Failed to move user {user_id} to outstanding_requests: {e}")
                    result.errors.append(f"User {user_id}: {e}")

        outcome = runner.run(user_ids, process)
        result.completed = outcome.completed
        if not outcome.completed:
            result.processing_strategy = ProcessingStrategy.PRIORITY_PROCESSING

    def _filter_signed(
        self,
        requirements: list[PendingRequirement],
        result: NewRequirementsResult,
    ) -> list[PendingRequirement]:
        eligible = []
        for req in requirements:
            # Excluded types are filtered in SQL; guard in case a row slips through
            if req.type in EXCLUDED_REQUIREMENT_TYPES:
                continue
            if req.current_signature_file_id is None or not req.is_enabled:
                result.skipped_unsigned += 1
                continue
            eligible.append(req)
        return eligible

    def _log_breakdown(self, requirements: list[PendingRequirement], result: NewRequirementsResult) -> None:
        breakdown = Counter(req.type for req in requirements)
        result.requirement_type_breakdown = dict(breakdown.most_common())
        unique_users = len({req.user_id for req in requirements})

        self.logger.info(f"Found {len(requirements)} requirements for {unique_users} unique users")
        for req_type, count in breakdown.most_common():
            self.logger.info(f"   {req_type}: {count}")
        self.logger.debug(f"Excluded types: {', '.join(EXCLUDED_REQUIREMENT_TYPES)}")

    def summarize(self, result: NewRequirementsResult, options: JobOptions) -> str:
        if result.requirements_checked == 0:
            return "No new requirements found in window"
        if result.new_requirements_found == 0:
            return f"No eligible requirements ({result.skipped_unsigned} belong to unsigned users)"
        if options.dry_run:
            return f"DRY RUN: {result.new_requirements_found} eligible requirements found"
        return f"New Requirements Discovery: {result.users_updated} users moved to outstanding_requests"

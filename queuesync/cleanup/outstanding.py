"""
QueueSync - Outstanding-Requirements Conversion Cleanup

Re-validates the whole outstanding_requests queue every run. One aggregate
replica query per batch counts each user's pending actionable requirements
across all their claims; users at zero who still hold a signature are
demoted and a requirements_completed conversion is logged.
"""

from ..core.models import OutstandingCleanupResult, QueueType
from .base import QueueCleanupJob


class OutstandingRequirementsCleanup(QueueCleanupJob):
    name = "outstanding-cleanup"
    result_model = OutstandingCleanupResult
    queue_type = QueueType.OUTSTANDING_REQUESTS
    total_field = "total_outstanding_users"
    default_batch_size = 300
    seconds_per_batch = 3.5

    def find_converted(self, user_ids: list[int]) -> dict[int, tuple[bool, int]]:
        statuses = self._source(
            "fetch_pending_requirement_counts",
            lambda: self.replica.fetch_pending_requirement_counts(user_ids),
        )
        return {
            uid: (status.has_signature, status.pending_count)
            for uid, status in statuses.items()
            if status.pending_count == 0 and status.has_signature
        }

"""
QueueSync - Signature Conversion Cleanup

Re-validates the whole unsigned_users queue every run. Users who now have
a signature file are demoted out of the queue and a signature_obtained
conversion is logged.
"""

from ..core.models import QueueType, SignatureCleanupResult
from .base import QueueCleanupJob


class SignatureConversionCleanup(QueueCleanupJob):
    name = "signature-cleanup"
    result_model = SignatureCleanupResult
    queue_type = QueueType.UNSIGNED_USERS
    total_field = "total_unsigned_users"
    default_batch_size = 400
    seconds_per_batch = 2.5

    def find_converted(self, user_ids: list[int]) -> dict[int, tuple[bool, int]]:
        signatures = self._source(
            "fetch_signature_status",
            lambda: self.replica.fetch_signature_status(user_ids),
        )
        # Disabled users are absent from the replica result and stay queued
        return {uid: (True, 0) for uid in user_ids if signatures.get(uid)}

"""QueueSync - call-queue reconciliation and conversion attribution jobs."""

__version__ = "1.0.0"

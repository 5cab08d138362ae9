"""
QueueSync - Batch Execution

Shared control flow for every job:
- Up-front capacity estimate decides complete vs priority processing
- Fixed-size slices processed sequentially
- Wall-clock budget checked before each slice (cooperative timeout)
- Small pause between slices to bound load on the shared databases
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generic, Optional, Sequence, TypeVar

from .circuit_breaker import CircuitBreaker
from .config import Settings
from .models import JobOptions, JobResult, ProcessingStrategy, utc_now

logger = logging.getLogger("queuesync.batch")

T = TypeVar("T")
R = TypeVar("R")


def calculate_max_processable(budget_seconds: float, seconds_per_batch: float, batch_size: int) -> int:
    """How many candidates fit in the budget at the estimated per-batch cost."""
    return math.floor(budget_seconds / seconds_per_batch) * batch_size


def plan_candidates(
    candidates: Sequence[T],
    budget_seconds: float,
    seconds_per_batch: Optional[float],
    batch_size: int,
) -> tuple[list[T], ProcessingStrategy]:
    """
    Choose which candidates to attempt this run.

    Candidates arrive stalest first, so truncating keeps the ones most
    overdue for a check.

    Returns:
        (selected candidates, strategy)
    """
    if seconds_per_batch is None:
        return list(candidates), ProcessingStrategy.COMPLETE_PROCESSING

    max_processable = calculate_max_processable(budget_seconds, seconds_per_batch, batch_size)
    if len(candidates) <= max_processable:
        return list(candidates), ProcessingStrategy.COMPLETE_PROCESSING

    logger.warning(f"Volume too high: taking {max_processable}/{len(candidates)} candidates this run")
    return list(candidates[:max_processable]), ProcessingStrategy.PRIORITY_PROCESSING


@dataclass
class BatchOutcome:
    batches_processed: int = 0
    items_processed: int = 0
    completed: bool = True


class BatchRunner:
    """
    Runs a callback over fixed-size slices until done or out of time.

    Args:
        budget_seconds: Wall-clock budget measured from construction
        batch_size: Items per slice
        inter_batch_delay: Seconds to sleep between slices
        clock: Monotonic time source
        sleep: Sleep function
        label: Prefix for progress logs
    """

    def __init__(
        self,
        budget_seconds: float,
        batch_size: int,
        inter_batch_delay: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        label: str = "BATCH",
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.budget_seconds = budget_seconds
        self.batch_size = batch_size
        self.inter_batch_delay = inter_batch_delay
        self._clock = clock
        self._sleep = sleep
        self.label = label
        self.started_at = clock()

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def over_budget(self) -> bool:
        return self.elapsed() >= self.budget_seconds

    def run(self, items: Sequence[T], process_batch: Callable[[list[T], int], None]) -> BatchOutcome:
        """
        Process items in slices, stopping before a slice once the budget is spent.

        Args:
            items: Candidates in processing order
            process_batch: Called with (slice, 1-based batch number)

        Returns:
            BatchOutcome; completed is False if the budget cut the run short
        """
        outcome = BatchOutcome()
        total = len(items)
        total_batches = math.ceil(total / self.batch_size) if total else 0

        for start in range(0, total, self.batch_size):
            if self.over_budget():
                logger.warning(
                    f"[{self.label}] Time budget reached after {self.elapsed():.1f}s, "
                    f"stopping before batch {outcome.batches_processed + 1}/{total_batches}"
                )
                outcome.completed = False
                break

            batch = list(items[start:start + self.batch_size])
            number = outcome.batches_processed + 1
            logger.info(f"[{self.label} {number}/{total_batches}] Processing {len(batch)} items")

            process_batch(batch, number)

            outcome.batches_processed += 1
            outcome.items_processed += len(batch)
            progress = round(outcome.items_processed / total * 100)
            logger.info(f"[{self.label} {number}/{total_batches}] Complete | Progress: {progress}%")

            if start + self.batch_size < total and self.inter_batch_delay > 0:
                self._sleep(self.inter_batch_delay)

        return outcome


class BatchJob(Generic[R]):
    """
    Base for the scheduled reconciliation jobs.

    Subclasses set the class attributes and implement execute(); run()
    wraps it with timing, failure capture and the summary log block.
    Every database call goes through one of the two circuit breakers.
    """

    name: str = "job"
    result_model: type = JobResult
    default_batch_size: int = 50
    default_hours_back: Optional[float] = None
    # Estimated cost of one batch; None disables up-front truncation
    seconds_per_batch: Optional[float] = None
    is_discovery: bool = False

    def __init__(
        self,
        local,
        replica,
        settings: Settings,
        local_breaker: Optional[CircuitBreaker] = None,
        replica_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utc_now,
    ):
        self.local = local
        self.replica = replica
        self.settings = settings
        self.local_breaker = local_breaker or CircuitBreaker(
            "local_store",
            failure_threshold=settings.local_failure_threshold,
            recovery_timeout=settings.local_recovery_timeout,
            half_open_max_calls=settings.local_half_open_max_calls,
        )
        self.replica_breaker = replica_breaker or CircuitBreaker(
            "replica",
            failure_threshold=settings.replica_failure_threshold,
            recovery_timeout=settings.replica_recovery_timeout,
            half_open_max_calls=settings.replica_half_open_max_calls,
        )
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self.logger = logging.getLogger(f"queuesync.{self.name.replace('-', '_')}")

    @property
    def budget_seconds(self) -> float:
        if self.is_discovery:
            return self.settings.discovery_max_execution_seconds
        return self.settings.cleanup_max_execution_seconds

    def _local(self, name: str, operation: Callable[[], T]) -> T:
        return self.local_breaker.execute(operation, name)

    def _source(self, name: str, operation: Callable[[], T]) -> T:
        return self.replica_breaker.execute(operation, name)

    def make_runner(self, batch_size: int) -> BatchRunner:
        return BatchRunner(
            budget_seconds=self.budget_seconds,
            batch_size=batch_size,
            inter_batch_delay=self.settings.inter_batch_delay_seconds,
            clock=self._clock,
            sleep=self._sleep,
            label=self.name.upper(),
        )

    def run(self, options: Optional[JobOptions] = None) -> R:
        """
        Run the job once.

        Never raises for operational failures: they surface as
        success=False with the error message in errors.
        """
        options = options or JobOptions()
        result = self.result_model(dry_run=options.dry_run)
        started = self._clock()

        self.logger.info("=" * 60)
        self.logger.info(f"[{self.name}] Starting{' (DRY RUN)' if options.dry_run else ''}")

        try:
            self.execute(options, result)
            result.summary = self.summarize(result, options)
        except Exception as e:
            self.logger.error(f"[{self.name}] Failed: {e}")
            result.success = False
            result.completed = False
            result.errors.append(f"{self.name} failed: {e}")
            result.summary = f"{self.name} failed: {e}"

        result.duration = int((self._clock() - started) * 1000)
        self.log_summary(result)
        self.logger.info("=" * 60)
        return result

    def execute(self, options: JobOptions, result: R) -> None:
        raise NotImplementedError

    def summarize(self, result: R, options: JobOptions) -> str:
        return f"{self.name} complete ({result.processing_strategy.value})"

    def log_summary(self, result: R) -> None:
        self.logger.info(f"[{self.name}] {result.summary}")
        for key, value in result.model_dump(
            exclude={"timestamp", "errors", "summary", "conversions", "attributions", "requirement_type_breakdown"}
        ).items():
            self.logger.info(f"   {key}: {value.value if hasattr(value, 'value') else value}")
        if result.errors:
            self.logger.warning(f"   errors: {len(result.errors)}")

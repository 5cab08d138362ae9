"""Tests for the shared batch execution pattern."""

import pytest

from queuesync.core.batching import (
    BatchRunner,
    calculate_max_processable,
    plan_candidates,
)
from queuesync.core.models import ProcessingStrategy


@pytest.mark.unit
class TestCapacityPlanning:
    def test_max_processable_uses_whole_batches(self):
        # floor(28 / 2.5) = 11 batches
        assert calculate_max_processable(28, 2.5, 400) == 4400
        # floor(28 / 3.5) = 8 batches
        assert calculate_max_processable(28, 3.5, 300) == 2400
        # floor(28 / 3.0) = 9 batches
        assert calculate_max_processable(28, 3.0, 50) == 450

    def test_everything_fits(self):
        selected, strategy = plan_candidates(list(range(10)), 28, 2.5, 1)
        assert selected == list(range(10))
        assert strategy == ProcessingStrategy.COMPLETE_PROCESSING

    def test_truncates_to_stalest_candidates(self):
        selected, strategy = plan_candidates(list(range(20)), 28, 2.5, 1)
        assert selected == list(range(11))
        assert strategy == ProcessingStrategy.PRIORITY_PROCESSING

    def test_no_estimate_means_no_truncation(self):
        selected, strategy = plan_candidates(list(range(5000)), 1, None, 1)
        assert len(selected) == 5000
        assert strategy == ProcessingStrategy.COMPLETE_PROCESSING


@pytest.mark.unit
class TestBatchRunner:
    def test_processes_fixed_size_slices(self, clock):
        runner = BatchRunner(28, 3, inter_batch_delay=0.1, clock=clock, sleep=clock.sleep)
        seen = []

        outcome = runner.run(list(range(7)), lambda batch, number: seen.append((number, batch)))

        assert seen == [(1, [0, 1, 2]), (2, [3, 4, 5]), (3, [6])]
        assert outcome.batches_processed == 3
        assert outcome.items_processed == 7
        assert outcome.completed is True

    def test_sleeps_between_batches_only(self, clock):
        runner = BatchRunner(28, 2, inter_batch_delay=0.1, clock=clock, sleep=clock.sleep)
        runner.run(list(range(6)), lambda batch, number: None)
        assert clock.sleeps == [0.1, 0.1]

    def test_stops_before_batch_once_budget_spent(self, clock):
        runner = BatchRunner(10, 1, inter_batch_delay=0, clock=clock, sleep=clock.sleep)

        def slow(batch, number):
            clock.advance(4)

        outcome = runner.run(list(range(10)), slow)

        # Batches start at t=0, 4, 8; the 4th would start at t=12
        assert outcome.batches_processed == 3
        assert outcome.items_processed == 3
        assert outcome.completed is False

    def test_empty_input(self, clock):
        runner = BatchRunner(10, 5, clock=clock, sleep=clock.sleep)
        outcome = runner.run([], lambda batch, number: pytest.fail("should not be called"))
        assert outcome.batches_processed == 0
        assert outcome.completed is True

    def test_rejects_zero_batch_size(self, clock):
        with pytest.raises(ValueError, match="batch_size"):
            BatchRunner(10, 0, clock=clock)

"""
QueueSync - Conversion Agent Attribution

Retroactively credits agents for logged conversions using call history.

Rules:
- Only completed sessions with talk_time_seconds > threshold count
- Sessions must start within [converted_at - lookback, converted_at]
- The most recently active agent is primary; every other distinct agent
  is contributing, in recency order (an agent's older calls never move
  them up the list)
- No qualifying sessions -> conversion stays unattributed
- The write only lands while primary_agent_id is still NULL
"""

from datetime import timedelta
from typing import Optional

from ..core.batching import BatchJob, plan_candidates
from ..core.models import (
    Attribution,
    AttributionResult,
    CallSession,
    Conversion,
    JobOptions,
    ProcessingStrategy,
)


def rank_agents(sessions: list[CallSession]) -> list[int]:
    """
    Distinct agent ids ordered by most recent qualifying session.

    Args:
        sessions: Qualifying sessions in any order

    Returns:
        Agent ids, most recently active first, each once
    """
    ordered = sorted(sessions, key=lambda s: s.started_at, reverse=True)
    return list(dict.fromkeys(s.agent_id for s in ordered))


def attribute(conversion: Conversion, sessions: list[CallSession]) -> Optional[Attribution]:
    """Build the attribution for a conversion, or None without call history."""
    agents = rank_agents(sessions)
    if not agents:
        return None

    return Attribution(
        conversion_id=conversion.id,
        user_id=conversion.user_id,
        primary_agent_id=agents[0],
        contributing_agents=agents[1:],
        total_calls_analyzed=len(sessions),
        most_recent_call_at=max(s.started_at for s in sessions),
    )


class ConversionAgentAttribution(BatchJob[AttributionResult]):
    name = "agent-attribution"
    result_model = AttributionResult
    default_hours_back = 6
    default_batch_size = 50
    seconds_per_batch = 3.0

    def execute(self, options: JobOptions, result: AttributionResult) -> None:
        hours_back = options.hours_back or self.default_hours_back
        batch_size = options.batch_size or self.default_batch_size
        since = self._now() - timedelta(hours=hours_back)

        conversions = self._local(
            "list_unattributed_conversions",
            lambda: self.local.list_unattributed_conversions(since),
        )
        result.total_unattributed_conversions = len(conversions)
        if not conversions:
            self.logger.info(f"No unattributed conversions in last {hours_back}h")
            return

        self.logger.info(f"Found {len(conversions)} unattributed conversions in last {hours_back}h")

        selected, strategy = plan_candidates(
            conversions, self.budget_seconds, self.seconds_per_batch, batch_size
        )
        result.processing_strategy = strategy

        runner = self.make_runner(batch_size)

        def process(batch: list[Conversion], number: int) -> None:
            attributed = 0
            for conversion in batch:
                result.conversions_checked += 1
                try:
                    if self._attribute_one(conversion, options, result):
                        attributed += 1
                except Exception as e:
                    self.logger.error(f"Failed to attribute conversion {conversion.id}: {e}")
                    result.errors.append(f"Conversion {conversion.id}: {e}")
            self.logger.info(f"Batch {number}: {attributed}/{len(batch)} attributed")

        outcome = runner.run(selected, process)
        result.batches_processed = outcome.batches_processed
        if strategy == ProcessingStrategy.PRIORITY_PROCESSING or not outcome.completed:
            result.processing_strategy = ProcessingStrategy.PRIORITY_PROCESSING
            result.completed = False

    def _attribute_one(self, conversion: Conversion, options: JobOptions, result: AttributionResult) -> bool:
        window_start = conversion.converted_at - timedelta(days=self.settings.attribution_lookback_days)
        sessions = self._local(
            "list_call_sessions",
            lambda: self.local.list_call_sessions(
                conversion.user_id,
                window_start,
                conversion.converted_at,
                self.settings.attribution_min_talk_time_seconds,
            ),
        )

        attribution = attribute(conversion, sessions)
        if attribution is None:
            self.logger.debug(f"No qualifying call history for conversion {conversion.id} (user {conversion.user_id})")
            result.conversions_skipped_no_call_history += 1
            return False

        if not options.dry_run:
            written = self._local(
                "set_conversion_attribution",
                lambda: self.local.set_conversion_attribution(
                    conversion.id,
                    attribution.primary_agent_id,
                    attribution.contributing_agents,
                ),
            )
            if not written:
                self.logger.info(f"Conversion {conversion.id} attributed by another run - skipping")
                result.race_skipped += 1
                return False

        self.logger.info(
            f"Conversion {conversion.id}: primary agent {attribution.primary_agent_id}, "
            f"contributing {attribution.contributing_agents} ({attribution.total_calls_analyzed} calls)"
        )
        result.conversions_attributed += 1
        result.attributions.append(attribution)
        return True

    def summarize(self, result: AttributionResult, options: JobOptions) -> str:
        if result.total_unattributed_conversions == 0:
            return "No unattributed conversions found"
        prefix = "DRY RUN: " if options.dry_run else ""
        return (
            f"{prefix}Agent Attribution: {result.conversions_attributed} attributed, "
            f"{result.conversions_skipped_no_call_history} without call history "
            f"({result.processing_strategy.value})"
        )

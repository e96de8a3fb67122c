"""Ground-truth statistics computed directly from behavioral records.

These numbers are what model claims are checked against. They are derived
on demand and never cached apart from the records that produced them.
Rounding matches the precision claims are compared at: whole numbers for
percentages, counts and durations, one decimal for scale averages.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from neurologg.core.models import CrisisRecord, LogRecord, StrategyOutcome

HIGH_AROUSAL_THRESHOLD = 7
LOW_ENERGY_THRESHOLD = 3


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves away from zero for positive values (2.5 -> 3, 0.25 -> 0.3)."""
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def _percent(part: int, whole: int) -> int:
    return int(round_half_up(part / whole * 100)) if whole else 0


class StrategyStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    success_rate: int
    usage_count: int


class ComputedStatistics(BaseModel):
    """Aggregate statistics over one set of logs and crisis events.

    Attributes:
        log_count: Number of logs.
        crisis_count: Number of crisis events.
        avg_arousal: Mean arousal, one decimal.
        avg_energy: Mean energy, one decimal.
        avg_valence: Mean valence, one decimal.
        high_arousal_percentage: Share of logs with arousal >= 7.
        low_energy_percentage: Share of logs with energy <= 3.
        trigger_percentages: Occurrences of each sensory or context trigger
            as a percentage of the log count.
        strategy_effectiveness: Success rate and usage count per strategy.
        context_percentages: Share of logs per setting.
        avg_crisis_duration: Mean crisis duration in minutes, or None when
            there are no crisis events.
        avg_recovery_time: Mean recovery time in minutes over the crises
            that recorded one, or None.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    log_count: int = 0
    crisis_count: int = 0
    avg_arousal: float = 0.0
    avg_energy: float = 0.0
    avg_valence: float = 0.0
    high_arousal_percentage: int = 0
    low_energy_percentage: int = 0
    trigger_percentages: dict[str, int] = Field(default_factory=dict)
    strategy_effectiveness: dict[str, StrategyStats] = Field(default_factory=dict)
    context_percentages: dict[str, int] = Field(default_factory=dict)
    avg_crisis_duration: int | None = None
    avg_recovery_time: int | None = None

    @property
    def strategy_success_rates(self) -> dict[str, int]:
        return {name: s.success_rate for name, s in self.strategy_effectiveness.items()}


def compute_statistics(
    logs: Sequence[LogRecord],
    crisis_events: Sequence[CrisisRecord] | None = None,
) -> ComputedStatistics:
    """Compute statistics from records.

    Total: never raises. Empty ``logs`` yields zeroed counts and averages
    and empty frequency maps; the crisis count is still reported.
    """
    crisis_events = list(crisis_events or [])

    if not logs:
        return ComputedStatistics(crisis_count=len(crisis_events))

    n = len(logs)

    trigger_counts: Counter[str] = Counter()
    strategy_totals: Counter[str] = Counter()
    strategy_helped: Counter[str] = Counter()
    context_counts: Counter[str] = Counter()

    for log in logs:
        trigger_counts.update([*log.sensory_triggers, *log.context_triggers])
        context_counts[log.context] += 1
        for strategy in log.strategies:
            strategy_totals[strategy] += 1
            if log.strategy_effectiveness == StrategyOutcome.HELPED:
                strategy_helped[strategy] += 1

    avg_crisis_duration = None
    avg_recovery_time = None
    if crisis_events:
        total_seconds = sum(c.duration_seconds for c in crisis_events)
        avg_crisis_duration = int(round_half_up(total_seconds / len(crisis_events) / 60))

        recoveries = [
            c.recovery_time_minutes for c in crisis_events if c.recovery_time_minutes is not None
        ]
        if recoveries:
            avg_recovery_time = int(round_half_up(sum(recoveries) / len(recoveries)))

    return ComputedStatistics(
        log_count=n,
        crisis_count=len(crisis_events),
        avg_arousal=round_half_up(sum(log.arousal for log in logs) / n, 1),
        avg_energy=round_half_up(sum(log.energy for log in logs) / n, 1),
        avg_valence=round_half_up(sum(log.valence for log in logs) / n, 1),
        high_arousal_percentage=_percent(
            sum(1 for log in logs if log.arousal >= HIGH_AROUSAL_THRESHOLD), n
        ),
        low_energy_percentage=_percent(
            sum(1 for log in logs if log.energy <= LOW_ENERGY_THRESHOLD), n
        ),
        trigger_percentages={t: _percent(c, n) for t, c in trigger_counts.items()},
        strategy_effectiveness={
            s: StrategyStats(
                success_rate=_percent(strategy_helped[s], total),
                usage_count=total,
            )
            for s, total in strategy_totals.items()
        },
        context_percentages={ctx: _percent(c, n) for ctx, c in context_counts.items()},
        avg_crisis_duration=avg_crisis_duration,
        avg_recovery_time=avg_recovery_time,
    )

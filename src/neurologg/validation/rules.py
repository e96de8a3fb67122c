"""Claim-to-statistic disambiguation rules.

A claim only says "40%"; the words around it say 40% *of what*. Each rule
inspects the lower-cased context window of a claim and either names the
statistic the claim refers to or declines. Rules are tried in order per
category and the first match wins, so more specific rules come first.

Claims no rule can place are not validated. They count neither as passes
nor as failures.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from neurologg.config import ValidationConfig
from neurologg.validation.claims import ClaimCategory, ExtractedClaim
from neurologg.validation.statistics import ComputedStatistics, round_half_up

logger = logging.getLogger(__name__)


class ClaimValidation(BaseModel):
    """One claim checked against the statistic it refers to.

    Attributes:
        claim: The matched substring from the analysis text.
        claimed_value: Value stated in the text.
        actual_value: Value computed from the records.
        discrepancy: Absolute difference.
        discrepancy_percent: Difference relative to the actual value, as a
            whole percentage (0 or 100 when the actual value is 0).
        is_valid: Whether the difference is within the category tolerance.
        category: Kind of quantity.
        statistic: Name of the matched statistic.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    claim: str
    claimed_value: float
    actual_value: float
    discrepancy: float
    discrepancy_percent: int
    is_valid: bool
    category: ClaimCategory
    statistic: str


class ClaimRule(Protocol):
    category: ClaimCategory

    def resolve(self, context: str, stats: ComputedStatistics) -> tuple[str, float] | None:
        """Return ``(statistic_name, actual_value)`` or None if not applicable."""
        ...


@dataclass(frozen=True)
class KeywordRule:
    """Matches when every keyword group has at least one member in the context.

    Example:
        ``KeywordRule(PERCENTAGE, (("high", "høy"), ("arousal",)), "high_arousal_percentage")``
        matches "high arousal" and "høy arousal".
    """

    category: ClaimCategory
    keyword_groups: tuple[tuple[str, ...], ...]
    statistic: str
    accessor: Callable[[ComputedStatistics], float | None] | None = None

    def resolve(self, context: str, stats: ComputedStatistics) -> tuple[str, float] | None:
        if not all(any(k in context for k in group) for group in self.keyword_groups):
            return None
        if self.accessor is not None:
            value = self.accessor(stats)
        else:
            value = getattr(stats, self.statistic)
        if value is None:
            return None
        return self.statistic, float(value)


@dataclass(frozen=True)
class NamedEntryRule:
    """Matches when a key of a named statistic map appears in the context.

    Used for per-trigger, per-strategy and per-setting values, whose names
    come from the records rather than a fixed vocabulary.
    """

    category: ClaimCategory
    name: str
    entries: Callable[[ComputedStatistics], Mapping[str, float]]

    def resolve(self, context: str, stats: ComputedStatistics) -> tuple[str, float] | None:
        for key, value in self.entries(stats).items():
            if key and key.lower() in context:
                return f"{self.name}[{key}]", float(value)
        return None


_P = ClaimCategory.PERCENTAGE
_A = ClaimCategory.AVERAGE
_C = ClaimCategory.COUNT
_D = ClaimCategory.DURATION


def _setting(name: str) -> Callable[[ComputedStatistics], float]:
    return lambda stats: stats.context_percentages.get(name, 0)


DEFAULT_RULES: tuple[ClaimRule, ...] = (
    # Percentages
    KeywordRule(_P, (("høy", "high"), ("arousal",)), "high_arousal_percentage"),
    KeywordRule(_P, (("lav", "low"), ("energi", "energy")), "low_energy_percentage"),
    KeywordRule(_P, (("hjemme", "home"),), "context_percentages[home]", _setting("home")),
    KeywordRule(_P, (("skole", "school"),), "context_percentages[school]", _setting("school")),
    NamedEntryRule(_P, "trigger_percentages", lambda s: s.trigger_percentages),
    NamedEntryRule(_P, "strategy_success_rate", lambda s: s.strategy_success_rates),
    NamedEntryRule(_P, "context_percentages", lambda s: s.context_percentages),
    # Averages
    KeywordRule(_A, (("arousal", "aktivering"),), "avg_arousal"),
    KeywordRule(_A, (("energi", "energy"),), "avg_energy"),
    KeywordRule(_A, (("valens", "valence", "stemning", "mood"),), "avg_valence"),
    # Counts
    KeywordRule(_C, (("logg", "log"),), "log_count"),
    KeywordRule(_C, (("krise", "crisis", "crises"),), "crisis_count"),
    # Durations
    KeywordRule(_D, (("krise", "crisis", "crises"),), "avg_crisis_duration"),
    KeywordRule(_D, (("recovery", "gjenopprett"),), "avg_recovery_time"),
)


def _tolerance(category: ClaimCategory, config: ValidationConfig) -> float:
    return {
        ClaimCategory.PERCENTAGE: config.percentage_tolerance,
        ClaimCategory.AVERAGE: config.average_tolerance,
        ClaimCategory.COUNT: config.count_tolerance,
        ClaimCategory.DURATION: config.duration_tolerance,
    }[category]


def discrepancy_percent(claimed: float, actual: float) -> int:
    """Relative difference as a whole percentage of ``actual``."""
    difference = abs(claimed - actual)
    if actual == 0:
        return 0 if claimed == 0 else 100
    return int(round_half_up(difference / abs(actual) * 100))


def find_statistic(
    claim: ExtractedClaim,
    stats: ComputedStatistics,
    rules: Sequence[ClaimRule] = DEFAULT_RULES,
) -> tuple[str, float] | None:
    """Return the first ``(statistic, value)`` any rule assigns to the claim."""
    context = claim.context.lower()
    for rule in rules:
        if rule.category != claim.category:
            continue
        match = rule.resolve(context, stats)
        if match is not None:
            return match
    return None


def validate_claim(
    claim: ExtractedClaim,
    stats: ComputedStatistics,
    config: ValidationConfig | None = None,
    rules: Sequence[ClaimRule] = DEFAULT_RULES,
) -> ClaimValidation | None:
    """Check one claim against the statistic its context refers to.

    Returns:
        ClaimValidation, or None when no statistic can be matched.
    """
    config = config or ValidationConfig()
    match = find_statistic(claim, stats, rules)
    if match is None:
        logger.debug(f"No statistic matched {claim.category.value} claim")
        return None

    statistic, actual = match
    difference = abs(claim.value - actual)
    return ClaimValidation(
        claim=claim.original_text,
        claimed_value=claim.value,
        actual_value=actual,
        discrepancy=difference,
        discrepancy_percent=discrepancy_percent(claim.value, actual),
        is_valid=difference <= _tolerance(claim.category, config),
        category=claim.category,
        statistic=statistic,
    )

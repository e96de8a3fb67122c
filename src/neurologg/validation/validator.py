"""Hallucination validation for analysis reports.

Runs every numeric claim in a report past the statistics computed from the
same records, and turns the outcome into a verdict, a warning list and a
short data citation.

Example:
    >>> from neurologg.validation.validator import create_validated_result
    >>>
    >>> validated = create_validated_result(result, logs, crisis_events)
    >>> if not validated.trustworthy:
    ...     for warning in validated.validation.warnings:
    ...         print(warning)
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from neurologg.config import ValidationConfig
from neurologg.core.models import AnalysisResult, CrisisRecord, LogRecord, ValidatedAnalysisResult
from neurologg.validation.claims import extract_claims
from neurologg.validation.rules import ClaimValidation, validate_claim
from neurologg.validation.statistics import ComputedStatistics, compute_statistics

logger = logging.getLogger(__name__)

NO_DATA_CITATION = "[No data available]"
CAUTION_WARNING = (
    "The AI analysis contains several claims that do not match the data. "
    "Interpret it with caution."
)


class ValidationResult(BaseModel):
    """Aggregate verdict over all scored claims of one report."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_valid: bool
    total_claims: int
    valid_claims: int
    claim_validations: list[ClaimValidation] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    computed_stats: ComputedStatistics

    @property
    def valid_ratio(self) -> float:
        return self.valid_claims / self.total_claims if self.total_claims else 1.0


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def validate_insights(
    result: AnalysisResult,
    logs: Sequence[LogRecord],
    crisis_events: Sequence[CrisisRecord] | None = None,
    config: ValidationConfig | None = None,
) -> ValidationResult:
    """Validate the numeric claims of a report against its source records.

    The verdict is valid when at least ``min_valid_ratio`` of the scored
    claims pass; a report with no scorable claims is valid.
    """
    config = config or ValidationConfig()
    stats = compute_statistics(logs, crisis_events)

    text = " ".join(result.narrative_texts())
    claims = extract_claims(text, context_window=config.context_window)

    validations = [
        v for v in (validate_claim(claim, stats, config) for claim in claims) if v is not None
    ]
    invalid = [v for v in validations if not v.is_valid]
    valid_count = len(validations) - len(invalid)

    warnings: list[str] = []
    if invalid:
        warnings.append(f"{len(invalid)} of {len(validations)} AI claims deviate from the data.")
        for v in invalid:
            if v.discrepancy_percent > config.large_discrepancy_percent:
                warnings.append(
                    f'AI claims "{v.claim}" but the actual value is {_fmt(v.actual_value)} '
                    f"({v.discrepancy_percent}% deviation)"
                )

    ratio = valid_count / len(validations) if validations else 1.0
    is_valid = ratio >= config.min_valid_ratio
    if not is_valid and validations:
        warnings.insert(0, CAUTION_WARNING)

    logger.info(
        f"Validated analysis: {valid_count}/{len(validations)} claims within tolerance "
        f"({len(claims)} extracted)"
    )

    return ValidationResult(
        is_valid=is_valid,
        total_claims=len(validations),
        valid_claims=valid_count,
        claim_validations=validations,
        warnings=warnings,
        computed_stats=stats,
    )


def generate_citation(
    logs: Sequence[LogRecord],
    crisis_events: Sequence[CrisisRecord] | None = None,
) -> str:
    """Describe the sample an analysis is based on.

    Example:
        ``"[Based on 25 logs, 2 crisis events, 7 days]"``. The crisis part is
        omitted without crisis events, the day part for a single day.
    """
    if not logs:
        return NO_DATA_CITATION

    parts = [f"{len(logs)} logs"]
    if crisis_events:
        parts.append(f"{len(crisis_events)} crisis events")

    timestamps = [log.timestamp for log in logs]
    span_days = (max(timestamps) - min(timestamps)).total_seconds() / 86400
    days = math.ceil(span_days) + 1
    if days > 1:
        parts.append(f"{days} days")

    return f"[Based on {', '.join(parts)}]"


def add_citations(
    result: AnalysisResult,
    logs: Sequence[LogRecord],
    crisis_events: Sequence[CrisisRecord] | None = None,
) -> AnalysisResult:
    """Return a copy whose summary and last recommendation carry the citation."""
    citation = generate_citation(logs, crisis_events)
    recommendations = list(result.recommendations)
    if recommendations:
        recommendations[-1] = f"{recommendations[-1]} {citation}"

    return result.model_copy(
        update={
            "summary": f"{result.summary}\n\n{citation}",
            "recommendations": recommendations,
        }
    )


def create_validated_result(
    result: AnalysisResult,
    logs: Sequence[LogRecord],
    crisis_events: Sequence[CrisisRecord] | None = None,
    config: ValidationConfig | None = None,
) -> ValidatedAnalysisResult:
    """Combine a report with its validation verdict and citation."""
    validation = validate_insights(result, logs, crisis_events, config)
    return ValidatedAnalysisResult(
        **result.model_dump(exclude={"validation", "trustworthy", "citation"}),
        validation=validation,
        trustworthy=validation.is_valid,
        citation=generate_citation(logs, crisis_events),
    )


ValidatedAnalysisResult.model_rebuild(_types_namespace={"ValidationResult": ValidationResult})

"""Hallucination validation for NeuroLogg analyses.

statistics → claims → rules → validator: compute ground truth from the
records, pull numeric claims out of the report, match each claim to a
statistic, and aggregate into a verdict.
"""

from neurologg.validation.claims import ClaimCategory, ExtractedClaim, extract_claims
from neurologg.validation.rules import (
    DEFAULT_RULES,
    ClaimRule,
    ClaimValidation,
    KeywordRule,
    NamedEntryRule,
    validate_claim,
)
from neurologg.validation.statistics import ComputedStatistics, StrategyStats, compute_statistics
from neurologg.validation.validator import (
    ValidationResult,
    add_citations,
    create_validated_result,
    generate_citation,
    validate_insights,
)

__all__ = [
    "ClaimCategory",
    "ExtractedClaim",
    "extract_claims",
    "DEFAULT_RULES",
    "ClaimRule",
    "ClaimValidation",
    "KeywordRule",
    "NamedEntryRule",
    "validate_claim",
    "ComputedStatistics",
    "StrategyStats",
    "compute_statistics",
    "ValidationResult",
    "add_citations",
    "create_validated_result",
    "generate_citation",
    "validate_insights",
]

"""Core data models for NeuroLogg analysis.

This module consolidates the records supplied by the record store and the
structured report produced by the analysis pipeline.

Models follow a tiered flow:
1. RAW RECORDS (LogRecord, CrisisRecord, ChildProfile)
2. MODEL OUTPUT (Correlation, AnalysisResult)
3. VERIFIED OUTPUT (ValidatedAnalysisResult)

Field names are snake_case in Python and camelCase on the wire, so records
exported by the app and JSON returned by the model both validate directly.
"""

from __future__ import annotations

import uuid as uuid_module
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from neurologg.validation.validator import ValidationResult


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _as_utc(value: datetime) -> datetime:
    """Read a timestamp without an offset as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Enums
# =============================================================================


class StrategyOutcome(str, Enum):
    """Observed outcome of the strategies used in a log."""

    HELPED = "helped"
    NO_CHANGE = "no_change"
    ESCALATED = "escalated"


class CorrelationStrength(str, Enum):
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"


class AnalysisKind(str, Enum):
    """Cache and dedup partition for an analysis request."""

    REGULAR = "regular"
    DEEP = "deep"


# =============================================================================
# Input Records
# =============================================================================


class LogRecord(_CamelModel):
    """One behavioral observation.

    Attributes:
        id: Unique identifier assigned by the record store.
        timestamp: When the observation was made.
        context: Setting of the observation (e.g. "home", "school").
        arousal: Arousal level, 0-10.
        valence: Valence (mood) level, 0-10.
        energy: Energy level, 0-10.
        duration: Duration of the episode in minutes.
        sensory_triggers: Sensory trigger tags.
        context_triggers: Contextual trigger tags.
        strategies: Regulation strategies that were used.
        strategy_effectiveness: Outcome of the strategies, if recorded.
        note: Free-text note.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    context: str = "home"
    arousal: float = Field(ge=0, le=10)
    valence: float = Field(ge=0, le=10)
    energy: float = Field(ge=0, le=10)
    duration: float = Field(default=0, ge=0)
    sensory_triggers: list[str] = Field(default_factory=list)
    context_triggers: list[str] = Field(default_factory=list)
    strategies: list[str] = Field(default_factory=list)
    strategy_effectiveness: StrategyOutcome | None = None
    note: str = ""

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)


class CrisisRecord(_CamelModel):
    """One elevated-severity event."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    context: str = "home"
    type: str = "other"
    duration_seconds: float = Field(default=0, ge=0)
    peak_intensity: float = Field(default=0, ge=0, le=10)
    sensory_triggers: list[str] = Field(default_factory=list)
    context_triggers: list[str] = Field(default_factory=list)
    strategies_used: list[str] = Field(default_factory=list)
    resolution: str = "other"
    recovery_time_minutes: float | None = Field(default=None, ge=0)
    notes: str = ""

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)


class ChildProfile(_CamelModel):
    """Optional context about the child whose records are analyzed."""

    name: str = ""
    age: int | None = None
    diagnoses: list[str] = Field(default_factory=list)
    communication_style: str | None = None
    sensory_sensitivities: list[str] = Field(default_factory=list)
    seeking_sensory: list[str] = Field(default_factory=list)
    effective_strategies: list[str] = Field(default_factory=list)
    additional_context: str | None = None


# =============================================================================
# Analysis Results
# =============================================================================


class Correlation(_CamelModel):
    """A relationship between two factors reported by the model."""

    factor1: str = ""
    factor2: str = ""
    relationship: str = ""
    strength: CorrelationStrength = CorrelationStrength.MODERATE
    description: str = ""

    @field_validator("strength", mode="before")
    @classmethod
    def normalize_strength(cls, v: Any) -> Any:
        if isinstance(v, CorrelationStrength):
            return v
        if isinstance(v, str) and v.strip().lower() in {s.value for s in CorrelationStrength}:
            return v.strip().lower()
        return CorrelationStrength.MODERATE


class AnalysisResult(_CamelModel):
    """Structured behavioral-pattern report.

    The narrative fields, correlations and recommendations come from the
    model. ``date_range_start``, ``date_range_end``, ``model_used`` and
    ``is_deep_analysis`` are set by the orchestrator from the request and
    are never trusted from model output.
    """

    id: str = Field(default_factory=lambda: f"analysis-{uuid_module.uuid4()}")
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    trigger_analysis: str = ""
    strategy_evaluation: str = ""
    interoception_patterns: str = ""
    summary: str = ""
    correlations: list[Correlation] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    date_range_start: datetime | None = None
    date_range_end: datetime | None = None
    model_used: str | None = None
    is_deep_analysis: bool = False

    def narrative_texts(self) -> list[str]:
        """All free text in the report, in reading order."""
        return [
            self.trigger_analysis,
            self.strategy_evaluation,
            self.interoception_patterns,
            self.summary,
            *(c.description for c in self.correlations),
            *self.recommendations,
        ]


class ValidatedAnalysisResult(AnalysisResult):
    """An AnalysisResult combined with its validation verdict and citation."""

    validation: ValidationResult | None = None
    trustworthy: bool = False
    citation: str = ""


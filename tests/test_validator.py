"""Tests for report-level hallucination validation.

Covers:
- Verdicts over several claims and the minimum valid ratio
- Summary, detail and caution warnings
- Citations and citation insertion
- ValidatedAnalysisResult composition
"""

import pytest

from neurologg.config import ValidationConfig
from neurologg.core.models import AnalysisResult, Correlation
from neurologg.validation.validator import (
    CAUTION_WARNING,
    NO_DATA_CITATION,
    add_citations,
    create_validated_result,
    generate_citation,
    validate_insights,
)

# Keeps each claim's context window free of the neighbouring claim's keywords
FILLER = "The observations were written down by parents and teachers over the period."


def report(*sentences, **fields):
    return AnalysisResult(summary=f" {FILLER} ".join(sentences), **fields)


# =============================================================================
# validate_insights
# =============================================================================


class TestValidateInsights:
    """Tests for validate_insights()."""

    def test_accurate_claim(self, make_log):
        """100% high arousal over all-high logs is valid."""
        logs = [make_log(i, arousal=8) for i in range(4)]
        validation = validate_insights(report("High arousal in 100% of the logs."), logs)

        assert validation.is_valid is True
        assert validation.total_claims == 1
        assert validation.valid_claims == 1
        assert validation.warnings == []

    def test_inaccurate_claim(self, sample_logs):
        """80% claimed against 50% actual is flagged with a detail warning."""
        validation = validate_insights(report("High arousal occurred in 80% of logs."), sample_logs)

        assert validation.is_valid is False
        [v] = validation.claim_validations
        assert v.discrepancy_percent == 60
        assert validation.warnings == [
            CAUTION_WARNING,
            "1 of 1 AI claims deviate from the data.",
            'AI claims "80%" but the actual value is 50 (60% deviation)',
        ]

    def test_no_claims_is_valid(self, sample_logs):
        validation = validate_insights(report("Mornings are calmer."), sample_logs)
        assert validation.is_valid is True
        assert validation.total_claims == 0
        assert validation.valid_ratio == 1.0

    def test_unmatched_claims_not_counted(self, sample_logs):
        """Claims no rule can place neither pass nor fail."""
        validation = validate_insights(report("It was sunny on 90% of days."), sample_logs)
        assert validation.total_claims == 0
        assert validation.is_valid is True

    def test_ratio_above_threshold(self, sample_logs):
        """Three of four valid is trustworthy but still warns."""
        result = report(
            "High arousal in 50% of cases.",
            "Low energy in 30% of cases.",
            "We reviewed 10 logs.",
            "Home accounted for 100% of entries.",
        )
        validation = validate_insights(result, sample_logs)

        assert validation.total_claims == 4
        assert validation.valid_claims == 3
        assert validation.is_valid is True
        assert validation.warnings == ["1 of 4 AI claims deviate from the data."]

    def test_ratio_below_threshold(self, sample_logs):
        """Two of three valid falls below 0.7."""
        result = report(
            "High arousal in 50% of cases.",
            "We reviewed 10 logs.",
            "Home accounted for 100% of entries.",
        )
        validation = validate_insights(result, sample_logs)

        assert validation.valid_claims == 2
        assert validation.is_valid is False
        assert validation.warnings[0] == CAUTION_WARNING
        assert "1 of 3 AI claims deviate from the data." in validation.warnings

    def test_small_deviation_has_no_detail_warning(self, sample_logs):
        """A 25% deviation is invalid but below the detail threshold."""
        validation = validate_insights(report("Home accounted for 100% of entries."), sample_logs)
        assert not any(w.startswith("AI claims") for w in validation.warnings)

    def test_recommendations_and_correlations_scanned(self, sample_logs):
        result = AnalysisResult(
            recommendations=[f"{FILLER} High arousal appears in 90% of logs."],
            correlations=[Correlation(description="Low energy in 30% of logs.")],
        )
        validation = validate_insights(result, sample_logs)
        assert validation.total_claims == 2
        assert validation.valid_claims == 1

    def test_custom_ratio(self, sample_logs):
        config = ValidationConfig(min_valid_ratio=0.0)
        validation = validate_insights(report("High arousal in 80% of logs."), sample_logs, None, config)
        assert validation.is_valid is True

    def test_computed_stats_attached(self, sample_logs, sample_crisis_events):
        validation = validate_insights(report("x"), sample_logs, sample_crisis_events)
        assert validation.computed_stats.log_count == 10
        assert validation.computed_stats.crisis_count == 2


# =============================================================================
# Citations
# =============================================================================


class TestGenerateCitation:
    """Tests for generate_citation()."""

    def test_full(self, make_log, make_crisis):
        logs = [make_log(i, days_offset=i % 7) for i in range(25)]
        crisis = [make_crisis(0), make_crisis(1)]
        assert generate_citation(logs, crisis) == "[Based on 25 logs, 2 crisis events, 7 days]"

    def test_single_day_without_crisis(self, make_log):
        assert generate_citation([make_log(0), make_log(1)]) == "[Based on 2 logs]"

    def test_no_logs(self):
        assert generate_citation([]) == NO_DATA_CITATION

    def test_mixed_timestamp_offsets(self, make_log):
        """An export with and without offsets still spans whole days."""
        logs = [
            make_log(0, timestamp="2024-03-01T08:00:00Z"),
            make_log(1, timestamp="2024-03-02T08:00:00"),
        ]
        assert generate_citation(logs) == "[Based on 2 logs, 2 days]"


class TestAddCitations:
    """Tests for add_citations()."""

    def test_summary_and_last_recommendation(self, sample_logs):
        result = AnalysisResult(summary="Calm mornings.", recommendations=["A", "B"])
        cited = add_citations(result, sample_logs)

        assert cited.summary == "Calm mornings.\n\n[Based on 10 logs, 5 days]"
        assert cited.recommendations == ["A", "B [Based on 10 logs, 5 days]"]
        assert result.summary == "Calm mornings."

    def test_no_recommendations(self, sample_logs):
        cited = add_citations(AnalysisResult(summary="s"), sample_logs)
        assert cited.recommendations == []


# =============================================================================
# create_validated_result
# =============================================================================


class TestCreateValidatedResult:
    """Tests for create_validated_result()."""

    def test_combines_report_and_verdict(self, sample_logs, sample_crisis_events):
        result = report(
            "High arousal occurred in 80% of logs.",
            model_used="test/model",
            is_deep_analysis=True,
        )
        validated = create_validated_result(result, sample_logs, sample_crisis_events)

        assert validated.id == result.id
        assert validated.model_used == "test/model"
        assert validated.is_deep_analysis is True
        assert validated.trustworthy is False
        assert validated.validation.total_claims == 1
        assert validated.citation == "[Based on 10 logs, 2 crisis events, 5 days]"

    @pytest.mark.parametrize("by_alias", [True, False])
    def test_serializable(self, sample_logs, by_alias):
        validated = create_validated_result(report("High arousal in 50%."), sample_logs)
        dumped = validated.model_dump(mode="json", by_alias=by_alias)
        assert dumped["trustworthy"] is True

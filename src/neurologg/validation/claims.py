"""Numeric claim extraction from model-generated text.

Scans free text for percentages, scale averages, counts and durations.
Patterns accept English and Norwegian phrasing and decimal commas. Every
claim keeps a window of surrounding text; the validation rules use it to
decide which statistic the claim is about.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

DEFAULT_CONTEXT_WINDOW = 50

_NUMBER = r"(\d+(?:[.,]\d+)?)"
_INTEGER = r"(\d+)"


class ClaimCategory(str, Enum):
    PERCENTAGE = "percentage"
    AVERAGE = "average"
    COUNT = "count"
    DURATION = "duration"


class ExtractedClaim(BaseModel):
    """One numeric assertion found in text.

    Attributes:
        original_text: The matched substring.
        value: Numeric value, with hours converted to minutes.
        category: Kind of quantity.
        context: Text surrounding the match, used for disambiguation.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    original_text: str
    value: float
    category: ClaimCategory
    context: str


# (category, pattern, maximum, multiplier) in scan order.
_PATTERNS: list[tuple[ClaimCategory, re.Pattern[str], float | None, float]] = [
    # Percentages: "40%", "40 prosent", "40 percent"
    (ClaimCategory.PERCENTAGE, re.compile(_NUMBER + r"\s*%"), 100, 1),
    (ClaimCategory.PERCENTAGE, re.compile(_NUMBER + r"\s*prosent", re.IGNORECASE), 100, 1),
    (ClaimCategory.PERCENTAGE, re.compile(_NUMBER + r"\s*per\s?cent", re.IGNORECASE), 100, 1),
    # Averages: "gjennomsnitt på 6,5", "snitt 6", "average of 6.5", "6.5/10"
    (
        ClaimCategory.AVERAGE,
        re.compile(r"gjennomsnitt(?:lig)?\s*(?:på|:)?\s*" + _NUMBER, re.IGNORECASE),
        10,
        1,
    ),
    (ClaimCategory.AVERAGE, re.compile(r"\bsnitt\s*(?:på|:)?\s*" + _NUMBER, re.IGNORECASE), 10, 1),
    (
        ClaimCategory.AVERAGE,
        re.compile(r"average\s*(?:of|was|is|:)?\s*" + _NUMBER, re.IGNORECASE),
        10,
        1,
    ),
    (ClaimCategory.AVERAGE, re.compile(_NUMBER + r"\s*/\s*10\b"), 10, 1),
    # Counts: "12 hendelser", "3 tilfeller", "25 logs", "4 ganger", "2 crises"
    (ClaimCategory.COUNT, re.compile(_INTEGER + r"\s*hendelser?", re.IGNORECASE), None, 1),
    (ClaimCategory.COUNT, re.compile(_INTEGER + r"\s*tilfeller?", re.IGNORECASE), None, 1),
    (
        ClaimCategory.COUNT,
        re.compile(_INTEGER + r"\s*(?:logger|logginger|logs?|entries|observations)\b", re.IGNORECASE),
        None,
        1,
    ),
    (
        ClaimCategory.COUNT,
        re.compile(_INTEGER + r"\s*(?:ganger|times|occurrences|incidents)\b", re.IGNORECASE),
        None,
        1,
    ),
    (ClaimCategory.COUNT, re.compile(_INTEGER + r"\s*(?:crisis|crises|krise)", re.IGNORECASE), None, 1),
    # Durations: "15 minutter", "15 min", "15 minutes", "2 timer", "2 hours"
    (
        ClaimCategory.DURATION,
        re.compile(_NUMBER + r"\s*(?:minutter|minutt|minutes?|mins?)\b", re.IGNORECASE),
        None,
        1,
    ),
    (
        ClaimCategory.DURATION,
        re.compile(_NUMBER + r"\s*(?:timer|hours?|hrs?)\b", re.IGNORECASE),
        None,
        60,
    ),
]


def _parse_number(raw: str) -> float:
    return float(raw.replace(",", "."))


def extract_claims(text: str, context_window: int = DEFAULT_CONTEXT_WINDOW) -> list[ExtractedClaim]:
    """Extract numeric claims from text.

    Values outside a category's range are dropped (percentages 0-100,
    averages 0-10). Claims sharing a ``(category, value)`` pair are
    reported once, keeping the first occurrence in scan order.

    Example:
        >>> [c.value for c in extract_claims("High arousal in 40% of logs")]
        [40.0]
    """
    claims: list[ExtractedClaim] = []
    seen: set[tuple[ClaimCategory, float]] = set()

    for category, pattern, maximum, multiplier in _PATTERNS:
        for match in pattern.finditer(text):
            value = _parse_number(match.group(1)) * multiplier
            if value < 0 or (maximum is not None and value > maximum):
                continue

            key = (category, value)
            if key in seen:
                continue
            seen.add(key)

            start = max(0, match.start() - context_window)
            end = min(len(text), match.end() + context_window)
            claims.append(
                ExtractedClaim(
                    original_text=match.group(0),
                    value=value,
                    category=category,
                    context=text[start:end],
                )
            )

    return claims

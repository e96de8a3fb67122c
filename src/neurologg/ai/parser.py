"""Response parsing for behavioral analysis reports.

Turns raw model output into an ``AnalysisResult``. The model is asked for a
bare JSON object but frequently wraps it in a markdown fence or adds a
sentence around it, so parsing is tolerant about framing and strict about
content: the result must be a JSON object carrying at least one of the
narrative fields.

Metadata (date range, model identifier, deep flag) is never read from the
model's output. The orchestrator attaches it from the original request.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from neurologg.ai.errors import EmptyResponseError, MalformedResponseError
from neurologg.core.models import AnalysisResult, Correlation

logger = logging.getLogger(__name__)

NARRATIVE_FIELDS = {
    "trigger_analysis": "triggerAnalysis",
    "strategy_evaluation": "strategyEvaluation",
    "interoception_patterns": "interoceptionPatterns",
    "summary": "summary",
}

_FENCE_PATTERN = re.compile(r"^\s*```(?:json|JSON)?\s*\n?([\s\S]*?)\n?\s*```\s*$")
_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


def strip_code_fence(text: str) -> str:
    """Remove a markdown code fence surrounding the whole text, if present."""
    match = _FENCE_PATTERN.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_message_content(payload: Any, status_code: int | None = None) -> str:
    """Pull ``choices[0].message.content`` out of a chat-completion envelope.

    Raises:
        EmptyResponseError: If there are no choices or the content is empty.
    """
    details = {"status_code": status_code}
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not choices:
        raise EmptyResponseError("Empty response from AI service: no choices", details=details)

    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        raise EmptyResponseError("Empty response from AI service: no content", details=details)
    return content


def _load_object(text: str) -> dict[str, Any]:
    body = strip_code_fence(text)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        # Model added prose around the object
        match = _OBJECT_PATTERN.search(body)
        if not match:
            raise MalformedResponseError(
                f"Response is not valid JSON: {e.msg}",
                details={"position": e.pos, "length": len(body)},
                original_error=e,
            ) from e
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as inner:
            raise MalformedResponseError(
                f"Response is not valid JSON: {inner.msg}",
                details={"position": inner.pos, "length": len(body)},
                original_error=inner,
            ) from inner

    if not isinstance(data, dict):
        raise MalformedResponseError(
            "Response JSON is not an object",
            details={"type": type(data).__name__},
        )
    return data


def _field(data: dict[str, Any], name: str, alias: str) -> Any:
    if alias in data:
        return data[alias]
    return data.get(name)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _parse_correlations(raw: Any) -> list[Correlation]:
    if not isinstance(raw, list):
        return []

    correlations = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        correlations.append(
            Correlation(
                factor1=_as_text(item.get("factor1")),
                factor2=_as_text(item.get("factor2")),
                relationship=_as_text(item.get("relationship")),
                strength=item.get("strength"),
                description=_as_text(item.get("description")),
            )
        )
    return correlations


def parse_analysis_response(text: str) -> AnalysisResult:
    """Parse model output into an AnalysisResult.

    Args:
        text: The assembled content string from the backend.

    Returns:
        AnalysisResult with narrative fields, correlations and
        recommendations. Metadata fields are left at their defaults.

    Raises:
        EmptyResponseError: If ``text`` is empty.
        MalformedResponseError: If ``text`` is not a JSON object or carries
            none of the narrative fields.
    """
    if not text or not text.strip():
        raise EmptyResponseError()

    data = _load_object(text)

    present = [name for name, alias in NARRATIVE_FIELDS.items() if _field(data, name, alias) is not None]
    if not present:
        raise MalformedResponseError(
            "Response is missing all analysis fields",
            details={"keys": sorted(data)[:20]},
        )

    raw_recommendations = data.get("recommendations")
    recommendations = (
        [r for r in raw_recommendations if isinstance(r, str)]
        if isinstance(raw_recommendations, list)
        else []
    )

    result = AnalysisResult(
        trigger_analysis=_as_text(_field(data, "trigger_analysis", "triggerAnalysis")),
        strategy_evaluation=_as_text(_field(data, "strategy_evaluation", "strategyEvaluation")),
        interoception_patterns=_as_text(
            _field(data, "interoception_patterns", "interoceptionPatterns")
        ),
        summary=_as_text(data.get("summary")),
        correlations=_parse_correlations(data.get("correlations")),
        recommendations=recommendations,
    )

    logger.debug(
        f"Parsed analysis: {len(present)} narrative fields, "
        f"{len(result.correlations)} correlations, {len(result.recommendations)} recommendations"
    )
    return result

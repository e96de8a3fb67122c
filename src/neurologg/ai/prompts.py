"""Prompt Templates for behavioral pattern analysis.

This module is the single source of all prompts sent to the inference
backends. Every request is a system instruction plus a user prompt; both are
pure functions of the records, with no network or mutable state.

Design Principles:
- Structured prompts: the model is told the exact JSON schema to return
- Graceful degradation: the profile block and crisis section are omitted
  entirely when there is nothing to put in them
- Bounded size: records are summarized, newest first, and capped

Example:
    >>> from neurologg.ai.prompts import build_prompts
    >>>
    >>> system, user = build_prompts(logs, crisis_events, profile=profile)
    >>> text = await backend.generate(system, user)
"""

from __future__ import annotations

import json
import math
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from string import Template
from typing import Any

from neurologg.core.models import ChildProfile, CrisisRecord, LogRecord

MAX_PROMPT_LOGS = 150
MAX_PROMPT_CRISIS_EVENTS = 50


# =============================================================================
# Template Structure
# =============================================================================


@dataclass
class PromptTemplate:
    """Metadata and content for a prompt template.

    Attributes:
        id: Unique identifier (e.g., "behavior_analysis_v1").
        version: Version string for tracking prompt changes.
        system_instruction: Role and behavior instructions for the model.
        user_prompt_template: User prompt with ``$placeholder`` variables.
        output_schema: JSON schema the model must answer with.
        required_variables: Variables that must be provided to ``render``.
    """

    id: str
    version: str
    system_instruction: str
    user_prompt_template: str
    output_schema: dict[str, Any] | None = None
    required_variables: set[str] = field(default_factory=set)

    def render(self, **variables: Any) -> tuple[str, str]:
        """Render the template.

        Returns:
            Tuple of (system_instruction, rendered_user_prompt).

        Raises:
            ValueError: If required variables are missing.
        """
        missing = sorted(self.required_variables - set(variables))
        if missing:
            raise ValueError(f"Missing required variables for prompt '{self.id}': {missing}")

        if self.output_schema and "output_schema" not in variables:
            variables["output_schema"] = json.dumps(self.output_schema, indent=2)

        rendered = Template(self.user_prompt_template).safe_substitute(variables)
        return self.system_instruction, rendered


# =============================================================================
# System Instructions
# =============================================================================

ANALYST_SYSTEM = textwrap.dedent(
    """
    You are an experienced analyst of emotional regulation and sensory
    processing in neurodivergent children. You review observation logs
    recorded by parents and teachers and identify patterns in triggers,
    regulation strategies and body signals (interoception).

    Guidelines:
    - Base every statement on the data provided. Do not invent numbers.
    - When you state a percentage, average or count, it must be computable
      from the logs as given.
    - Be concrete and practical. Recommendations should be actions a parent
      or teacher can try this week.
    - Use warm, non-judgmental language about the child.
    - Respond with valid JSON only. No markdown, no explanations outside JSON.
    """
).strip()

DEEP_ANALYSIS_BLOCK = textwrap.dedent(
    """
    ## Deep Analysis
    This is an in-depth analysis. In addition to the main patterns:
    - Look for subtle patterns that only appear over several weeks
    - Examine interactions between multiple factors (for example setting,
      time of day and energy together)
    - Compare early and late periods to describe trends
    - Note where the data is too sparse to support a conclusion
    """
).strip()

ANALYSIS_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "triggerAnalysis": {"type": "string"},
        "strategyEvaluation": {"type": "string"},
        "interoceptionPatterns": {"type": "string"},
        "correlations": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "factor1": {"type": "string"},
                    "factor2": {"type": "string"},
                    "relationship": {"type": "string"},
                    "strength": {"type": "string", "enum": ["weak", "moderate", "strong"]},
                    "description": {"type": "string"},
                },
            },
        },
        "recommendations": {"type": "array", "items": {"type": "string"}},
        "summary": {"type": "string"},
    },
    "required": ["triggerAnalysis", "strategyEvaluation", "interoceptionPatterns", "summary"],
}

BEHAVIOR_ANALYSIS_PROMPT = PromptTemplate(
    id="behavior_analysis_v1",
    version="1.0.0",
    system_instruction=ANALYST_SYSTEM,
    user_prompt_template=textwrap.dedent(
        """
        Analyze the following behavioral observations.

        ## Overview
        - **Period:** $total_days days
        - **Logs:** $log_count
        $crisis_overview
        ## Logs (newest first, days_ago relative to the newest log)
        $logs_json
        $crisis_section
        ## Task
        1. Identify the most frequent sensory and contextual triggers and how
           they relate to high arousal.
        2. Evaluate which regulation strategies helped, had no effect, or
           preceded escalation.
        3. Describe patterns in arousal, valence and energy (interoception).
        4. List notable correlations between factors.
        5. Give 3-5 concrete recommendations.
        6. Finish with a short summary.

        ## Output Schema
        $output_schema

        Respond with JSON only.
        """
    ).strip(),
    output_schema=ANALYSIS_OUTPUT_SCHEMA,
    required_variables={"total_days", "log_count", "logs_json"},
)


# =============================================================================
# Record Preparation
# =============================================================================


def _days_ago(reference: datetime, when: datetime) -> int:
    return max(0, (reference - when).days)


def calculate_total_days(logs: Sequence[LogRecord]) -> int:
    """Number of calendar days spanned by the logs, counting both ends."""
    if not logs:
        return 0
    timestamps = [log.timestamp for log in logs]
    span = (max(timestamps) - min(timestamps)).total_seconds() / 86400
    return math.ceil(span) + 1


def prepare_logs_for_prompt(
    logs: Sequence[LogRecord], max_items: int = MAX_PROMPT_LOGS
) -> list[dict[str, Any]]:
    """Summarize logs for the prompt, newest first.

    Identifiers and absolute timestamps are replaced by a ``days_ago``
    offset from the newest log.
    """
    if not logs:
        return []

    ordered = sorted(logs, key=lambda log: log.timestamp, reverse=True)[:max_items]
    newest = ordered[0].timestamp

    prepared = []
    for log in ordered:
        item: dict[str, Any] = {
            "days_ago": _days_ago(newest, log.timestamp),
            "hour": log.timestamp.hour,
            "context": log.context,
            "arousal": log.arousal,
            "valence": log.valence,
            "energy": log.energy,
            "duration_minutes": log.duration,
        }
        if log.sensory_triggers:
            item["sensory_triggers"] = list(log.sensory_triggers)
        if log.context_triggers:
            item["context_triggers"] = list(log.context_triggers)
        if log.strategies:
            item["strategies"] = list(log.strategies)
        if log.strategy_effectiveness is not None:
            item["strategy_effectiveness"] = log.strategy_effectiveness.value
        if log.note:
            item["note"] = log.note[:200]
        prepared.append(item)
    return prepared


def prepare_crisis_events_for_prompt(
    crisis_events: Sequence[CrisisRecord],
    reference: datetime | None = None,
    max_items: int = MAX_PROMPT_CRISIS_EVENTS,
) -> list[dict[str, Any]]:
    """Summarize crisis events for the prompt, newest first."""
    if not crisis_events:
        return []

    ordered = sorted(crisis_events, key=lambda c: c.timestamp, reverse=True)[:max_items]
    newest = reference or ordered[0].timestamp

    prepared = []
    for crisis in ordered:
        item: dict[str, Any] = {
            "days_ago": _days_ago(newest, crisis.timestamp),
            "context": crisis.context,
            "type": crisis.type,
            "duration_minutes": round(crisis.duration_seconds / 60, 1),
            "peak_intensity": crisis.peak_intensity,
            "resolution": crisis.resolution,
        }
        triggers = [*crisis.sensory_triggers, *crisis.context_triggers]
        if triggers:
            item["triggers"] = triggers
        if crisis.strategies_used:
            item["strategies_used"] = list(crisis.strategies_used)
        if crisis.recovery_time_minutes is not None:
            item["recovery_minutes"] = crisis.recovery_time_minutes
        prepared.append(item)
    return prepared


def _profile_block(profile: ChildProfile) -> str:
    lines = ["## About the Child"]
    if profile.name:
        lines.append(f"- Name: {profile.name}")
    if profile.age is not None:
        lines.append(f"- Age: {profile.age}")
    if profile.diagnoses:
        lines.append(f"- Diagnoses: {', '.join(profile.diagnoses)}")
    if profile.communication_style:
        lines.append(f"- Communication: {profile.communication_style}")
    if profile.sensory_sensitivities:
        lines.append(f"- Sensory sensitivities: {', '.join(profile.sensory_sensitivities)}")
    if profile.seeking_sensory:
        lines.append(f"- Seeks sensory input: {', '.join(profile.seeking_sensory)}")
    if profile.effective_strategies:
        lines.append(f"- Known effective strategies: {', '.join(profile.effective_strategies)}")
    if profile.additional_context:
        lines.append(f"- Additional context: {profile.additional_context}")

    if len(lines) == 1:
        return ""
    lines.append("Use this context to personalize the analysis.")
    return "\n".join(lines)


# =============================================================================
# Prompt Builders
# =============================================================================


def build_system_prompt(profile: ChildProfile | None = None, deep: bool = False) -> str:
    """Build the system prompt.

    The profile block is omitted when there is no profile or it is empty.
    """
    parts = [BEHAVIOR_ANALYSIS_PROMPT.system_instruction]
    if profile is not None:
        block = _profile_block(profile)
        if block:
            parts.append(block)
    if deep:
        parts.append(DEEP_ANALYSIS_BLOCK)
    return "\n\n".join(parts)


def build_user_prompt(
    logs: Sequence[LogRecord],
    crisis_events: Sequence[CrisisRecord] | None = None,
    total_days: int | None = None,
) -> str:
    """Build the user prompt. The crisis section is omitted when empty."""
    prepared_logs = prepare_logs_for_prompt(logs)
    reference = max((log.timestamp for log in logs), default=None)
    prepared_crisis = prepare_crisis_events_for_prompt(crisis_events or [], reference=reference)

    if prepared_crisis:
        crisis_overview = f"- **Crisis events:** {len(crisis_events or [])}\n"
        crisis_section = (
            "\n## Crisis Events (newest first)\n"
            + json.dumps(prepared_crisis, indent=2, ensure_ascii=False)
            + "\n"
        )
    else:
        crisis_overview = ""
        crisis_section = ""

    _, user = BEHAVIOR_ANALYSIS_PROMPT.render(
        total_days=total_days if total_days is not None else calculate_total_days(logs),
        log_count=len(logs),
        logs_json=json.dumps(prepared_logs, indent=2, ensure_ascii=False),
        crisis_overview=crisis_overview,
        crisis_section=crisis_section,
    )
    return user


def build_prompts(
    logs: Sequence[LogRecord],
    crisis_events: Sequence[CrisisRecord] | None = None,
    profile: ChildProfile | None = None,
    deep: bool = False,
) -> tuple[str, str]:
    """Build the (system, user) prompt pair for one analysis request."""
    return (
        build_system_prompt(profile, deep=deep),
        build_user_prompt(logs, crisis_events, calculate_total_days(logs)),
    )

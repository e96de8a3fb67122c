"""Central Pytest Fixtures for NeuroLogg.

This module provides reusable record factories, configuration and scripted
fake backends across all test modules. No test touches the network: HTTP
backends are exercised through httpx.MockTransport and the orchestrator
through FakeBackend.

Fixtures included:
- Records: make_log, make_crisis (factory fixtures), sample_logs, sample_crisis_events, sample_profile
- Config: app_config (zero backoff, remote backend, local disabled)
- Backends: FakeBackend, fake_remote, fake_local, service
- Responses: valid_response
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from neurologg.ai.analyzer import AnalysisService, OrchestratorState
from neurologg.ai.cache import AnalysisCache
from neurologg.ai.streaming import collect_stream
from neurologg.config import AIConfig, AppConfig, LocalModelConfig, reset_config
from neurologg.core.models import ChildProfile, CrisisRecord, LogRecord

BASE_TIME = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

VALID_PAYLOAD: dict[str, Any] = {
    "triggerAnalysis": "Loud noise is the most common trigger.",
    "strategyEvaluation": "Deep pressure tends to help.",
    "interoceptionPatterns": "Energy dips in the afternoon.",
    "summary": "Mornings are calmer than afternoons.",
    "correlations": [
        {
            "factor1": "noise",
            "factor2": "arousal",
            "relationship": "positive",
            "strength": "strong",
            "description": "Noise precedes high arousal.",
        }
    ],
    "recommendations": ["Offer ear defenders", "Plan a quiet break after lunch"],
}
VALID_RESPONSE = json.dumps(VALID_PAYLOAD)


# =============================================================================
# Record Factories
# =============================================================================


def build_log(
    index: int = 0,
    arousal: float = 5,
    valence: float = 5,
    energy: float = 5,
    context: str = "home",
    days_offset: float = 0,
    **kwargs: Any,
) -> LogRecord:
    """Build a LogRecord with sensible defaults."""
    return LogRecord(
        id=kwargs.pop("id", f"log-{index}"),
        timestamp=kwargs.pop("timestamp", BASE_TIME + timedelta(days=days_offset)),
        context=context,
        arousal=arousal,
        valence=valence,
        energy=energy,
        **kwargs,
    )


def build_crisis(
    index: int = 0,
    duration_seconds: float = 600,
    peak_intensity: float = 8,
    days_offset: float = 0,
    **kwargs: Any,
) -> CrisisRecord:
    """Build a CrisisRecord with sensible defaults."""
    return CrisisRecord(
        id=kwargs.pop("id", f"crisis-{index}"),
        timestamp=kwargs.pop("timestamp", BASE_TIME + timedelta(days=days_offset)),
        duration_seconds=duration_seconds,
        peak_intensity=peak_intensity,
        **kwargs,
    )


@pytest.fixture
def make_log():
    """Factory fixture for LogRecord."""
    return build_log


@pytest.fixture
def make_crisis():
    """Factory fixture for CrisisRecord."""
    return build_crisis


@pytest.fixture
def sample_logs() -> list[LogRecord]:
    """Ten logs over five days with mixed settings, triggers and strategies."""
    logs = []
    for i in range(10):
        logs.append(
            build_log(
                i,
                arousal=8 if i % 2 == 0 else 4,
                valence=6,
                energy=2 if i < 3 else 6,
                context="school" if i % 5 == 0 else "home",
                days_offset=i // 2,
                sensory_triggers=["noise"] if i % 2 == 0 else [],
                context_triggers=["transition"] if i < 4 else [],
                strategies=["deep pressure"] if i < 6 else ["break"],
                strategy_effectiveness="helped" if i < 3 else "no_change",
            )
        )
    return logs


@pytest.fixture
def sample_crisis_events() -> list[CrisisRecord]:
    return [
        build_crisis(0, duration_seconds=600, recovery_time_minutes=20, days_offset=1),
        build_crisis(1, duration_seconds=1200, days_offset=3),
    ]


@pytest.fixture
def sample_profile() -> ChildProfile:
    return ChildProfile(
        name="Ola",
        age=9,
        diagnoses=["ADHD"],
        sensory_sensitivities=["noise"],
        effective_strategies=["deep pressure"],
    )


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    """Keep tests independent of the developer's environment."""
    for var in ("NEUROLOGG_API_KEY", "OPENROUTER_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("neurologg.config._read_from_keyring", lambda: None)
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def app_config() -> AppConfig:
    """Remote backend, local disabled, zero backoff."""
    return AppConfig(
        ai=AIConfig(backend="remote", retry_base_delay=0.0, max_retry_delay=0.0),
        local=LocalModelConfig(enabled=False),
    )


# =============================================================================
# Fake Backends
# =============================================================================


class FakeBackend:
    """Scripted inference backend that counts attempts.

    ``responses`` are consumed one per ``generate`` call; the last entry is
    reused once the script runs out. An entry that is an exception is raised.

    Attributes:
        calls: Model requested by each non-streaming ``generate`` call.
        stream_calls: Model requested by each ``stream`` call.
        gate: If set, ``generate`` waits on it before answering.
    """

    def __init__(
        self,
        name: str = "remote",
        responses: list[Any] | None = None,
        healthy: bool = True,
        stream_chunks: list[str] | None = None,
        stream_error: Exception | None = None,
    ) -> None:
        self.name = name
        self.responses = list(responses) if responses is not None else [VALID_RESPONSE]
        self.healthy = healthy
        self.stream_chunks = stream_chunks or []
        self.stream_error = stream_error
        self.calls: list[str | None] = []
        self.stream_calls: list[str | None] = []
        self.probe_count = 0
        self.gate: asyncio.Event | None = None
        self.model_label = f"local:{name}-model" if name == "local" else name

    async def probe(self) -> bool:
        self.probe_count += 1
        return self.healthy

    async def stream(self, system_prompt, user_prompt, *, model=None):
        self.stream_calls.append(model)
        for chunk in self.stream_chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    async def generate(self, system_prompt, user_prompt, callbacks=None, *, model=None):
        if callbacks is not None and callbacks.on_chunk is not None:
            return await collect_stream(
                self.stream(system_prompt, user_prompt, model=model), callbacks
            )

        self.calls.append(model)
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses[min(len(self.calls), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def valid_response() -> str:
    return VALID_RESPONSE


@pytest.fixture
def fake_remote() -> FakeBackend:
    return FakeBackend("remote")


@pytest.fixture
def fake_local() -> FakeBackend:
    return FakeBackend("local", healthy=False)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def service(app_config, fake_remote, fake_local, sleeps) -> AnalysisService:
    """AnalysisService with isolated state and fake backends."""

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return AnalysisService(
        config=app_config,
        state=OrchestratorState(cache=AnalysisCache(ttl_seconds=300)),
        remote=fake_remote,
        local=fake_local,
        sleep=record_sleep,
    )

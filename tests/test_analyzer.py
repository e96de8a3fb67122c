"""Tests for the analysis orchestrator.

Backends are scripted fakes (see conftest.FakeBackend), so every test can
count exactly how many generation attempts were made.

Covers:
- Input validation before any I/O
- Retry policy, backoff delays and retry callbacks
- Request deduplication and cache behavior
- Deep analysis premium cascade and downgrade
- Streaming with fallback to non-streaming
- Backend selection (remote, local, auto, fallback)
- Backend status and validation passthroughs
"""

import asyncio
from datetime import datetime, timezone

import pytest

from neurologg.ai.analyzer import (
    AnalysisOptions,
    AnalysisService,
    NoDataError,
    OrchestratorState,
)
from neurologg.ai.cache import AnalysisCache, fingerprint_records
from neurologg.ai.client import StreamCallbacks
from neurologg.ai.errors import (
    AINetworkError,
    AIRateLimitError,
    AIRequestError,
    AIServerError,
    BackendUnavailableError,
    MalformedResponseError,
)
from neurologg.config import AIConfig, AppConfig, LocalModelConfig
from neurologg.core.models import AnalysisKind

PREMIUM = ["premium/one", "premium/two", "premium/three"]


@pytest.fixture
def build_service(fake_remote, fake_local, sleeps):
    """Build a service with custom configuration around the shared fakes."""

    async def record_sleep(delay):
        sleeps.append(delay)

    def _build(ai=None, local=None):
        config = AppConfig(
            ai=ai or AIConfig(backend="remote", retry_base_delay=0.0, max_retry_delay=0.0),
            local=local or LocalModelConfig(enabled=False),
        )
        return AnalysisService(
            config=config,
            state=OrchestratorState(cache=AnalysisCache()),
            remote=fake_remote,
            local=fake_local,
            sleep=record_sleep,
        )

    return _build


def server_error():
    return AIServerError("API error 503: busy", status_code=503)


# =============================================================================
# Input Validation
# =============================================================================


class TestNoData:
    """Empty input is rejected before any backend call."""

    async def test_analyze(self, service, fake_remote):
        with pytest.raises(NoDataError):
            await service.analyze([], [])
        assert fake_remote.calls == []

    async def test_analyze_deep(self, service, fake_remote):
        with pytest.raises(NoDataError):
            await service.analyze_deep([])
        assert fake_remote.calls == []

    async def test_analyze_streaming_reports_error(self, service, fake_remote):
        """on_error receives the NoDataError."""
        errors = []
        with pytest.raises(NoDataError):
            await service.analyze_streaming([], None, StreamCallbacks(on_error=errors.append))
        assert isinstance(errors[0], NoDataError)
        assert fake_remote.stream_calls == []


# =============================================================================
# Regular Analysis
# =============================================================================


class TestAnalyze:
    """Tests for analyze()."""

    async def test_result_metadata(self, service, sample_logs):
        """Date range, model and deep flag come from the request."""
        result = await service.analyze(sample_logs)

        timestamps = [log.timestamp for log in sample_logs]
        assert result.date_range_start == min(timestamps)
        assert result.date_range_end == max(timestamps)
        assert result.model_used == AIConfig().free_model
        assert result.is_deep_analysis is False
        assert result.summary == "Mornings are calmer than afternoons."

    async def test_mixed_timestamp_offsets(self, service, make_log):
        """Logs with and without offsets produce a UTC date range."""
        logs = [
            make_log(0, timestamp="2024-03-02T08:00:00"),
            make_log(1, timestamp="2024-03-01T08:00:00Z"),
        ]
        result = await service.analyze(logs)

        assert result.date_range_start == datetime(2024, 3, 1, 8, tzinfo=timezone.utc)
        assert result.date_range_end == datetime(2024, 3, 2, 8, tzinfo=timezone.utc)

    async def test_uses_free_model(self, service, fake_remote, sample_logs):
        await service.analyze(sample_logs)
        assert fake_remote.calls == [AIConfig().free_model]


class TestRetry:
    """Tests for the retry policy."""

    async def test_retries_until_success(self, service, fake_remote, sample_logs, valid_response):
        """fail, fail, succeed makes three attempts and two retry callbacks."""
        fake_remote.responses = [server_error(), AINetworkError(), valid_response]
        retries = []
        options = AnalysisOptions(
            callbacks=StreamCallbacks(on_retry=lambda *args: retries.append(args))
        )

        result = await service.analyze(sample_logs, None, options)

        assert result.summary
        assert len(fake_remote.calls) == 3
        assert [(a, m) for a, m, _ in retries] == [(2, 3), (3, 3)]
        assert all(isinstance(reason, str) and reason for _, _, reason in retries)

    async def test_exhausted_raises_last_error(self, service, fake_remote, sample_logs):
        """After max_attempts the last error propagates with its attempt count."""
        fake_remote.responses = [server_error()]

        with pytest.raises(AIServerError) as exc_info:
            await service.analyze(sample_logs)

        assert len(fake_remote.calls) == 3
        assert exc_info.value.attempts == 3

    async def test_non_retriable_fails_fast(self, service, fake_remote, sample_logs):
        """A 4xx is not retried."""
        fake_remote.responses = [AIRequestError("API error 400: bad", status_code=400)]
        with pytest.raises(AIRequestError):
            await service.analyze(sample_logs)
        assert len(fake_remote.calls) == 1

    async def test_final_failure_reported(self, service, fake_remote, sample_logs, caplog):
        """The final failure is logged once with its request context."""
        fake_remote.responses = [AIRequestError("API error 400: bad", status_code=400)]
        with caplog.at_level("ERROR", logger="neurologg.ai.analyzer"):
            with pytest.raises(AIRequestError):
                await service.analyze(sample_logs)

        [record] = [r for r in caplog.records if r.name == "neurologg.ai.analyzer"]
        assert "AIRequestError" in record.getMessage()
        assert "kind=regular" in record.getMessage()
        assert "logs=10" in record.getMessage()

    async def test_parse_error_not_retried(self, service, fake_remote, sample_logs):
        """Malformed output is not retried."""
        fake_remote.responses = ["not valid json"]
        with pytest.raises(MalformedResponseError):
            await service.analyze(sample_logs)
        assert len(fake_remote.calls) == 1

    async def test_backoff_doubles_and_caps(self, build_service, fake_remote, sleeps, sample_logs):
        """Delays grow exponentially with at most 10% jitter and a cap."""
        fake_remote.responses = [server_error()]
        service = build_service(
            ai=AIConfig(
                backend="remote", max_attempts=4, retry_base_delay=1.0, max_retry_delay=3.0
            )
        )

        with pytest.raises(AIServerError):
            await service.analyze(sample_logs)

        assert len(sleeps) == 3
        assert 1.0 <= sleeps[0] <= 1.1
        assert 2.0 <= sleeps[1] <= 2.2
        assert 3.0 <= sleeps[2] <= 3.3

    async def test_retry_after_is_lower_bound(
        self, build_service, fake_remote, sleeps, sample_logs, valid_response
    ):
        """A server Retry-After longer than the backoff is honored."""
        fake_remote.responses = [AIRateLimitError(retry_after_seconds=12.0), valid_response]
        service = build_service(ai=AIConfig(backend="remote", retry_base_delay=1.0))

        await service.analyze(sample_logs)

        assert sleeps == [12.0]


# =============================================================================
# Deduplication and Cache
# =============================================================================


class TestDeduplication:
    """Tests for in-flight request sharing."""

    async def test_concurrent_identical_requests_share_one_call(
        self, service, fake_remote, sample_logs
    ):
        """Two concurrent identical requests make one backend call."""
        fake_remote.gate = asyncio.Event()

        first = asyncio.create_task(service.analyze(sample_logs))
        second = asyncio.create_task(service.analyze(list(reversed(sample_logs))))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert len(service.state.in_flight) == 1

        fake_remote.gate.set()
        a, b = await asyncio.gather(first, second)

        assert len(fake_remote.calls) == 1
        assert a == b
        assert service.state.in_flight == {}

    async def test_regular_and_deep_not_shared(self, service, fake_remote, sample_logs):
        """Different kinds never join each other."""
        await asyncio.gather(service.analyze(sample_logs), service.analyze_deep(sample_logs))
        assert len(fake_remote.calls) == 2

    async def test_failure_clears_entry_and_reaches_all_callers(
        self, service, fake_remote, sample_logs, valid_response
    ):
        """Every joined caller sees the failure and the next request starts fresh."""
        fake_remote.responses = [AIRequestError("API error 400: bad", status_code=400), valid_response]

        results = await asyncio.gather(
            service.analyze(sample_logs), service.analyze(sample_logs), return_exceptions=True
        )

        assert all(isinstance(r, AIRequestError) for r in results)
        assert service.state.in_flight == {}
        assert len(fake_remote.calls) == 1

        result = await service.analyze(sample_logs)
        assert result.summary
        assert len(fake_remote.calls) == 2

    async def test_force_refresh_joins_in_flight(self, service, fake_remote, sample_logs):
        """force_refresh skips the cache but still shares a running request."""
        await asyncio.gather(
            service.analyze(sample_logs),
            service.analyze(sample_logs, None, AnalysisOptions(force_refresh=True)),
        )
        assert len(fake_remote.calls) == 1


class TestCache:
    """Tests for result caching."""

    async def test_second_call_served_from_cache(self, service, fake_remote, sample_logs):
        first = await service.analyze(sample_logs)
        second = await service.analyze(sample_logs)

        assert second is first
        assert len(fake_remote.calls) == 1

    async def test_force_refresh_bypasses_cache(self, service, fake_remote, sample_logs):
        await service.analyze(sample_logs)
        await service.analyze(sample_logs, None, AnalysisOptions(force_refresh=True))
        assert len(fake_remote.calls) == 2

    async def test_result_cached_under_fingerprint_and_kind(self, service, sample_logs):
        result = await service.analyze_deep(sample_logs)
        key = fingerprint_records(sample_logs)
        assert service.state.cache.get(key, AnalysisKind.DEEP) is result
        assert service.state.cache.get(key, AnalysisKind.REGULAR) is None

    async def test_changed_records_miss_cache(self, service, fake_remote, sample_logs, make_log):
        await service.analyze(sample_logs)
        await service.analyze([*sample_logs, make_log(99, days_offset=9)])
        assert len(fake_remote.calls) == 2

    async def test_clear_cache(self, service, fake_remote, sample_logs):
        await service.analyze(sample_logs)
        assert service.clear_cache() == 1
        await service.analyze(sample_logs)
        assert len(fake_remote.calls) == 2

    async def test_failure_not_cached(self, service, fake_remote, sample_logs, valid_response):
        fake_remote.responses = [AIRequestError("API error 400: bad"), valid_response]
        with pytest.raises(AIRequestError):
            await service.analyze(sample_logs)
        assert len(service.state.cache) == 0


# =============================================================================
# Deep Analysis
# =============================================================================


class TestAnalyzeDeep:
    """Tests for the premium cascade."""

    @pytest.fixture
    def deep_service(self, build_service):
        return build_service(
            ai=AIConfig(
                backend="remote",
                premium_models=PREMIUM,
                retry_base_delay=0.0,
                max_retry_delay=0.0,
            )
        )

    async def test_first_premium_succeeds(self, deep_service, fake_remote, sample_logs):
        result = await deep_service.analyze_deep(sample_logs)

        assert fake_remote.calls == ["premium/one"]
        assert result.is_deep_analysis is True
        assert result.model_used == "premium/one"

    async def test_cascades_to_next_premium(
        self, deep_service, fake_remote, sample_logs, valid_response
    ):
        """A failing premium model moves on to the next one without retry."""
        fake_remote.responses = [server_error(), valid_response]

        result = await deep_service.analyze_deep(sample_logs)

        assert fake_remote.calls == ["premium/one", "premium/two"]
        assert result.is_deep_analysis is True
        assert result.model_used == "premium/two"

    async def test_parse_failure_also_cascades(
        self, deep_service, fake_remote, sample_logs, valid_response
    ):
        fake_remote.responses = ["garbage", valid_response]
        result = await deep_service.analyze_deep(sample_logs)
        assert result.model_used == "premium/two"

    async def test_downgrades_to_free_model(
        self, deep_service, fake_remote, sample_logs, valid_response
    ):
        """All premium models failing falls back to the free model, not deep."""
        fake_remote.responses = [server_error(), server_error(), server_error(), valid_response]

        result = await deep_service.analyze_deep(sample_logs)

        assert fake_remote.calls == [*PREMIUM, AIConfig().free_model]
        assert result.is_deep_analysis is False
        assert result.model_used == AIConfig().free_model

    async def test_free_model_retried_after_downgrade(
        self, deep_service, fake_remote, sample_logs, valid_response
    ):
        """The free-model step runs under the full retry policy."""
        fake_remote.responses = [server_error()] * 4 + [valid_response]
        retries = []
        options = AnalysisOptions(
            callbacks=StreamCallbacks(on_retry=lambda *args: retries.append(args))
        )

        result = await deep_service.analyze_deep(sample_logs, None, options)

        assert len(fake_remote.calls) == 5
        assert result.is_deep_analysis is False
        assert [a for a, _, _ in retries] == [2]

    async def test_unavailable_stops_cascade(self, deep_service, fake_remote, sample_logs):
        """A missing API key is not worth trying on other models."""
        fake_remote.responses = [BackendUnavailableError("no_api_key")]
        with pytest.raises(BackendUnavailableError):
            await deep_service.analyze_deep(sample_logs)
        assert len(fake_remote.calls) == 1


# =============================================================================
# Streaming
# =============================================================================


class TestAnalyzeStreaming:
    """Tests for analyze_streaming()."""

    async def test_chunks_and_completion(self, service, fake_remote, sample_logs, valid_response):
        """Chunks arrive in order and on_complete gets the full text once."""
        half = len(valid_response) // 2
        fake_remote.stream_chunks = [valid_response[:half], valid_response[half:]]
        chunks, completed = [], []

        result = await service.analyze_streaming(
            sample_logs,
            None,
            StreamCallbacks(on_chunk=chunks.append, on_complete=completed.append),
        )

        assert "".join(chunks) == valid_response
        assert completed == [valid_response]
        assert result.is_deep_analysis is False
        assert fake_remote.calls == []

    async def test_bypasses_cache_but_stores_result(
        self, service, fake_remote, sample_logs, valid_response
    ):
        """A streamed request always streams, and then fills the cache."""
        fake_remote.stream_chunks = [valid_response]
        await service.analyze(sample_logs)

        result = await service.analyze_streaming(
            sample_logs, None, StreamCallbacks(on_chunk=lambda c: None)
        )

        assert len(fake_remote.stream_calls) == 1
        assert service.state.cache.get(fingerprint_records(sample_logs)) is result

    async def test_falls_back_to_non_streaming(
        self, service, fake_remote, sample_logs, valid_response
    ):
        """A transport failure mid-stream retries without streaming."""
        fake_remote.stream_chunks = ["{partial"]
        fake_remote.stream_error = AINetworkError("connection reset")
        completed = []

        result = await service.analyze_streaming(
            sample_logs,
            None,
            StreamCallbacks(on_chunk=lambda c: None, on_complete=completed.append),
        )

        assert len(fake_remote.stream_calls) == 1
        assert len(fake_remote.calls) == 1
        assert completed == [valid_response]
        assert result.summary

    async def test_fallback_has_own_retry_budget(
        self, service, fake_remote, sample_logs, valid_response
    ):
        """The failed stream is not counted; the fallback retries in full."""
        fake_remote.stream_error = AINetworkError("connection reset")
        fake_remote.responses = [server_error(), server_error(), valid_response]
        retries = []

        result = await service.analyze_streaming(
            sample_logs,
            None,
            StreamCallbacks(
                on_chunk=lambda c: None, on_retry=lambda *args: retries.append(args)
            ),
        )

        assert result.summary
        assert len(fake_remote.stream_calls) == 1
        assert len(fake_remote.calls) == 3
        assert [(a, m) for a, m, _ in retries] == [(2, 3), (3, 3)]

    async def test_on_error_called_before_raise(self, service, fake_remote, sample_logs):
        """Parse failures reach on_error and then propagate."""
        fake_remote.stream_chunks = ["not json"]
        errors = []

        with pytest.raises(MalformedResponseError):
            await service.analyze_streaming(
                sample_logs,
                None,
                StreamCallbacks(on_chunk=lambda c: None, on_error=errors.append),
            )

        assert len(errors) == 1
        assert isinstance(errors[0], MalformedResponseError)


# =============================================================================
# Backend Selection
# =============================================================================


class TestBackendSelection:
    """Tests for remote/local/auto selection."""

    async def test_auto_uses_healthy_local(
        self, build_service, fake_remote, fake_local, sample_logs
    ):
        fake_local.healthy = True
        service = build_service(
            ai=AIConfig(backend="auto", retry_base_delay=0.0, max_retry_delay=0.0),
            local=LocalModelConfig(enabled=True),
        )

        result = await service.analyze(sample_logs)

        assert len(fake_local.calls) == 1
        assert fake_remote.calls == []
        assert result.model_used == "local:local-model"

    async def test_auto_skips_unhealthy_local(
        self, build_service, fake_remote, fake_local, sample_logs
    ):
        service = build_service(
            ai=AIConfig(backend="auto", retry_base_delay=0.0, max_retry_delay=0.0),
            local=LocalModelConfig(enabled=True),
        )

        await service.analyze(sample_logs)

        assert fake_local.probe_count == 1
        assert fake_local.calls == []
        assert len(fake_remote.calls) == 1

    async def test_auto_with_local_disabled_never_probes(
        self, build_service, fake_local, sample_logs
    ):
        service = build_service(ai=AIConfig(backend="auto"))
        await service.analyze(sample_logs)
        assert fake_local.probe_count == 0

    async def test_local_policy_disabled(self, build_service, sample_logs):
        service = build_service(ai=AIConfig(backend="local"))
        with pytest.raises(BackendUnavailableError) as exc_info:
            await service.analyze(sample_logs)
        assert exc_info.value.reason == "local_disabled"

    async def test_local_policy_not_loaded(self, build_service, sample_logs):
        service = build_service(
            ai=AIConfig(backend="local"), local=LocalModelConfig(enabled=True)
        )
        with pytest.raises(BackendUnavailableError) as exc_info:
            await service.analyze(sample_logs)
        assert exc_info.value.reason == "local_not_loaded"

    async def test_local_deep_skips_premium(
        self, build_service, fake_remote, fake_local, sample_logs
    ):
        """A local server has no premium tier."""
        fake_local.healthy = True
        service = build_service(
            ai=AIConfig(backend="local", premium_models=PREMIUM),
            local=LocalModelConfig(enabled=True),
        )

        result = await service.analyze_deep(sample_logs)

        assert fake_local.calls == [AIConfig().free_model]
        assert result.is_deep_analysis is False
        assert result.model_used == "local:local-model"

    async def test_local_failure_without_fallback(
        self, build_service, fake_remote, fake_local, sample_logs
    ):
        fake_local.healthy = True
        fake_local.responses = [AIRequestError("API error 400: bad")]
        service = build_service(
            ai=AIConfig(backend="local"), local=LocalModelConfig(enabled=True)
        )

        with pytest.raises(AIRequestError):
            await service.analyze(sample_logs)
        assert fake_remote.calls == []

    async def test_local_failure_falls_back_to_remote(
        self, build_service, fake_remote, fake_local, sample_logs
    ):
        fake_local.healthy = True
        fake_local.responses = [AIRequestError("API error 400: bad")]
        service = build_service(
            ai=AIConfig(backend="auto", retry_base_delay=0.0, max_retry_delay=0.0),
            local=LocalModelConfig(enabled=True, fallback_to_remote=True),
        )

        result = await service.analyze(sample_logs)

        assert len(fake_local.calls) == 1
        assert len(fake_remote.calls) == 1
        assert result.model_used == AIConfig().free_model


# =============================================================================
# Status and Validation
# =============================================================================


class TestBackendStatus:
    """Tests for get_backend_status()."""

    async def test_remote_only(self, service, sample_logs):
        await service.analyze(sample_logs)
        status = await service.get_backend_status()

        assert status.remote_configured is True
        assert status.active_backend == "remote"
        assert status.local_enabled is False
        assert status.local_ready is False
        assert status.cache_entries == 1
        assert status.in_flight_requests == 0

    async def test_local_ready(self, build_service, fake_local):
        fake_local.healthy = True
        service = build_service(
            ai=AIConfig(backend="auto"), local=LocalModelConfig(enabled=True)
        )
        status = await service.get_backend_status()
        assert status.active_backend == "local"
        assert status.local_ready is True

    async def test_nothing_available(self, build_service, fake_remote):
        fake_remote.healthy = False
        status = await build_service(ai=AIConfig(backend="auto")).get_backend_status()
        assert status.active_backend == "none"


class TestValidationPassthrough:
    """The service exposes validation with its configured tolerances."""

    async def test_create_validated_result(self, service, sample_logs):
        result = await service.analyze(sample_logs)
        validated = service.create_validated_result(result, sample_logs)

        assert validated.trustworthy is True
        assert validated.citation == "[Based on 10 logs, 5 days]"
        assert validated.model_used == result.model_used

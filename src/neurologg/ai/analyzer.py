"""Behavioral Analysis Service for NeuroLogg.

This is the entry point of the analysis pipeline. It connects
records → prompts → inference backend → parser → cache.

Flow:
1. Validate input (no logs means no request)
2. Cache lookup by record fingerprint and analysis kind
3. Join an identical in-flight request, or start one
4. Select a backend (local if healthy and enabled, else remote)
5. Generate with retry/backoff (deep: premium cascade, then free model)
6. Parse, attach request metadata, cache, return

Example:
    >>> from neurologg.ai.analyzer import AnalysisService
    >>>
    >>> service = AnalysisService()
    >>> result = await service.analyze(logs, crisis_events)
    >>> validated = service.create_validated_result(result, logs, crisis_events)
    >>> print(validated.trustworthy, validated.citation)
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel

from neurologg.ai.cache import AnalysisCache, fingerprint_records
from neurologg.ai.client import InferenceBackend, RedactingFilter, RemoteBackend, StreamCallbacks
from neurologg.ai.errors import (
    AIClientError,
    AIRateLimitError,
    BackendUnavailableError,
    TransportError,
)
from neurologg.ai.local import LocalBackend
from neurologg.ai.parser import parse_analysis_response
from neurologg.ai.prompts import build_prompts
from neurologg.config import AppConfig, get_config
from neurologg.core.models import (
    AnalysisKind,
    AnalysisResult,
    ChildProfile,
    CrisisRecord,
    LogRecord,
    ValidatedAnalysisResult,
)
from neurologg.validation.validator import (
    ValidationResult,
    create_validated_result,
    validate_insights,
)

logger = logging.getLogger(__name__)
logger.addFilter(RedactingFilter())

T = TypeVar("T")


# =============================================================================
# Exceptions
# =============================================================================


class AnalysisError(Exception):
    """Base exception for analysis errors."""

    pass


class NoDataError(AnalysisError):
    """Raised before any I/O when there are no logs to analyze."""

    def __init__(self, message: str = "No logs to analyze") -> None:
        super().__init__(message)


def report_ai_error(error: Exception, context: dict[str, Any] | None = None) -> None:
    """Log a final AI failure with its request context.

    Only the error class, safe message and context are logged, never
    prompts or record contents.
    """
    details = ", ".join(f"{k}={v}" for k, v in (context or {}).items())
    logger.error(f"AI analysis failed: {type(error).__name__}: {error} [{details}]")


# =============================================================================
# State and Options
# =============================================================================


@dataclass
class OrchestratorState:
    """Mutable state shared by all requests of one service.

    Attributes:
        cache: TTL cache of completed analyses.
        in_flight: Running requests by ``(logs_hash, kind)``. An entry is
            removed when its task settles, whether it succeeded or failed.
    """

    cache: AnalysisCache
    in_flight: dict[tuple[str, AnalysisKind], asyncio.Task[AnalysisResult]] = field(
        default_factory=dict
    )


@dataclass
class AnalysisOptions:
    """Per-request options.

    Attributes:
        force_refresh: Skip the cache lookup. The fresh result is cached.
        profile: Optional child profile rendered into the system prompt.
        callbacks: Progress callbacks. Only ``on_retry`` is used by the
            non-streaming variants.
    """

    force_refresh: bool = False
    profile: ChildProfile | None = None
    callbacks: StreamCallbacks | None = None


class BackendStatus(BaseModel):
    """Configuration and readiness snapshot of the service."""

    remote_configured: bool
    free_model: str
    premium_models: list[str]
    local_enabled: bool
    local_ready: bool
    active_backend: str
    cache_entries: int
    in_flight_requests: int


# =============================================================================
# Service
# =============================================================================


class AnalysisService:
    """Orchestrates analysis requests against the inference backends.

    Args:
        config: Application configuration. Defaults to ``get_config()``.
        state: Cache and in-flight map. Pass a fresh one per test.
        remote: Remote backend. Defaults to ``RemoteBackend(config.ai)``.
        local: Local backend. Defaults to ``LocalBackend(config.local, config.ai)``.
        sleep: Coroutine used for backoff delays.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        state: OrchestratorState | None = None,
        remote: InferenceBackend | None = None,
        local: InferenceBackend | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or get_config()
        self._state = state or OrchestratorState(
            cache=AnalysisCache(ttl_seconds=self._config.ai.cache_ttl_seconds)
        )
        self._remote = remote or RemoteBackend(self._config.ai)
        self._local = local or LocalBackend(self._config.local, self._config.ai)
        self._sleep = sleep

    @property
    def state(self) -> OrchestratorState:
        return self._state

    async def aclose(self) -> None:
        for backend in (self._remote, self._local):
            close = getattr(backend, "aclose", None)
            if close is not None:
                await close()

    # =========================================================================
    # Public API
    # =========================================================================

    async def analyze(
        self,
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None = None,
        options: AnalysisOptions | None = None,
    ) -> AnalysisResult:
        """Produce a regular analysis using the free model.

        Raises:
            NoDataError: If ``logs`` is empty.
            AIClientError: If every attempt failed.
        """
        return await self._analyze_deduplicated(
            AnalysisKind.REGULAR, logs, crisis_events, options or AnalysisOptions()
        )

    async def analyze_deep(
        self,
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None = None,
        options: AnalysisOptions | None = None,
    ) -> AnalysisResult:
        """Produce a deep analysis, preferring the premium model tier.

        Each premium model gets one attempt. If all fail, the free model runs
        under the full retry policy and the result is marked as not deep.
        """
        return await self._analyze_deduplicated(
            AnalysisKind.DEEP, logs, crisis_events, options or AnalysisOptions()
        )

    async def analyze_streaming(
        self,
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None = None,
        callbacks: StreamCallbacks | None = None,
        options: AnalysisOptions | None = None,
    ) -> AnalysisResult:
        """Produce a regular analysis, forwarding text fragments as they arrive.

        Streaming requests bypass the cache lookup and request dedup so the
        chunks reach this caller, but a successful result is cached.
        ``on_error`` is called before any error propagates.

        The streaming attempt is made once and does not count against the
        retry budget. If it fails with a transport error, the non-streaming
        fallback gets its own full ``max_attempts``, so a request can reach
        the backend ``1 + max_attempts`` times. ``on_retry`` fires only for
        retries within the fallback.
        """
        callbacks = callbacks or StreamCallbacks()
        options = options or AnalysisOptions()
        try:
            if not logs:
                raise NoDataError()

            logs_hash = fingerprint_records(logs, crisis_events)
            system, user = build_prompts(logs, crisis_events, profile=options.profile)
            model = self._config.ai.free_model

            async def run(backend: InferenceBackend) -> AnalysisResult:
                try:
                    text = await backend.generate(system, user, callbacks, model=model)
                except TransportError as e:
                    logger.warning(
                        f"Streaming failed on {backend.name} ({type(e).__name__}); "
                        "retrying without streaming"
                    )
                    text = await self._with_retry(
                        lambda: backend.generate(system, user, None, model=model), callbacks
                    )

                if callbacks.on_complete is not None:
                    callbacks.on_complete(text)
                parsed = parse_analysis_response(text)
                return self._finalize(parsed, logs, self._model_label(backend, model), deep=False)

            result = await self._with_backend(run)
            self._state.cache.set(result, logs_hash, AnalysisKind.REGULAR)
            return result

        except Exception as e:
            if callbacks.on_error is not None:
                callbacks.on_error(e)
            if isinstance(e, AIClientError):
                report_ai_error(e, {"kind": "regular", "streaming": True, "logs": len(logs)})
            raise

    def clear_cache(self) -> int:
        """Drop every cached analysis. Returns the number removed."""
        return self._state.cache.clear()

    async def get_backend_status(self) -> BackendStatus:
        remote_configured = await self._remote.probe()
        local_enabled = self._config.local.enabled and self._config.ai.backend != "remote"
        local_ready = await self._local.probe() if local_enabled else False

        if local_ready:
            active = "local"
        elif self._config.ai.backend == "local":
            active = "none"
        elif remote_configured:
            active = "remote"
        else:
            active = "none"

        return BackendStatus(
            remote_configured=remote_configured,
            free_model=self._config.ai.free_model,
            premium_models=list(self._config.ai.premium_models),
            local_enabled=self._config.local.enabled,
            local_ready=local_ready,
            active_backend=active,
            cache_entries=len(self._state.cache),
            in_flight_requests=len(self._state.in_flight),
        )

    def validate_insights(
        self,
        result: AnalysisResult,
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None = None,
    ) -> ValidationResult:
        return validate_insights(result, logs, crisis_events, self._config.validation)

    def create_validated_result(
        self,
        result: AnalysisResult,
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None = None,
    ) -> ValidatedAnalysisResult:
        return create_validated_result(result, logs, crisis_events, self._config.validation)

    # =========================================================================
    # Deduplication and Cache
    # =========================================================================

    async def _analyze_deduplicated(
        self,
        kind: AnalysisKind,
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None,
        options: AnalysisOptions,
    ) -> AnalysisResult:
        if not logs:
            raise NoDataError()

        logs_hash = fingerprint_records(logs, crisis_events)
        key = (logs_hash, kind)

        if not options.force_refresh:
            cached = self._state.cache.get(logs_hash, kind)
            if cached is not None:
                return cached

        task = self._state.in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._run_request(key, logs, crisis_events, options))
            self._state.in_flight[key] = task
        else:
            logger.debug(f"Joining in-flight {kind.value} analysis {logs_hash[:8]}")

        # Shielded so an abandoned caller does not cancel the shared request
        return await asyncio.shield(task)

    async def _run_request(
        self,
        key: tuple[str, AnalysisKind],
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None,
        options: AnalysisOptions,
    ) -> AnalysisResult:
        logs_hash, kind = key
        try:
            if kind is AnalysisKind.DEEP:
                result = await self._with_backend(
                    lambda backend: self._run_deep(backend, logs, crisis_events, options)
                )
            else:
                result = await self._with_backend(
                    lambda backend: self._run_regular(backend, logs, crisis_events, options)
                )
            self._state.cache.set(result, logs_hash, kind)
            logger.info(
                f"{kind.value.capitalize()} analysis complete: {len(logs)} logs, "
                f"model={result.model_used}"
            )
            return result
        except AIClientError as e:
            report_ai_error(e, {"kind": kind.value, "logs": len(logs)})
            raise
        finally:
            if self._state.in_flight.get(key) is asyncio.current_task():
                del self._state.in_flight[key]

    # =========================================================================
    # Backend Selection
    # =========================================================================

    async def _select_backend(self) -> InferenceBackend:
        policy = self._config.ai.backend
        if policy == "remote":
            return self._remote

        if policy == "local":
            if not self._config.local.enabled:
                raise BackendUnavailableError("local_disabled")
            if not await self._local.probe():
                raise BackendUnavailableError("local_not_loaded")
            return self._local

        if self._config.local.enabled and await self._local.probe():
            return self._local
        return self._remote

    async def _with_backend(self, run: Callable[[InferenceBackend], Awaitable[T]]) -> T:
        backend = await self._select_backend()
        if backend is self._remote:
            return await run(backend)

        try:
            return await run(backend)
        except AIClientError as e:
            if not self._config.local.fallback_to_remote:
                raise
            logger.warning(f"Local generation failed ({type(e).__name__}); using remote backend")
            return await run(self._remote)

    def _model_label(self, backend: InferenceBackend, model: str) -> str:
        if backend is self._local:
            return getattr(backend, "model_label", f"local:{backend.name}")
        return model

    # =========================================================================
    # Execution
    # =========================================================================

    async def _generate_and_parse(
        self, backend: InferenceBackend, system: str, user: str, model: str
    ) -> AnalysisResult:
        text = await backend.generate(system, user, None, model=model)
        return parse_analysis_response(text)

    async def _run_regular(
        self,
        backend: InferenceBackend,
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None,
        options: AnalysisOptions,
    ) -> AnalysisResult:
        system, user = build_prompts(logs, crisis_events, profile=options.profile)
        model = self._config.ai.free_model
        parsed = await self._with_retry(
            lambda: self._generate_and_parse(backend, system, user, model), options.callbacks
        )
        return self._finalize(parsed, logs, self._model_label(backend, model), deep=False)

    async def _run_deep(
        self,
        backend: InferenceBackend,
        logs: Sequence[LogRecord],
        crisis_events: Sequence[CrisisRecord] | None,
        options: AnalysisOptions,
    ) -> AnalysisResult:
        system, user = build_prompts(logs, crisis_events, profile=options.profile, deep=True)

        # A local server has no premium tier
        if backend is not self._local:
            for model in self._config.ai.premium_models:
                try:
                    parsed = await self._generate_and_parse(backend, system, user, model)
                    return self._finalize(parsed, logs, model, deep=True)
                except BackendUnavailableError:
                    raise
                except AIClientError as e:
                    logger.warning(f"Premium model {model} failed: {type(e).__name__}")

            logger.warning("All premium models failed; downgrading to the free model")

        free_model = self._config.ai.free_model
        parsed = await self._with_retry(
            lambda: self._generate_and_parse(backend, system, user, free_model), options.callbacks
        )
        return self._finalize(parsed, logs, self._model_label(backend, free_model), deep=False)

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        callbacks: StreamCallbacks | None = None,
    ) -> T:
        """Run ``operation`` under the retry policy.

        Only retriable errors are retried. When the attempt budget is
        exhausted the last error is raised with ``attempts`` set.
        """
        max_attempts = self._config.ai.max_attempts
        attempt = 1
        while True:
            try:
                return await operation()
            except AIClientError as e:
                if not e.retriable or attempt >= max_attempts:
                    if isinstance(e, TransportError):
                        e.attempts = attempt
                    if e.retriable:
                        logger.error(f"Max attempts ({max_attempts}) exhausted: {type(e).__name__}")
                    raise

                attempt += 1
                delay = self._backoff_delay(attempt, e)
                logger.warning(
                    f"Retry {attempt}/{max_attempts} after {delay:.1f}s: {type(e).__name__}"
                )
                if callbacks is not None and callbacks.on_retry is not None:
                    callbacks.on_retry(attempt, max_attempts, str(e))
                await self._sleep(delay)

    def _backoff_delay(self, attempt: int, error: AIClientError) -> float:
        """Delay before ``attempt`` (2, 3, ...): exponential, capped, with jitter."""
        ai = self._config.ai
        delay = min(ai.retry_base_delay * (2 ** (attempt - 2)), ai.max_retry_delay)
        delay += random.uniform(0, delay * 0.1)
        if isinstance(error, AIRateLimitError) and error.retry_after_seconds:
            delay = max(delay, error.retry_after_seconds)
        return delay

    def _finalize(
        self,
        parsed: AnalysisResult,
        logs: Sequence[LogRecord],
        model_used: str,
        deep: bool,
    ) -> AnalysisResult:
        timestamps = [log.timestamp for log in logs]
        return parsed.model_copy(
            update={
                "date_range_start": min(timestamps),
                "date_range_end": max(timestamps),
                "model_used": model_used,
                "is_deep_analysis": deep,
            }
        )


# =============================================================================
# Default Instance
# =============================================================================

_service: AnalysisService | None = None


def get_service(config: AppConfig | None = None) -> AnalysisService:
    """Get the process-wide service, creating it on first use.

    Passing ``config`` replaces the existing instance.
    """
    global _service
    if _service is None or config is not None:
        _service = AnalysisService(config)
    return _service

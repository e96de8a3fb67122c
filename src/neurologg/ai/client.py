"""Remote inference client for NeuroLogg analysis.

This module is the interface to the remote chat-completions service
(OpenRouter or any OpenAI-compatible endpoint). The local llama-server
backend in ``neurologg.ai.local`` implements the same contract.

The client provides:
- A small backend protocol shared by remote and local inference
- HTTP status mapping into the typed error hierarchy
- Streaming and non-streaming generation over one code path
- Security-first logging (never logs secrets or full prompts)

Example:
    >>> from neurologg.ai.client import RemoteBackend
    >>> from neurologg.config import get_config
    >>>
    >>> backend = RemoteBackend(get_config().ai)
    >>> text = await backend.generate(system_prompt, user_prompt)

Security Rules:
- NEVER log API keys (ever, in any form)
- NEVER log full prompts (could contain personal data)
- NEVER log full responses (could contain behavioral records)
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import SecretStr

from neurologg.ai.errors import (
    AIAuthenticationError,
    AIClientError,
    AINetworkError,
    AIRateLimitError,
    AIRequestError,
    AIServerError,
    AITimeoutError,
    BackendUnavailableError,
    MalformedResponseError,
)
from neurologg.ai.parser import extract_message_content
from neurologg.ai.streaming import collect_stream, iter_sse_content
from neurologg.config import AIConfig, APIKeyNotFoundError, get_api_key

# =============================================================================
# Secure Logging Filter
# =============================================================================


class RedactingFilter(logging.Filter):
    """Logging filter that redacts sensitive information.

    Scans log messages for patterns that look like API keys or tokens
    and replaces them with [REDACTED].

    Patterns detected:
    - Strings following api_key=, key=, token=, secret=, bearer
    - OpenRouter/OpenAI style keys (sk-...)
    - Generic long alphanumeric strings
    """

    PATTERNS = [
        # Key-value patterns
        re.compile(r'(api_key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r'(key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r'(token\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r"(bearer\s+)([a-zA-Z0-9_\-]{20,})", re.IGNORECASE),
        re.compile(r'(secret\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        # Standalone key patterns
        re.compile(r"\bsk-[a-zA-Z0-9_\-]{20,}\b"),
        re.compile(r"\b[a-zA-Z0-9_\-]{40,80}\b"),
    ]
    _KEY_VALUE_COUNT = 5

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._redact(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self._redact(arg) if isinstance(arg, str) else arg for arg in record.args
            )

        return True

    def _redact(self, text: str) -> str:
        for pattern in self.PATTERNS[: self._KEY_VALUE_COUNT]:
            text = pattern.sub(r"\1[REDACTED]", text)

        for pattern in self.PATTERNS[self._KEY_VALUE_COUNT :]:
            text = pattern.sub("[REDACTED]", text)

        return text


logger = logging.getLogger(__name__)
logger.addFilter(RedactingFilter())


# =============================================================================
# Backend Contract
# =============================================================================


@dataclass
class StreamCallbacks:
    """Per-request callbacks for streaming and retry progress.

    Attributes:
        on_chunk: Receives each decoded text fragment as it arrives.
        on_complete: Receives the full assembled text once.
        on_error: Receives the error before it propagates to the caller.
        on_retry: Receives ``(attempt, max_attempts, reason)`` before each retry.
    """

    on_chunk: Callable[[str], None] | None = None
    on_complete: Callable[[str], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    on_retry: Callable[[int, int, str], None] | None = None


@runtime_checkable
class InferenceBackend(Protocol):
    """Contract shared by the remote and local inference backends."""

    name: str

    async def probe(self) -> bool:
        """Return True if the backend can serve requests right now."""
        ...

    def stream(
        self, system_prompt: str, user_prompt: str, *, model: str | None = None
    ) -> AsyncIterator[str]:
        """Lazily yield content fragments of a streamed completion."""
        ...

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        callbacks: StreamCallbacks | None = None,
        *,
        model: str | None = None,
    ) -> str:
        """Return the completion text, streaming it when ``on_chunk`` is set."""
        ...


# =============================================================================
# HTTP helpers
# =============================================================================


def _error_message(response: httpx.Response) -> str:
    """Prefer the provider's ``error.message`` field, else the raw body."""
    text = response.text
    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return text.strip() or response.reason_phrase


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def map_http_error(response: httpx.Response) -> AIClientError:
    """Map a non-2xx response to the error hierarchy.

    The body must already be read.
    """
    status = response.status_code
    message = f"API error {status}: {_error_message(response)}"

    if status == 429:
        return AIRateLimitError(message, retry_after_seconds=_retry_after(response))
    if status in (401, 403):
        return AIAuthenticationError(message, status_code=status)
    if status >= 500:
        return AIServerError(message, status_code=status)
    return AIRequestError(message, status_code=status)


def map_transport_exception(error: httpx.HTTPError, timeout_seconds: float) -> AIClientError:
    """Map an httpx exception raised before a response arrived."""
    if isinstance(error, httpx.TimeoutException):
        return AITimeoutError(timeout_seconds, original_error=error)
    return AINetworkError(f"Network error: {type(error).__name__}", original_error=error)


class _ChatCompletionsBackend:
    """Shared request plumbing for OpenAI-compatible chat endpoints."""

    name = "base"

    def __init__(
        self,
        url: str,
        timeout_seconds: float,
        temperature: float,
        top_p: float,
        max_tokens: int,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._temperature = temperature
        self._top_p = top_p
        self._max_tokens = max_tokens
        self._http = http_client
        self._owns_http = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _body(
        self, system_prompt: str, user_prompt: str, model: str | None, stream: bool
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self._temperature,
            "top_p": self._top_p,
            "max_tokens": self._max_tokens,
            "stream": stream,
        }
        if model:
            body["model"] = model
        return body

    async def _complete(self, system_prompt: str, user_prompt: str, model: str | None) -> str:
        body = self._body(system_prompt, user_prompt, model, stream=False)
        start = time.perf_counter()
        try:
            response = await self._client().post(
                self._url, headers=self._headers(), json=body, timeout=self._timeout
            )
        except httpx.HTTPError as e:
            raise map_transport_exception(e, self._timeout) from e

        if response.is_error:
            raise map_http_error(response)

        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise MalformedResponseError(
                "Response envelope is not valid JSON",
                details={"status_code": response.status_code},
                original_error=e,
            ) from e

        content = extract_message_content(payload, status_code=response.status_code)
        latency_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"{self.name} completion: model={model}, {len(content)} chars, {latency_ms:.0f}ms")
        return content

    async def stream(
        self, system_prompt: str, user_prompt: str, *, model: str | None = None
    ) -> AsyncIterator[str]:
        body = self._body(system_prompt, user_prompt, model, stream=True)
        try:
            async with self._client().stream(
                "POST", self._url, headers=self._headers(), json=body, timeout=self._timeout
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise map_http_error(response)
                async for fragment in iter_sse_content(response.aiter_lines()):
                    yield fragment
        except httpx.HTTPError as e:
            raise map_transport_exception(e, self._timeout) from e

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        callbacks: StreamCallbacks | None = None,
        *,
        model: str | None = None,
    ) -> str:
        if callbacks is not None and callbacks.on_chunk is not None:
            return await collect_stream(
                self.stream(system_prompt, user_prompt, model=model), callbacks
            )
        return await self._complete(system_prompt, user_prompt, model)


# =============================================================================
# Remote Backend
# =============================================================================


class RemoteBackend(_ChatCompletionsBackend):
    """Backend for the remote OpenRouter-compatible chat-completions API.

    The API key is resolved lazily, at request time, so a process without a
    key can still start up and report status.

    Args:
        config: The ``ai`` configuration section.
        api_key: Explicit key. If omitted, ``get_api_key()`` is consulted.
        http_client: Optional shared ``httpx.AsyncClient`` (tests pass one
            built on ``httpx.MockTransport``).
    """

    name = "remote"

    def __init__(
        self,
        config: AIConfig,
        api_key: SecretStr | str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(
            url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            temperature=config.temperature,
            top_p=config.top_p,
            max_tokens=config.max_output_tokens,
            http_client=http_client,
        )
        self._config = config
        if isinstance(api_key, str):
            api_key = SecretStr(api_key)
        self._api_key = api_key

    def _resolve_key(self) -> SecretStr | None:
        if self._api_key is None:
            try:
                self._api_key = get_api_key()
            except APIKeyNotFoundError:
                return None
        return self._api_key

    @property
    def is_configured(self) -> bool:
        return self._resolve_key() is not None

    async def probe(self) -> bool:
        return self.is_configured

    def _headers(self) -> dict[str, str]:
        key = self._resolve_key()
        if key is None:
            raise BackendUnavailableError("no_api_key")
        return {
            "Authorization": f"Bearer {key.get_secret_value()}",
            "Content-Type": "application/json",
            "HTTP-Referer": self._config.site_url,
            "X-Title": self._config.app_title,
        }

    def _body(
        self, system_prompt: str, user_prompt: str, model: str | None, stream: bool
    ) -> dict[str, Any]:
        return super()._body(system_prompt, user_prompt, model or self._config.free_model, stream)

"""Exception hierarchy for the inference backends.

Every backend failure is mapped into one of these types so the orchestrator
can decide between retrying, cascading to another model, or surfacing the
error. ``retriable`` is the single flag the retry loop looks at.

    AIClientError
    ├── TransportError            (retriable)
    │   ├── AIRateLimitError      429
    │   ├── AIServerError         5xx
    │   ├── AINetworkError        connection failures
    │   └── AITimeoutError
    ├── AIRequestError            other 4xx
    │   └── AIAuthenticationError 401/403
    ├── ResponseError             parse-time
    │   ├── MalformedResponseError
    │   └── EmptyResponseError
    └── BackendUnavailableError
"""

from __future__ import annotations

from typing import Any, Literal

UnavailableReason = Literal["no_api_key", "local_not_loaded", "local_disabled"]


class AIClientError(Exception):
    """Base exception for all inference errors.

    Attributes:
        message: Human-readable error description (safe to log).
        retriable: Whether the operation can be retried.
        details: Additional error context (may contain sensitive data, don't log).
        original_error: The underlying exception that caused this error.
    """

    def __init__(
        self,
        message: str,
        retriable: bool = False,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retriable = retriable
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return message without exposing sensitive details."""
        return self.message


# =============================================================================
# Transport
# =============================================================================


class TransportError(AIClientError):
    """A request did not produce a usable HTTP response.

    Attributes:
        status_code: HTTP status code, if a response was received.
        attempts: How many attempts were made before giving up. Set by the
            retry loop when the attempt budget is exhausted.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=True, details=details, original_error=original_error)
        self.status_code = status_code
        self.attempts = 1


class AIRateLimitError(TransportError):
    """Rate limit exceeded (HTTP 429).

    Attributes:
        retry_after_seconds: Server-suggested wait time, if provided.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please wait before retrying.",
        retry_after_seconds: float | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, status_code=429, original_error=original_error)
        self.retry_after_seconds = retry_after_seconds


class AIServerError(TransportError):
    """Server-side error (5xx)."""

    def __init__(
        self,
        message: str = "AI server error. The service may be temporarily unavailable.",
        status_code: int | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, original_error=original_error)


class AINetworkError(TransportError):
    """The backend could not be reached."""

    def __init__(
        self,
        message: str = "Network error while contacting the AI service.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, original_error=original_error)


class AITimeoutError(TransportError):
    """Request timed out.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded.
    """

    def __init__(
        self,
        timeout_seconds: float,
        message: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        msg = message or f"Request timed out after {timeout_seconds} seconds"
        super().__init__(msg, original_error=original_error)
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Request
# =============================================================================


class AIRequestError(AIClientError):
    """The backend rejected the request (4xx other than 429).

    Not retriable: sending the same request again fails the same way.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(
            message,
            retriable=False,
            details={"status_code": status_code},
            original_error=original_error,
        )
        self.status_code = status_code


class AIAuthenticationError(AIRequestError):
    """API key is invalid or expired (401/403)."""

    def __init__(
        self,
        message: str = "API authentication failed. Please check your API key.",
        status_code: int | None = 401,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, original_error=original_error)


# =============================================================================
# Response
# =============================================================================


class ResponseError(AIClientError):
    """The backend answered, but the answer could not be used."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, details=details, original_error=original_error)


class MalformedResponseError(ResponseError):
    """Response content is not a JSON report."""

    pass


class EmptyResponseError(ResponseError):
    """Response carried no choices or an empty content string."""

    def __init__(
        self,
        message: str = "Empty response from AI service",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)


# =============================================================================
# Availability
# =============================================================================


class BackendUnavailableError(AIClientError):
    """No backend can serve the request.

    Attributes:
        reason: Why the backend is unavailable.
    """

    _DEFAULT_MESSAGES = {
        "no_api_key": "No API key configured for the remote AI service",
        "local_not_loaded": "Local model is not loaded. Start the local model server first.",
        "local_disabled": "Local model is disabled in configuration",
    }

    def __init__(self, reason: UnavailableReason, message: str | None = None) -> None:
        self.reason = reason
        msg = message or self._DEFAULT_MESSAGES.get(reason, f"AI backend unavailable: {reason}")
        super().__init__(msg, retriable=False, details={"reason": reason})

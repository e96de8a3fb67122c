"""AI module for NeuroLogg.

This module provides the interface to remote and local language-model
backends for behavioral pattern analysis. Only client.py and local.py
talk HTTP; everything else goes through the AnalysisService.

Exports:
    - AnalysisService: Orchestrates records → prompts → backend → report
    - RemoteBackend / LocalBackend: The two inference backends
    - AnalysisCache: TTL cache of completed analyses
    - Exception hierarchy for typed error handling
"""

from neurologg.ai.analyzer import (
    AnalysisError,
    AnalysisOptions,
    AnalysisService,
    BackendStatus,
    NoDataError,
    OrchestratorState,
    get_service,
    report_ai_error,
)
from neurologg.ai.cache import AnalysisCache, CacheEntry, fingerprint_records
from neurologg.ai.client import InferenceBackend, RedactingFilter, RemoteBackend, StreamCallbacks
from neurologg.ai.errors import (
    AIAuthenticationError,
    AIClientError,
    AINetworkError,
    AIRateLimitError,
    AIRequestError,
    AIServerError,
    AITimeoutError,
    BackendUnavailableError,
    EmptyResponseError,
    MalformedResponseError,
    ResponseError,
    TransportError,
)
from neurologg.ai.local import LocalBackend

__all__ = [
    # Service
    "AnalysisService",
    "AnalysisOptions",
    "BackendStatus",
    "OrchestratorState",
    "get_service",
    "report_ai_error",
    # Backends
    "InferenceBackend",
    "RemoteBackend",
    "LocalBackend",
    "StreamCallbacks",
    "RedactingFilter",
    # Cache
    "AnalysisCache",
    "CacheEntry",
    "fingerprint_records",
    # Exceptions
    "AnalysisError",
    "NoDataError",
    "AIClientError",
    "TransportError",
    "AIRateLimitError",
    "AIServerError",
    "AINetworkError",
    "AITimeoutError",
    "AIRequestError",
    "AIAuthenticationError",
    "ResponseError",
    "MalformedResponseError",
    "EmptyResponseError",
    "BackendUnavailableError",
]

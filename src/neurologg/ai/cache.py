"""In-Memory Analysis Cache.

This module provides a TTL-bounded cache for analysis results so that
re-opening the analysis view does not re-bill the remote service.
Cached results are:
- Keyed by a fingerprint of the input records and the analysis kind
- Partitioned so regular and deep analyses never satisfy each other
- Expired lazily on read, with stale entries pruned on write (no background sweep)
- Held in process memory only, never persisted

Example:
    >>> from neurologg.ai.cache import AnalysisCache, fingerprint_records
    >>>
    >>> cache = AnalysisCache(ttl_seconds=300)
    >>> key = fingerprint_records(logs, crisis_events)
    >>> cached = cache.get(key, AnalysisKind.REGULAR)
    >>> if cached is None:
    ...     result = await run_analysis()
    ...     cache.set(result, key, AnalysisKind.REGULAR)
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from neurologg.core.models import AnalysisKind, AnalysisResult, CrisisRecord, LogRecord

logger = logging.getLogger(__name__)


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class CacheEntry:
    """A cached result with the monotonic time it was stored."""

    result: AnalysisResult
    stored_at: float


# =============================================================================
# Fingerprinting
# =============================================================================


def _num(value: float) -> str:
    return repr(float(value))


def fingerprint_records(
    logs: Sequence[LogRecord],
    crisis_events: Sequence[CrisisRecord] | None = None,
) -> str:
    """Create a deterministic fingerprint of an analysis input.

    Only the salient fields are included: identifiers, timestamps and scale
    values for logs; identifiers, timestamps, peak intensity and duration
    for crisis events. Sorting makes the fingerprint independent of input
    order.

    Returns:
        First 16 hex characters of a SHA-256 digest.

    Example:
        >>> fingerprint_records([], [])
        'e3b0c44298fc1c14'
    """
    log_parts = sorted(
        f"{log.id}:{log.timestamp.isoformat()}:"
        f"{_num(log.arousal)}:{_num(log.valence)}:{_num(log.energy)}"
        for log in logs
    )
    crisis_parts = sorted(
        f"{c.id}:{c.timestamp.isoformat()}:{_num(c.peak_intensity)}:{_num(c.duration_seconds)}"
        for c in crisis_events or ()
    )

    if not log_parts and not crisis_parts:
        combined = ""
    else:
        combined = "|".join(log_parts) + "#" + "|".join(crisis_parts)

    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


# =============================================================================
# Cache
# =============================================================================


class AnalysisCache:
    """TTL-bounded store of analysis results.

    Args:
        ttl_seconds: Entry lifetime. An entry is never returned once
            ``now - stored_at > ttl_seconds``.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, AnalysisKind], CacheEntry] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def get(
        self, logs_hash: str, kind: AnalysisKind = AnalysisKind.REGULAR
    ) -> AnalysisResult | None:
        """Return the cached result for ``(logs_hash, kind)`` if still fresh."""
        kind = AnalysisKind(kind)
        key = (logs_hash, kind)
        entry = self._entries.get(key)
        if entry is None:
            return None

        age = self._clock() - entry.stored_at
        if age > self._ttl:
            del self._entries[key]
            logger.debug(f"Cache expired for {kind.value} analysis {logs_hash[:8]}")
            return None

        logger.debug(f"Cache hit for {kind.value} analysis {logs_hash[:8]} (age {age:.0f}s)")
        return entry.result

    def set(
        self,
        result: AnalysisResult,
        logs_hash: str,
        kind: AnalysisKind = AnalysisKind.REGULAR,
    ) -> None:
        """Store ``result`` and drop every entry that has outlived the TTL."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.stored_at > self._ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired cached analyses")

        self._entries[(logs_hash, AnalysisKind(kind))] = CacheEntry(result, now)

    def clear(self) -> int:
        """Delete all entries.

        Returns:
            Number of entries removed.
        """
        count = len(self._entries)
        self._entries.clear()
        if count:
            logger.info(f"Cleared {count} cached analyses")
        return count

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        fresh = sum(1 for e in self._entries.values() if now - e.stored_at <= self._ttl)
        return {
            "entry_count": len(self._entries),
            "fresh_count": fresh,
            "ttl_seconds": self._ttl,
        }

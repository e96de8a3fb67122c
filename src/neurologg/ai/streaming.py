"""Server-sent-event decoding for chat-completion streams.

A streamed completion arrives as ``data:`` frames, each carrying a JSON
chunk with an incremental ``choices[0].delta.content`` fragment, and ends
with a ``data: [DONE]`` frame. ``iter_sse_content`` turns the raw line
stream into a lazy sequence of text fragments; ``collect_stream`` drives
that sequence for callback-style consumers and returns the assembled text.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from neurologg.ai.client import StreamCallbacks

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def _delta_content(payload: str) -> str:
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream frame")
        return ""

    if not isinstance(chunk, dict):
        return ""
    choices = chunk.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


async def iter_sse_content(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the text fragments carried by an SSE line stream.

    Lines that are not ``data:`` frames (comments, blank keep-alives, event
    names) are ignored, as are frames whose JSON cannot be decoded. Reading
    stops at the ``[DONE]`` sentinel or when the line stream ends.

    Args:
        lines: Decoded lines of the response body, without trailing newlines.

    Yields:
        Non-empty content fragments in arrival order.
    """
    async for raw_line in lines:
        line = raw_line.strip()
        if not line.startswith(DATA_PREFIX):
            continue

        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE_SENTINEL:
            break

        content = _delta_content(payload)
        if content:
            yield content


async def collect_stream(
    fragments: AsyncIterable[str],
    callbacks: StreamCallbacks | None = None,
) -> str:
    """Accumulate a fragment stream, forwarding each fragment to ``on_chunk``.

    ``on_complete`` is not called here; the orchestrator calls it once the
    final text is known, which may come from a non-streaming fallback.
    """
    parts: list[str] = []
    async for fragment in fragments:
        parts.append(fragment)
        if callbacks is not None and callbacks.on_chunk is not None:
            callbacks.on_chunk(fragment)
    return "".join(parts)

"""Local inference backend (llama-server style).

Talks to an OpenAI-compatible server on the local machine for offline
analysis. Availability is decided by a ``GET /health`` probe with a short
timeout, re-run whenever the orchestrator selects a backend, so a server
started after the process came up is picked up without a restart.

Local inference is disabled by default; see ``LocalModelConfig``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from neurologg.ai.client import RedactingFilter, _ChatCompletionsBackend
from neurologg.config import AIConfig, LocalModelConfig

logger = logging.getLogger(__name__)
logger.addFilter(RedactingFilter())

HEALTH_PATH = "/health"
COMPLETIONS_PATH = "/v1/chat/completions"


class LocalBackend(_ChatCompletionsBackend):
    """Backend for a locally hosted model server.

    Generation parameters come from the ``ai`` section so local and remote
    runs are comparable.
    """

    name = "local"

    def __init__(
        self,
        config: LocalModelConfig,
        ai_config: AIConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        base = config.url.rstrip("/")
        super().__init__(
            url=f"{base}{COMPLETIONS_PATH}",
            timeout_seconds=ai_config.timeout_seconds,
            temperature=ai_config.temperature,
            top_p=ai_config.top_p,
            max_tokens=ai_config.max_output_tokens,
            http_client=http_client,
        )
        self._config = config
        self._health_url = f"{base}{HEALTH_PATH}"
        self.is_ready = False

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def model_label(self) -> str:
        return f"local:{self._config.model_id}"

    async def probe(self) -> bool:
        """Check whether the local server answers its health endpoint."""
        if not self._config.enabled:
            self.is_ready = False
            return False

        try:
            response = await self._client().get(
                self._health_url, timeout=self._config.probe_timeout_seconds
            )
            self.is_ready = response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Local server probe failed: {type(e).__name__}")
            self.is_ready = False

        return self.is_ready

    def _body(
        self, system_prompt: str, user_prompt: str, model: str | None, stream: bool
    ) -> dict[str, Any]:
        # The server hosts exactly one model; the name is informational.
        return super()._body(system_prompt, user_prompt, None, stream)

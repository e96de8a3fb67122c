"""Central Configuration System for NeuroLogg analysis.

This module is the single source of truth for application configuration.
Every other module that needs settings imports from here.

The configuration system supports:
- Multi-source configuration (environment variables > config file > defaults)
- Secure API key management (env > keyring)
- Remote (OpenRouter-compatible) and local (llama-server) inference backends
- A tunable tolerance table for hallucination validation

Example:
    >>> from neurologg.config import get_config
    >>>
    >>> cfg = get_config()
    >>> print(cfg.ai.free_model)
    google/gemini-2.0-flash-001

Config File Format (YAML):
    ```yaml
    ai:
      backend: auto  # auto | remote | local
      free_model: google/gemini-2.0-flash-001
      premium_models:
        - google/gemini-2.5-pro-preview
        - anthropic/claude-3.5-sonnet
      temperature: 0.3
      max_attempts: 3
      cache_ttl_seconds: 300

    local:
      enabled: false
      url: http://localhost:8080
      fallback_to_remote: false

    validation:
      percentage_tolerance: 15
      average_tolerance: 1.5
      count_tolerance: 2
      duration_tolerance: 10
      min_valid_ratio: 0.7

    debug: false
    ```
"""

from __future__ import annotations

import functools
import logging
import os
from pathlib import Path
from typing import Any, Literal

import keyring
import keyring.errors
import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "neurologg"
KEYRING_USERNAME = "openrouter"
API_KEY_ENV_VARS = ("NEUROLOGG_API_KEY", "OPENROUTER_API_KEY")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(Exception):
    """Base exception for configuration errors."""

    pass


class ConfigFileError(ConfigError):
    """Exception raised when a config file exists but cannot be used."""

    pass


class APIKeyNotFoundError(ConfigError):
    """Exception raised when no API key is found in any source."""

    pass


# =============================================================================
# Configuration Models
# =============================================================================


class AIConfig(BaseModel):
    """Configuration for the inference backends and request orchestration.

    Attributes:
        backend: Backend selection policy. ``auto`` prefers a healthy local
            server and otherwise uses the remote service.
        base_url: OpenAI-compatible chat-completions endpoint.
        free_model: Default fast model, also the downgrade target for deep runs.
        premium_models: Ordered premium-tier models tried for deep analysis.
        temperature: Sampling temperature.
        top_p: Nucleus sampling parameter.
        max_output_tokens: Maximum tokens in the model response.
        timeout_seconds: Per-request HTTP timeout.
        max_attempts: Total attempts per request (first try plus retries).
        retry_base_delay: Base delay for exponential backoff.
        max_retry_delay: Upper bound for a single backoff delay.
        cache_ttl_seconds: How long a cached analysis stays valid.
        site_url: Attribution URL sent to OpenRouter.
        app_title: Attribution title sent to OpenRouter.
    """

    backend: Literal["auto", "remote", "local"] = Field(
        default="auto", description="Backend selection policy."
    )
    base_url: str = Field(
        default="https://openrouter.ai/api/v1/chat/completions",
        description="OpenAI-compatible chat-completions endpoint.",
    )
    free_model: str = Field(
        default="google/gemini-2.0-flash-001",
        description="Default model for regular analysis and deep-analysis downgrade.",
    )
    premium_models: list[str] = Field(
        default_factory=lambda: [
            "google/gemini-2.5-pro-preview",
            "anthropic/claude-3.5-sonnet",
            "openai/gpt-4o",
        ],
        description="Premium models tried in order for deep analysis.",
    )
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)
    max_output_tokens: int = Field(default=4000, ge=100, le=32000)
    timeout_seconds: float = Field(default=60.0, gt=0.0, le=600.0)
    max_attempts: int = Field(
        default=3, ge=1, le=10, description="Total attempts including the first request."
    )
    retry_base_delay: float = Field(
        default=1.0, ge=0.0, le=30.0, description="Base delay for exponential backoff (seconds)."
    )
    max_retry_delay: float = Field(default=30.0, ge=0.0, le=300.0)
    cache_ttl_seconds: float = Field(
        default=300.0,
        ge=60.0,
        le=3600.0,
        description="Lifetime of cached analyses (between one minute and one hour).",
    )
    site_url: str = Field(default="http://localhost:5173")
    app_title: str = Field(default="NeuroLogg")

    @field_validator("premium_models")
    @classmethod
    def _strip_empty_models(cls, v: list[str]) -> list[str]:
        return [m.strip() for m in v if m and m.strip()]


class LocalModelConfig(BaseModel):
    """Configuration for a local llama-server style inference engine.

    Local inference is disabled by default; the cloud backend is used unless
    ``enabled`` is set and a server answers its health probe.
    """

    enabled: bool = Field(default=False)
    url: str = Field(default="http://localhost:8080")
    model_id: str = Field(default="neurologg-gemma-1b")
    probe_timeout_seconds: float = Field(default=2.0, gt=0.0, le=30.0)
    fallback_to_remote: bool = Field(
        default=False,
        description="Retry on the remote backend when local generation fails.",
    )


class ValidationConfig(BaseModel):
    """Tolerance table for numeric claim validation.

    The defaults are empirical. Change them only with product input.
    """

    percentage_tolerance: float = Field(default=15.0, ge=0.0, le=100.0)
    average_tolerance: float = Field(default=1.5, ge=0.0, le=10.0)
    count_tolerance: float = Field(default=2.0, ge=0.0)
    duration_tolerance: float = Field(default=10.0, ge=0.0)
    min_valid_ratio: float = Field(default=0.7, ge=0.0, le=1.0)
    large_discrepancy_percent: float = Field(default=30.0, ge=0.0)
    context_window: int = Field(
        default=50, ge=0, le=500, description="Characters kept on each side of a claim."
    )


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Supports loading from environment variables with the NEUROLOGG_ prefix,
    using ``__`` for nested fields (``NEUROLOGG_AI__BACKEND=local``).
    """

    ai: AIConfig = Field(default_factory=AIConfig)
    local: LocalModelConfig = Field(default_factory=LocalModelConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    debug: bool = Field(default=False)
    verbose: bool = Field(default=False)

    model_config = {
        "env_prefix": "NEUROLOGG_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Any,
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Let environment variables win over values loaded from the config file."""
        return env_settings, init_settings, dotenv_settings, file_secret_settings


# =============================================================================
# Loading
# =============================================================================


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read a YAML config file into a dict.

    Raises:
        ConfigFileError: If the file cannot be read or is not a mapping.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigFileError(f"Cannot read config file {path}: {type(e).__name__}") from e

    try:
        loaded = yaml.safe_load(content) if content.strip() else None
    except yaml.YAMLError as e:
        raise ConfigFileError(f"Malformed YAML in {path}: {e}") from e

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigFileError(f"Config file {path} must contain a mapping at top level")
    return loaded


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from file, environment, and defaults.

    Configuration priority (highest wins):
    1. Environment variables (NEUROLOGG_*)
    2. Config file (explicit path, or the first default location found)
    3. In-code defaults

    A missing config file is not an error. An explicitly requested file
    that is malformed raises; a malformed file found by search logs a
    warning and is ignored.

    Args:
        path: Optional path to config file.

    Returns:
        Fully-populated AppConfig instance.

    Raises:
        ConfigFileError: If ``path`` was given and cannot be used.
    """
    config_data: dict[str, Any] = {}

    if path is not None:
        config_data = _read_config_file(path)
    else:
        search_paths = [
            Path("./neurologg.yaml"),
            Path("./config.yaml"),
            Path.home() / ".neurologg" / "config.yaml",
        ]
        for candidate in search_paths:
            if candidate.exists():
                try:
                    config_data = _read_config_file(candidate)
                except ConfigFileError as e:
                    logger.warning(f"{e}. Using defaults.")
                break

    return AppConfig(**config_data)


@functools.lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Get the cached configuration singleton."""
    return load_config()


def reset_config() -> None:
    """Clear the configuration cache for testing."""
    get_config.cache_clear()


# =============================================================================
# API Key
# =============================================================================


def _read_from_keyring() -> str | None:
    try:
        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except keyring.errors.KeyringError as e:
        logger.debug(f"Keyring unavailable: {type(e).__name__}")
        return None


def get_api_key() -> SecretStr:
    """Resolve the remote inference API key.

    Sources are checked in order: NEUROLOGG_API_KEY, OPENROUTER_API_KEY,
    then the system keyring.

    Returns:
        SecretStr wrapper around the key.

    Raises:
        APIKeyNotFoundError: If no source provides a key.
    """
    for var in API_KEY_ENV_VARS:
        value = os.environ.get(var, "").strip()
        if value:
            return SecretStr(value)

    stored = _read_from_keyring()
    if stored and stored.strip():
        return SecretStr(stored.strip())

    raise APIKeyNotFoundError(
        "No API key found. Set NEUROLOGG_API_KEY or OPENROUTER_API_KEY, "
        f"or store one in the system keyring under service '{KEYRING_SERVICE}'."
    )

# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable Provider Adapters
# =============================================================================
#
# Provides one call interface for every text-generation provider, with
# concrete adapters for Anthropic (Claude) and OpenAI-compatible APIs
# (OpenAI, DeepSeek, Qwen, GLM, Kimi, local servers).
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Anything with an async `call(model, prompt, params)` works, which is how
# tests substitute AsyncMock-backed fakes for the real SDKs.
#
# DESIGN DECISION: SDK retries disabled (max_retries=0).
# Retrying belongs to the admission controller, which knows the rate window
# and the circuit state. Two layers of retries would multiply attempts and
# hide failures from the circuit breaker.
#
# DESIGN DECISION: SDK exceptions are translated at this boundary.
# The rest of the core only sees TransientProviderError (retried) and
# FatalProviderError (surfaced), with the status code and any Retry-After
# header the provider sent.
#
# ARCHITECTURE:
#   Provider (Protocol)
#   ├── AnthropicProvider         — Claude via native Anthropic SDK
#   │   └── call()                — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider  — Any OpenAI-compatible API
#   │   └── call()                — system prompt as message role
#   ├── classify_sdk_error()      — SDK exception → Transient/Fatal
#   └── create_provider_from_id() — "type/model@base_url" factory
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Protocol

from docqa.config import get_settings
from docqa.services.exceptions import (
    FatalProviderError,
    ProviderError,
    TransientProviderError,
    is_transient_error,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderResponse:
    """
    Standardised response from any provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    text: str              # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response

    @property
    def tokens(self) -> int:
        """Total usage; the admission controller corrects its window with it."""
        return self.input_tokens + self.output_tokens


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class Provider(Protocol):
    """
    Protocol defining the provider interface.

    Implementations raise TransientProviderError for retryable failures
    and FatalProviderError for everything else.
    """

    async def call(
        self,
        model: str,
        prompt: str,
        params: dict[str, Any] | None = None,
    ) -> ProviderResponse:
        """
        Generate a completion for a single user prompt.

        Args:
            model: Model identifier to call.
            prompt: The user message.
            params: Optional overrides: "system", "temperature", "max_tokens".

        Returns:
            ProviderResponse with generated text and usage metrics.
        """
        ...


# ---------------------------------------------------------------------------
# SDK Error Translation
# ---------------------------------------------------------------------------


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After header as seconds. Accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def classify_sdk_error(exc: Exception, provider_id: str) -> ProviderError:
    """
    Translate an SDK exception into the core's provider error types.

    Both SDKs expose `status_code` and `response.headers` on status errors;
    timeouts and connection errors carry neither and are classified by
    message ("Request timed out.", "Connection error.").
    """
    status_code = getattr(exc, "status_code", None)
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    retry_after = parse_retry_after(headers.get("retry-after")) if headers else None

    message = f"{provider_id}: {exc}"
    if is_transient_error(exc):
        return TransientProviderError(
            message,
            provider_id=provider_id,
            status_code=status_code,
            retry_after=retry_after,
        )
    return FatalProviderError(message, provider_id=provider_id, status_code=status_code)


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system". This is the
    opposite of OpenAI's pattern and a common source of bugs.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        from anthropic import APIError, AsyncAnthropic

        settings = get_settings()
        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(
            api_key=resolved_key,
            timeout=timeout or settings.llm_timeout_seconds,
            max_retries=0,
        )
        self._sdk_error = APIError
        self.model = model or "claude-sonnet-4-6"
        self.provider_id = f"anthropic/{self.model}"
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self.model)

    async def call(
        self,
        model: str,
        prompt: str,
        params: dict[str, Any] | None = None,
    ) -> ProviderResponse:
        """Generate a completion using Claude."""
        params = params or {}
        kwargs: dict = {
            "model": model or self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": params.get("max_tokens") or self._max_tokens,
            "temperature": params.get("temperature", self._temperature),
        }

        # Anthropic: system prompt is a top-level kwarg, not a message
        if params.get("system"):
            kwargs["system"] = params["system"]

        try:
            response = await self._client.messages.create(**kwargs)
        except self._sdk_error as e:
            raise classify_sdk_error(e, self.provider_id) from e

        # Extract text from the first content block
        text = ""
        for block in response.content:
            if block.type == "text":
                text = block.text
                break

        return ProviderResponse(
            text=text,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenAI, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI spec.

    Most hosted and local model servers expose OpenAI-compatible APIs, so a
    custom base_url covers all of them with one implementation:
        PRIMARY_PROVIDER=openai_compatible/deepseek-chat@https://api.deepseek.com/v1
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        from openai import APIError, AsyncOpenAI

        settings = get_settings()
        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY or OPENAI_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "timeout": timeout or settings.llm_timeout_seconds,
            "max_retries": 0,
        }
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._sdk_error = APIError
        self.model = model or "gpt-4o"
        self.provider_id = f"openai_compatible/{self.model}"
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self.model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def call(
        self,
        model: str,
        prompt: str,
        params: dict[str, Any] | None = None,
    ) -> ProviderResponse:
        """Generate a completion using an OpenAI-compatible API."""
        params = params or {}

        # OpenAI: system prompt goes as the first message
        messages: list[dict[str, str]] = []
        if params.get("system"):
            messages.append({"role": "system", "content": params["system"]})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._client.chat.completions.create(
                model=model or self.model,
                messages=messages,
                max_tokens=params.get("max_tokens") or self._max_tokens,
                temperature=params.get("temperature", self._temperature),
            )
        except self._sdk_error as e:
            raise classify_sdk_error(e, self.provider_id) from e

        text = response.choices[0].message.content or ""

        # Token counts: OpenAI uses different field names than Anthropic
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return ProviderResponse(
            text=text,
            model=response.model or model or self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
# Every evaluation may use two or three providers at once, each with its own
# client (different API keys, base URLs, models). The factory returns fresh
# instances; there is no process-wide provider singleton.
# ---------------------------------------------------------------------------


_KNOWN_PROVIDER_TYPES = {"anthropic", "openai_compatible"}


def parse_provider_id(
    provider_id: str,
) -> tuple[str, str, str | None]:
    """
    Parse a provider_id string into (provider_type, model, base_url).

    Formats supported:
        "anthropic/claude-sonnet-4-6"
            → ("anthropic", "claude-sonnet-4-6", None)
        "openai_compatible/deepseek-chat"
            → ("openai_compatible", "deepseek-chat", None)
        "openai_compatible/deepseek-chat@https://api.deepseek.com/v1"
            → ("openai_compatible", "deepseek-chat", "https://api.deepseek.com/v1")

    Raises:
        ValueError: If the format is unrecognisable or provider type unknown.
    """
    if "/" not in provider_id:
        raise ValueError(
            f"Invalid provider_id '{provider_id}'. "
            "Expected format: 'provider_type/model' or "
            "'provider_type/model@base_url'"
        )

    provider_type, rest = provider_id.split("/", 1)

    base_url: str | None = None
    if "@" in rest:
        model, base_url = rest.split("@", 1)
    else:
        model = rest

    if provider_type not in _KNOWN_PROVIDER_TYPES:
        raise ValueError(
            f"Unknown provider type '{provider_type}'. "
            f"Supported types: {sorted(_KNOWN_PROVIDER_TYPES)}"
        )
    if not model:
        raise ValueError(f"Invalid provider_id '{provider_id}': model is empty")

    return provider_type, model, base_url


def create_provider_from_id(
    provider_id: str,
    api_key: str | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Create a fresh provider from a provider ID string.

    Args:
        provider_id: Provider string (see parse_provider_id for format).
        api_key: Optional API key override. If None, reads from env.

    Returns:
        A new provider instance (AnthropicProvider or OpenAICompatibleProvider).

    Raises:
        ValueError: If provider_id is invalid or API key is missing.
    """
    provider_type, model, base_url = parse_provider_id(provider_id)

    if provider_type == "anthropic":
        return AnthropicProvider(api_key=api_key, model=model)

    # openai_compatible
    return OpenAICompatibleProvider(
        api_key=api_key, model=model, base_url=base_url,
    )

# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable AI Backend
# =============================================================================
#
# Provides a common interface for LLM completions, with concrete
# implementations for Anthropic (Claude) and OpenAI-compatible APIs
# (OpenRouter, DeepSeek, Qwen, OpenAI).
#
# Two capabilities are required by the agents:
#   complete() — the full response text, returned atomically. Used by
#                identity extraction and the relevance prefilter.
#   stream()   — an async iterator of text deltas in generation order.
#                Used by every commentating agent.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Tests pass small fake classes with the same two methods; nothing has to
# inherit from a base.
#
# DESIGN DECISION: Provider failures are re-raised as LLMError.
# Callers catch one exception type regardless of SDK. Missing credentials
# stay a ValueError at construction time so the API can answer 503 before
# any work starts.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider — Any OpenAI-compatible API
#   ├── create_provider()        — Non-singleton factory (model override)
#   ├── get_llm_provider()       — Singleton for agent responses
#   └── get_prefilter_provider() — Singleton bound to the fast model
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from marginalia.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


class LLMError(Exception):
    """A provider call failed (network, API error, malformed response)."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


def user_message(prompt: str) -> list[dict[str, str]]:
    """Single-turn message list; every agent call is one user turn."""
    return [{"role": "user", "content": prompt}]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both Anthropic and OpenAI-compatible implementations provide
    `complete()` and `stream()`. Checked statically by mypy.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system"; use the system param).
            system: System prompt for the LLM. Handled differently per provider:
                - Anthropic: top-level `system=` kwarg
                - OpenAI: prepended as {"role": "system", ...} message
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).

        Returns:
            LLMResponse with generated text and usage metrics.

        Raises:
            LLMError: The provider call failed.
        """
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """
        Stream a completion as text deltas, in generation order.

        Empty deltas are never yielded. Raises LLMError from the iterator
        when the provider fails mid-stream.
        """
        ...


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
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(
            api_key=resolved_key,
            timeout=settings.llm_timeout_seconds,
        )
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized AnthropicProvider (model=%s)", self._model
        )

    def _request_kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": (
                temperature if temperature is not None else self._temperature
            ),
        }
        # Anthropic: system prompt is a top-level kwarg, not a message
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            response = await self._client.messages.create(**kwargs)
        except Exception as exc:
            logger.error("Anthropic completion failed: %s", exc)
            raise LLMError("Failed to generate content", exc) from exc

        # Extract text from the first content block
        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion using Claude's messages.stream() helper."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            async with self._client.messages.stream(**kwargs) as response:
                async for text in response.text_stream:
                    if text:
                        yield text
        except Exception as exc:
            logger.error("Anthropic stream failed: %s", exc)
            raise LLMError("Failed to stream content", exc) from exc


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenRouter, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://openrouter.ai/api/v1
        LLM_API_KEY=your-key
        LLM_MODEL=google/gemini-2.5-flash
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "timeout": settings.llm_timeout_seconds,
        }
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url
        if resolved_base_url and "openrouter.ai" in resolved_base_url:
            # OpenRouter attributes traffic by these headers
            client_kwargs["default_headers"] = {
                "HTTP-Referer": "https://marginalia.app",
                "X-Title": "Marginalia",
            }

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    def _request_kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        return {
            "model": self._model,
            "messages": all_messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": (
                temperature if temperature is not None else self._temperature
            ),
        }

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            logger.error("OpenAI-compatible completion failed: %s", exc)
            raise LLMError("Failed to generate content", exc) from exc

        if not response.choices:
            raise LLMError("Provider returned no choices")
        content = response.choices[0].message.content or ""

        # Token counts: OpenAI uses different field names than Anthropic
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion using `stream=True` chat completions."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            response = await self._client.chat.completions.create(
                **kwargs, stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except Exception as exc:
            logger.error("OpenAI-compatible stream failed: %s", exc)
            raise LLMError("Failed to stream content", exc) from exc


# ---------------------------------------------------------------------------
# Factory Functions
# ---------------------------------------------------------------------------


def create_provider(
    model: str | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build a fresh provider of the configured type.

    Args:
        model: Model override. None uses `settings.llm_model`.

    Raises:
        ValueError: If no API key is configured for the provider type.
    """
    if settings.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(model=model)
    return AnthropicProvider(model=model)


# Lazy singletons — avoid re-creating clients on every request
_provider: AnthropicProvider | OpenAICompatibleProvider | None = None
_prefilter_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Provider used by identity extraction and the commentating agents.

    Lazy singleton. The SDK clients manage their own connection pools.
    """
    global _provider
    if _provider is None:
        _provider = create_provider()
    return _provider


def get_prefilter_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """Provider bound to the fast `prefilter_model`."""
    global _prefilter_provider
    if _prefilter_provider is None:
        _prefilter_provider = create_provider(model=settings.prefilter_model)
    return _prefilter_provider

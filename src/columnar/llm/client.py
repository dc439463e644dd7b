"""Unified LLM client wrapping both Anthropic and OpenAI SDKs."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass

from columnar.llm.config import LLMConfig
from columnar.core.errors import ComputeError

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 5


@dataclass
class LLMResponse:
    """Response from an LLM completion call."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int


class LLMClient:
    """Unified LLM client that dispatches to Anthropic or OpenAI SDKs.

    Supports three providers:
    - "anthropic": Uses the anthropic SDK
    - "openai": Uses the openai SDK with OpenAI's default base URL
    - "openai-compatible": Uses the openai SDK with a custom base_url
      (for Ollama, vLLM, etc.)

    Includes retry logic: 1 retry on transient errors (rate limit, timeout,
    connection). A stream is only retried if it failed before producing
    any text.
    """

    def __init__(self, config: LLMConfig) -> None:
        self.config = config
        self._client = self._create_client()

    def _create_client(self):
        """Create the underlying SDK client based on provider."""
        kwargs = {}
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.base_url:
            kwargs["base_url"] = self.config.base_url
        logger.debug("Creating %s client: %s", self.config.provider, self.config.describe())

        if self.config.provider == "anthropic":
            import anthropic

            return anthropic.Anthropic(**kwargs)

        import openai

        if self.config.provider == "openai-compatible" and not self.config.base_url:
            raise ValueError("openai-compatible provider requires base_url to be set")
        return openai.OpenAI(**kwargs)

    def _transient_errors(self) -> tuple[type[Exception], ...]:
        if self.config.provider == "anthropic":
            import anthropic

            return (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.APITimeoutError)
        import openai

        return (openai.RateLimitError, openai.APIConnectionError, openai.APITimeoutError)

    def _api_error(self) -> type[Exception]:
        if self.config.provider == "anthropic":
            import anthropic

            return anthropic.APIError
        import openai

        return openai.APIError

    def _request_kwargs(
        self,
        messages: list[dict],
        system: str | None,
        max_tokens: int | None,
        temperature: float | None,
    ) -> dict:
        kwargs = {
            "model": self.config.model,
            "max_tokens": max_tokens if max_tokens is not None else self.config.max_tokens,
            "temperature": temperature if temperature is not None else self.config.temperature,
        }
        if self.config.provider == "anthropic":
            kwargs["messages"] = messages
            if system:
                kwargs["system"] = system
        else:
            kwargs["messages"] = ([{"role": "system", "content": system}] if system else []) + messages
        return kwargs

    def _create(self, **kwargs):
        if self.config.provider == "anthropic":
            return self._client.messages.create(**kwargs)
        return self._client.chat.completions.create(**kwargs)

    def complete(
        self,
        messages: list[dict],
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        desc: str = "request",
    ) -> LLMResponse:
        """Send a completion request with retry on transient errors.

        Args:
            messages: List of message dicts with 'role' and 'content' keys.
            system: Optional system prompt.
            max_tokens: Override max_tokens from config.
            temperature: Override temperature from config.
            desc: Human-readable description for error messages.

        Returns:
            LLMResponse with content and token usage.
        """
        kwargs = self._request_kwargs(messages, system, max_tokens, temperature)
        transient = self._transient_errors()
        api_error = self._api_error()
        logger.debug("LLM request: model=%s, messages=%d", self.config.model, len(messages))

        for attempt in range(2):
            try:
                response = self._create(**kwargs)
                return self._parse_response(response)
            except transient as exc:
                if attempt == 0:
                    logger.warning("Transient error computing %s, retrying in %ds: %s", desc, RETRY_DELAY_SECONDS, exc)
                    time.sleep(RETRY_DELAY_SECONDS)
                else:
                    raise ComputeError(f"Failed to compute {desc} after 2 attempts: {exc}") from exc
            except api_error as exc:
                raise ComputeError(f"LLM API error computing {desc}: {exc}") from exc

        # Unreachable, but satisfies type checker
        raise ComputeError(f"Failed to compute {desc}")

    def _parse_response(self, response) -> LLMResponse:
        if self.config.provider == "anthropic":
            input_tokens = getattr(response.usage, "input_tokens", 0)
            output_tokens = getattr(response.usage, "output_tokens", 0)
            return LLMResponse(
                content=response.content[0].text,
                model=response.model if hasattr(response, "model") else self.config.model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            )

        content = response.choices[0].message.content or ""
        usage = response.usage
        return LLMResponse(
            content=content,
            model=response.model if response.model else self.config.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
        )

    def stream(
        self,
        messages: list[dict],
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        desc: str = "request",
    ) -> Iterator[str]:
        """Stream a completion as text fragments, in arrival order."""
        kwargs = self._request_kwargs(messages, system, max_tokens, temperature)
        kwargs["stream"] = True
        transient = self._transient_errors()
        api_error = self._api_error()
        logger.debug("LLM stream: model=%s, messages=%d", self.config.model, len(messages))

        for attempt in range(2):
            produced = False
            try:
                for event in self._create(**kwargs):
                    text = self._event_text(event)
                    if text:
                        produced = True
                        yield text
                return
            except transient as exc:
                if attempt == 0 and not produced:
                    logger.warning("Transient error streaming %s, retrying in %ds: %s", desc, RETRY_DELAY_SECONDS, exc)
                    time.sleep(RETRY_DELAY_SECONDS)
                else:
                    raise ComputeError(f"Failed to stream {desc}: {exc}") from exc
            except api_error as exc:
                raise ComputeError(f"LLM API error streaming {desc}: {exc}") from exc

    def _event_text(self, event) -> str | None:
        if self.config.provider == "anthropic":
            if getattr(event, "type", None) != "content_block_delta":
                return None
            return getattr(event.delta, "text", None)
        if not event.choices:
            return None
        return event.choices[0].delta.content

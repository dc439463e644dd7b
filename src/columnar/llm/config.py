"""Provider settings handed to LLMClient."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

LLMProvider = Literal["anthropic", "openai", "openai-compatible"]


def redact_api_key(key: str | None) -> str | None:
    """Mask an API key down to its first and last four characters.

    Keys of eight characters or fewer are masked entirely as '****'.
    """
    if key is None:
        return None
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


class LLMConfig(BaseModel):
    """Which provider and model an LLMClient talks to.

    The CLI builds one from ``COLUMNAR_LLM_*`` settings via
    ``Settings.llm_config()``. Left unset, ``api_key`` falls through to the
    SDK, which reads ``ANTHROPIC_API_KEY`` or ``OPENAI_API_KEY`` itself.
    """

    model_config = ConfigDict(frozen=True)

    provider: LLMProvider = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)
    base_url: str | None = None  # required by openai-compatible (Ollama, vLLM)
    api_key: str | None = Field(default=None, repr=False)

    def describe(self) -> dict:
        """Settings with the API key redacted, safe to log."""
        return {**self.model_dump(), "api_key": redact_api_key(self.api_key)}

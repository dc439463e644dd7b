"""LLM compute adapter."""

from columnar.llm.client import LLMClient, LLMResponse
from columnar.llm.config import LLMConfig, LLMProvider
from columnar.llm.prompt import prompt

__all__ = ["LLMClient", "LLMConfig", "LLMProvider", "LLMResponse", "prompt"]

"""Compute functions backed by an LLM."""

from __future__ import annotations

from collections.abc import Iterator

from columnar.core.columns import ComputeFunction
from columnar.core.models import Message
from columnar.llm.client import LLMClient


def prompt(client: LLMClient, system: str, stream: bool = False) -> ComputeFunction:
    """Build a compute function that answers the assembled messages with ``system`` as the system prompt.

    With ``stream=True`` the function yields text fragments as they arrive,
    so the flow emits delta events; otherwise it returns the full reply.
    Both forms block, and the flow runs them in worker threads.
    """

    def complete(messages: list[Message]) -> str:
        return client.complete([m.to_dict() for m in messages], system=system).content

    def stream_reply(messages: list[Message]) -> Iterator[str]:
        yield from client.stream([m.to_dict() for m in messages], system=system)

    return stream_reply if stream else complete

"""Shared test fixtures for Columnar."""

from __future__ import annotations

import pytest

from columnar import SELF, column, source
from columnar.config import reset_settings
from columnar.core.models import Message
from columnar.storage import in_memory_storage


class RecordingCompute:
    """Compute function that records the messages of every call."""

    def __init__(self, reply: str = "ok"):
        self.reply = reply
        self.calls: list[list[Message]] = []

    def __call__(self, messages: list[Message]) -> str:
        self.calls.append(list(messages))
        return f"{self.reply} {len(self.calls)}"


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep tests independent of the developer's environment and .env file."""
    for var in (
        "COLUMNAR_DATA_DIR",
        "COLUMNAR_STORAGE",
        "COLUMNAR_LOG_DIR",
        "COLUMNAR_VERBOSITY",
        "COLUMNAR_LLM_PROVIDER",
        "COLUMNAR_LLM_MODEL",
        "COLUMNAR_LLM_BASE_URL",
        "COLUMNAR_LLM_TEMPERATURE",
        "COLUMNAR_LLM_MAX_TOKENS",
        "COLUMNAR_LLM_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def store():
    """Shared in-memory record table; pass ``in_memory_storage(store)`` to columns."""
    return []


@pytest.fixture
def chat(store):
    """The accumulator pattern: user source plus an assistant reading user and SELF."""
    provider = in_memory_storage(store)
    user = source("user", storage=provider)
    compute = RecordingCompute("reply")
    assistant = column("assistant", context=[user, SELF], compute=compute, storage=provider)
    return user, assistant, compute


@pytest.fixture
def recorder():
    """Factory for RecordingCompute instances."""
    return RecordingCompute

"""Columnar - incremental dataflow over step-indexed columns of text.

Usage:
    from columnar import SELF, column, flow, source

    user = source("user")
    assistant = column("assistant", context=[user, SELF], compute=reply)
    critic = column("critic", context=[user.latest, assistant.latest], compute=review)

    f = flow(critic)
    user.push("Hello")
    async for event in f.run():
        print(event)
"""

from columnar.build.context import assemble_messages, reminder, resolve_context_inputs
from columnar.core.columns import (
    SELF,
    Count,
    Dependency,
    DerivedColumn,
    Row,
    SourceColumn,
    column,
    source,
)
from columnar.core.errors import (
    ColumnarError,
    CycleDetectedError,
    FlowBusyError,
    FlowError,
)
from columnar.core.models import (
    ContextEntry,
    ContextInput,
    DeltaEvent,
    Message,
    StartEvent,
    ValueEvent,
)
from columnar.flow import Flow, FlowRun, flow
from columnar.llm import LLMClient, LLMConfig, prompt
from columnar.storage import filesystem_storage, in_memory_storage, sqlite_storage

__version__ = "0.1.0"

__all__ = [
    "SELF",
    "ColumnarError",
    "ContextEntry",
    "ContextInput",
    "Count",
    "CycleDetectedError",
    "DeltaEvent",
    "Dependency",
    "DerivedColumn",
    "Flow",
    "FlowBusyError",
    "FlowError",
    "FlowRun",
    "LLMClient",
    "LLMConfig",
    "Message",
    "Row",
    "SourceColumn",
    "StartEvent",
    "ValueEvent",
    "assemble_messages",
    "column",
    "filesystem_storage",
    "flow",
    "in_memory_storage",
    "prompt",
    "reminder",
    "resolve_context_inputs",
    "source",
    "sqlite_storage",
]

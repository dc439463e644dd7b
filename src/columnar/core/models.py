"""Core data models for Columnar."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Message:
    """A role-tagged chat turn handed to compute functions."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ContextEntry:
    """One stored value of a dependency, tagged with the step it came from."""

    step: int
    value: str


@dataclass
class ContextInput:
    """Resolved entries of a single dependency, ready for assembly."""

    role: Role
    entries: list[ContextEntry] = field(default_factory=list)


@dataclass(frozen=True)
class StartEvent:
    """A column began computing a step."""

    column: str
    step: int
    kind: Literal["start"] = field(default="start", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "column": self.column, "step": self.step}


@dataclass(frozen=True)
class DeltaEvent:
    """A streamed fragment of a column's value."""

    column: str
    step: int
    delta: str
    kind: Literal["delta"] = field(default="delta", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "column": self.column, "step": self.step, "delta": self.delta}


@dataclass(frozen=True)
class ValueEvent:
    """A column committed its value for a step."""

    column: str
    step: int
    value: str
    kind: Literal["value"] = field(default="value", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "column": self.column, "step": self.step, "value": self.value}


FlowEvent = Union[StartEvent, DeltaEvent, ValueEvent]

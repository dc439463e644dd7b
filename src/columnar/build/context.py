"""Context resolution and message assembly.

Turns a derived column's dependency list into the ordered, role-tagged
conversation its compute function receives:

1. Each dependency is resolved to the (step, value) entries it can see at
   the step being computed.
2. Entries are laid out step by step: all user-role values of a step as one
   message, followed by the column's own (assistant-role) value for it.
3. Adjacent messages of the same role are merged, so roles strictly alternate.
"""

from __future__ import annotations

from collections.abc import Callable

from columnar.core.columns import Column, Count, Dependency, DerivedColumn, Row, TransformFunction
from columnar.core.models import ContextEntry, ContextInput, Message

MESSAGE_SEPARATOR = "\n\n"


def step_range(count: Count, ceiling: int) -> list[int]:
    """Steps a dependency reads, ascending, given the highest visible step."""
    if ceiling < 0:
        return []
    if count.kind == "single":
        return [ceiling]
    if count.kind == "window":
        return list(range(max(0, ceiling - count.n + 1), ceiling + 1))  # type: ignore[operator]
    return list(range(ceiling + 1))


def wrap_value(tag: str, value: str) -> str:
    return f"<{tag}>\n{value}\n</{tag}>"


def resolve_context_inputs(
    col: DerivedColumn,
    step: int,
    lookup: Callable[[Dependency], Column] | None = None,
) -> list[ContextInput]:
    """Resolve every dependency of ``col`` at ``step`` into a ContextInput.

    ``lookup`` maps a dependency to the column currently registered under its
    target's name; without it the declared target object is read directly.
    Previous-row dependencies (including self) see steps up to ``step - 1``;
    current-row dependencies see ``step`` itself. Steps with no stored value
    are skipped.
    """
    wrap = col.wraps_values
    inputs: list[ContextInput] = []

    for dep in col.context:
        if dep.is_self:
            target: Column = col
        elif lookup is not None:
            target = lookup(dep)
        else:
            target = dep.target  # type: ignore[assignment]

        ceiling = step - 1 if dep.row is Row.PREVIOUS else step
        entries: list[ContextEntry] = []
        for s in step_range(dep.count, ceiling):
            raw = target.storage.get(s)
            if raw is None:
                continue
            value = wrap_value(dep.tag, raw) if wrap and not dep.is_self else raw
            entries.append(ContextEntry(step=s, value=value))

        inputs.append(ContextInput(role="assistant" if dep.is_self else "user", entries=entries))

    return inputs


def assemble_messages(inputs: list[ContextInput]) -> list[Message]:
    """Transpose step-indexed inputs into an alternating list of messages."""
    all_steps: set[int] = set()
    for inp in inputs:
        all_steps.update(entry.step for entry in inp.entries)

    lookups = [{entry.step: entry.value for entry in inp.entries} for inp in inputs]

    raw: list[Message] = []
    for step in sorted(all_steps):
        user_parts = [
            lookup[step]
            for inp, lookup in zip(inputs, lookups)
            if inp.role == "user" and step in lookup
        ]
        if user_parts:
            raw.append(Message("user", MESSAGE_SEPARATOR.join(user_parts)))

        for inp, lookup in zip(inputs, lookups):
            if inp.role == "assistant" and step in lookup:
                raw.append(Message("assistant", lookup[step]))

    return merge_adjacent(raw)


def merge_adjacent(messages: list[Message]) -> list[Message]:
    """Collapse consecutive same-role messages, joining content with a blank line."""
    merged: list[Message] = []
    for msg in messages:
        if merged and merged[-1].role == msg.role:
            merged[-1] = Message(msg.role, merged[-1].content + MESSAGE_SEPARATOR + msg.content)
        else:
            merged.append(msg)
    return merged


def build_messages(
    col: DerivedColumn,
    step: int,
    lookup: Callable[[Dependency], Column] | None = None,
) -> list[Message]:
    """Resolve, transform and assemble the messages ``col`` sees at ``step``."""
    inputs = resolve_context_inputs(col, step, lookup)
    if col.transform is not None:
        inputs = col.transform(inputs, step)
    return assemble_messages(inputs)


def reminder(text: str) -> TransformFunction:
    """Transform that appends ``text`` as a system reminder at the current step.

    The reminder lands after every user value of that step, so it is the
    last thing the compute function reads.
    """

    def transform(inputs: list[ContextInput], step: int) -> list[ContextInput]:
        note = ContextEntry(step=step, value=f"<system-reminder>\n{text}\n</system-reminder>")
        return [*inputs, ContextInput(role="user", entries=[note])]

    return transform

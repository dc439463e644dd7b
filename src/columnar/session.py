"""Declarative sessions: build and live-update a flow from a column config.

A session config is an ordered list of column definitions. Every column is
an LLM-backed derived column reading from the single source column
``input``, from itself (``self``), or from columns declared earlier.

Usage:
    config = load_config("session.json")
    session = create_session(config, compute_factory)
    session.input.push("Hello")
    await session.flow.run()

    new_config = load_config("session.json")
    apply_config_update(session, diff_configs(config, new_config), new_config)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from columnar.build.context import reminder
from columnar.core.columns import (
    SELF_REF,
    ComputeFunction,
    Count,
    Dependency,
    DerivedColumn,
    Row,
    SourceColumn,
    column,
    source,
)
from columnar.core.errors import ConfigError
from columnar.flow import Flow
from columnar.storage import StorageProvider, in_memory_storage

logger = logging.getLogger(__name__)

INPUT_COLUMN = "input"
SELF_COLUMN = "self"
RESERVED_NAMES = frozenset({INPUT_COLUMN, SELF_COLUMN})


class ContextRef(BaseModel):
    """One entry of a column's context: which column, which row, how many steps."""

    column: str
    row: Literal["current", "previous"] = "current"
    count: Literal["all", "single", "latest", "window"] = "all"
    window: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def window_needs_size(self) -> ContextRef:
        if self.count == "window" and self.window is None:
            raise ValueError("count 'window' requires a window size")
        return self


class ColumnConfig(BaseModel):
    """Definition of one LLM-backed column."""

    name: str
    system_prompt: str
    reminder: str = ""
    context: list[ContextRef] = Field(default_factory=list)


SessionConfig = list[ColumnConfig]

_session_adapter = TypeAdapter(list[ColumnConfig])

ComputeFactory = Callable[[ColumnConfig], ComputeFunction]


@dataclass
class ConfigDiff:
    """Column-level difference between two session configs."""

    removed: list[str] = field(default_factory=list)
    added: list[ColumnConfig] = field(default_factory=list)
    modified: list[ColumnConfig] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.removed or self.added or self.modified)


@dataclass
class Session:
    """A live flow built from a session config."""

    input: SourceColumn
    flow: Flow
    columns: dict[str, DerivedColumn]
    storage: StorageProvider
    compute_factory: ComputeFactory
    config: SessionConfig

    @property
    def column_order(self) -> list[str]:
        return [cfg.name for cfg in self.config]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_config(config: SessionConfig) -> str | None:
    """Return the first problem with ``config``, or None if it is valid."""
    seen: set[str] = set()
    for col in config:
        if not col.name:
            return "Column name cannot be empty"
        if not col.system_prompt:
            return f"{col.name}: system prompt cannot be empty"
        if col.name in RESERVED_NAMES:
            return f'"{col.name}" is reserved'
        if col.name in seen:
            return f'Duplicate name: "{col.name}"'
        seen.add(col.name)

        if not col.context:
            return f"{col.name}: context cannot be empty"
        for ref in col.context:
            if ref.column == SELF_COLUMN:
                if ref.row != "previous":
                    return f"{col.name}: self must be read with row 'previous'"
                continue
            if ref.column == INPUT_COLUMN:
                continue
            if ref.column not in seen:
                return f'{col.name}: references "{ref.column}" which doesn\'t exist or appears later'

    cycle = _find_current_cycle(config)
    if cycle:
        return f"Cycle: {' -> '.join(cycle)}"
    return None


def _find_current_cycle(config: SessionConfig) -> list[str] | None:
    """Depth-first search for a cycle over current-row references."""
    edges = {
        col.name: [
            ref.column
            for ref in col.context
            if ref.row == "current" and ref.column not in RESERVED_NAMES
        ]
        for col in config
    }
    visited: set[str] = set()
    on_stack: set[str] = set()

    def visit(node: str, path: list[str]) -> list[str] | None:
        if node in on_stack:
            return path[path.index(node):] + [node]
        if node in visited:
            return None
        visited.add(node)
        on_stack.add(node)
        path.append(node)
        for dep in edges.get(node, []):
            cycle = visit(dep, path)
            if cycle:
                return cycle
        path.pop()
        on_stack.discard(node)
        return None

    for col in config:
        cycle = visit(col.name, [])
        if cycle:
            return cycle
    return None


def parse_config(data: object) -> SessionConfig:
    """Parse and validate raw config data (a list, or a dict with ``columns``)."""
    if isinstance(data, dict):
        data = data.get("columns", [])
    try:
        config = _session_adapter.validate_python(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid session config: {exc}") from exc
    error = validate_config(config)
    if error:
        raise ConfigError(error)
    return config


def load_config(path: str | Path) -> SessionConfig:
    """Load a session config from a JSON file."""
    config_path = Path(path)
    try:
        data = json.loads(config_path.read_text())
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {config_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {config_path} is not valid JSON: {exc}") from exc
    return parse_config(data)


def diff_configs(old: SessionConfig, new: SessionConfig) -> ConfigDiff:
    """Compare two configs by column name.

    A column counts as modified when its prompt, reminder or context changed.
    """
    old_by_name = {cfg.name: cfg for cfg in old}
    new_by_name = {cfg.name: cfg for cfg in new}

    diff = ConfigDiff()
    diff.removed = [name for name in old_by_name if name not in new_by_name]
    for name, new_cfg in new_by_name.items():
        old_cfg = old_by_name.get(name)
        if old_cfg is None:
            diff.added.append(new_cfg)
        elif (
            old_cfg.system_prompt != new_cfg.system_prompt
            or old_cfg.reminder != new_cfg.reminder
            or old_cfg.context != new_cfg.context
        ):
            diff.modified.append(new_cfg)
    return diff


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------


def _dependency_for(
    ref: ContextRef,
    owner: str,
    columns: dict[str, SourceColumn | DerivedColumn],
) -> Dependency:
    count = Count.parse(ref.count, ref.window)
    if ref.column == SELF_COLUMN:
        return Dependency(SELF_REF, Row.PREVIOUS, count)
    target = columns.get(ref.column)
    if target is None:
        raise ConfigError(
            f'Column "{owner}" references "{ref.column}" which doesn\'t exist or appears later in the config'
        )
    return Dependency(target, Row(ref.row), count)


def build_column(
    cfg: ColumnConfig,
    columns: dict[str, SourceColumn | DerivedColumn],
    storage: StorageProvider,
    compute_factory: ComputeFactory,
) -> DerivedColumn:
    """Create the derived column described by ``cfg``.

    ``columns`` maps names (including ``input``) to columns declared earlier.
    """
    return column(
        cfg.name,
        context=[_dependency_for(ref, cfg.name, columns) for ref in cfg.context],
        compute=compute_factory(cfg),
        transform=reminder(cfg.reminder) if cfg.reminder else None,
        storage=storage,
    )


def create_session(
    config: SessionConfig,
    compute_factory: ComputeFactory,
    storage: StorageProvider | None = None,
    **flow_kwargs,
) -> Session:
    """Build the ``input`` source, one column per config entry, and their flow."""
    error = validate_config(config)
    if error:
        raise ConfigError(error)

    storage = storage or in_memory_storage()
    input_col = source(INPUT_COLUMN, storage=storage)
    known: dict[str, SourceColumn | DerivedColumn] = {INPUT_COLUMN: input_col}
    columns: dict[str, DerivedColumn] = {}

    for cfg in config:
        col = build_column(cfg, known, storage, compute_factory)
        known[cfg.name] = col
        columns[cfg.name] = col

    f = Flow(input_col, *columns.values(), **flow_kwargs)
    logger.info("Created session with %d column(s)", len(columns))
    return Session(
        input=input_col,
        flow=f,
        columns=columns,
        storage=storage,
        compute_factory=compute_factory,
        config=list(config),
    )


def apply_config_update(session: Session, diff: ConfigDiff, new_config: SessionConfig) -> None:
    """Bring a live session in line with ``new_config``.

    Removed columns are dropped together with everything reading them,
    leaves first. Then, in config order, modified columns are replaced and
    columns missing from the flow (new ones and cascade victims still in
    the config) are added. Replacing clears the column's history and its
    dependents'. Added columns start from empty storage, even when an
    earlier definition under the same name left values behind, and
    backfill on the next run.
    """
    error = validate_config(new_config)
    if error:
        raise ConfigError(error)

    f = session.flow
    remove_order: list[str] = []
    for name in diff.removed:
        for dependent in reversed(f.dependents(name)):
            if dependent not in remove_order:
                remove_order.append(dependent)
        if name not in remove_order:
            remove_order.append(name)

    for name in remove_order:
        f.remove_column(name)
        session.columns.pop(name, None)

    modified = {cfg.name for cfg in diff.modified}
    for cfg in new_config:
        known: dict[str, SourceColumn | DerivedColumn] = {INPUT_COLUMN: session.input, **session.columns}
        in_flow = cfg.name in session.columns
        if in_flow and cfg.name in modified:
            col = build_column(cfg, known, session.storage, session.compute_factory)
            f.replace_column(cfg.name, col)
            session.columns[cfg.name] = col
        elif not in_flow:
            col = build_column(cfg, known, session.storage, session.compute_factory)
            # Anything stored under this name predates this definition
            col.storage.clear()
            f.add_column(col)
            session.columns[cfg.name] = col

    session.columns = {cfg.name: session.columns[cfg.name] for cfg in new_config}
    session.config = list(new_config)
    logger.info(
        "Applied config update: %d removed, %d added, %d modified",
        len(diff.removed), len(diff.added), len(diff.modified),
    )

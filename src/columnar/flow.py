"""Flow engine: schedule derived columns step by step, incrementally.

A flow is built from one or more leaf columns; everything they read is
discovered automatically. Each ``run()`` computes only the steps that are
missing from storage, level by level, fanning out concurrently within a
level and streaming start/delta/value events to the caller.

Usage:
    f = flow(assistant)
    user.push("Hello")

    async for event in f.run():
        ...

    # or, when only the stored values matter
    await f.run()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Generator
from contextlib import aclosing
from pathlib import Path
from typing import Any

from columnar.build.dag import collect_dependents, discover_columns, resolve_levels
from columnar.build.executor import compute_column, merge_streams
from columnar.core.columns import Column, Dependency, DerivedColumn, SourceColumn
from columnar.core.errors import (
    ColumnNotFoundError,
    DependencyNotFoundError,
    DuplicateColumnError,
    FlowBusyError,
    HasDependentsError,
    NameMismatchError,
    SourceColumnError,
)
from columnar.core.logging import FlowLogger, Verbosity
from columnar.core.models import FlowEvent, ValueEvent

logger = logging.getLogger(__name__)


class FlowRun:
    """One execution of a flow, consumable as an event stream or awaited.

    Both forms share the same underlying execution, which starts on first
    consumption. Awaiting drains whatever events remain and returns the
    number of values committed by the run.

    A run suspended between events (for instance after the caller broke
    out of ``async for``) does not hold the flow: the next ``run()`` or
    graph mutation supersedes it. A superseded run ends its event stream
    and never commits another value.
    """

    def __init__(
        self,
        execute: Callable[[FlowRun], AsyncIterator[FlowEvent]],
        run_logger: FlowLogger,
    ):
        self._run_logger = run_logger
        self._events = execute(self)
        self._closing: asyncio.Task[None] | None = None
        self.committed = 0
        self.started = False
        self.executing = False
        self.superseded = False

    @property
    def run_log(self) -> dict[str, Any]:
        return self._run_logger.run_log.to_dict()

    def events(self) -> FlowRun:
        return self

    def __aiter__(self) -> FlowRun:
        return self

    async def __anext__(self) -> FlowEvent:
        if self.superseded:
            raise StopAsyncIteration
        self.started = True
        self.executing = True
        try:
            event = await self._events.__anext__()
        finally:
            self.executing = False
        if isinstance(event, ValueEvent):
            self.committed += 1
        return event

    async def wait(self) -> int:
        """Drain the remaining events and return the number of values committed."""
        async for _ in self:
            pass
        return self.committed

    def __await__(self) -> Generator[Any, None, int]:
        return self.wait().__await__()

    def supersede(self) -> None:
        """Detach this run from its flow; it must be suspended between events."""
        self.superseded = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._closing = loop.create_task(self._events.aclose())  # type: ignore[attr-defined]

    async def aclose(self) -> None:
        """Stop the run early; values already committed stay in storage."""
        if self._closing is not None:
            await self._closing
        else:
            await self._events.aclose()  # type: ignore[attr-defined]


class Flow:
    """A graph of source and derived columns with incremental execution.

    Dependencies are resolved through the flow's registry by column name,
    so replacing a column is visible to every reader without rebuilding
    the graph.
    """

    def __init__(
        self,
        *leaves: Column,
        verbosity: Verbosity = Verbosity.DEFAULT,
        log_dir: Path | None = None,
    ):
        sources, derived = discover_columns(leaves)
        self._sources: list[SourceColumn] = sources
        self._derived: list[DerivedColumn] = derived
        self._columns: dict[str, Column] = {col.name: col for col in [*sources, *derived]}
        self._levels = resolve_levels(derived)
        self._computed_steps = 0
        self._active: FlowRun | None = None
        self.verbosity = verbosity
        self.log_dir = log_dir

    # -- Introspection --

    @property
    def columns(self) -> dict[str, Column]:
        return dict(self._columns)

    @property
    def sources(self) -> list[SourceColumn]:
        return list(self._sources)

    @property
    def derived(self) -> list[DerivedColumn]:
        return list(self._derived)

    @property
    def levels(self) -> list[list[str]]:
        """Derived column names grouped by scheduling level."""
        return [[col.name for col in level] for level in self._levels]

    @property
    def computed_steps(self) -> int:
        return self._computed_steps

    @property
    def running(self) -> bool:
        """Whether a started run has neither finished nor been superseded."""
        return self._active is not None and self._active.started

    def get(self, name: str, step: int) -> str | None:
        """Stored value of column ``name`` at ``step``, or None if absent."""
        return self._require(name).storage.get(step)

    def dependents(self, name: str) -> list[str]:
        """Names of every column reading ``name`` directly or transitively, in level order."""
        self._require(name)
        return collect_dependents(name, self._levels)

    # -- Execution --

    def run(self) -> FlowRun:
        """Start an incremental run over every step not yet in storage.

        Nothing executes until the returned FlowRun is iterated or awaited.
        A previous run left suspended between events is superseded.
        """
        self._release("Cannot start a run while another run is computing a step")
        run_logger = FlowLogger(verbosity=self.verbosity, log_dir=self.log_dir)
        flow_run = FlowRun(lambda owner: self._execute(owner, run_logger), run_logger)
        self._active = flow_run
        return flow_run

    def _lookup(self, dep: Dependency) -> Column:
        return self._columns[dep.target_name]

    async def _execute(self, flow_run: FlowRun, run_logger: FlowLogger) -> AsyncIterator[FlowEvent]:
        start_time = time.time()

        def is_current() -> bool:
            return not flow_run.superseded

        try:
            max_steps = min((len(col.storage) for col in self._sources), default=0)
            start_step = min(
                [self._computed_steps, *(len(col.storage) for col in self._derived)]
            )
            run_logger.run_start(len(self._derived), start_step, max_steps)
            logger.debug("Running flow from step %d to %d", start_step, max_steps)

            for step in range(start_step, max_steps):
                for level in self._levels:
                    pending = [col for col in level if len(col.storage) <= step]
                    if not pending:
                        continue
                    streams = [
                        compute_column(col, step, self._lookup, run_logger, is_current)
                        for col in pending
                    ]
                    stream = streams[0] if len(streams) == 1 else merge_streams(streams)
                    async with aclosing(stream):
                        async for event in stream:
                            yield event

            self._computed_steps = max_steps
            run_logger.run_finish()
            logger.info(
                "Flow run complete: %d values in %.2fs",
                run_logger.run_log.total_values,
                time.time() - start_time,
            )
        except GeneratorExit:
            logger.debug("Flow run closed before completion")
            raise
        except Exception as exc:
            logger.debug("Flow run failed: %s", exc)
            run_logger.run_failed(exc)
            raise
        finally:
            run_logger.close()
            if self._active is flow_run:
                self._active = None

    # -- Graph mutation --

    def add_column(self, col: Column) -> None:
        """Register a new column; it backfills missing steps on the next run.

        Source dependencies not yet in the flow are registered along with it.
        """
        self._ensure_idle()
        existing = self._columns.get(col.name)
        if existing is col:
            return
        if existing is not None:
            raise DuplicateColumnError(f"Duplicate column name: {col.name}")

        if isinstance(col, SourceColumn):
            self._sources.append(col)
            self._columns[col.name] = col
            return

        new_sources = self._missing_sources(col)
        derived = [*self._derived, col]
        levels = resolve_levels(derived)

        for src in new_sources:
            self._sources.append(src)
            self._columns[src.name] = src
        self._columns[col.name] = col
        self._derived = derived
        self._levels = levels
        logger.info("Added column '%s'", col.name)

    def remove_column(self, name: str) -> None:
        """Unregister a derived column nothing else reads. Its storage is kept."""
        self._ensure_idle()
        col = self._require(name)
        if isinstance(col, SourceColumn):
            raise SourceColumnError(f"Cannot remove source column '{name}'")

        dependents = self.dependents(name)
        if dependents:
            raise HasDependentsError(name, dependents)

        derived = [c for c in self._derived if c is not col]
        self._levels = resolve_levels(derived)
        self._derived = derived
        del self._columns[name]
        logger.info("Removed column '%s'", name)

    def replace_column(self, name: str, col: DerivedColumn) -> None:
        """Swap in a new definition for ``name`` and invalidate everything downstream.

        The new column's storage and the storage of every transitive
        dependent are cleared, so the next run recomputes them from step 0.
        """
        self._ensure_idle()
        old = self._require(name)
        if isinstance(old, SourceColumn):
            raise SourceColumnError(f"Cannot replace source column '{name}'")
        if col.name != name:
            raise NameMismatchError(
                f"Replacement column is named '{col.name}', expected '{name}'"
            )
        if not isinstance(col, DerivedColumn):
            raise SourceColumnError(f"Cannot replace derived column '{name}' with a source column")

        dependents = self.dependents(name)
        new_sources = self._missing_sources(col)
        derived = [col if c is old else c for c in self._derived]
        levels = resolve_levels(derived)

        for src in new_sources:
            self._sources.append(src)
            self._columns[src.name] = src
        self._columns[name] = col
        self._derived = derived
        self._levels = levels
        for c in derived:
            c.retarget(old, col)

        col.storage.clear()
        for dependent in dependents:
            self._columns[dependent].storage.clear()
        logger.info(
            "Replaced column '%s'; cleared %d dependent(s): %s",
            name, len(dependents), ", ".join(dependents) or "-",
        )

    # -- Helpers --

    def _require(self, name: str) -> Column:
        col = self._columns.get(name)
        if col is None:
            raise ColumnNotFoundError(f"Column not found: {name}")
        return col

    def _ensure_idle(self) -> None:
        active = self._active
        if active is not None and not active.started:
            # Not started yet; it will see the mutated graph
            return
        self._release("Cannot modify the flow while a run is computing a step")

    def _release(self, busy_message: str) -> None:
        """Supersede a run suspended between events; refuse while one is mid-step."""
        active = self._active
        if active is None:
            return
        if active.executing:
            raise FlowBusyError(busy_message)
        active.supersede()
        self._active = None
        if active.started:
            logger.debug("Superseded a suspended run")

    def _missing_sources(self, col: DerivedColumn) -> list[SourceColumn]:
        """Sources ``col`` reads that are not registered yet.

        Raises DependencyNotFoundError for an unregistered derived dependency.
        """
        missing: dict[str, SourceColumn] = {}
        for dep in col.upstream:
            target_name = dep.target_name
            if target_name in self._columns or target_name in missing:
                continue
            if isinstance(dep.target, SourceColumn):
                missing[target_name] = dep.target
            else:
                raise DependencyNotFoundError(
                    f"Column '{col.name}' depends on '{target_name}', which is not in the flow"
                )
        return list(missing.values())

    def __repr__(self) -> str:
        return f"Flow(sources={[s.name for s in self._sources]}, levels={self.levels})"


def flow(*leaves: Column, **kwargs: Any) -> Flow:
    """Build a flow from its leaf columns."""
    return Flow(*leaves, **kwargs)

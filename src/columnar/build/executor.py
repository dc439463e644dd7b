"""Column execution: invoke compute functions and merge concurrent event streams."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import AsyncIterator, Callable, Iterable
from typing import TYPE_CHECKING, TypeVar

from columnar.build.context import build_messages
from columnar.core.columns import Column, ComputeFunction, Dependency, DerivedColumn
from columnar.core.models import DeltaEvent, FlowEvent, Message, StartEvent, ValueEvent

if TYPE_CHECKING:
    from columnar.core.logging import FlowLogger

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXHAUSTED = object()


async def _iterate_in_thread(iterator: Iterable[str]) -> AsyncIterator[str]:
    """Drive a blocking iterator from worker threads, one fragment at a time.

    If iteration stops early (the consumer closes the stream, or the task
    is cancelled), the iterator is closed so it can release what it holds,
    such as an SDK response stream.
    """
    it = iter(iterator)
    lock = threading.Lock()
    exhausted = False

    def advance():
        with lock:
            return next(it, _EXHAUSTED)

    def close_iterator():
        with lock:
            it.close()  # type: ignore[attr-defined]

    try:
        while True:
            fragment = await asyncio.to_thread(advance)
            if fragment is _EXHAUSTED:
                exhausted = True
                return
            yield fragment  # type: ignore[misc]
    finally:
        if not exhausted and hasattr(it, "close"):
            await asyncio.to_thread(close_iterator)


async def invoke_compute(compute: ComputeFunction, messages: list[Message]) -> str | AsyncIterator[str]:
    """Call a compute function and normalize its result.

    Returns either the final value or an async iterator of text fragments.
    Blocking callables (and blocking generators) run in worker threads so
    they do not stall sibling columns.
    """
    if inspect.iscoroutinefunction(compute) or inspect.isasyncgenfunction(compute):
        result = compute(messages)
    else:
        result = await asyncio.to_thread(compute, messages)

    if isinstance(result, str):
        return result
    if inspect.isawaitable(result):
        return await result
    if hasattr(result, "__aiter__"):
        return result  # type: ignore[return-value]
    if isinstance(result, Iterable):
        return _iterate_in_thread(result)
    raise TypeError(
        f"Compute function must return str, an awaitable, or an iterator of str, "
        f"got {type(result).__name__}"
    )


async def compute_column(
    col: DerivedColumn,
    step: int,
    lookup: Callable[[Dependency], Column] | None = None,
    run_logger: FlowLogger | None = None,
    is_current: Callable[[], bool] | None = None,
) -> AsyncIterator[FlowEvent]:
    """Compute ``col`` at ``step``, yielding start/delta/value events.

    The value is appended to the column's storage before the value event is
    yielded. If the compute function fails, nothing is stored and the error
    propagates after any deltas already yielded. When ``is_current`` reports
    that the owning run was superseded, the value is discarded unstored.
    """
    messages = build_messages(col, step, lookup)
    yield StartEvent(col.name, step)

    start = time.time()
    if run_logger is not None:
        run_logger.column_start(col.name, step, len(messages))
    logger.debug("Computing %s at step %d (%d messages)", col.name, step, len(messages))

    result = await invoke_compute(col.compute, messages)
    deltas = 0
    if isinstance(result, str):
        value = result
    else:
        parts: list[str] = []
        async for delta in result:
            if not isinstance(delta, str):
                raise TypeError(f"Column '{col.name}' streamed a non-text fragment: {type(delta).__name__}")
            parts.append(delta)
            deltas += 1
            yield DeltaEvent(col.name, step, delta)
        value = "".join(parts)

    if not isinstance(value, str):
        raise TypeError(f"Column '{col.name}' produced {type(value).__name__}, expected str")

    if is_current is not None and not is_current():
        logger.debug("Discarding %s at step %d from a superseded run", col.name, step)
        return

    col.storage.push(value)
    if run_logger is not None:
        run_logger.column_finish(col.name, step, len(value), deltas, start)
    yield ValueEvent(col.name, step, value)


async def _advance(stream: AsyncIterator[T]) -> T:
    return await stream.__anext__()


async def merge_streams(streams: list[AsyncIterator[T]]) -> AsyncIterator[T]:
    """Interleave several async streams in readiness order.

    Each stream's own order is preserved; across streams, whichever item is
    ready first is yielded first. If any stream raises, items that other
    streams had already produced are still yielded, then the rest are
    cancelled and closed before the error propagates.
    """
    pending: dict[asyncio.Task[T], int] = {}

    def schedule(index: int) -> None:
        pending[asyncio.ensure_future(_advance(streams[index]))] = index

    for index in range(len(streams)):
        schedule(index)

    try:
        while pending:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            ready: list[tuple[int, T]] = []
            failure: Exception | None = None
            for task in sorted(done, key=pending.__getitem__):
                index = pending.pop(task)
                try:
                    ready.append((index, task.result()))
                except StopAsyncIteration:
                    continue
                except Exception as exc:
                    if failure is None:
                        failure = exc
            for index, item in ready:
                yield item
                if failure is None:
                    schedule(index)
            if failure is not None:
                raise failure
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for stream in streams:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

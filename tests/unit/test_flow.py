"""Tests for the flow engine: incremental runs, events, and graph mutation."""

from __future__ import annotations

import asyncio
import json

import pytest

from columnar import SELF, DeltaEvent, Flow, StartEvent, ValueEvent, column, flow, source
from columnar.core.errors import (
    ColumnNotFoundError,
    CycleDetectedError,
    DependencyNotFoundError,
    DuplicateColumnError,
    FlowBusyError,
    HasDependentsError,
    NameMismatchError,
    SourceColumnError,
)


async def _events(flow_run):
    return [event async for event in flow_run]


def _values(events):
    return [(e.column, e.step, e.value) for e in events if isinstance(e, ValueEvent)]


@pytest.fixture
def diamond(recorder):
    """user -> a, user -> b, (a, b) -> d, each with its own recorder."""
    user = source("user")
    computes = {name: recorder(name.upper()) for name in ("a", "b", "d")}
    a = column("a", context=[user], compute=computes["a"])
    b = column("b", context=[user], compute=computes["b"])
    d = column("d", context=[a, b], compute=computes["d"])
    return user, a, b, d, computes


class TestFlowConstruction:
    def test_discovers_columns(self, diamond):
        user, a, b, d, _ = diamond
        f = flow(d)
        assert set(f.columns) == {"user", "a", "b", "d"}
        assert f.sources == [user]
        assert {col.name for col in f.derived} == {"a", "b", "d"}
        assert f.computed_steps == 0

    def test_levels(self, diamond):
        *_, d, _ = diamond
        levels = flow(d).levels
        assert sorted(levels[0]) == ["a", "b"]
        assert levels[1] == ["d"]

    def test_current_row_cycle_rejected(self):
        user = source("user")
        a = column("a", context=[user], compute=lambda m: "a")
        b = column("b", context=[a], compute=lambda m: "b")
        a.context = (*a.context, b.as_dependency())
        with pytest.raises(CycleDetectedError):
            flow(b)

    def test_duplicate_names_rejected(self):
        a = column("a", context=[source("user")], compute=lambda m: "a")
        b = column("b", context=[source("user")], compute=lambda m: "b")
        with pytest.raises(DuplicateColumnError):
            Flow(a, b)

    def test_repr(self, chat):
        _, assistant, _ = chat
        assert repr(flow(assistant)) == "Flow(sources=['user'], levels=[['assistant']])"


class TestRun:
    @pytest.mark.asyncio
    async def test_first_run_emits_start_then_value(self, chat):
        user, assistant, compute = chat
        user.push("Hello")

        events = await _events(flow(assistant).run())

        assert events == [StartEvent("assistant", 0), ValueEvent("assistant", 0, "reply 1")]
        assert assistant.storage.get(0) == "reply 1"
        assert compute.calls[0][0].content == "Hello"

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, chat):
        user, assistant, compute = chat
        user.push("Hello")
        f = flow(assistant)
        await f.run()

        events = await _events(f.run())

        assert events == []
        assert len(assistant.storage) == 1
        assert len(compute.calls) == 1

    @pytest.mark.asyncio
    async def test_incremental_catch_up(self, chat):
        user, assistant, compute = chat
        f = flow(assistant)
        user.push("Hello")
        await f.run()

        user.push("What's up?")
        user.push("Thanks")
        events = await _events(f.run())

        assert [(e.column, e.step) for e in events if isinstance(e, StartEvent)] == [
            ("assistant", 1), ("assistant", 2),
        ]
        assert f.computed_steps == 3
        assert [m.role for m in compute.calls[-1]] == ["user", "assistant", "user", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_await_returns_committed_count(self, chat):
        user, assistant, _ = chat
        user.push("a")
        user.push("b")
        assert await flow(assistant).run() == 2

    @pytest.mark.asyncio
    async def test_run_consumed_once(self, chat):
        """Iterating and then awaiting the same run never recomputes."""
        user, assistant, compute = chat
        user.push("Hello")
        run = flow(assistant).run()

        events = await _events(run)
        assert len(events) == 2
        assert await run == 1
        assert await run.wait() == 1
        assert len(compute.calls) == 1

    @pytest.mark.asyncio
    async def test_nothing_runs_until_consumed(self, chat):
        user, assistant, compute = chat
        user.push("Hello")
        run = flow(assistant).run()
        assert compute.calls == []
        await run
        assert len(compute.calls) == 1

    @pytest.mark.asyncio
    async def test_bounded_by_least_advanced_source(self, recorder):
        user = source("user")
        notes = source("notes")
        col = column("reply", context=[user, notes.latest], compute=recorder())
        user.push("u0")
        user.push("u1")
        notes.push("n0")

        f = flow(col)
        assert await f.run() == 1
        assert f.computed_steps == 1

        notes.push("n1")
        assert await f.run() == 1

    @pytest.mark.asyncio
    async def test_flow_without_sources_does_nothing(self):
        assert await Flow().run() == 0

    @pytest.mark.asyncio
    async def test_levels_respected_per_step(self, diamond):
        user, a, b, d, _ = diamond
        user.push("x")
        user.push("y")

        events = await _events(flow(d).run())
        order = [(e.column, e.step) for e in events if isinstance(e, ValueEvent)]

        assert len(order) == 6
        for step in (0, 1):
            assert order.index(("d", step)) > order.index(("a", step))
            assert order.index(("d", step)) > order.index(("b", step))
        assert order.index(("d", 0)) < order.index(("a", 1))

    @pytest.mark.asyncio
    async def test_diamond_reads_wrapped_values(self, diamond):
        user, a, b, d, computes = diamond
        user.push("x")
        await flow(d).run()

        content = computes["d"].calls[0][0].content
        assert content == "<a>\nA 1\n</a>\n\n<b>\nB 1\n</b>"

    @pytest.mark.asyncio
    async def test_same_level_runs_concurrently(self):
        """a waits for b to start; sequential execution would never finish."""
        user = source("user")
        user.push("go")
        b_started = asyncio.Event()

        async def compute_a(messages):
            await b_started.wait()
            return "a"

        async def compute_b(messages):
            b_started.set()
            return "b"

        a = column("a", context=[user], compute=compute_a)
        b = column("b", context=[user], compute=compute_b)
        f = Flow(a, b)
        assert f.levels == [["a", "b"]]

        assert await asyncio.wait_for(f.run().wait(), timeout=5) == 2

    @pytest.mark.asyncio
    async def test_streaming_events_keep_per_column_order(self):
        user = source("user")
        user.push("go")

        def streamer(prefix):
            async def compute(messages):
                for i in range(3):
                    await asyncio.sleep(0)
                    yield f"{prefix}{i}"
            return compute

        a = column("a", context=[user], compute=streamer("a"))
        b = column("b", context=[user], compute=streamer("b"))
        events = await _events(Flow(a, b).run())

        for name in ("a", "b"):
            own = [e for e in events if e.column == name]
            assert own[0] == StartEvent(name, 0)
            assert own[1:4] == [DeltaEvent(name, 0, f"{name}{i}") for i in range(3)]
            assert own[4] == ValueEvent(name, 0, f"{name}0{name}1{name}2")
        assert len(events) == 10

    @pytest.mark.asyncio
    async def test_sync_generator_compute_streams(self):
        user = source("user")
        user.push("go")

        def compute(messages):
            yield "one "
            yield "two"

        col = column("reply", context=[user], compute=compute)
        events = await _events(flow(col).run())
        assert [e.delta for e in events if isinstance(e, DeltaEvent)] == ["one ", "two"]
        assert col.storage.get(0) == "one two"

    @pytest.mark.asyncio
    async def test_previous_row_cross_reads(self, recorder):
        """Columns reading each other's previous step share a level and both advance."""
        user = source("user")
        compute_a = recorder("A")
        compute_b = recorder("B")
        a = column("a", context=[user], compute=compute_a)
        b = column("b", context=[user, a.previous], compute=compute_b)
        a.context = (*a.context, b.previous)
        user.push("u0")
        user.push("u1")

        f = Flow(a, b)
        assert len(f.levels) == 1
        assert await f.run() == 4

        assert "<a>" not in compute_b.calls[0][0].content
        assert "<a>\nA 1\n</a>" in compute_b.calls[1][0].content
        assert "<b>\nB 1\n</b>" in compute_a.calls[1][0].content

    @pytest.mark.asyncio
    async def test_error_aborts_and_next_run_retries(self):
        user = source("user")
        for text in ("a", "b", "c"):
            user.push(text)
        calls = {"n": 0}

        def flaky(messages):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("rate limited")
            return f"ok {calls['n']}"

        col = column("assistant", context=[user, SELF], compute=flaky)
        f = flow(col)

        with pytest.raises(RuntimeError, match="rate limited"):
            await f.run()
        assert len(col.storage) == 1
        assert f.computed_steps == 0
        assert not f.running

        assert await f.run() == 2
        assert [col.storage.get(i) for i in range(3)] == ["ok 1", "ok 3", "ok 4"]
        assert f.computed_steps == 3

    @pytest.mark.asyncio
    async def test_error_surfaces_in_event_stream(self):
        user = source("user")
        user.push("a")

        async def failing(messages):
            yield "partial"
            raise ValueError("stream broke")

        col = column("assistant", context=[user], compute=failing)
        received = []
        with pytest.raises(ValueError, match="stream broke"):
            async for event in flow(col).run():
                received.append(event)
        assert received == [StartEvent("assistant", 0), DeltaEvent("assistant", 0, "partial")]

    @pytest.mark.asyncio
    async def test_failure_in_level_cancels_siblings(self):
        user = source("user")
        user.push("go")
        never = asyncio.Event()

        async def slow(messages):
            await never.wait()
            return "never"

        def broken(messages):
            raise RuntimeError("broken")

        slow_col = column("slow", context=[user], compute=slow)
        broken_col = column("broken", context=[user], compute=broken)
        f = Flow(slow_col, broken_col)

        with pytest.raises(RuntimeError, match="broken"):
            await asyncio.wait_for(f.run().wait(), timeout=5)
        assert len(slow_col.storage) == 0
        assert not f.running

    @pytest.mark.asyncio
    async def test_run_log(self, chat):
        user, assistant, _ = chat
        user.push("Hello")
        run = flow(assistant).run()
        await run

        log = run.run_log
        assert log["status"] == "completed"
        assert log["total_values"] == 1
        assert log["columns"]["assistant"]["computed_steps"] == [0]

    @pytest.mark.asyncio
    async def test_jsonl_log_written(self, chat, tmp_path):
        user, assistant, _ = chat
        user.push("Hello")
        log_dir = tmp_path / "logs"
        await Flow(assistant, log_dir=log_dir).run()

        files = list(log_dir.glob("*.jsonl"))
        assert len(files) == 1
        events = [json.loads(line)["event"] for line in files[0].read_text().splitlines()]
        assert events == ["run_start", "column_start", "column_finish", "run_finish"]


class TestGetAndDependents:
    @pytest.mark.asyncio
    async def test_get(self, chat):
        user, assistant, _ = chat
        user.push("Hello")
        f = flow(assistant)
        await f.run()
        assert f.get("user", 0) == "Hello"
        assert f.get("assistant", 0) == "reply 1"
        assert f.get("assistant", 1) is None

    def test_get_unknown_column(self, chat):
        _, assistant, _ = chat
        with pytest.raises(ColumnNotFoundError, match="Column not found: missing"):
            flow(assistant).get("missing", 0)

    def test_dependents(self, diamond):
        *_, d, _ = diamond
        f = flow(d)
        assert f.dependents("a") == ["d"]
        assert f.dependents("b") == ["d"]
        assert f.dependents("d") == []
        assert sorted(f.dependents("user")[:2]) == ["a", "b"]
        assert f.dependents("user")[2] == "d"

    def test_dependents_unknown_column(self, diamond):
        *_, d, _ = diamond
        with pytest.raises(ColumnNotFoundError):
            flow(d).dependents("nope")


class TestAddColumn:
    @pytest.mark.asyncio
    async def test_new_column_backfills(self, chat, recorder):
        user, assistant, compute = chat
        user.push("a")
        user.push("b")
        f = flow(assistant)
        await f.run()

        summary = column("summary", context=[user.latest], compute=recorder("S"))
        f.add_column(summary)
        assert f.levels == [["assistant", "summary"]]

        events = await _events(f.run())
        assert _values(events) == [("summary", 0, "S 1"), ("summary", 1, "S 2")]
        assert len(compute.calls) == 2

    def test_unregistered_source_auto_registered(self, chat, recorder):
        user, assistant, _ = chat
        f = flow(assistant)
        notes = source("notes")
        f.add_column(column("annotated", context=[user, notes], compute=recorder()))
        assert "notes" in f.columns
        assert notes in f.sources

    def test_unregistered_derived_dependency_rejected(self, chat, recorder):
        user, assistant, _ = chat
        f = flow(assistant)
        hidden = column("hidden", context=[user], compute=recorder())
        with pytest.raises(DependencyNotFoundError, match="hidden"):
            f.add_column(column("reader", context=[hidden], compute=recorder()))
        assert "reader" not in f.columns

    def test_duplicate_name_rejected(self, chat, recorder):
        user, assistant, _ = chat
        f = flow(assistant)
        with pytest.raises(DuplicateColumnError):
            f.add_column(column("assistant", context=[user], compute=recorder()))

    def test_adding_registered_column_is_noop(self, chat):
        _, assistant, _ = chat
        f = flow(assistant)
        f.add_column(assistant)
        assert f.levels == [["assistant"]]


class TestRemoveColumn:
    def test_remove_leaf(self, diamond):
        *_, d, _ = diamond
        f = flow(d)
        f.remove_column("d")
        assert "d" not in f.columns
        assert len(f.levels) == 1
        assert sorted(f.levels[0]) == ["a", "b"]

    def test_remove_with_dependents_rejected(self, diamond):
        *_, d, _ = diamond
        f = flow(d)
        with pytest.raises(HasDependentsError, match="Cannot remove column 'a': d depends on it") as exc_info:
            f.remove_column("a")
        assert exc_info.value.dependents == ["d"]
        assert "a" in f.columns

    def test_remove_source_rejected(self, diamond):
        *_, d, _ = diamond
        with pytest.raises(SourceColumnError):
            flow(d).remove_column("user")

    def test_remove_unknown(self, diamond):
        *_, d, _ = diamond
        with pytest.raises(ColumnNotFoundError):
            flow(d).remove_column("zzz")

    @pytest.mark.asyncio
    async def test_removal_keeps_storage(self, diamond):
        user, a, b, d, _ = diamond
        user.push("x")
        f = flow(d)
        await f.run()
        f.remove_column("d")
        assert d.storage.get(0) == "D 1"


class TestReplaceColumn:
    @pytest.mark.asyncio
    async def test_replace_cascades_to_dependents(self, diamond, recorder):
        user, a, b, d, computes = diamond
        user.push("x")
        user.push("y")
        f = flow(d)
        await f.run()

        new_compute = recorder("A2")
        new_a = column("a", context=[user.latest], compute=new_compute)
        f.replace_column("a", new_a)

        assert f.columns["a"] is new_a
        assert d.context[0].target is new_a
        assert len(d.storage) == 0
        assert len(b.storage) == 2

        events = await _events(f.run())
        recomputed = {(name, step) for name, step, _ in _values(events)}
        assert recomputed == {("a", 0), ("a", 1), ("d", 0), ("d", 1)}
        assert len(computes["b"].calls) == 2
        assert "<a>\nA2 1\n</a>" in computes["d"].calls[-2][0].content

    def test_replace_clears_own_history(self, chat, recorder):
        user, assistant, _ = chat
        user.push("Hello")
        assistant.storage.push("old reply")
        f = flow(assistant)

        new_assistant = column(
            "assistant", context=[user, SELF], compute=recorder(), storage=lambda name: assistant.storage
        )
        f.replace_column("assistant", new_assistant)
        assert len(new_assistant.storage) == 0

    def test_name_mismatch(self, diamond, recorder):
        user, *_, d, _ = diamond
        with pytest.raises(NameMismatchError):
            flow(d).replace_column("a", column("z", context=[user], compute=recorder()))

    def test_replace_source_rejected(self, diamond):
        user, *_, d, _ = diamond
        with pytest.raises(SourceColumnError):
            flow(d).replace_column("user", source("user"))

    def test_replace_unknown(self, diamond, recorder):
        user, *_, d, _ = diamond
        with pytest.raises(ColumnNotFoundError):
            flow(d).replace_column("zzz", column("zzz", context=[user], compute=recorder()))

    @pytest.mark.asyncio
    async def test_cycle_leaves_flow_unchanged(self, diamond, recorder):
        user, a, b, d, _ = diamond
        user.push("x")
        f = flow(d)
        await f.run()
        levels = f.levels

        cyclic = column("a", context=[d], compute=recorder())
        with pytest.raises(CycleDetectedError):
            f.replace_column("a", cyclic)

        assert f.columns["a"] is a
        assert f.levels == levels
        assert d.context[0].target is a
        assert len(d.storage) == 1

    def test_replacement_may_read_new_source(self, chat, recorder):
        user, assistant, _ = chat
        f = flow(assistant)
        notes = source("notes")
        f.replace_column("assistant", column("assistant", context=[user, notes, SELF], compute=recorder()))
        assert "notes" in f.columns


class TestRunLifecycle:
    @pytest.mark.asyncio
    async def test_break_then_run_again(self, chat):
        user, assistant, compute = chat
        user.push("Hello")
        user.push("Again")
        f = flow(assistant)

        async for event in f.run():
            assert event == StartEvent("assistant", 0)
            break

        assert await f.run() == 2
        assert [assistant.storage.get(i) for i in range(2)] == ["reply 1", "reply 2"]
        assert len(compute.calls) == 2
        assert not f.running

    @pytest.mark.asyncio
    async def test_break_then_add_column(self, chat, recorder):
        user, assistant, _ = chat
        user.push("Hello")
        f = flow(assistant)
        extra = column("extra", context=[user], compute=recorder("extra"))

        async for _ in f.run():
            break

        f.add_column(extra)
        assert "extra" in f.columns
        assert await f.run() == 2
        assert extra.storage.get(0) == "extra 1"

    @pytest.mark.asyncio
    async def test_mutation_between_events_ends_that_run(self, chat, recorder):
        user, assistant, _ = chat
        user.push("Hello")
        f = flow(assistant)
        extra = column("extra", context=[user], compute=recorder())

        run = f.run()
        received = []
        async for event in run:
            received.append(event)
            f.add_column(extra)

        assert received == [StartEvent("assistant", 0)]
        assert run.superseded
        assert await f.run() == 2

    @pytest.mark.asyncio
    async def test_mutation_before_start_is_seen_by_run(self, chat, recorder):
        user, assistant, _ = chat
        user.push("Hello")
        f = flow(assistant)
        extra = column("extra", context=[user], compute=recorder())

        run = f.run()
        f.add_column(extra)
        assert await run == 2

    @pytest.mark.asyncio
    async def test_rejected_while_computing_a_step(self, chat, recorder):
        user, _, _ = chat
        user.push("Hello")
        gate = asyncio.Event()

        async def slow(messages):
            await gate.wait()
            return "done"

        col = column("slow", context=[user], compute=slow)
        f = flow(col)
        extra = column("extra", context=[user], compute=recorder())

        run = f.run()
        assert await run.__anext__() == StartEvent("slow", 0)
        in_flight = asyncio.ensure_future(run.__anext__())
        await asyncio.sleep(0)

        assert f.running
        with pytest.raises(FlowBusyError):
            f.add_column(extra)
        with pytest.raises(FlowBusyError):
            f.remove_column("slow")
        with pytest.raises(FlowBusyError):
            f.run()

        gate.set()
        assert await in_flight == ValueEvent("slow", 0, "done")
        assert await run == 1
        assert not f.running
        f.add_column(extra)

    @pytest.mark.asyncio
    async def test_superseded_level_is_recomputed(self):
        user = source("user")
        user.push("go")
        gate = asyncio.Event()
        calls = {"n": 0}

        async def gated(messages):
            calls["n"] += 1
            n = calls["n"]
            await gate.wait()
            return f"gated {n}"

        fast = column("fast", context=[user], compute=lambda m: "fast")
        slow = column("slow", context=[user], compute=gated)
        f = Flow(fast, slow)

        first = f.run()
        async for event in first:
            if event == ValueEvent("fast", 0, "fast"):
                break

        second = f.run()
        gate.set()
        assert await second == 1
        await first.aclose()

        assert fast.storage.get(0) == "fast"
        assert len(slow.storage) == 1
        assert slow.storage.get(0) == "gated 2"

from __future__ import annotations

import asyncio
import json

import pytest

from relaybus import BusLogger, DebugLogWriter, EventBus


def test_subscribe_and_emit_delivers_payload():
    bus = EventBus()
    received = []
    bus.on("test:event", received.append)

    asyncio.run(bus.emit("test:event", {"message": "hello"}))

    assert received == [{"message": "hello"}]


def test_priority_order_across_registration():
    bus = EventBus()
    order = []
    bus.on("test:event", lambda _p: order.append(1), priority=1)
    bus.on("test:event", lambda _p: order.append(10), priority=10)
    bus.on("test:event", lambda _p: order.append(5), priority=5)

    asyncio.run(bus.emit("test:event"))

    assert order == [10, 5, 1]


def test_fifo_with_slow_first_handler():
    bus = EventBus()
    order = []

    async def slow(_payload):
        await asyncio.sleep(0.02)
        order.append("L1")

    async def quick(_payload):
        order.append("L2")

    bus.on("x", slow)
    bus.on("x", quick)
    bus.on("x", lambda _p: order.append("L3"))

    asyncio.run(bus.emit("x"))

    assert order == ["L1", "L2", "L3"]


def test_end_to_end_priority_once_scenario():
    bus = EventBus()
    order = []
    bus.on("x:y", lambda _p: order.append("H1"), priority=10)
    bus.on("x:y", lambda _p: order.append("H2"), priority=5, once=True)
    bus.on("x:y", lambda _p: order.append("H3"), priority=5)

    async def run():
        await bus.emit("x:y")
        order.append("|")
        await bus.emit("x:y")

    asyncio.run(run())

    assert order == ["H1", "H2", "H3", "|", "H1", "H3"]


def test_once_fires_only_on_first_matching_emission():
    bus = EventBus()
    calls = []
    bus.once("test:event", calls.append)

    async def run():
        await bus.emit("test:event", 1)
        await bus.emit("other:event", 2)
        await bus.emit("test:event", 3)

    asyncio.run(run())

    assert calls == [1]
    assert bus.get_listeners("test:event") == {}
    assert bus.store.get_matching("test:event") == []


def test_failed_once_listener_is_retried_on_next_emission():
    bus = EventBus()
    attempts = []

    def flaky(payload):
        attempts.append(payload)
        if len(attempts) == 1:
            raise RuntimeError("first attempt fails")

    bus.once("job", flaky)

    async def run():
        await bus.emit("job", "a")
        await bus.emit("job", "b")
        await bus.emit("job", "c")

    asyncio.run(run())

    assert attempts == ["a", "b"]


def test_once_with_wildcard_pattern():
    bus = EventBus()
    calls = []
    bus.on_pattern("user:*", calls.append, once=True)

    async def run():
        await bus.emit("user:login", "first")
        await bus.emit("user:logout", "second")

    asyncio.run(run())

    assert calls == ["first"]


def test_unsubscribe_is_idempotent():
    bus = EventBus()
    calls = []
    unsubscribe = bus.on("test:event", calls.append)

    asyncio.run(bus.emit("test:event", 1))
    unsubscribe()
    unsubscribe()
    unsubscribe()
    asyncio.run(bus.emit("test:event", 2))

    assert calls == [1]


def test_unsubscribe_only_removes_its_own_listener():
    bus = EventBus()
    calls = []
    first = bus.on("x", lambda _p: calls.append("first"))
    bus.on("x", lambda _p: calls.append("second"))

    first()
    first()
    asyncio.run(bus.emit("x"))

    assert calls == ["second"]


def test_throwing_handler_does_not_stop_later_handlers_or_emit():
    bus = EventBus()
    calls = []

    def boom(_payload):
        raise ValueError("boom")

    async def async_boom(_payload):
        raise RuntimeError("async boom")

    bus.on("x", boom, priority=3)
    bus.on("x", async_boom, priority=2)
    bus.on("x", lambda _p: calls.append("after"), priority=1)

    asyncio.run(bus.emit("x"))

    assert calls == ["after"]


def test_remove_all_for_event_keeps_wildcard_listeners():
    bus = EventBus()
    calls = []
    bus.on("user:login", lambda _p: calls.append("exact"))
    bus.on_pattern("user:*", lambda _p: calls.append("wildcard"))

    bus.off_all("user:login")
    asyncio.run(bus.emit("user:login"))

    assert calls == ["wildcard"]
    assert list(bus.get_listeners().keys()) == ["user:*"]


def test_off_all_without_event_removes_everything():
    bus = EventBus()
    calls = []
    bus.on("test:event", calls.append)
    bus.on_pattern("user:*", calls.append)

    bus.off_all()

    async def run():
        await bus.emit("test:event", 1)
        await bus.emit("user:login", 2)

    asyncio.run(run())

    assert calls == []
    assert bus.get_listeners() == {}


def test_off_by_id_and_unknown_id_is_noop():
    bus = EventBus()
    calls = []
    unsubscribe = bus.on("x", calls.append)

    bus.off(unsubscribe.listener_id)
    bus.off(unsubscribe.listener_id)
    unsubscribe()
    asyncio.run(bus.emit("x", 1))

    assert calls == []


def test_get_listeners_filters_with_wildcards():
    bus = EventBus()
    bus.on("test:event", lambda _p: None)
    bus.on("user:login", lambda _p: None, priority=5)
    bus.on_pattern("user:*", lambda _p: None)

    everything = bus.get_listeners()
    filtered = bus.get_listeners("user:login")

    assert len(everything) == 3
    assert everything["user:login"][0].priority == 5
    assert set(filtered.keys()) == {"user:login", "user:*"}


def test_execution_stats_visible_through_introspection():
    bus = EventBus()
    bus.on("x", lambda _p: None)

    async def run():
        await bus.emit("x")
        await bus.emit("x")

    asyncio.run(run())

    info = bus.get_listeners("x")["x"][0]
    assert info.execution_count == 2
    assert info.avg_duration >= 0


def test_handler_can_unsubscribe_itself_during_emission():
    bus = EventBus()
    calls = []
    holder = {}

    def self_removing(_payload):
        calls.append("self")
        holder["unsubscribe"]()

    holder["unsubscribe"] = bus.on("x", self_removing, priority=1)
    bus.on("x", lambda _p: calls.append("other"))

    async def run():
        await bus.emit("x")
        await bus.emit("x")

    asyncio.run(run())

    assert calls == ["self", "other", "other"]


def test_listener_removed_mid_emission_still_runs_from_snapshot():
    bus = EventBus()
    calls = []
    holder = {}

    def remover(_payload):
        calls.append("remover")
        bus.off(holder["victim"].listener_id)

    bus.on("x", remover, priority=10)
    holder["victim"] = bus.on("x", lambda _p: calls.append("victim"))

    async def run():
        await bus.emit("x")
        await bus.emit("x")

    asyncio.run(run())

    assert calls == ["remover", "victim", "remover"]


def test_handler_can_emit_and_subscribe_reentrantly():
    bus = EventBus()
    calls = []

    async def outer(_payload):
        calls.append("outer:start")
        bus.on("late", lambda _p: calls.append("late"))
        await bus.emit("inner")
        calls.append("outer:end")

    bus.on("outer", outer)
    bus.on("inner", lambda _p: calls.append("inner"))

    async def run():
        await bus.emit("outer")
        await bus.emit("late")

    asyncio.run(run())

    assert calls == ["outer:start", "inner", "outer:end", "late"]


def test_listener_added_during_emission_does_not_run_in_that_emission():
    bus = EventBus()
    calls = []

    def adder(_payload):
        calls.append("adder")
        bus.on("x", lambda _p: calls.append("added"), priority=-1)

    bus.once("x", adder)

    async def run():
        await bus.emit("x")
        await bus.emit("x")

    asyncio.run(run())

    assert calls == ["adder", "added"]


def test_dispatch_reports_execution_result():
    bus = EventBus()

    def boom(_payload):
        raise ValueError("boom")

    bus.on("x", boom)
    bus.once("x", lambda _p: None)

    result = asyncio.run(bus.dispatch("x"))

    assert result.executed == 2
    assert result.failed_count == 1
    assert len(result.listeners_to_remove) == 1


def test_emit_without_listeners_is_noop():
    bus = EventBus()

    assert asyncio.run(bus.emit("nobody:listens", {"a": 1})) is None


def test_listener_decorator_registers_pattern():
    bus = EventBus()
    calls = []

    @bus.listener("order:*", priority=2)
    def on_order(payload):
        calls.append(payload)

    asyncio.run(bus.emit("order:created", 42))

    assert calls == [42]
    assert on_order(1) is None


def test_emit_sync_runs_outside_event_loop():
    bus = EventBus()
    calls = []

    async def handler(payload):
        calls.append(payload)

    bus.on("x", handler)
    bus.emit_sync("x", "sync")

    assert calls == ["sync"]


def test_emit_sync_refuses_inside_running_loop():
    bus = EventBus()

    async def run():
        with pytest.raises(RuntimeError):
            bus.emit_sync("x")

    asyncio.run(run())


def test_handler_failures_are_written_to_debug_log(tmp_path):
    writer = DebugLogWriter(logs_dir=tmp_path / "logs", enabled=True, redaction="none")
    bus = EventBus(logger=BusLogger(writer))

    def boom(_payload):
        raise ValueError("kaboom")

    bus.on("x", boom)
    asyncio.run(bus.emit("x"))

    rows = [
        json.loads(line)
        for line in writer.active_log_file.read_text(encoding="utf-8").splitlines()
    ]
    failures = [row for row in rows if row["kind"] == "handler_failed"]
    assert len(failures) == 1
    assert failures[0]["level"] == "error"
    assert failures[0]["event"] == "x"
    assert failures[0]["data"]["error_type"] == "ValueError"
    assert "kaboom" in failures[0]["data"]["error"]
    emits = [row for row in rows if row["kind"] == "emit"]
    assert emits[0]["data"]["failed"] == 1


def test_handler_failures_not_reported_when_disabled(tmp_path):
    writer = DebugLogWriter(logs_dir=tmp_path / "logs", enabled=True, redaction="none")
    bus = EventBus(logger=BusLogger(writer), report_handler_errors=False)

    def boom(_payload):
        raise ValueError("kaboom")

    bus.on("x", boom)
    asyncio.run(bus.emit("x"))

    text = writer.active_log_file.read_text(encoding="utf-8")
    assert "handler_failed" not in text


def test_off_all_with_empty_name_removes_everything():
    bus = EventBus()
    calls = []
    bus.on("a", calls.append)
    bus.on_pattern("b:*", calls.append)

    bus.off_all("")

    asyncio.run(bus.emit("a", 1))
    assert calls == []
    assert bus.get_listeners() == {}


def test_subscription_methods_store_string_patterns():
    bus = EventBus()

    by_event = bus.on(42, lambda _p: None)
    by_pattern = bus.on_pattern(7, lambda _p: None)
    by_once = bus.once(99, lambda _p: None)

    assert [by_event.pattern, by_pattern.pattern, by_once.pattern] == ["42", "7", "99"]
    assert set(bus.get_listeners().keys()) == {"42", "7", "99"}

    by_pattern()
    assert "7" not in bus.get_listeners()

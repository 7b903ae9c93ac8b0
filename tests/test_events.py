import asyncio

import pytest

from task_engine.events import EngineEvent, EventEmitter


def test_emit_reaches_listeners_by_enum_or_name():
    events = EventEmitter()
    seen = []
    events.on(EngineEvent.TASK_SUBMITTED, seen.append)
    events.on("task_submitted", lambda p: seen.append(("by-name", p["task_id"])))

    assert events.emit("task_submitted", {"task_id": "t1"}) == 2
    assert seen == [{"task_id": "t1"}, ("by-name", "t1")]
    assert events.listener_count(EngineEvent.TASK_SUBMITTED) == 2


def test_failing_listener_does_not_stop_others(caplog):
    events = EventEmitter()
    seen = []

    def broken(payload):
        raise RuntimeError("listener bug")

    events.on(EngineEvent.ERROR, broken)
    events.on(EngineEvent.ERROR, seen.append)
    events.emit(EngineEvent.ERROR, {"id": "e1"})

    assert seen == [{"id": "e1"}]
    assert "listener bug" in caplog.text


def test_off_removes_listener():
    events = EventEmitter()
    seen = []
    events.on("custom", seen.append)
    events.off("custom", seen.append)
    events.off("custom", seen.append)
    assert events.emit("custom", {}) == 0
    assert events.listener_count("custom") == 0
    assert seen == []


@pytest.mark.asyncio
async def test_async_listeners_are_scheduled_and_drained():
    events = EventEmitter()
    seen = []

    async def slow(payload):
        await asyncio.sleep(0.01)
        seen.append(payload["n"])

    async def broken(payload):
        raise RuntimeError("async listener bug")

    events.on("tick", slow)
    events.on("tick", broken)
    events.emit("tick", {"n": 1})
    events.emit("tick", {"n": 2})
    assert seen == []

    await events.drain()
    assert sorted(seen) == [1, 2]

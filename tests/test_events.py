"""Tests for typed events and the async event bus."""
from __future__ import annotations

import asyncio

import pytest

from sandforge.adapters import EventBus, SandforgeEvent, dict_to_event, event_to_dict
from sandforge.adapters.events import FileChanged, SetupActionEnqueued


def test_dict_to_event_builds_typed_event():
    event = dict_to_event({
        "event": "file_changed",
        "file_path": "/home/project/a.txt",
        "streaming": True,
        "created_folders": [],
        "unexpected": "ignored",
    })
    assert isinstance(event, FileChanged)
    assert event.file_path == "/home/project/a.txt"
    assert event.streaming is True


def test_unknown_event_falls_back_to_base():
    event = dict_to_event({"event": "something_new", "x": 1})
    assert type(event) is SandforgeEvent
    assert event.event_type == "something_new"


def test_event_to_dict_uses_event_key_and_drops_none():
    from sandforge.adapters.events import ActionAdded

    assert "file_path" not in event_to_dict(ActionAdded(action_id="1", kind="run-shell"))
    data = event_to_dict(SetupActionEnqueued(
        action_id="auto-install-1", intent="install", command="npm install", attempt=1,
    ))
    assert data == {
        "event": "setup_action_enqueued",
        "action_id": "auto-install-1",
        "intent": "install",
        "command": "npm install",
        "attempt": 1,
    }


@pytest.mark.asyncio
async def test_bus_queues_callback_events_in_order():
    bus = EventBus()
    callback = bus.make_callback()
    await callback({"event": "generation_started", "stream_id": "m1"})
    await callback({"event": "artifact_closed", "artifact_id": "m1-0"})

    events = bus.drain()
    assert [e.event_type for e in events] == ["generation_started", "artifact_closed"]
    assert bus.drain() == []


@pytest.mark.asyncio
async def test_closed_bus_ignores_events_until_reset():
    bus = EventBus()
    bus.close()
    await bus.make_callback()({"event": "project_cleared"})
    assert bus.drain() == []

    bus.reset()
    await bus.make_callback()({"event": "project_cleared"})
    assert [e.event_type for e in bus.drain()] == ["project_cleared"]


@pytest.mark.asyncio
async def test_callback_can_filter_event_types():
    bus = EventBus()
    callback = bus.make_callback({"preview_ready"})
    await callback({"event": "file_changed", "file_path": "/home/project/a.txt"})
    await callback({"event": "preview_ready", "port": 5173})
    assert [e.event_type for e in bus.drain()] == ["preview_ready"]


@pytest.mark.asyncio
async def test_full_queue_drops_after_timeout():
    bus = EventBus(maxsize=1, put_timeout=0.01)
    await bus.emit(SandforgeEvent(event_type="a"))
    await bus.emit(SandforgeEvent(event_type="b"))

    assert bus.dropped == 1
    assert [e.event_type for e in bus.drain()] == ["a"]
    bus.reset()
    assert bus.dropped == 0


@pytest.mark.asyncio
async def test_consume_yields_until_closed():
    bus = EventBus()
    received = []

    async def consumer():
        async for event in bus.consume():
            received.append(event.event_type)
            if len(received) == 2:
                bus.close()

    task = asyncio.create_task(consumer())
    await bus.emit(SandforgeEvent(event_type="a"))
    await bus.emit(SandforgeEvent(event_type="b"))
    await asyncio.wait_for(task, timeout=2)
    assert received == ["a", "b"]


@pytest.mark.asyncio
async def test_orchestrator_events_flow_through_bus(orchestrator):
    bus = EventBus()
    orchestrator.subscribe(bus.make_callback())
    await orchestrator.add_file("a.txt", "x")
    await orchestrator.wait_idle()

    events = bus.drain()
    assert isinstance(events[0], FileChanged)
    assert events[0].file_path == "/home/project/a.txt"

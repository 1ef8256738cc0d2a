"""Test EventBus."""

import json

from planrunner.events import EventBus
from planrunner.models import Event


def test_emit_and_recent():
    bus = EventBus()
    bus.emit(Event(type="test.event", plan_id="p1", data={"key": "val"}))
    bus.emit(Event(type="test.event2", plan_id="p1", data={"key": "val2"}))

    recent = bus.recent(limit=10)
    assert len(recent) == 2
    assert recent[0].type == "test.event"
    assert recent[1].type == "test.event2"


def test_emit_simple():
    bus = EventBus()
    bus.emit_simple("plan.created", "plan1", status="pending")

    recent = bus.recent()
    assert len(recent) == 1
    assert recent[0].data["status"] == "pending"


def test_recent_pagination():
    bus = EventBus()
    for i in range(10):
        bus.emit_simple("event", "p1", i=i)

    assert len(bus.recent(limit=3)) == 3
    assert len(bus.recent(limit=100)) == 10
    assert [e.data["i"] for e in bus.recent(limit=2, offset=1)] == [7, 8]


def test_recent_by_plan():
    bus = EventBus()
    bus.emit_simple("event", "a")
    bus.emit_simple("event", "b")
    assert [e.plan_id for e in bus.recent(plan_id="b")] == ["b"]


def test_history_is_bounded():
    bus = EventBus(max_history=3)
    for i in range(5):
        bus.emit_simple("event", "p1", i=i)
    assert [e.data["i"] for e in bus.recent()] == [2, 3, 4]


def test_persist_to_file(tmp_path):
    log = tmp_path / "logs" / "events.jsonl"
    bus = EventBus(log_file=log)
    bus.emit_simple("plan.created", "p1", status="draft")
    bus.emit_simple("plan.deleted", "p1")

    lines = [json.loads(line) for line in log.read_text().splitlines()]
    assert [line["type"] for line in lines] == ["plan.created", "plan.deleted"]
    assert lines[0]["data"] == {"status": "draft"}


def test_subscribers_receive_events():
    bus = EventBus()
    queue = bus.subscribe()
    bus.emit_simple("event", "p1")
    assert queue.get_nowait().type == "event"

    bus.unsubscribe(queue)
    bus.emit_simple("event", "p1")
    assert queue.empty()


def test_listeners_filter_and_isolate_failures():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.on(broken)
    off = bus.on(lambda e: seen.append(e.type), event_type="plan.created")
    bus.emit_simple("plan.created", "p1")
    bus.emit_simple("plan.deleted", "p1")
    off()
    bus.emit_simple("plan.created", "p2")

    assert seen == ["plan.created"]
    assert len(bus.recent()) == 3

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from events import EventBus


def test_emit_delivers_to_subscribers_in_order():
    bus = EventBus()
    seen = []
    bus.subscribe("navigate", lambda payload: seen.append(("a", payload)))
    bus.subscribe("navigate", lambda payload: seen.append(("b", payload)))
    assert bus.emit("navigate", "chats") == 2
    assert seen == [("a", "chats"), ("b", "chats")]


def test_failing_listener_does_not_stop_others():
    bus = EventBus()
    seen = []

    def broken(_payload):
        raise RuntimeError("listener bug")

    bus.subscribe("upload_ux", broken)
    bus.subscribe("upload_ux", seen.append)
    assert bus.emit("upload_ux", 1) == 1
    assert seen == [1]


def test_unsubscribe_and_emit_without_listeners():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe("device_profile", seen.append)
    unsubscribe()
    unsubscribe()
    assert bus.listener_count("device_profile") == 0
    assert bus.emit("device_profile", {}) == 0
    assert seen == []

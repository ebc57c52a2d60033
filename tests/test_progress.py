from __future__ import annotations

import json
import queue
import time

import pytest

from audibible.errors import ChannelDeliveryError
from audibible.webui.progress import ProgressChannel, ProgressEvent, ProgressSubscription


def _event(progress: int, message: str = "working") -> ProgressEvent:
    return ProgressEvent(type="progress", progress=progress, message=message, step="fetch_text")


def test_event_wire_format_omits_empty_fields():
    wire = _event(5, "Fetching Genesis 1 (WEB) from BibleGateway...").to_wire()

    assert wire.startswith("data: ")
    assert wire.endswith("\n\n")
    assert json.loads(wire[len("data: "):]) == {
        "type": "progress",
        "progress": 5,
        "message": "Fetching Genesis 1 (WEB) from BibleGateway...",
        "step": "fetch_text",
    }


def test_rescaled_keeps_other_fields():
    event = _event(50, "Merging").rescaled(37, "Chapter 2/4: Merging")

    assert (event.progress, event.message, event.step) == (37, "Chapter 2/4: Merging", "fetch_text")


def test_subscribe_sends_connected_event_first():
    channel = ProgressChannel()
    subscription = channel.subscribe("job-1")

    channel.publish("job-1", _event(5))

    first = subscription.get(timeout=1)
    assert first.as_dict() == {"type": "connected", "progress": 0, "message": "Progress stream connected"}
    assert subscription.get(timeout=1).progress == 5


def test_publish_without_subscriber_is_dropped():
    channel = ProgressChannel()

    assert channel.publish("nobody", _event(5)) is False


def test_full_subscriber_is_dropped_without_raising():
    channel = ProgressChannel(sink_size=2)
    subscription = channel.subscribe("job-1")

    assert channel.publish("job-1", _event(5)) is True
    assert channel.publish("job-1", _event(10)) is False
    assert not channel.has_subscriber("job-1")
    assert subscription.closed


def test_put_on_closed_subscription_raises():
    subscription = ProgressSubscription("job-1")
    subscription.close()

    with pytest.raises(ChannelDeliveryError):
        subscription.put(_event(5))


def test_resubscribe_replaces_previous_sink():
    channel = ProgressChannel()
    old = channel.subscribe("job-1")
    new = channel.subscribe("job-1")

    assert old.closed
    channel.unsubscribe("job-1", old)
    assert channel.has_subscriber("job-1")

    channel.publish("job-1", _event(15))
    assert new.get(timeout=1).type == "connected"
    assert new.get(timeout=1).progress == 15


def test_close_later_ends_stream_after_delay():
    channel = ProgressChannel(close_delay=0.05)
    subscription = channel.subscribe("job-1")
    channel.publish("job-1", ProgressEvent(type="completed", progress=100, message="done"))

    channel.close_later("job-1")

    lines = list(subscription.stream(keepalive=1))
    assert len(lines) == 2
    assert json.loads(lines[1][len("data: "):])["type"] == "completed"
    assert not channel.has_subscriber("job-1")


def test_close_immediately_after_error():
    channel = ProgressChannel(close_delay=10)
    subscription = channel.subscribe("job-1")
    channel.publish("job-1", ProgressEvent(type="error", progress=5, message="Failed", error="boom"))

    channel.close_later("job-1", 0)

    assert [event.type for event in iter(lambda: subscription.get(timeout=1), None)] == ["connected", "error"]


def test_stream_emits_keepalive_while_idle():
    channel = ProgressChannel()
    subscription = channel.subscribe("job-1")
    stream = subscription.stream(keepalive=0.01)

    assert next(stream).startswith("data: ")
    assert next(stream) == ": keep-alive\n\n"
    channel.unsubscribe("job-1")
    assert list(stream) == []


def test_get_times_out_while_open():
    subscription = ProgressSubscription("job-1")
    started = time.time()

    with pytest.raises(queue.Empty):
        subscription.get(timeout=0.01)
    assert time.time() - started < 1


def test_shutdown_closes_everything():
    channel = ProgressChannel(close_delay=30)
    first = channel.subscribe("a")
    second = channel.subscribe("b")
    channel.close_later("a")

    channel.shutdown()

    assert first.closed and second.closed
    assert not channel.has_subscriber("a")

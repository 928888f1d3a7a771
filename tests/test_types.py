"""Tests for livemark._types.

Tests cover:
- Message constructors
- Session.subscribe: initial frame, closed sessions
- Session.publish / publish_render: fan-out, ordering, closed sessions
- Session.close: closed signal, idempotence
"""

from pathlib import Path

from livemark._types import (
    MessageType,
    Session,
    closed_message,
    error_message,
    render_message,
)


def _drain(subscriber):
    messages = []
    while not subscriber.queue.empty():
        messages.append(subscriber.queue.get_nowait())
    return messages


def _session():
    return Session(id="abc123", path=Path("/tmp/a.md"))


class TestMessages:
    def test_render(self):
        assert render_message("<p>x</p>") == {"type": "render", "html": "<p>x</p>"}

    def test_error(self):
        assert error_message("bad") == {"type": "error", "message": "bad"}

    def test_closed(self):
        assert closed_message() == {"type": "closed"}

    def test_message_type_values(self):
        assert MessageType.RENDER == "render"
        assert MessageType("closed") is MessageType.CLOSED


class TestSubscribe:
    def test_no_initial_frame_before_first_render(self):
        session = _session()
        sub = session.subscribe()
        assert _drain(sub) == []
        assert session.subscriber_count == 1

    def test_initial_frame_is_last_render(self):
        session = _session()
        session.publish_render("<p>one</p>")
        session.publish_render("<p>two</p>")
        sub = session.subscribe()
        assert _drain(sub) == [render_message("<p>two</p>")]

    def test_subscribe_to_closed_session(self):
        session = _session()
        session.publish_render("<p>one</p>")
        session.close()
        sub = session.subscribe()
        assert _drain(sub) == [closed_message()]
        assert session.subscriber_count == 0

    def test_unsubscribe(self):
        session = _session()
        sub = session.subscribe()
        session.unsubscribe(sub)
        session.publish_render("<p>x</p>")
        assert _drain(sub) == []
        assert session.subscriber_count == 0

    def test_unsubscribe_twice_is_harmless(self):
        session = _session()
        sub = session.subscribe()
        session.unsubscribe(sub)
        session.unsubscribe(sub)
        assert session.subscriber_count == 0


class TestPublish:
    def test_fan_out(self):
        session = _session()
        subs = [session.subscribe() for _ in range(3)]
        assert session.publish_render("<p>x</p>") == 3
        for sub in subs:
            assert _drain(sub) == [render_message("<p>x</p>")]

    def test_order_preserved(self):
        session = _session()
        sub = session.subscribe()
        session.publish_render("<p>1</p>")
        session.publish(error_message("oops"))
        session.publish_render("<p>2</p>")
        assert _drain(sub) == [
            render_message("<p>1</p>"),
            error_message("oops"),
            render_message("<p>2</p>"),
        ]

    def test_error_keeps_last_render(self):
        session = _session()
        session.publish_render("<p>good</p>")
        session.publish(error_message("oops"))
        assert session.last_rendered == "<p>good</p>"

    def test_publish_error_is_remembered(self):
        session = _session()
        session.publish_render("<p>good</p>")
        assert session.publish_error("oops") == 0
        sub = session.subscribe()
        assert _drain(sub) == [render_message("<p>good</p>"), error_message("oops")]

    def test_error_before_any_render(self):
        session = _session()
        session.publish_error("bad bytes")
        sub = session.subscribe()
        assert _drain(sub) == [error_message("bad bytes")]

    def test_render_clears_error(self):
        session = _session()
        session.publish_error("oops")
        session.publish_render("<p>fixed</p>")
        assert session.last_error is None
        sub = session.subscribe()
        assert _drain(sub) == [render_message("<p>fixed</p>")]

    def test_no_subscribers(self):
        session = _session()
        assert session.publish_render("<p>x</p>") == 0
        assert session.last_rendered == "<p>x</p>"

    def test_publish_after_close_is_dropped(self):
        session = _session()
        sub = session.subscribe()
        session.close()
        assert session.publish_render("<p>late</p>") == 0
        assert session.publish(error_message("late")) == 0
        assert _drain(sub) == [closed_message()]


class TestClose:
    def test_closed_signal_to_every_subscriber(self):
        session = _session()
        subs = [session.subscribe() for _ in range(2)]
        session.close()
        assert session.closed
        assert session.subscriber_count == 0
        for sub in subs:
            assert _drain(sub) == [closed_message()]

    def test_close_is_idempotent(self):
        session = _session()
        sub = session.subscribe()
        session.close()
        session.close()
        assert _drain(sub) == [closed_message()]

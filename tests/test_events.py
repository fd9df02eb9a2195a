"""Tests for the event bus."""

from glean import Glean
from glean.common.events import EventBus


def test_handlers_run_in_subscription_order():
    bus = EventBus()
    calls = []
    bus.on("query", lambda payload: calls.append(("first", payload["n"])))
    bus.on("query", lambda payload: calls.append(("second", payload["n"])))

    bus.emit("query", {"n": 1})

    assert calls == [("first", 1), ("second", 1)]


def test_off_removes_handler():
    bus = EventBus()
    calls = []
    bus.on("query", calls.append)
    bus.off("query", calls.append)

    bus.emit("query", {"n": 1})

    assert calls == []


def test_off_unknown_handler_is_ignored():
    bus = EventBus()
    bus.off("query", print)
    bus.off("never-subscribed", print)


def test_emit_without_handlers():
    EventBus().emit("request_init", {"url": "https://example.com"})


def test_initial_handlers():
    calls = []
    bus = EventBus({"request_error": [calls.append]})

    bus.emit("request_error", {"status": 500})

    assert calls == [{"status": 500}]


def test_glean_instances_do_not_share_handlers():
    calls = []
    first, second = Glean(), Glean()
    first.on("query", calls.append)

    second.init("<p>x</p>").query.content("p")
    assert calls == []

    first.init("<p>x</p>").query.content("p")
    assert len(calls) == 1

    first.off("query", calls.append)
    first.init("<p>x</p>").query.content("p")
    assert len(calls) == 1


def test_glean_handlers_argument():
    calls = []
    glean = Glean(handlers={"query": [calls.append]})

    glean.init("<p>x</p>").query.exists("p")

    assert calls[0]["operation"] == "exists"

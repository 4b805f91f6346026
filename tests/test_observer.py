"""Tests for observer notification and combinators."""

from __future__ import annotations

import logging

from parley.llm.providers.base import Request
from parley.llm.types import Agent, TextInteraction, ToolCallInteraction
from parley.session.observer import Observer, combine_observers, logging_observer


class TestNotify:
    def test_missing_callback_is_ignored(self):
        Observer().notify("on_start", Request(provider="p"))

    def test_unknown_event_is_ignored(self):
        Observer().notify("on_nothing")

    def test_raising_callback_is_logged(self, caplog):
        def boom(_):
            raise ValueError("bad observer")

        with caplog.at_level(logging.ERROR, logger="parley.session.observer"):
            Observer(on_delta=boom).notify("on_delta", TextInteraction(content="x"))
        assert "on_delta failed" in caplog.text


class TestCombineObservers:
    def test_fan_out_in_argument_order(self):
        seen = []
        first = Observer(on_delta=lambda i: seen.append(("first", i.content)))
        second = Observer(on_delta=lambda i: seen.append(("second", i.content)))
        combined = combine_observers(first, None, second)
        combined.notify("on_delta", TextInteraction(content="hi"))
        assert seen == [("first", "hi"), ("second", "hi")]

    def test_failure_does_not_stop_others(self):
        seen = []

        def boom(_):
            raise RuntimeError("nope")

        combined = combine_observers(Observer(on_final=boom), Observer(on_final=seen.append))
        combined.notify("on_final", "done")
        assert seen == ["done"]


class TestLoggingObserver:
    def test_transcript(self, caplog):
        log = logging.getLogger("parley.test.trace")
        obs = logging_observer(log)
        with caplog.at_level(logging.DEBUG, logger="parley.test.trace"):
            obs.notify("on_start", Request(provider="mock", model="m1"))
            obs.notify("on_delta", TextInteraction(agent=Agent.ASSISTANT, content="line one\nline two"))
            obs.notify("on_tool_call", ToolCallInteraction(id="c1", name="echo", arguments={"message": "x"}))
            obs.notify("on_error", RuntimeError("broken"))
        assert "start provider=mock model=m1 interactions=0" in caplog.text
        assert "line one line two" in caplog.text
        assert "tool_call id=c1 name=echo" in caplog.text
        assert any(r.levelno == logging.WARNING and "broken" in r.getMessage() for r in caplog.records)

    def test_long_text_is_abbreviated(self, caplog):
        obs = logging_observer(logging.getLogger("parley.test.trace"))
        with caplog.at_level(logging.DEBUG, logger="parley.test.trace"):
            obs.notify("on_delta", TextInteraction(content="x" * 500))
        assert "x" * 120 + "..." in caplog.text
        assert "x" * 121 not in caplog.text

"""Tests for parley.llm.coalescer."""

from __future__ import annotations

import pytest

from parley.llm.coalescer import TextCoalescer, ToolCallCoalescer, coalesce_text
from parley.llm.types import Agent, Metrics, TextInteraction, ToolCallFragment, ToolCallInteraction


def _text(content: str) -> TextInteraction:
    return TextInteraction(agent=Agent.ASSISTANT, content=content)


class TestCoalesceText:
    @pytest.mark.parametrize(
        "accumulated, incoming, expected",
        [
            ("", "Hello", "Hello"),
            ("Hello", "", "Hello"),
            ("Hello", " world", "Hello world"),
            ("Hello", "Hello world", "Hello world"),
            ("Hello world", "Hello", "Hello world"),
            ("Hello world", "Hello world", "Hello world"),
        ],
    )
    def test_rules(self, accumulated, incoming, expected):
        assert coalesce_text(accumulated, incoming) == expected

    def test_never_shrinks(self):
        acc = ""
        for piece in ["The ", "The quick", "The", " brown", "The quick brown fox"]:
            new = coalesce_text(acc, piece)
            assert len(new) >= len(acc)
            acc = new
        assert acc == "The quick brown fox"


class TestTextCoalescer:
    def test_pure_deltas(self):
        tc = TextCoalescer()
        for piece in ["The ", "answer ", "is 42"]:
            tc.feed(_text(piece))
        assert tc.content == "The answer is 42"
        assert tc.fragments == 3

    def test_cumulative_snapshots(self):
        tc = TextCoalescer()
        for piece in ["The", "The answer", "The answer is 42"]:
            tc.feed(_text(piece))
        assert tc.content == "The answer is 42"

    def test_replayed_snapshot_is_noop(self):
        tc = TextCoalescer()
        tc.feed(_text("The answer"))
        before = tc.snapshot()
        tc.feed(_text("The answer"))
        tc.feed(_text("The"))
        assert tc.snapshot().content == before.content

    def test_reasoning_is_coalesced_separately(self):
        tc = TextCoalescer()
        tc.feed(TextInteraction(agent=Agent.ASSISTANT, reasoning="thinking"))
        tc.feed(TextInteraction(agent=Agent.ASSISTANT, content="answer"))
        snap = tc.snapshot()
        assert snap.reasoning == "thinking"
        assert snap.content == "answer"
        assert tc.has_content

    def test_latest_metrics_win(self):
        tc = TextCoalescer()
        tc.feed(TextInteraction(agent=Agent.ASSISTANT, content="a", metrics=Metrics(input_tokens_prompt=1)))
        tc.feed(TextInteraction(agent=Agent.ASSISTANT, content="b", metrics=Metrics(input_tokens_prompt=9)))
        assert tc.snapshot().metrics.input_tokens_prompt == 9

    def test_reset(self):
        tc = TextCoalescer()
        tc.feed(_text("something"))
        tc.reset()
        assert not tc.has_content
        assert tc.fragments == 0


class TestToolCallFragments:
    def test_basic_assembly(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="call_1", name="read_"))
        tcc.feed(ToolCallFragment(index=0, name="file"))
        tcc.feed(ToolCallFragment(index=0, arguments_text='{"path": '))
        tcc.feed(ToolCallFragment(index=0, arguments_text='"/etc/hosts"}'))

        calls = tcc.finish()
        assert len(calls) == 1
        tc = calls[0]
        assert tc.id == "call_1"
        assert tc.name == "read_file"
        assert tc.arguments == {"path": "/etc/hosts"}
        assert tcc.errors == []

    def test_fragment_repeating_earlier_text_is_appended(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="c1", name="batch"))
        for part in ['{"items":[', '{"', 'a":1},', '{"', 'a":2}]}']:
            tcc.feed(ToolCallFragment(index=0, arguments_text=part))
        calls = tcc.finish()
        assert tcc.errors == []
        assert calls[0].arguments == {"items": [{"a": 1}, {"a": 2}]}

    def test_name_fragments_are_appended(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="c1", name="ab"))
        tcc.feed(ToolCallFragment(index=0, name="a"))
        assert tcc.finish()[0].name == "aba"

    def test_feed_returns_current_view(self):
        tcc = ToolCallCoalescer()
        view = tcc.feed(ToolCallFragment(index=0, id="call_1", name="echo"))
        assert isinstance(view, ToolCallInteraction)
        assert view.arguments == {}
        view = tcc.feed(ToolCallFragment(index=0, arguments_text='{"message": "hi"}'))
        assert view.arguments == {"message": "hi"}

    def test_interleaved_calls_keep_first_seen_order(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="a", name="echo"))
        tcc.feed(ToolCallFragment(index=1, id="b", name="write_file"))
        tcc.feed(ToolCallFragment(index=1, arguments_text='{"path": "x", "content": "y"}'))
        tcc.feed(ToolCallFragment(index=0, arguments_text='{"message": "m"}'))
        calls = tcc.finish()
        assert [c.id for c in calls] == ["a", "b"]
        assert calls[1].arguments == {"path": "x", "content": "y"}

    def test_id_arriving_late_rekeys_buffer(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, name="echo"))
        tcc.feed(ToolCallFragment(index=0, id="late", arguments_text='{"message": "x"}'))
        calls = tcc.finish()
        assert len(calls) == 1
        assert calls[0].id == "late"
        assert calls[0].name == "echo"

    def test_missing_id_gets_default(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=3, name="echo", arguments_text="{}"))
        assert tcc.finish()[0].id == "call_3"

    def test_empty_arguments_parse_to_empty_object(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="c", name="ping"))
        assert tcc.finish()[0].arguments == {}

    def test_invalid_json_is_dropped_with_error(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="call_bad", name="broken_tool"))
        tcc.feed(ToolCallFragment(index=0, arguments_text='{"key": INVALID_JSON'))
        assert tcc.finish() == []
        assert len(tcc.errors) == 1
        assert "tool_call_json_parse_failed" in tcc.errors[0]
        assert "call_bad" in tcc.errors[0]

    def test_non_object_arguments_are_dropped(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="c", name="x", arguments_text="[1, 2]"))
        assert tcc.finish() == []
        assert "tool_call_arguments_not_object" in tcc.errors[0]

    def test_bad_call_does_not_affect_good_call(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="good", name="echo", arguments_text='{"message": "ok"}'))
        tcc.feed(ToolCallFragment(index=1, id="bad", name="echo", arguments_text="{nope"))
        calls = tcc.finish()
        assert [c.id for c in calls] == ["good"]
        assert len(tcc.errors) == 1

    def test_reset(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="c", name="x", arguments_text="{bad"))
        tcc.finish()
        tcc.reset()
        assert len(tcc) == 0
        assert tcc.errors == []


class TestToolCallSnapshots:
    def test_replayed_snapshot_is_noop(self):
        tcc = ToolCallCoalescer()
        call = ToolCallInteraction(id="c1", name="echo", arguments={"message": "hi"})
        tcc.feed(call)
        before = tcc.snapshots()
        tcc.feed(call)
        after = tcc.snapshots()
        assert [(s.id, s.name, s.arguments) for s in after] == [
            (s.id, s.name, s.arguments) for s in before
        ]
        assert len(tcc) == 1

    def test_replayed_snapshot_without_id_is_noop(self):
        tcc = ToolCallCoalescer()
        call = ToolCallInteraction(id="", name="echo", arguments={"message": "hi"})
        tcc.feed(call)
        tcc.feed(call)
        assert len(tcc) == 1
        assert [c.arguments for c in tcc.finish()] == [{"message": "hi"}]

    def test_snapshots_without_id_keep_distinct_names_apart(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallInteraction(id="", name="echo", arguments={}))
        tcc.feed(ToolCallInteraction(id="", name="write_file", arguments={}))
        tcc.feed(ToolCallInteraction(id="", name="echo", arguments={"message": "later"}))
        calls = tcc.finish()
        assert [c.name for c in calls] == ["echo", "write_file"]
        assert calls[0].arguments == {"message": "later"}

    def test_stale_snapshot_does_not_regress(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallInteraction(id="c1", name="echo", arguments={"message": "hello"}))
        tcc.feed(ToolCallInteraction(id="c1", name="echo", arguments={}))
        assert tcc.finish()[0].arguments == {"message": "hello"}

    def test_newer_snapshot_replaces(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallInteraction(id="c1", name="echo", arguments={}))
        tcc.feed(ToolCallInteraction(id="c1", name="echo", arguments={"message": "hello"}))
        assert tcc.finish()[0].arguments == {"message": "hello"}

    def test_snapshots_view_skips_parse_errors(self):
        tcc = ToolCallCoalescer()
        tcc.feed(ToolCallFragment(index=0, id="c1", name="echo", arguments_text='{"message": '))
        snaps = tcc.snapshots()
        assert len(snaps) == 1
        assert snaps[0].arguments == {}
        assert tcc.errors == []

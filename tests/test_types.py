"""Tests for interactions, metrics, filters, returns and cancellation."""

from __future__ import annotations

from parley.llm.body import BodyBuilder
from parley.llm.filters import Filter, allows
from parley.llm.returns import Return
from parley.llm.token_counter import MESSAGE_OVERHEAD, TokenCounter
from parley.llm.types import (
    Agent,
    ErrorInteraction,
    Metrics,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
)
from parley.session.cancellation import CancellationToken
from parley.types import CallStatus, ErrorKind, Origin, RuntimeMessage, Severity, ToolResult


class TestMetrics:
    def test_totals(self):
        m = Metrics(
            input_tokens_prompt=10,
            input_tokens_cached=5,
            output_tokens_reasoning=2,
            output_tokens_generation=3,
        )
        assert m.input_tokens == 15
        assert m.output_tokens == 5
        assert m.total_tokens == 20

    def test_effective_uses_larger_of_reported_and_estimated(self):
        m = Metrics(input_tokens_prompt=10, estimated_input_tokens=50)
        assert m.effective_total_tokens == 50

    def test_combine_sums_and_keeps_latest_labels(self):
        a = Metrics(provider="p1", model="m1", input_tokens_prompt=10, completion_time=1.0)
        b = Metrics(model="m2", input_tokens_prompt=4, completion_time=0.5, finish_reason="stop")
        c = a.combine(b)
        assert c.provider == "p1"
        assert c.model == "m2"
        assert c.finish_reason == "stop"
        assert c.input_tokens_prompt == 14
        assert c.completion_time == 1.5
        assert c.current_tokens == 4

    def test_combine_none(self):
        m = Metrics(input_tokens_prompt=1)
        assert m.combine(None) is m

    def test_context_usage(self):
        m = Metrics(input_tokens_prompt=250)
        assert m.context_usage(1000) == 0.25
        assert m.context_usage(0) is None
        assert m.context_usage(None) is None


class TestInteractions:
    def test_with_turn_id_returns_copy(self):
        i = TextInteraction(agent=Agent.USER, content="hi")
        j = i.with_turn_id("t1")
        assert j.turn_id == "t1"
        assert i.turn_id == ""
        assert j.with_turn_id("t1") is j

    def test_tool_call_arguments_json_is_stable(self):
        a = ToolCallInteraction(id="c", name="x", arguments={"b": 1, "a": 2})
        assert a.arguments_json == '{"a": 2, "b": 1}'

    def test_tool_result_success(self):
        assert ToolResultInteraction(result={"success": True}).succeeded
        assert ToolResultInteraction(result={}).succeeded
        assert not ToolResultInteraction(result={"success": False}).succeeded

    def test_default_agents(self):
        assert ToolCallInteraction().agent == Agent.TOOL_CALL
        assert ToolResultInteraction().agent == Agent.TOOL_RESULT
        assert ErrorInteraction().agent == Agent.ERROR

    def test_tool_result_payload(self):
        payload = ToolResult(success=False, content="bad", error="e", error_code="timeout").to_payload()
        assert payload == {"success": False, "content": "bad", "error": "e", "error_code": "timeout"}


class TestFilter:
    def test_empty_includes_everything(self):
        assert Filter.parse(None).allows("x")
        assert Filter.parse("  ").allows("x")

    def test_exclude_all(self):
        assert not allows("-*", "x")

    def test_include_list(self):
        assert allows("a b", "b")
        assert not allows("a, b", "c")

    def test_exclusions(self):
        assert not allows("-a", "a")
        assert allows("-a", "b")


class TestReturn:
    def test_from_body(self):
        body = BodyBuilder.create().add_assistant("hello").build()
        ret = Return.from_body(body)
        assert ret.success
        assert ret.status == CallStatus.FINISHED
        assert ret.text == "hello"
        assert ret.error_message is None

    def test_error_appends_interaction_and_keeps_markers(self):
        body = BodyBuilder.create().add_user("a").build()
        body = BodyBuilder.from_body(body).clear_new_markers().add_assistant("b").build()
        ret = Return.error("it broke", ErrorKind.PROVIDER, body=body)
        assert not ret.success
        assert ret.error_kind == ErrorKind.PROVIDER
        assert ret.error_message == "it broke"
        assert isinstance(ret.body.interactions[-1], ErrorInteraction)
        assert [i.preview() for i in ret.new_interactions()] == ["b", "it broke"]

    def test_error_message_joins_errors(self):
        ret = Return.error("first").with_message(
            RuntimeMessage(Severity.ERROR, Origin.SESSION, "second")
        )
        assert ret.error_message == "first; second"

    def test_warnings_do_not_fail(self):
        ret = Return().with_message(RuntimeMessage(Severity.WARNING, Origin.TOOL, "meh"))
        assert ret.success

    def test_with_status(self):
        assert Return().with_status(CallStatus.STREAMING).status == CallStatus.STREAMING


class TestCancellationToken:
    def test_cancel_sets_reason_once(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_linked_follows_parent(self):
        parent = CancellationToken()
        child = CancellationToken.linked(parent, None)
        parent.cancel("stop")
        assert child.cancelled
        assert child.reason == "stop"

    def test_linked_to_cancelled_parent(self):
        parent = CancellationToken()
        parent.cancel("early")
        assert CancellationToken(parent).cancelled

    def test_close_detaches(self):
        parent = CancellationToken()
        child = CancellationToken(parent)
        child.close()
        parent.cancel()
        assert not child.cancelled

    def test_register_and_unregister(self):
        token = CancellationToken()
        calls = []
        unregister = token.register(lambda: calls.append("a"))
        token.register(lambda: calls.append("b"))
        unregister()
        token.cancel()
        assert calls == ["b"]

    def test_register_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.register(lambda: calls.append("now"))
        assert calls == ["now"]


class TestTokenCounter:
    def test_empty_text(self):
        assert TokenCounter().count_text("") == 0

    def test_counts_grow_with_text(self):
        counter = TokenCounter()
        assert counter.count_text("hello world, this is a longer sentence") > counter.count_text("hi")

    def test_interaction_overhead(self):
        counter = TokenCounter()
        assert counter.count_interaction(TextInteraction(agent=Agent.USER)) == MESSAGE_OVERHEAD

    def test_tools_are_counted(self):
        counter = TokenCounter()
        interactions = [TextInteraction(agent=Agent.USER, content="hi")]
        tools = [{"type": "function", "function": {"name": "echo"}}]
        assert counter.count_interactions(interactions, tools) > counter.count_interactions(interactions)

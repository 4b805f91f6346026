"""Tests for RegistryToolRunner."""

from __future__ import annotations

import pytest

from parley.llm.providers.base import ToolCallRequest
from parley.llm.types import ToolCallInteraction, ToolResultInteraction
from parley.session.cancellation import CancellationToken
from parley.tools.registry import ToolRegistry
from parley.tools.runner import RegistryToolRunner
from parley.types import ErrorCode, Severity
from tests.mock_tools import EchoTool, FailingTool, NoneTool, RefusingTool, SlowTool


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register(EchoTool())
    reg.register(FailingTool())
    reg.register(NoneTool())
    reg.register(RefusingTool())
    reg.register(SlowTool(delay=1.0))
    return reg


@pytest.fixture
def runner(registry):
    return RegistryToolRunner(registry, tool_timeout=5.0)


def _request(name: str, args: dict | None = None, timeout: float | None = None) -> ToolCallRequest:
    call = ToolCallInteraction(id="call_1", name=name, arguments=args or {})
    return ToolCallRequest(call=call, timeout=timeout)


class TestRun:
    async def test_success(self, runner):
        result = await runner.run(_request("echo", {"message": "hello"}))
        assert result.success
        assert result.content == "hello"
        assert "duration_ms" in result.metadata

    async def test_unknown_tool(self, runner):
        result = await runner.run(_request("nope"))
        assert not result.success
        assert result.error_code == ErrorCode.UNKNOWN_TOOL

    async def test_validation_error(self, runner):
        result = await runner.run(_request("echo", {"message": 42}))
        assert not result.success
        assert result.error_code == ErrorCode.VALIDATION_ERROR

    async def test_exception_is_captured(self, runner):
        result = await runner.run(_request("explode"))
        assert not result.success
        assert result.error_code == ErrorCode.TOOL_EXCEPTION
        assert result.error == "boom"

    async def test_tool_execution_error_is_a_tool_failure(self, runner, caplog):
        with caplog.at_level("WARNING", logger="parley.tools.runner"):
            result = await runner.run(_request("refuse"))
        assert not result.success
        assert result.error_code == ErrorCode.TOOL_EXCEPTION
        assert result.error == "not permitted"
        assert "refuse failed" in caplog.text

    async def test_request_timeout(self, runner):
        result = await runner.run(_request("slow", timeout=0.05))
        assert not result.success
        assert result.error_code == ErrorCode.TIMEOUT

    async def test_tool_timeout_used_when_request_has_none(self):
        reg = ToolRegistry()
        reg.register(SlowTool(delay=1.0, timeout=0.05))
        result = await RegistryToolRunner(reg).run(_request("slow"))
        assert result.error_code == ErrorCode.TIMEOUT

    async def test_runner_default_timeout(self):
        reg = ToolRegistry()
        reg.register(SlowTool(delay=1.0))
        result = await RegistryToolRunner(reg, tool_timeout=0.05).run(_request("slow"))
        assert result.error_code == ErrorCode.TIMEOUT

    async def test_none_result(self, runner):
        result = await runner.run(_request("nothing"))
        assert not result.success
        assert result.error_code == ErrorCode.NO_RESULT

    async def test_cancelled_before_execution(self, runner):
        token = CancellationToken()
        token.cancel("stop")
        result = await runner.run(_request("echo", {"message": "x"}), token)
        assert result.error_code == ErrorCode.CANCELLED


class TestExecTool:
    async def test_success_return(self, runner):
        ret = await runner.exec_tool(_request("echo", {"message": "hello"}))
        assert ret.success
        (interaction,) = ret.body.interactions
        assert isinstance(interaction, ToolResultInteraction)
        assert interaction.id == "call_1"
        assert interaction.name == "echo"
        assert interaction.result["content"] == "hello"
        assert interaction.succeeded
        assert ret.body.new_indices == (0,)

    async def test_failure_is_a_warning_not_an_error(self, runner):
        ret = await runner.exec_tool(_request("explode"))
        assert ret.success
        assert [m.severity for m in ret.messages] == [Severity.WARNING]
        interaction = ret.body.interactions[0]
        assert not interaction.succeeded
        assert interaction.result["error_code"] == ErrorCode.TOOL_EXCEPTION
        assert interaction.messages == ("boom",)

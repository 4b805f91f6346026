"""
Tool execution backed by a :class:`ToolRegistry`.

``RegistryToolRunner.exec_tool`` has the same signature as
``ProviderExecutor.exec_tool``, so an executor can delegate its tool
execution to a runner.  Every call goes through the same lifecycle:

1. Registry lookup
2. Argument validation against the tool's JSON schema
3. Execution with a timeout
4. Conversion of the tool's ``ToolResult`` into a tool-result interaction
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from parley.llm.body import BodyBuilder
from parley.llm.returns import Return
from parley.llm.types import ToolResultInteraction
from parley.tools.registry import ToolRegistry
from parley.tools.validation import ToolValidator
from parley.types import (
    ErrorCode,
    Origin,
    RuntimeMessage,
    Severity,
    ToolExecutionError,
    ToolResult,
)

if TYPE_CHECKING:
    from parley.llm.providers.base import ToolCallRequest
    from parley.session.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class RegistryToolRunner:
    """
    Parameters
    ----------
    registry : ToolRegistry
        Registered tools.
    tool_timeout : float
        Max seconds for a single tool execution when neither the request
        nor the tool sets its own limit.
    """

    def __init__(self, registry: ToolRegistry, tool_timeout: float = 30.0) -> None:
        self.registry = registry
        self.tool_timeout = tool_timeout

    async def exec_tool(
        self,
        tool_request: ToolCallRequest,
        cancel_token: CancellationToken | None = None,
    ) -> Return:
        result = await self.run(tool_request, cancel_token)
        interaction = ToolResultInteraction(
            id=tool_request.id,
            name=tool_request.name,
            result=result.to_payload(),
            messages=(result.error,) if result.error else (),
        )
        messages: tuple[RuntimeMessage, ...] = ()
        if not result.success:
            messages = (
                RuntimeMessage(
                    Severity.WARNING,
                    Origin.TOOL,
                    f"Tool {tool_request.name} failed: {result.error or result.content}",
                ),
            )
        body = BodyBuilder.create().add(interaction).build()
        return Return.from_body(body, messages=messages)

    async def run(
        self,
        tool_request: ToolCallRequest,
        cancel_token: CancellationToken | None = None,
    ) -> ToolResult:
        """Execute the call and return the tool's own ``ToolResult``."""
        name = tool_request.name

        tool = self.registry.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                content=f"Unknown tool: {name}",
                error=f"Unknown tool: {name}",
                error_code=ErrorCode.UNKNOWN_TOOL,
            )

        valid, error_msg = ToolValidator.validate(tool, tool_request.arguments)
        if not valid:
            return ToolResult(
                success=False,
                content=f"Validation error: {error_msg}",
                error=error_msg,
                error_code=ErrorCode.VALIDATION_ERROR,
            )

        if cancel_token is not None and cancel_token.cancelled:
            return ToolResult(
                success=False,
                content="Tool call cancelled",
                error="Cancelled before execution",
                error_code=ErrorCode.CANCELLED,
            )

        timeout = tool_request.timeout or tool.timeout or self.tool_timeout
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                tool.execute(**tool_request.arguments),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return ToolResult(
                success=False,
                content=f"Tool timed out after {timeout}s",
                error=f"Timeout after {timeout}s",
                error_code=ErrorCode.TIMEOUT,
            )
        except ToolExecutionError as e:
            logger.warning("Tool %s failed: %s", name, e)
            return ToolResult(
                success=False,
                content=f"Tool error: {e}",
                error=str(e),
                error_code=ErrorCode.TOOL_EXCEPTION,
            )
        except Exception as e:
            logger.exception("Tool %s raised", name)
            return ToolResult(
                success=False,
                content=f"Tool exception: {e}",
                error=str(e),
                error_code=ErrorCode.TOOL_EXCEPTION,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        if result is None:
            return ToolResult(
                success=False,
                content=f"Tool {name} produced no result",
                error="No result",
                error_code=ErrorCode.NO_RESULT,
            )
        result.metadata.setdefault("duration_ms", duration_ms)
        logger.debug("Tool %s finished in %dms success=%s", name, duration_ms, result.success)
        return result

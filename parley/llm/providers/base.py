"""Requests and the abstract provider executor."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, AsyncIterator

from parley.llm.body import EMPTY_BODY, Body, BodyBuilder
from parley.llm.types import ToolCallInteraction
from parley.types import RuntimeMessage

if TYPE_CHECKING:
    from parley.config import ParleyConfig
    from parley.llm.returns import Return
    from parley.orchestrator.core import StreamingOptions
    from parley.session.cancellation import CancellationToken
    from parley.session.context import ContextRegistry


@dataclass
class Request:
    """
    Everything a provider needs for one call.

    Parameters
    ----------
    provider:
        Provider name; required.
    model:
        Model name.  Also used to look up the context limit when
        ``context_limit`` is not set.
    body:
        The conversation sent to the provider.
    wants_streaming:
        Set by validation to record whether the caller asked for a stream.
    context_limit:
        Context window size in tokens, overriding configured limits.
    timeout:
        Seconds allowed for the provider call; ``None`` for no limit.
    """

    provider: str = ""
    model: str = ""
    endpoint: str = ""
    body: Body = EMPTY_BODY
    wants_streaming: bool = False
    context_limit: int | None = None
    timeout: float | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: ParleyConfig, body: Body = EMPTY_BODY) -> Request:
        """
        Build a request for *body* from the ``provider`` section of *cfg*.

        The session tool and context filters are applied to the body.
        """
        p = cfg.provider
        body = (
            BodyBuilder.from_body(body)
            .with_tool_filter(cfg.session.tool_filter)
            .with_context_filter(cfg.session.context_filter)
            .build()
        )
        return cls(
            provider=p.name,
            model=p.model,
            endpoint=p.endpoint,
            body=body,
            context_limit=p.context_limit or None,
            timeout=p.timeout_seconds or None,
        )

    def with_body(self, body: Body) -> Request:
        return replace(self, body=body, metadata=dict(self.metadata))

    def effective_body(self, registry: ContextRegistry | None = None) -> Body:
        """The body as the provider should see it, with dynamic context injected."""
        if registry is None:
            return self.body
        return registry.inject(self.body)


@dataclass
class ToolCallRequest:
    """A single tool invocation handed to ``ProviderExecutor.exec_tool``."""

    call: ToolCallInteraction
    request: Request | None = None
    timeout: float | None = None

    @property
    def id(self) -> str:
        return self.call.id

    @property
    def name(self) -> str:
        return self.call.name

    @property
    def arguments(self) -> dict:
        return self.call.arguments


class ProviderExecutor(ABC):
    """
    Executes provider calls and tool calls on behalf of a session.

    Implementations must support:
      - Non-streaming calls (``exec``).
      - Tool execution (``exec_tool``); ``RegistryToolRunner`` provides one
        backed by a ``ToolRegistry``.

    Streaming (``stream``) is optional: executors that can stream override
    it together with ``supports_streaming``.  Returning ``None`` from
    ``exec`` or ``exec_tool`` means "no result" and is treated as a
    failure by the session.
    """

    @abstractmethod
    async def exec(
        self,
        request: Request,
        cancel_token: CancellationToken | None = None,
    ) -> Return | None:
        """Run one provider call and return its interactions."""
        ...

    def supports_streaming(self, request: Request) -> bool:
        return False

    async def stream(
        self,
        request: Request,
        options: StreamingOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[Return]:
        """
        Stream one provider call.

        Yields ``Return`` objects whose bodies carry delta interactions
        (``TextInteraction``, ``ToolCallFragment`` or ``ToolCallInteraction``).
        """
        raise NotImplementedError(f"{type(self).__name__} does not stream")
        # Make the method an async generator so sub-classes can ``yield``.
        if False:  # pragma: no cover
            yield  # type: ignore[misc]

    async def exec_tool(
        self,
        tool_request: ToolCallRequest,
        cancel_token: CancellationToken | None = None,
    ) -> Return | None:
        """Execute one tool call; the default executor has no tools."""
        return None

    def validate(self, request: Request) -> list[RuntimeMessage]:
        """Extra, executor-specific validation messages for *request*."""
        return []

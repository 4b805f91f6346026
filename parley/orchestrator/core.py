"""
Orchestrator core -- the conversation session state machine.

A :class:`ConversationSession` owns one conversation history and drives it
to a stable result:

1. Validates the request
2. Optionally produces a greeting
3. Summarizes the history when the context window is nearly full
4. Calls the provider (streaming when asked and supported)
5. Resolves the tool calls the provider requested
6. Re-queries the provider with the tool results
7. Loops until no tool calls remain or a bound is hit

Ordinary provider and tool failures never raise: they come back as
``Return`` values carrying runtime messages and an error interaction.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, AsyncGenerator, AsyncIterator

from parley.llm.body import Body, BodyBuilder
from parley.llm.coalescer import TextCoalescer, ToolCallCoalescer
from parley.llm.providers.base import ProviderExecutor, Request, ToolCallRequest
from parley.llm.returns import Return
from parley.llm.token_counter import TokenCounter
from parley.llm.types import (
    Agent,
    Interaction,
    Metrics,
    TextInteraction,
    ToolCallFragment,
    ToolCallInteraction,
    ToolResultInteraction,
    new_turn_id,
)
from parley.session.cancellation import CancellationToken
from parley.session.context import (
    ContextRegistry,
    ContextTracker,
    is_context_exceeded,
    last_user_index,
    summary_slice,
)
from parley.session.observer import Observer, combine_observers, logging_observer
from parley.session.special_turns import (
    PersistenceStrategy,
    SpecialTurnConfig,
    apply_persistence,
    greeting_turn,
    summarize_turn,
)
from parley.session.validation import has_errors, validate_request
from parley.types import (
    CallStatus,
    ErrorKind,
    Origin,
    ParleyError,
    RuntimeMessage,
    Severity,
)

if TYPE_CHECKING:
    from parley.config import ParleyConfig

logger = logging.getLogger(__name__)


@dataclass
class SessionOptions:
    """
    Bounds and switches for one run.

    Parameters
    ----------
    process_tools : bool
        Execute requested tool calls.  When false the first provider
        response is final.
    max_turns : int
        Max turns per run.
    max_tool_passes : int
        Max follow-up provider calls within one turn.  Each follow-up is
        preceded by a pass that executes every pending tool call.
    allow_parallel_tools : bool
        Execute the calls of one pass concurrently.
    cancel_token : CancellationToken
        Linked with the session token for the duration of the run.
    tool_timeout : float
        Per-call limit handed to the executor with each tool request.
    """

    process_tools: bool = True
    max_turns: int = 8
    max_tool_passes: int = 4
    allow_parallel_tools: bool = False
    cancel_token: CancellationToken | None = None
    tool_timeout: float | None = None

    @classmethod
    def from_config(cls, cfg: ParleyConfig) -> SessionOptions:
        s = cfg.session
        return cls(
            process_tools=s.process_tools,
            max_turns=s.max_turns,
            max_tool_passes=s.max_tool_passes,
            allow_parallel_tools=s.allow_parallel_tools,
            tool_timeout=s.tool_timeout_seconds,
        )


@dataclass
class StreamingOptions:
    """
    Parameters
    ----------
    coalesce_tool_calls : bool
        Report streamed tool calls to ``on_delta`` as coalesced snapshots
        rather than raw fragments.
    """

    coalesce_tool_calls: bool = True


@dataclass
class TurnState:
    """
    Working state for one turn.  The session keeps the state of the most
    recent turn as ``last_turn``.
    """

    turn_id: str
    accumulated_text: str = ""
    deltas: list[Interaction] = field(default_factory=list)
    messages: list[RuntimeMessage] = field(default_factory=list)
    final: Return | None = None
    error: Return | None = None
    cause: str | BaseException | None = None
    summarized: bool = False
    tool_passes: int = 0


class ConversationSession:
    """
    Drives a conversation between a caller, a provider and tools.

    Parameters
    ----------
    request : Request
        Initial request; its body seeds the history.
    executor : ProviderExecutor
        Runs provider calls and tool calls.
    observer : Observer
        Receives notifications in emission order.
    options : SessionOptions
        Default options for runs that pass none.
    context_tracker : ContextTracker
        Decides when the history should be summarized.
    context_registry : ContextRegistry
        Dynamic context injected into every provider call.
    generate_greeting : bool
        Produce one greeting before the first turn when the history holds
        no user or assistant messages yet.
    greeting_timeout, summarize_timeout : float
        Limits for the greeting and summarization calls.
    cancel_token : CancellationToken
        Parent of the session's own token.
    """

    def __init__(
        self,
        request: Request,
        executor: ProviderExecutor,
        observer: Observer | None = None,
        *,
        options: SessionOptions | None = None,
        context_tracker: ContextTracker | None = None,
        context_registry: ContextRegistry | None = None,
        generate_greeting: bool = False,
        greeting_timeout: float | None = None,
        summarize_timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.request = request
        self.executor = executor
        self.observer = observer or Observer()
        self.options = options or SessionOptions()
        self.context_tracker = context_tracker or ContextTracker()
        self.context_registry = context_registry
        self.generate_greeting = generate_greeting
        self.greeting_timeout = greeting_timeout
        self.summarize_timeout = summarize_timeout
        self.last_return: Return | None = None
        self.last_turn: TurnState | None = None
        self.turns_used = 0
        self.provider_calls = 0
        self.tool_passes = 0

        self._body: Body = BodyBuilder.from_body(request.body).clear_new_markers().build()
        self._cancel = CancellationToken(cancel_token)
        self._running = False
        self._greeting_done = False
        self._active_stream: AsyncGenerator[Return, None] | None = None
        self._stream_suspended = False

    @classmethod
    def from_config(
        cls,
        request: Request,
        executor: ProviderExecutor,
        cfg: ParleyConfig,
        observer: Observer | None = None,
        *,
        context_registry: ContextRegistry | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ConversationSession:
        """
        Build a session whose options, context tracking and greeting come
        from *cfg*.  With ``logging.trace`` set, a transcript observer is
        added after *observer*.
        """
        if cfg.logging.trace:
            observer = combine_observers(observer, logging_observer())
        tracker = ContextTracker(
            TokenCounter(request.model or cfg.provider.model),
            cfg.context.summarize_threshold,
            cfg.provider.context_limits,
            cfg.context.default_context_limit or None,
        )
        return cls(
            request,
            executor,
            observer,
            options=SessionOptions.from_config(cfg),
            context_tracker=tracker,
            context_registry=context_registry,
            generate_greeting=cfg.greeting.enabled,
            greeting_timeout=cfg.greeting.timeout_seconds or None,
            summarize_timeout=cfg.context.summarize_timeout_seconds or None,
            cancel_token=cancel_token,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_to_stable_result(
        self,
        options: SessionOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Return:
        """Drive turns until the conversation is stable or a bound is hit."""
        final: Return | None = None
        async for ret in self._run(options, None, cancel_token, wants_streaming=False):
            final = ret
        if final is None:
            raise ParleyError("Run ended without a result")
        return final

    async def stream(
        self,
        options: SessionOptions | None = None,
        streaming_options: StreamingOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[Return]:
        """
        Same state machine as :meth:`run_to_stable_result`, yielding every
        meaningful state change.  The last element is the terminal state.

        A stream the caller stops reading is closed when the next run
        starts; use ``contextlib.aclosing`` to release it sooner.
        """
        run = self._run(
            options, streaming_options or StreamingOptions(), cancel_token, wants_streaming=True
        )
        try:
            async for ret in run:
                self._active_stream = run
                self._stream_suspended = True
                yield ret
                if self._active_stream is run:
                    self._stream_suspended = False
        finally:
            if self._active_stream is run:
                self._active_stream = None
                self._stream_suspended = False
            await run.aclose()

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        self._cancel.cancel(reason)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def body(self) -> Body:
        return self._body

    def add_user_message(self, text: str) -> None:
        self.add_interaction(TextInteraction(agent=Agent.USER, content=text))

    def add_interaction(self, interaction: Interaction) -> None:
        builder = BodyBuilder.from_body(self._body)
        if isinstance(interaction, ToolCallInteraction):
            builder.upsert_tool_call(interaction)
        else:
            builder.add(interaction)
        self._body = builder.build()

    def history(self) -> list[Interaction]:
        return list(self._body.interactions)

    def history_return(self) -> Return:
        return Return.from_body(self._body, request=self._request_view())

    def new_interactions(self) -> list[Interaction]:
        return self._body.new_interactions()

    def combined_metrics(self, new_only: bool = False) -> Metrics:
        if not new_only:
            return self._body.metrics
        metrics = Metrics()
        for interaction in self._body.new_interactions():
            metrics = metrics.combine(interaction.metrics)
        return metrics

    def turn_metrics(self, turn_id: str) -> Metrics:
        return self._body.turn_metrics(turn_id)

    def should_summarize_context(self) -> bool:
        return self.context_tracker.should_summarize(self._body, self._request_view())

    async def try_summarize_context(self, cancel_token: CancellationToken | None = None) -> bool:
        """
        Collapse everything before the last user message into one summary.

        Returns ``False`` (leaving history untouched) when there is too
        little to summarize or the summarizer fails.
        """
        token = cancel_token or self._cancel
        eligible = summary_slice(self._body)
        if len(eligible) < 2:
            logger.debug("Summarization skipped: %d eligible interaction(s)", len(eligible))
            return False

        anchor = last_user_index(self._body)
        config = summarize_turn(eligible, model=self.request.model)
        if self.summarize_timeout is not None:
            config.timeout = self.summarize_timeout

        ret = await self._exec_special(config, token)
        text = ret.body.last_text() if ret is not None and ret.success else None
        if not text:
            logger.warning("Summarization produced no summary; keeping history")
            return False

        summary = TextInteraction(
            agent=Agent.ASSISTANT, content=text, summary=True, turn_id=new_turn_id()
        )
        before = len(self._body)
        self._body = apply_persistence(self._body, config, [summary], anchor)
        logger.info("Summarized context: %d -> %d interactions", before, len(self._body))
        committed = next(
            i for i in self._body.interactions if isinstance(i, TextInteraction) and i.summary
        )
        self.observer.notify("on_interaction_completed", committed)
        return True

    async def execute_special_turn(
        self,
        config: SpecialTurnConfig,
        cancel_token: CancellationToken | None = None,
    ) -> Return:
        """
        Run *config* outside the normal loop and merge its result.

        The returned body is the updated history with the merged-in
        interactions marked new.
        """
        ret = await self._exec_special(config, cancel_token or self._cancel)
        if ret is None:
            return Return.error(
                f"Special turn '{config.turn_type}' produced no result",
                ErrorKind.PROVIDER,
                Origin.SESSION,
                body=self._body,
                request=self._request_view(),
            )
        if not ret.success:
            return ret

        turn_id = new_turn_id()
        produced = [
            i.with_turn_id(turn_id)
            for i in (ret.body.new_interactions() or ret.body.interactions)
            if i.agent != Agent.CONTEXT
        ]
        anchor = None
        if config.persistence == PersistenceStrategy.REPLACE_ABOVE:
            anchor = last_user_index(self._body)
        history = BodyBuilder.from_body(self._body).clear_new_markers().build()
        self._body = apply_persistence(history, config, produced, anchor)
        if config.persistence != PersistenceStrategy.EPHEMERAL:
            for interaction in self._body.new_interactions():
                self.observer.notify("on_interaction_completed", interaction)
        return Return.from_body(
            self._body if config.persistence != PersistenceStrategy.EPHEMERAL
            else BodyBuilder.create().add_range(produced).build(),
            request=self._request_view(),
            messages=ret.messages,
        )

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        options: SessionOptions | None,
        streaming_options: StreamingOptions | None,
        cancel_token: CancellationToken | None,
        *,
        wants_streaming: bool,
    ) -> AsyncGenerator[Return, None]:
        if self._running and self._stream_suspended:
            await self._close_abandoned_stream()
        if self._running:
            raise RuntimeError("ConversationSession is already running")
        self._running = True
        options = options or self.options
        token = CancellationToken.linked(self._cancel, options.cancel_token, cancel_token)
        self.turns_used = 0
        self.provider_calls = 0
        self.tool_passes = 0
        try:
            request = self._request_view()
            greeting_pending = self.generate_greeting and not self._greeting_done
            problems = validate_request(
                request, wants_streaming, self.executor, allow_empty=greeting_pending
            )
            self.request.wants_streaming = request.wants_streaming
            if has_errors(problems):
                text = "; ".join(m.text for m in problems if m.severity == Severity.ERROR)
                yield self._terminal(
                    Return.error(text, ErrorKind.VALIDATION, Origin.VALIDATION, body=self._body, request=request)
                )
                return

            self.observer.notify("on_start", request)

            if greeting_pending:
                greeting = await self._greet(token)
                if greeting is not None:
                    yield greeting
                    return

            streaming = wants_streaming and self.executor.supports_streaming(request)
            if wants_streaming and not streaming:
                logger.debug("Executor cannot stream; falling back to non-streaming calls")

            run_messages: list[RuntimeMessage] = []
            for _ in range(options.max_turns):
                if token.cancelled:
                    yield self._cancelled(token)
                    return

                state = TurnState(turn_id=new_turn_id())
                self.last_turn = state
                self.turns_used += 1
                self._body = BodyBuilder.from_body(self._body).clear_new_markers().build()
                logger.debug("Turn %d started: %s", self.turns_used, state.turn_id)

                # Calls left pending by an earlier run are answered first.
                if options.process_tools and self._body.pending_tool_calls():
                    async for ret in self._resolve_pending(state, options, token):
                        yield ret

                if self.should_summarize_context() and not token.cancelled:
                    state.summarized = True
                    await self.try_summarize_context(token)

                async for ret in self._provider_step(state, streaming, streaming_options, token):
                    yield ret
                if state.error is not None:
                    yield self._terminal(state.error, state.cause)
                    return

                answered = True
                follow_ups = 0
                while options.process_tools and self._body.pending_tool_calls():
                    async for ret in self._resolve_pending(state, options, token):
                        yield ret
                    answered = False
                    if token.cancelled:
                        yield self._cancelled(token)
                        return
                    if follow_ups >= options.max_tool_passes:
                        break
                    follow_ups += 1
                    async for ret in self._provider_step(state, streaming, streaming_options, token):
                        yield ret
                    if state.error is not None:
                        yield self._terminal(state.error, state.cause)
                        return
                    answered = True

                ret = self._snapshot(state)
                self.last_return = ret
                run_messages.extend(state.messages)
                if not options.process_tools or answered:
                    logger.debug("Stable after %d turn(s)", self.turns_used)
                    self.observer.notify("on_final", ret)
                    yield ret
                    return

            text = f"Max turns ({options.max_turns}) reached without a stable result"
            logger.warning(text)
            ret = Return.error(
                text,
                ErrorKind.MAX_TURNS_EXCEEDED,
                Origin.SESSION,
                body=self._body,
                request=self._request_view(),
            )
            # Tool warnings gathered across the run stay visible on the error.
            yield self._terminal(replace(ret, messages=tuple(run_messages) + ret.messages))
        finally:
            token.close()
            self._running = False

    async def _close_abandoned_stream(self) -> None:
        run, self._active_stream = self._active_stream, None
        self._stream_suspended = False
        if run is not None:
            logger.debug("Closing a stream that was left unfinished")
            await run.aclose()

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _provider_step(
        self,
        state: TurnState,
        streaming: bool,
        streaming_options: StreamingOptions | None,
        token: CancellationToken,
    ) -> AsyncIterator[Return]:
        """
        One provider call with context-overflow recovery.

        On success the response is merged into history; on failure
        ``state.error`` is set.  A context-exceeded failure triggers one
        summarization per turn followed by one retry.
        """
        while True:
            if token.cancelled:
                state.error = self._cancelled_return(token)
                return

            request = self._provider_request()
            self.provider_calls += 1
            failure: str | BaseException | None = None
            response: Return | None = None
            try:
                if streaming:
                    async for partial in self._stream_call(request, state, streaming_options, token):
                        yield partial
                    response = state.final
                else:
                    response = await self._exec_call(request, token)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Provider call failed: %s", exc)
                failure = exc

            if token.cancelled:
                state.error = self._cancelled_return(token)
                return

            if failure is None:
                if response is None:
                    failure = "Provider returned no result"
                elif not response.success:
                    failure = response.error_message or "Provider call failed"

            if failure is None:
                self._merge_response(response, state)
                return

            if is_context_exceeded(failure):
                if not state.summarized:
                    state.summarized = True
                    logger.info("Context exceeded; summarizing and retrying")
                    if await self.try_summarize_context(token):
                        continue
                state.error = Return.error(
                    str(failure),
                    ErrorKind.CONTEXT_EXCEEDED,
                    Origin.PROVIDER,
                    body=self._body,
                    request=request,
                )
                state.cause = failure
                return

            state.error = Return.error(
                str(failure) or type(failure).__name__,
                ErrorKind.PROVIDER,
                Origin.PROVIDER,
                body=self._body,
                request=request,
            )
            state.cause = failure
            return

    async def _exec_call(self, request: Request, token: CancellationToken) -> Return | None:
        call = self.executor.exec(request, token)
        if request.timeout:
            return await asyncio.wait_for(call, timeout=request.timeout)
        return await call

    async def _stream_call(
        self,
        request: Request,
        state: TurnState,
        streaming_options: StreamingOptions | None,
        token: CancellationToken,
    ) -> AsyncIterator[Return]:
        """
        Consume one provider stream.

        Deltas go to ``on_delta`` as they arrive and each chunk yields a
        ``STREAMING`` return.  ``state.final`` is set to the coalesced
        response: one text interaction followed by the tool calls.
        """
        opts = streaming_options or StreamingOptions()
        text = TextCoalescer()
        calls = ToolCallCoalescer()
        messages: list[RuntimeMessage] = []
        state.final = None

        async for chunk in self.executor.stream(request, opts, token):
            if token.cancelled:
                return
            if chunk is None:
                continue
            messages.extend(chunk.messages)
            if not chunk.success:
                state.final = Return(body=chunk.body, messages=tuple(messages), error_kind=chunk.error_kind)
                return
            for delta in chunk.body.new_interactions() or chunk.body.interactions:
                if isinstance(delta, TextInteraction):
                    text.feed(delta)
                    state.accumulated_text = text.content
                    state.deltas.append(delta)
                    self.observer.notify("on_delta", delta)
                elif isinstance(delta, (ToolCallFragment, ToolCallInteraction)):
                    snapshot = calls.feed(delta)
                    state.deltas.append(delta)
                    self.observer.notify("on_delta", snapshot if opts.coalesce_tool_calls else delta)

            partial = BodyBuilder.from_body(self._body).clear_new_markers()
            if text.has_content:
                partial.add(text.snapshot())
            partial.add_range(calls.snapshots())
            yield Return.from_body(partial.build(), status=CallStatus.STREAMING, request=request)

        committed = BodyBuilder.create()
        if text.has_content:
            committed.add(text.snapshot())
        committed.add_range(calls.finish())
        if calls.errors:
            logger.warning("Tool call assembly failed: %s", calls.errors)
            messages.append(
                RuntimeMessage(
                    Severity.ERROR,
                    Origin.PROVIDER,
                    "Tool call assembly failed: " + "; ".join(calls.errors),
                )
            )
        state.final = Return.from_body(committed.build(), request=request, messages=messages)

    def _merge_response(self, response: Return, state: TurnState) -> None:
        """Commit a provider response: text first, tool calls upserted by id."""
        builder = BodyBuilder.from_body(self._body).with_turn_id(state.turn_id)
        committed: list[Interaction] = []
        for interaction in response.body.new_interactions() or response.body.interactions:
            if interaction.agent == Agent.CONTEXT or isinstance(interaction, ToolCallFragment):
                continue
            interaction = interaction.with_turn_id(state.turn_id)
            if isinstance(interaction, ToolCallInteraction):
                if builder.upsert_tool_call(interaction):
                    committed.append(interaction)
            else:
                builder.add(interaction)
                committed.append(interaction)
        self._body = builder.build()
        state.messages.extend(m for m in response.messages if m.severity != Severity.ERROR)
        for interaction in committed:
            self.observer.notify("on_interaction_completed", interaction)

    # ------------------------------------------------------------------
    # Tool resolution
    # ------------------------------------------------------------------

    async def _resolve_pending(
        self,
        state: TurnState,
        options: SessionOptions,
        token: CancellationToken,
    ) -> AsyncIterator[Return]:
        """Execute every pending tool call once, committing results in call order."""
        pending = self._body.pending_tool_calls()
        if not pending or token.cancelled:
            return
        state.tool_passes += 1
        self.tool_passes += 1
        logger.debug("Tool pass %d: %d pending call(s)", state.tool_passes, len(pending))

        if options.allow_parallel_tools and len(pending) > 1:
            for call in pending:
                self.observer.notify("on_tool_call", call)
            results = await asyncio.gather(
                *(self._run_tool(call, state, options, token) for call in pending)
            )
            for result in results:
                yield self._commit_tool_result(result, state)
            return

        for call in pending:
            if token.cancelled:
                return
            self.observer.notify("on_tool_call", call)
            result = await self._run_tool(call, state, options, token)
            yield self._commit_tool_result(result, state)

    async def _run_tool(
        self,
        call: ToolCallInteraction,
        state: TurnState,
        options: SessionOptions,
        token: CancellationToken,
    ) -> ToolResultInteraction:
        """Execute *call*; never raises for tool failures."""
        # Make sure the call itself is on record exactly once.
        builder = BodyBuilder.from_body(self._body)
        if builder.upsert_tool_call(call, mark_new=False):
            self._body = builder.build()

        turn_id = call.turn_id or state.turn_id
        tool_request = ToolCallRequest(call=call, request=self.request, timeout=options.tool_timeout)
        try:
            ret = await self.executor.exec_tool(tool_request, token)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Tool %s failed", call.name)
            return self._diagnostic_result(call, turn_id, f"Tool execution failed: {exc}", [str(exc)])

        if ret is None:
            return self._diagnostic_result(call, turn_id, f"Tool {call.name} produced no result", [])

        extra = tuple(m.text for m in ret.messages)
        results = [i for i in ret.body.interactions if isinstance(i, ToolResultInteraction)]
        match = next((r for r in results if r.id == call.id), results[0] if results else None)
        if match is None:
            return self._diagnostic_result(
                call, turn_id, ret.error_message or f"Tool {call.name} produced no result", list(extra)
            )
        return replace(
            match,
            id=call.id,
            name=match.name or call.name,
            turn_id=turn_id,
            messages=match.messages + tuple(m for m in extra if m not in match.messages),
        )

    @staticmethod
    def _diagnostic_result(
        call: ToolCallInteraction, turn_id: str, error: str, messages: list[str]
    ) -> ToolResultInteraction:
        logger.warning("Tool call %s (%s) failed: %s", call.id, call.name, error)
        return ToolResultInteraction(
            id=call.id,
            name=call.name,
            turn_id=turn_id,
            result={"success": False, "error": error, "messages": list(messages)},
            messages=tuple(messages) or (error,),
        )

    def _commit_tool_result(self, result: ToolResultInteraction, state: TurnState) -> Return:
        self._body = BodyBuilder.from_body(self._body).add(result).build()
        if not result.succeeded:
            state.messages.append(
                RuntimeMessage(Severity.WARNING, Origin.TOOL, f"Tool {result.name} failed")
            )
        self.observer.notify("on_tool_result", result)
        self.observer.notify("on_interaction_completed", result)
        return Return.from_body(self._body, status=CallStatus.PROCESSING, request=self._request_view())

    # ------------------------------------------------------------------
    # Special turns
    # ------------------------------------------------------------------

    async def _exec_special(
        self, config: SpecialTurnConfig, token: CancellationToken
    ) -> Return | None:
        """Run a special turn's provider call; ``None`` on timeout or failure."""
        if token.cancelled:
            return None
        request = replace(
            self.request,
            body=config.body(),
            model=config.model or self.request.model,
            wants_streaming=False,
            metadata={**self.request.metadata, **config.metadata},
        )
        try:
            call = self.executor.exec(request, token)
            if config.timeout:
                return await asyncio.wait_for(call, timeout=config.timeout)
            return await call
        except asyncio.TimeoutError:
            logger.warning("Special turn '%s' timed out after %ss", config.turn_type, config.timeout)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Special turn '%s' failed", config.turn_type, exc_info=True)
        return None

    async def _greet(self, token: CancellationToken) -> Return | None:
        """
        Produce the greeting; ``None`` when the history already has a
        conversation.  A failed greeting is skipped silently.
        """
        self._greeting_done = True
        if any(i.agent in (Agent.USER, Agent.ASSISTANT) for i in self._body.interactions):
            return None

        system = self._body.last_interaction(Agent.SYSTEM)
        prompt = system.content if isinstance(system, TextInteraction) else None
        config = greeting_turn(prompt, model=self.request.model)
        if self.greeting_timeout is not None:
            config.timeout = self.greeting_timeout

        ret = await self._exec_special(config, token)
        text = ret.body.last_text() if ret is not None and ret.success else None
        if not text:
            logger.info("Greeting skipped")
            ret = Return.from_body(self._body, request=self._request_view())
            self.last_return = ret
            return ret

        greeting = TextInteraction(
            agent=Agent.ASSISTANT, content=text, turn_id=new_turn_id(), metrics=ret.metrics
        )
        history = BodyBuilder.from_body(self._body).clear_new_markers().build()
        self._body = apply_persistence(history, config, [greeting])
        self.observer.notify("on_interaction_completed", greeting)
        final = Return.from_body(self._body, request=self._request_view())
        self.last_return = final
        self.observer.notify("on_final", final)
        return final

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _request_view(self) -> Request:
        return self.request.with_body(self._body)

    def _provider_request(self) -> Request:
        view = self._request_view()
        return view.with_body(view.effective_body(self.context_registry))

    def _snapshot(self, state: TurnState) -> Return:
        return Return.from_body(self._body, request=self._request_view(), messages=state.messages)

    def _terminal(self, ret: Return, cause: str | BaseException | None = None) -> Return:
        self.last_return = ret
        if ret.error_kind is not None and ret.error_kind != ErrorKind.CANCELLED:
            self._report_error(cause or ret.error_message or ret.error_kind.value)
        return ret

    def _report_error(self, failure: str | BaseException) -> None:
        exc = failure if isinstance(failure, BaseException) else ParleyError(failure)
        self.observer.notify("on_error", exc)

    def _cancelled_return(self, token: CancellationToken) -> Return:
        return Return.error(
            token.reason or "Cancelled",
            ErrorKind.CANCELLED,
            Origin.SESSION,
            body=self._body,
            request=self._request_view(),
        )

    def _cancelled(self, token: CancellationToken) -> Return:
        logger.info("Session cancelled: %s", token.reason)
        ret = self._cancelled_return(token)
        self.last_return = ret
        return ret

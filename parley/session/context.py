"""
Context window tracking and dynamic context injection.

:class:`ContextTracker` measures how much of a model's context window a
conversation occupies and decides when it should be summarized.
:func:`is_context_exceeded` classifies provider errors that mean the
prompt no longer fits.  :class:`ContextRegistry` holds named context
providers whose key/value data is injected into requests at call time and
never stored in history.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from parley.llm.body import Body, BodyBuilder
from parley.llm.filters import EXCLUDE_ALL, Filter
from parley.llm.types import Agent, Interaction, Metrics, TextInteraction

if TYPE_CHECKING:
    from parley.llm.providers.base import Request

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.80

CONTEXT_EXCEEDED_PATTERNS = (
    "context length",
    "maximum context",
    "too large for model",
    "token limit",
    "tokens, too large",
    "context window",
    "max_tokens",
    "context_length_exceeded",
)


def is_context_exceeded(error: str | BaseException | None) -> bool:
    """True when *error* reads like a context-window overflow."""
    if error is None:
        return False
    text = str(error).lower()
    if not text:
        return False
    return any(pattern in text for pattern in CONTEXT_EXCEEDED_PATTERNS)


def last_user_index(body: Body) -> int | None:
    for idx in range(len(body.interactions) - 1, -1, -1):
        if body.interactions[idx].agent == Agent.USER:
            return idx
    return None


def summary_slice(body: Body) -> list[Interaction]:
    """
    Interactions eligible for summarization.

    Everything strictly before the last user message except system and
    context interactions.  Empty when there is no user message.
    """
    anchor = last_user_index(body)
    if anchor is None:
        return []
    return [
        i
        for i in body.interactions[:anchor]
        if i.agent not in (Agent.SYSTEM, Agent.CONTEXT)
    ]


class ContextTracker:
    """
    Track context-window usage for a conversation.

    Parameters
    ----------
    token_counter:
        Any object exposing ``count_interactions(interactions) -> int``;
        used when no provider metrics are available.  The
        ``parley.llm.token_counter.TokenCounter`` class satisfies this
        interface.
    threshold:
        Usage fraction at or above which summarization is recommended.
    context_limits:
        Context window sizes keyed by model name.
    default_limit:
        Limit used for models missing from *context_limits*.
    """

    def __init__(
        self,
        token_counter: Any = None,
        threshold: float = DEFAULT_THRESHOLD,
        context_limits: dict[str, int] | None = None,
        default_limit: int | None = None,
    ) -> None:
        self.token_counter = token_counter
        self.threshold = threshold
        self.context_limits = dict(context_limits or {})
        self.default_limit = default_limit

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def context_limit(self, request: Request | None) -> int | None:
        if request is None:
            return self.default_limit
        if request.context_limit:
            return request.context_limit
        if request.model and request.model in self.context_limits:
            return self.context_limits[request.model]
        return self.default_limit

    def measured_metrics(self, body: Body) -> Metrics:
        """
        Metrics of the interactions after the most recent summary.

        A summary replaces the prompt that earlier metrics were measured
        against, so only later calls describe the current prompt size.
        """
        start = 0
        for idx, interaction in enumerate(body.interactions):
            if isinstance(interaction, TextInteraction) and interaction.summary:
                start = idx + 1
        metrics = Metrics()
        for interaction in body.interactions[start:]:
            metrics = metrics.combine(interaction.metrics)
        return metrics

    def current_tokens(self, body: Body) -> int:
        tokens = self.measured_metrics(body).current_tokens
        if tokens > 0:
            return tokens
        if self.token_counter is None:
            return 0
        return self.token_counter.count_interactions(body.interactions)

    def usage(self, body: Body, request: Request | None = None) -> float | None:
        """Fraction of the context window in use, or ``None`` when the limit is unknown."""
        limit = self.context_limit(request)
        if not limit or limit <= 0:
            return None
        return round(self.current_tokens(body) / limit, 4)

    def should_summarize(self, body: Body, request: Request | None = None) -> bool:
        usage = self.usage(body, request)
        if usage is None:
            return False
        if usage >= self.threshold:
            logger.debug("Context usage %.2f >= threshold %.2f", usage, self.threshold)
            return True
        return False

    @staticmethod
    def is_context_exceeded(error: str | BaseException | None) -> bool:
        return is_context_exceeded(error)


# ---------------------------------------------------------------------------
# Dynamic context
# ---------------------------------------------------------------------------


ContextProvider = Callable[[], dict[str, str]]

CONTEXT_HEADER = "Conversation context:\n\n"


class ContextRegistry:
    """Named providers of key/value context, consulted at request time."""

    def __init__(self) -> None:
        self._providers: dict[str, ContextProvider] = {}

    def register(self, provider_id: str, provider: ContextProvider) -> None:
        """Register *provider*, replacing any provider with the same id."""
        self._providers[provider_id] = provider

    def unregister(self, provider_id: str) -> None:
        self._providers.pop(provider_id, None)

    def providers(self) -> list[str]:
        return list(self._providers)

    def current_context(self, filter_expr: str | None = None) -> dict[str, str]:
        """
        Collect context from every provider the filter allows.

        Keys without an underscore are prefixed with the provider id.
        """
        flt = Filter.parse(filter_expr)
        result: dict[str, str] = {}
        for provider_id, provider in self._providers.items():
            if not flt.allows(provider_id):
                continue
            try:
                data = provider() or {}
            except Exception:
                logger.exception("Context provider %s failed", provider_id)
                continue
            for key, value in data.items():
                if "_" not in key:
                    key = f"{provider_id}_{key}"
                result[key] = value
        return result

    def inject(self, body: Body) -> Body:
        """
        Return *body* with a leading context interaction.

        Stale context interactions are dropped.  The body is returned
        unchanged when its context filter selects nothing.
        """
        expr = body.context_filter
        if not expr or not expr.strip() or expr.strip() == EXCLUDE_ALL:
            return body
        items = [(k, v) for k, v in self.current_context(expr).items() if v]
        if not items:
            return body

        content = CONTEXT_HEADER + "".join(f"- {k}: {v}\n" for k, v in items)
        rest = [i for i in body.interactions if i.agent != Agent.CONTEXT]
        return (
            BodyBuilder.create()
            .with_tool_filter(body.tool_filter)
            .with_context_filter(body.context_filter)
            .with_json_output_schema(body.json_output_schema)
            .add(TextInteraction(agent=Agent.CONTEXT, content=content))
            .add_range(rest, mark_new=False)
            .build()
        )

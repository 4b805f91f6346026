"""Session support: cancellation, observers, validation, context and special turns."""

from parley.session.cancellation import CancellationToken
from parley.session.context import (
    ContextRegistry,
    ContextTracker,
    is_context_exceeded,
    summary_slice,
)
from parley.session.observer import Observer, combine_observers, logging_observer
from parley.session.special_turns import (
    InteractionFilter,
    PersistenceStrategy,
    SpecialTurnConfig,
    greeting_turn,
    summarize_turn,
)
from parley.session.validation import validate_request

__all__ = [
    "CancellationToken",
    "ContextRegistry",
    "ContextTracker",
    "InteractionFilter",
    "Observer",
    "PersistenceStrategy",
    "SpecialTurnConfig",
    "combine_observers",
    "greeting_turn",
    "is_context_exceeded",
    "logging_observer",
    "summarize_turn",
    "summary_slice",
    "validate_request",
]

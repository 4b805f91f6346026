"""Conversation orchestration."""

from parley.orchestrator.core import (
    ConversationSession,
    SessionOptions,
    StreamingOptions,
    TurnState,
)

__all__ = ["ConversationSession", "SessionOptions", "StreamingOptions", "TurnState"]

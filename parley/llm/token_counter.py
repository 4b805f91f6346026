"""
Token counting backed by tiktoken.

The counter delegates to tiktoken's BPE encoder for the requested model.
When the model is not known to tiktoken (or the encoding files cannot be
loaded) a simple character-based heuristic is used instead (~4 characters
per token).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

import tiktoken

from parley.llm.types import (
    ErrorInteraction,
    Interaction,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
)

logger = logging.getLogger(__name__)

# Per-interaction overhead (role markers, separators, priming).
MESSAGE_OVERHEAD = 4


class TokenCounter:
    """
    Estimate token counts for text and interaction sequences.

    Parameters
    ----------
    model:
        Model name passed to ``tiktoken.encoding_for_model``.  Unknown
        models use the ``cl100k_base`` encoding, and the heuristic is used
        when no encoding can be loaded at all.
    """

    def __init__(self, model: str | None = None) -> None:
        self.model = model
        self._enc: Any = None
        try:
            self._enc = tiktoken.encoding_for_model(model or "gpt-4")
        except KeyError:
            self._enc = self._base_encoding()
        except Exception:
            logger.debug("tiktoken unavailable for %s; using heuristic", model, exc_info=True)

    @staticmethod
    def _base_encoding() -> Any:
        try:
            return tiktoken.get_encoding("cl100k_base")
        except Exception:
            logger.debug("cl100k_base encoding unavailable; using heuristic", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def count_text(self, text: str) -> int:
        """Return the estimated token count for a plain string."""
        if not text:
            return 0
        if self._enc is not None:
            return len(self._enc.encode(text))
        return max(1, len(text) // 4)

    def count_interaction(self, interaction: Interaction) -> int:
        total = MESSAGE_OVERHEAD
        if isinstance(interaction, TextInteraction):
            total += self.count_text(interaction.content)
            total += self.count_text(interaction.reasoning)
        elif isinstance(interaction, ToolCallInteraction):
            total += self.count_text(interaction.name)
            total += self.count_text(interaction.arguments_json)
            total += self.count_text(interaction.id)
        elif isinstance(interaction, ToolResultInteraction):
            total += self.count_text(json.dumps(interaction.result, default=str))
            total += self.count_text(interaction.id)
        elif isinstance(interaction, ErrorInteraction):
            total += self.count_text(interaction.content)
        return total

    def count_interactions(
        self,
        interactions: Iterable[Interaction],
        tools: list[dict] | None = None,
    ) -> int:
        """
        Estimate the total token count for a conversation.

        If *tools* are provided (function-calling schema list) their JSON
        representation is counted as well; the model sees them in the
        prompt.
        """
        total = sum(self.count_interaction(i) for i in interactions)
        if tools:
            total += self.count_text(json.dumps(tools))
        return total

"""Approximate token accounting for conversation text."""

from __future__ import annotations

import math
from collections.abc import Iterable

from crm_assistant.domain.models import ConversationTurn

CHARS_PER_TOKEN = 4


class TokenEstimator:
    """Character-count estimator: one token per four characters, rounded up.

    Swap in a tokenizer-exact class with the same three methods to change
    accounting everywhere it is injected.
    """

    def estimate_tokens(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def estimate_turn_tokens(self, turn: ConversationTurn) -> int:
        return self.estimate_tokens(f"{turn.sender}: {turn.text}")

    def estimate_turns_tokens(self, turns: Iterable[ConversationTurn]) -> int:
        return sum(self.estimate_turn_tokens(turn) for turn in turns)

# =============================================================================
# Context Budgeter — Full Text vs Identity-Only Context
# =============================================================================
#
# Decides, per agent call, whether a paper's full text is embedded in the
# user prompt or omitted (the agent then works from its identity layer
# alone).
#
# The size estimate is a word-count proxy for tokens:
#     estimate_size(text) = ceil(words * 0.75)
# It is intentionally approximate and deterministic: no tokenizer, no
# model dependency. A text of exactly `limit` units still fits.
#
# Over-budget papers get no retrieval or chunking fallback.
# =============================================================================

from __future__ import annotations

import math

from marginalia.config import settings

WORD_FACTOR = 0.75


def estimate_size(text: str) -> int:
    """Approximate token count from whitespace-delimited words."""
    return math.ceil(len(text.split()) * WORD_FACTOR)


class ContextBudget:
    """Size gate for a paper's full text inside one agent prompt."""

    def __init__(self, limit: int | None = None) -> None:
        self.limit = settings.context_budget if limit is None else limit

    def estimate_size(self, text: str) -> int:
        return estimate_size(text)

    def fits(self, text: str) -> bool:
        return estimate_size(text) <= self.limit

    def full_text_or_none(self, text: str) -> str | None:
        """The text itself when it fits and is non-empty, otherwise None."""
        if text and self.fits(text):
            return text
        return None

# =============================================================================
# Conversation Store — Append-Only, Paragraph-Indexed Exchange Records
# =============================================================================
#
# Every user action on a paragraph (clicking an engagement flag, asking a
# question) becomes a new Exchange; each paper that answers appends one
# SourceResponse to it. The stored records are the full audit trail of the
# paragraph and feed two things:
#   1. history_for() → the PREVIOUS ANALYSIS block of follow-up prompts
#   2. all()         → repopulating reader state after a reload
#
# Scope: one store instance is bound to (workspace, active paper).
#
# KEY LAYOUT (under conversations:{workspace}:{active_paper}:{paragraph}:):
#   paragraph                          → {"paragraphText": ...}
#   exchange:{exchange_id}             → {"sequence": n, "exchange": {...}}
#   response:{exchange_id}:{paper_id}  → {"sequence": n, "response": {...}}
#
# CONCURRENCY:
# Several agents finish at nearly the same time, and several requests
# (each with its own store instance) can open exchanges on the same
# paragraph. Every write creates or replaces exactly one record that no
# other writer touches, so there is no read-modify-write and nothing to
# lock. A paragraph is reassembled on read, ordered by `sequence`.
#
# Re-submitting the same (exchange, paper) response replaces the earlier
# one.
# =============================================================================

from __future__ import annotations

import logging
import time
from typing import Any

from marginalia.models.domain import (
    Exchange,
    HistoryEntry,
    ParagraphConversation,
    SourceResponse,
)
from marginalia.services.store import KeyValueStore

logger = logging.getLogger(__name__)

_PARAGRAPH = "paragraph"
_EXCHANGE = "exchange"
_RESPONSE = "response"

_last_sequence = 0


def _next_sequence() -> int:
    """Wall-clock nanoseconds, strictly increasing within this process."""
    global _last_sequence
    _last_sequence = max(time.time_ns(), _last_sequence + 1)
    return _last_sequence


class ExchangeNotFoundError(LookupError):
    """A response was appended to an exchange that does not exist."""


def conversation_prefix(workspace_id: str, active_paper_id: str) -> str:
    return f"conversations:{workspace_id}:{active_paper_id}:"


class ConversationStore:
    """Paragraph conversations for one (workspace, active paper) pair."""

    def __init__(
        self,
        store: KeyValueStore,
        workspace_id: str,
        active_paper_id: str,
    ) -> None:
        self._store = store
        self.workspace_id = workspace_id
        self.active_paper_id = active_paper_id
        self._prefix = conversation_prefix(workspace_id, active_paper_id)

    def _paragraph_prefix(self, paragraph_index: int) -> str:
        return f"{self._prefix}{paragraph_index}:"

    def _key(self, paragraph_index: int, *parts: str) -> str:
        return self._paragraph_prefix(paragraph_index) + ":".join(parts)

    async def get(self, paragraph_index: int) -> ParagraphConversation | None:
        prefix = self._paragraph_prefix(paragraph_index)
        records = {}
        for key in await self._store.keys(prefix):
            value = await self._store.get(key)
            if value is not None:
                records[key[len(prefix):]] = value
        return _assemble(paragraph_index, records)

    async def all(self) -> list[ParagraphConversation]:
        """Every stored paragraph conversation, in paragraph order."""
        indices = set()
        for key in await self._store.keys(self._prefix):
            index = key[len(self._prefix):].split(":", 1)[0]
            if index.isdigit():
                indices.add(int(index))

        conversations = []
        for index in sorted(indices):
            conversation = await self.get(index)
            if conversation is not None:
                conversations.append(conversation)
        return conversations

    async def start_exchange(
        self,
        paragraph_index: int,
        passage_text: str,
        question: str | None = None,
    ) -> Exchange:
        """
        Open a new exchange on a paragraph. Never reuses an earlier one,
        even when the passage and question are identical.
        """
        exchange = Exchange(question=question)
        await self._store.put(
            self._key(paragraph_index, _PARAGRAPH),
            {"paragraphText": passage_text},
        )
        await self._store.put(
            self._key(paragraph_index, _EXCHANGE, exchange.id),
            {
                "sequence": _next_sequence(),
                "exchange": exchange.model_dump(
                    mode="json", by_alias=True, exclude={"responses"},
                ),
            },
        )

        logger.info(
            "Started exchange %s on paragraph %d (question=%s)",
            exchange.id, paragraph_index, "yes" if question else "no",
        )
        return exchange

    async def append_response(
        self,
        paragraph_index: int,
        exchange_id: str,
        paper_id: str,
        content: str,
    ) -> SourceResponse:
        """
        Record one paper's completed response on an existing exchange.

        Raises:
            ExchangeNotFoundError: No such exchange on this paragraph.
        """
        if await self._store.get(self._key(paragraph_index, _EXCHANGE, exchange_id)) is None:
            raise ExchangeNotFoundError(
                f"Exchange '{exchange_id}' not found on paragraph {paragraph_index}"
            )

        response = SourceResponse(paper_id=paper_id, content=content)
        await self._store.put(
            self._key(paragraph_index, _RESPONSE, exchange_id, paper_id),
            {"sequence": _next_sequence(), "response": response.to_wire()},
        )
        return response

    async def history_for(
        self,
        paragraph_index: int,
        paper_id: str,
    ) -> list[HistoryEntry]:
        """
        One paper's prior responses on a paragraph, in exchange order.

        Exchanges the paper did not answer are skipped. The order is the
        order exchanges were started, independent of which paper finished
        first inside any one exchange.
        """
        conversation = await self.get(paragraph_index)
        if conversation is None:
            return []

        history: list[HistoryEntry] = []
        for exchange in conversation.exchanges:
            response = exchange.response_from(paper_id)
            if response is not None:
                history.append(
                    HistoryEntry(question=exchange.question, response=response.content)
                )
        return history

    async def clear(self, paragraph_index: int) -> None:
        """Delete every record of the paragraph (all exchanges and responses)."""
        for key in await self._store.keys(self._paragraph_prefix(paragraph_index)):
            await self._store.delete(key)
        logger.info("Cleared conversation for paragraph %d", paragraph_index)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _assemble(
    paragraph_index: int,
    records: dict[str, Any],
) -> ParagraphConversation | None:
    """
    Rebuild one paragraph from its records, keyed by the part after the
    paragraph prefix. Responses whose exchange is gone (cleared while the
    agent was still streaming) are ignored.
    """
    paragraph = records.get(_PARAGRAPH)
    exchanges: list[tuple[int, Exchange]] = []
    responses: dict[str, list[tuple[int, SourceResponse]]] = {}

    for suffix, value in records.items():
        kind, _, rest = suffix.partition(":")
        if kind == _EXCHANGE:
            exchanges.append((value["sequence"], Exchange.model_validate(value["exchange"])))
        elif kind == _RESPONSE:
            exchange_id = rest.split(":", 1)[0]
            responses.setdefault(exchange_id, []).append(
                (value["sequence"], SourceResponse.model_validate(value["response"]))
            )

    if paragraph is None and not exchanges:
        return None

    ordered = []
    for _, exchange in sorted(exchanges, key=lambda pair: pair[0]):
        exchange.responses = [
            response
            for _, response in sorted(responses.get(exchange.id, []), key=lambda pair: pair[0])
        ]
        ordered.append(exchange)

    return ParagraphConversation(
        paragraph_index=paragraph_index,
        paragraph_text=(paragraph or {}).get("paragraphText", ""),
        exchanges=ordered,
    )

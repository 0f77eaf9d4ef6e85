# =============================================================================
# Reading Session — Prefilter Cache, Orchestration and Persistence Glue
# =============================================================================
#
# Control flow for one (workspace, active paper) pair:
#
#   reader selects paragraph
#     └─▶ engagements()   prefilter once per paragraph (cached)
#   reader clicks a flag / asks a question
#     └─▶ discuss()       per-paper history → orchestrator → forward events;
#                         the Exchange opens on the first `start` event and
#                         each `done` response is persisted into it
#   reader hits "clear & refresh"
#     └─▶ clear_and_refresh()   clear(), then re-prefilter
#   reader opens the document
#     └─▶ scan()          prefilter every body paragraph (heatmap)
#   page reload
#     └─▶ restore()       stored conversations + cached engagements
#
# Only completed responses are persisted. An agent that ends in `error`
# leaves nothing in the exchange, so a retry starts clean.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field

from marginalia.agents.orchestrator import RespondOptions, respond
from marginalia.agents.prefilter import prefilter
from marginalia.agents.prompts import PromptMode
from marginalia.config import settings
from marginalia.models.domain import (
    AgentEvent,
    AgentEventType,
    EngagementEntry,
    EngagementType,
    Paper,
    ParagraphConversation,
    StructuredParagraph,
)
from marginalia.services.budget import ContextBudget
from marginalia.services.conversations import ConversationStore, ExchangeNotFoundError
from marginalia.services.engagements import EngagementCache
from marginalia.services.llm import LLMProvider
from marginalia.services.store import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class SessionState:
    """Everything needed to repopulate the reader after a reload."""

    conversations: list[ParagraphConversation] = field(default_factory=list)
    engagements: dict[int, list[EngagementEntry]] = field(default_factory=dict)


class ReadingSession:
    def __init__(
        self,
        store: KeyValueStore,
        workspace_id: str,
        active_paper_id: str,
        llm: LLMProvider | None = None,
        prefilter_llm: LLMProvider | None = None,
        budget: ContextBudget | None = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.active_paper_id = active_paper_id
        self.conversations = ConversationStore(store, workspace_id, active_paper_id)
        self.engagement_cache = EngagementCache(store, workspace_id, active_paper_id)
        self._llm = llm
        self._prefilter_llm = prefilter_llm or llm
        self._budget = budget or ContextBudget()

    # -------------------------------------------------------------------------
    # Prefilter
    # -------------------------------------------------------------------------

    async def engagements(
        self,
        paragraph_index: int,
        passage: str,
        candidates: list[Paper],
        refresh: bool = False,
    ) -> list[EngagementEntry]:
        """
        Cached prefilter for one paragraph. `refresh` bypasses the cache
        and overwrites it. With no candidates nothing is cached.
        """
        if not refresh:
            cached = await self.engagement_cache.get(paragraph_index)
            if cached is not None:
                return cached

        if not candidates:
            return []

        entries = await prefilter(_require(self._prefilter_llm), passage, candidates)
        await self.engagement_cache.put(paragraph_index, entries)
        return entries

    async def scan(
        self,
        paragraphs: list[StructuredParagraph],
        candidates: list[Paper],
    ) -> dict[int, list[EngagementEntry]]:
        """
        Prefilter every body paragraph of the document (the heatmap).

        Headings and already-cached paragraphs are skipped. Paragraphs run
        in concurrent batches of `scan_batch_size`; a failed paragraph is
        logged and left uncached so a later scan retries it.
        """
        if not candidates:
            return await self.engagement_cache.all()

        pending: list[tuple[int, str]] = []
        for index, paragraph in enumerate(paragraphs):
            if paragraph.is_heading:
                continue
            if await self.engagement_cache.get(index) is not None:
                continue
            pending.append((index, paragraph.content))

        batch_size = max(1, settings.scan_batch_size)
        logger.info(
            "Scanning %d/%d paragraphs in batches of %d",
            len(pending), len(paragraphs), batch_size,
        )

        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            results = await asyncio.gather(
                *(self.engagements(index, text, candidates) for index, text in batch),
                return_exceptions=True,
            )
            for (index, _), result in zip(batch, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning("Scan failed for paragraph %d: %s", index, result)

        return await self.engagement_cache.all()

    # -------------------------------------------------------------------------
    # Discussion
    # -------------------------------------------------------------------------

    async def discuss(
        self,
        paragraph_index: int,
        passage: str,
        targets: list[Paper],
        question: str | None = None,
        reply_to_content: str | None = None,
        mode: PromptMode | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """
        Stream the targets' responses inside a new exchange.

        The exchange is recorded when the first agent starts, so an invalid
        request or a consumer that leaves before any event leaves no trace.

        Raises:
            InvalidRequestError: Missing passage or empty target set.
        """
        history = {
            paper.id: await self.conversations.history_for(paragraph_index, paper.id)
            for paper in targets
        }
        hints = {
            entry.source_id: entry
            for entry in await self.engagement_cache.get(paragraph_index) or []
        }
        events = respond(
            _require(self._llm),
            passage,
            targets,
            RespondOptions(
                question=question,
                reply_to_content=reply_to_content,
                history=history,
                engagements=hints,
                mode=mode,
            ),
            budget=self._budget,
        )

        return self._record(events, paragraph_index, passage, question)

    async def _record(
        self,
        events: AsyncIterator[AgentEvent],
        paragraph_index: int,
        passage: str,
        question: str | None,
    ) -> AsyncIterator[AgentEvent]:
        exchange_id: str | None = None
        buffers: dict[str, list[str]] = {}
        async with aclosing(events):
            async for event in events:
                if exchange_id is None:
                    exchange = await self.conversations.start_exchange(
                        paragraph_index, passage, question=question,
                    )
                    exchange_id = exchange.id

                if event.type == AgentEventType.START:
                    buffers[event.source_id] = []
                elif event.type == AgentEventType.CHUNK:
                    buffers.setdefault(event.source_id, []).append(event.content or "")
                elif event.type == AgentEventType.DONE:
                    content = "".join(buffers.pop(event.source_id, []))
                    try:
                        await self.conversations.append_response(
                            paragraph_index, exchange_id, event.source_id, content,
                        )
                    except ExchangeNotFoundError:
                        logger.warning(
                            "Exchange %s was cleared mid-stream; dropping response from %s",
                            exchange_id, event.source_id,
                        )
                else:
                    buffers.pop(event.source_id, None)
                yield event

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def clear(self, paragraph_index: int) -> None:
        """Drop the paragraph's conversation and its cached engagements."""
        await self.conversations.clear(paragraph_index)
        await self.engagement_cache.invalidate(paragraph_index)

    async def clear_and_refresh(
        self,
        paragraph_index: int,
        passage: str,
        candidates: list[Paper],
    ) -> list[EngagementEntry]:
        """Drop the paragraph's conversation and recompute its engagements."""
        await self.clear(paragraph_index)
        return await self.engagements(paragraph_index, passage, candidates, refresh=True)

    async def restore(self) -> SessionState:
        """
        Stored conversations plus engagements.

        Papers that responded on a paragraph without being flagged by the
        prefilter are merged in as `contextualizes` entries so every
        responder shows up. The merge is not written back to the cache.
        """
        conversations = await self.conversations.all()
        engagements = await self.engagement_cache.all()

        for conversation in conversations:
            entries = engagements.setdefault(conversation.paragraph_index, [])
            known = {entry.source_id for entry in entries}
            for exchange in conversation.exchanges:
                for response in exchange.responses:
                    if response.paper_id in known:
                        continue
                    known.add(response.paper_id)
                    entries.append(
                        EngagementEntry(
                            source_id=response.paper_id,
                            type=EngagementType.CONTEXTUALIZES,
                            angle=settings.responded_default_angle,
                        )
                    )

        return SessionState(
            conversations=conversations,
            engagements=dict(sorted(engagements.items())),
        )


def _require(llm: LLMProvider | None) -> LLMProvider:
    if llm is None:
        raise RuntimeError("ReadingSession was created without an LLM provider")
    return llm

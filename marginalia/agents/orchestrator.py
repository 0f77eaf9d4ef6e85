# =============================================================================
# Orchestrator — Concurrent Agent Fan-Out with a Multiplexed Event Stream
# =============================================================================
#
# Given a passage and a set of target papers, one independent agent call
# per paper is launched concurrently. Each agent's streamed tokens are
# tagged with its paper id and multiplexed onto a single event channel:
#
#                     ┌── agent(paper A) ──┐
#   respond() ──────▶ ├── agent(paper B) ──┤ ──▶ EventChannel ──▶ consumer
#                     └── agent(paper C) ──┘
#
# EVENTS per paper:   start → chunk* → done
#                     start → chunk* → error("Failed to generate response")
#
# GUARANTEES:
#   - Chunks for one paper arrive in generation order. Across papers there
#     is no ordering (first come, first served).
#   - Isolation: an agent that raises (provider failure, malformed
#     response, per-agent timeout) ends with its own `error` event. No
#     sibling is cancelled or delayed.
#   - Join, not race: the stream ends only after every target has emitted
#     exactly one terminal event.
#   - No implicit cross-agent context. One agent reacting to another gets
#     that output explicitly via `reply_to_content` or history.
#
# DESIGN DECISION: Plain asyncio tasks + queue, not a LangGraph graph.
# The fan-out is a flat join of independent streams; there is no state to
# thread between steps. The ingestion pipeline (agents/ingestion.py) is
# where a graph pays off.
#
# CANCELLATION:
# If the consumer stops iterating (client disconnect), the channel is
# closed and every in-flight agent task is cancelled. Sends to a closed
# channel are silently dropped, never raised.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from marginalia.agents.prompts import (
    PromptMode,
    build_system_prompt,
    build_user_prompt,
    reply_instruction,
)
from marginalia.config import settings
from marginalia.models.domain import (
    AgentEvent,
    AgentEventType,
    EngagementEntry,
    HistoryEntry,
    Paper,
)
from marginalia.services.budget import ContextBudget
from marginalia.services.llm import LLMProvider, user_message

logger = logging.getLogger(__name__)

# Opaque reason carried by every agent `error` event.
FAILURE_REASON = "Failed to generate response"


class InvalidRequestError(ValueError):
    """Structurally invalid respond() call, rejected before any work starts."""


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


@dataclass
class RespondOptions:
    """
    Per-call options shared by every agent in one respond() call.

    `reply_to_content` takes precedence over `question` when both are set.
    History and engagement hints are keyed by paper id.
    """

    question: str | None = None
    reply_to_content: str | None = None
    history: dict[str, list[HistoryEntry]] = field(default_factory=dict)
    engagements: dict[str, EngagementEntry] = field(default_factory=dict)
    mode: PromptMode | None = None

    @property
    def instruction(self) -> str | None:
        if self.reply_to_content:
            return reply_instruction(self.reply_to_content)
        return self.question or None


@dataclass
class AgentStats:
    """Timing of one agent call, logged when it finishes."""

    chunk_count: int = 0
    total_chars: int = 0
    first_chunk_ms: float | None = None
    total_ms: float = 0.0


# ---------------------------------------------------------------------------
# Event Channel
# ---------------------------------------------------------------------------


class EventChannel:
    """
    Single-consumer queue that tolerates a closed receiver.

    `send()` after `close()` is a no-op that returns False.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: Any) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(item)
        return True

    async def receive(self) -> Any:
        return await self._queue.get()

    def close(self) -> None:
        self._closed = True


_END_OF_STREAM = object()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def respond(
    llm: LLMProvider,
    passage: str,
    targets: list[Paper],
    options: RespondOptions | None = None,
    budget: ContextBudget | None = None,
    agent_timeout: float | None = None,
) -> AsyncIterator[AgentEvent]:
    """
    Fan out one agent call per target paper and multiplex their events.

    Validation happens eagerly, so a bad request raises here rather than
    on first iteration.

    Args:
        llm: Streaming provider shared by all agents.
        passage: The paragraph under discussion.
        targets: Papers that should respond. Duplicate ids run once.
        options: Question, reply context, history and engagement hints.
        budget: Context budget gating full-text inclusion.
        agent_timeout: Per-agent wall-clock limit in seconds.

    Returns:
        Async iterator of AgentEvent, ending after every target's
        terminal event.

    Raises:
        InvalidRequestError: Missing passage or empty target set.
    """
    if not passage or not passage.strip():
        raise InvalidRequestError("Missing passage")
    if not targets:
        raise InvalidRequestError("No target papers")

    unique: dict[str, Paper] = {}
    for paper in targets:
        unique.setdefault(paper.id, paper)

    return _stream_events(
        llm=llm,
        passage=passage,
        targets=list(unique.values()),
        options=options or RespondOptions(),
        budget=budget or ContextBudget(),
        agent_timeout=(
            settings.agent_timeout_seconds if agent_timeout is None else agent_timeout
        ),
    )


async def _stream_events(
    llm: LLMProvider,
    passage: str,
    targets: list[Paper],
    options: RespondOptions,
    budget: ContextBudget,
    agent_timeout: float,
) -> AsyncIterator[AgentEvent]:
    channel = EventChannel()
    request_start = time.perf_counter()

    logger.info(
        "Orchestrating %d agents: passage='%s', question=%s, reply=%s",
        len(targets),
        passage[:150],
        options.question or "(none)",
        "yes" if options.reply_to_content else "no",
    )

    tasks = [
        asyncio.create_task(
            _run_agent(llm, passage, paper, options, budget, agent_timeout, channel),
            name=f"agent:{paper.id}",
        )
        for paper in targets
    ]

    async def _join() -> None:
        await asyncio.gather(*tasks, return_exceptions=True)
        channel.send(_END_OF_STREAM)

    joiner = asyncio.create_task(_join(), name="agent-join")

    try:
        while True:
            item = await channel.receive()
            if item is _END_OF_STREAM:
                break
            yield item
    finally:
        channel.close()
        pending = [task for task in (*tasks, joiner) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.info("Consumer left early; cancelled %d agent tasks", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    logger.info(
        "All %d agents complete in %.0fms",
        len(targets), (time.perf_counter() - request_start) * 1000,
    )


# ---------------------------------------------------------------------------
# Single Agent
# ---------------------------------------------------------------------------


async def _run_agent(
    llm: LLMProvider,
    passage: str,
    paper: Paper,
    options: RespondOptions,
    budget: ContextBudget,
    agent_timeout: float,
    channel: EventChannel,
) -> None:
    """
    One agent call. Always ends with exactly one terminal event unless the
    whole stream was cancelled.
    """
    stats = AgentStats()
    start = time.perf_counter()
    channel.send(AgentEvent(type=AgentEventType.START, source_id=paper.id))

    try:
        system_prompt = build_system_prompt(
            paper,
            mode=options.mode or settings.default_verbosity,
            engagement_hint=options.engagements.get(paper.id),
        )
        full_text = budget.full_text_or_none(paper.full_text)
        user_prompt = build_user_prompt(
            passage,
            question=options.instruction,
            full_text=full_text,
            history=options.history.get(paper.id),
        )

        logger.info(
            "[%s] '%s': full text ~%d units (%s), identity layer %s",
            paper.id,
            paper.title[:60],
            budget.estimate_size(paper.full_text),
            "included" if full_text else "excluded",
            "present" if paper.identity_layer else "missing",
        )
        logger.debug("[%s] System prompt:\n%s", paper.id, system_prompt)
        logger.debug("[%s] User prompt:\n%s", paper.id, user_prompt)

        async with asyncio.timeout(agent_timeout):
            async for text in llm.stream(user_message(user_prompt), system=system_prompt):
                if not text:
                    continue
                if stats.first_chunk_ms is None:
                    stats.first_chunk_ms = (time.perf_counter() - start) * 1000
                stats.chunk_count += 1
                stats.total_chars += len(text)
                channel.send(
                    AgentEvent(
                        type=AgentEventType.CHUNK, source_id=paper.id, content=text,
                    )
                )
    except Exception as exc:
        stats.total_ms = (time.perf_counter() - start) * 1000
        logger.warning(
            "[%s] Agent failed after %.0fms: %s",
            paper.id, stats.total_ms, str(exc) or type(exc).__name__,
        )
        channel.send(
            AgentEvent(
                type=AgentEventType.ERROR, source_id=paper.id, content=FAILURE_REASON,
            )
        )
        return

    stats.total_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "[%s] Stats: %d chunks, %d chars, %.0fms total, %s to first chunk",
        paper.id,
        stats.chunk_count,
        stats.total_chars,
        stats.total_ms,
        f"{stats.first_chunk_ms:.0f}ms" if stats.first_chunk_ms is not None else "n/a",
    )
    channel.send(AgentEvent(type=AgentEventType.DONE, source_id=paper.id))

# =============================================================================
# Unit Tests — Reading Session
# =============================================================================
#
# The glue between prefilter cache, orchestrator and conversation store:
#   1. engagements() caching and refresh
#   2. scan() over a whole document
#   3. discuss() persistence (done responses only, exchange opened lazily)
#      and follow-up history
#   4. restore() merging responders into engagements
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from marginalia.agents.orchestrator import InvalidRequestError
from marginalia.agents.session import ReadingSession
from marginalia.config import settings
from marginalia.models.domain import (
    AgentEventType,
    EngagementEntry,
    EngagementType,
    StructuredParagraph,
)
from marginalia.services.llm import LLMError
from marginalia.services.store import InMemoryStore

from fakes import FakeLLM, Script, failing_stream, make_paper


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


CHALLENGES_A = '[{"sourceId": "a", "type": "challenges", "angle": "disputes it"}]'


def _session(llm=None, store=None, prefilter_llm=None):
    return ReadingSession(
        store or InMemoryStore(), "ws1", "target", llm=llm, prefilter_llm=prefilter_llm,
    )


async def _drain(events):
    return [event async for event in events]


# ---------------------------------------------------------------------------
# 1. Engagements
# ---------------------------------------------------------------------------


class TestEngagements:
    def test_cached_after_first_call(self):
        llm = FakeLLM(default_completion=CHALLENGES_A)
        candidates = [make_paper("a"), make_paper("b")]

        async def _go():
            session = _session(llm)
            first = await session.engagements(0, "Passage.", candidates)
            second = await session.engagements(0, "Passage.", candidates)
            return first, second

        first, second = _run(_go())
        assert first == second
        assert [e.source_id for e in first] == ["a"]
        assert len(llm.complete_calls) == 1

    def test_empty_verdict_is_cached(self):
        llm = FakeLLM(default_completion="[]")

        async def _go():
            session = _session(llm)
            await session.engagements(0, "Passage.", [make_paper("a")])
            return await session.engagements(0, "Passage.", [make_paper("a")])

        assert _run(_go()) == []
        assert len(llm.complete_calls) == 1

    def test_refresh_recomputes(self):
        llm = FakeLLM(completions=["[]", CHALLENGES_A])

        async def _go():
            session = _session(llm)
            await session.engagements(0, "Passage.", [make_paper("a")])
            refreshed = await session.engagements(
                0, "Passage.", [make_paper("a")], refresh=True,
            )
            return refreshed, await session.engagement_cache.get(0)

        refreshed, cached = _run(_go())
        assert [e.source_id for e in refreshed] == ["a"]
        assert cached == refreshed

    def test_no_candidates_is_not_cached(self):
        llm = FakeLLM()

        async def _go():
            session = _session(llm)
            result = await session.engagements(0, "Passage.", [])
            return result, await session.engagement_cache.get(0)

        assert _run(_go()) == ([], None)
        assert llm.complete_calls == []

    def test_prefilter_model_is_used_when_given(self):
        agents_llm = FakeLLM()
        prefilter_llm = FakeLLM(default_completion=CHALLENGES_A)
        _run(
            _session(agents_llm, prefilter_llm=prefilter_llm).engagements(
                0, "Passage.", [make_paper("a")],
            )
        )
        assert agents_llm.complete_calls == []
        assert len(prefilter_llm.complete_calls) == 1

    def test_missing_provider_raises(self):
        with pytest.raises(RuntimeError):
            _run(_session().engagements(0, "Passage.", [make_paper("a")]))


# ---------------------------------------------------------------------------
# 2. Scan
# ---------------------------------------------------------------------------


PARAGRAPHS = [
    StructuredParagraph(type="h1", content="Title"),
    StructuredParagraph(content="First body."),
    StructuredParagraph(content="Already cached."),
    StructuredParagraph(type="h2", content="Section"),
    StructuredParagraph(content="Last body."),
]


class TestScan:
    def test_skips_headings_and_cached_paragraphs(self):
        llm = FakeLLM(default_completion=CHALLENGES_A)

        async def _go():
            session = _session(llm)
            await session.engagement_cache.put(2, [])
            return await session.scan(PARAGRAPHS, [make_paper("a")])

        result = _run(_go())
        assert sorted(result) == [1, 2, 4]
        assert result[2] == []
        assert len(llm.complete_calls) == 2
        prompts = " ".join(call.prompt for call in llm.complete_calls)
        assert "First body." in prompts
        assert "Last body." in prompts
        assert "Already cached." not in prompts

    def test_failed_paragraphs_stay_uncached(self):
        llm = FakeLLM(complete_error=LLMError("boom"))
        assert _run(_session(llm).scan(PARAGRAPHS, [make_paper("a")])) == {}


# ---------------------------------------------------------------------------
# 3. Discuss
# ---------------------------------------------------------------------------


class TestDiscuss:
    def test_only_completed_responses_are_persisted(self):
        llm = FakeLLM(
            scripts={
                "Paper a": Script(chunks=["This text ", "disagrees."]),
                "Paper b": failing_stream(),
            }
        )

        async def _go():
            session = _session(llm)
            events = await session.discuss(
                0, "Passage.", [make_paper("a"), make_paper("b")], question="Why?",
            )
            drained = await _drain(events)
            return drained, await session.conversations.get(0)

        events, conversation = _run(_go())
        assert {e.source_id: e.type for e in events if e.is_terminal} == {
            "a": AgentEventType.DONE,
            "b": AgentEventType.ERROR,
        }
        [exchange] = conversation.exchanges
        assert exchange.question == "Why?"
        assert [(r.paper_id, r.content) for r in exchange.responses] == [
            ("a", "This text disagrees."),
        ]

    def test_follow_up_carries_history(self):
        llm = FakeLLM(scripts={"Paper a": Script(chunks=["First take."])})

        async def _go():
            session = _session(llm)
            targets = [make_paper("a"), make_paper("b")]
            await _drain(await session.discuss(0, "Passage.", targets))
            llm.scripts["Paper b"] = failing_stream()
            await _drain(await session.discuss(0, "Passage.", targets, question="And?"))
            return await session.conversations.get(0)

        conversation = _run(_go())
        follow_up_a = llm.calls_for("Paper a")[1].prompt
        assert 'Previous response: "First take."' in follow_up_a
        assert follow_up_a.endswith("NEW QUESTION: And?")
        follow_up_b = llm.calls_for("Paper b")[1].prompt
        assert 'Previous response: "ok"' in follow_up_b
        assert len(conversation.exchanges) == 2

    def test_cached_engagement_becomes_hint(self):
        llm = FakeLLM()
        hint = EngagementEntry(
            source_id="a", type=EngagementType.REFRAMES, angle="shifts the frame",
        )

        async def _go():
            session = _session(llm)
            await session.engagement_cache.put(0, [hint])
            await _drain(await session.discuss(0, "Passage.", [make_paper("a")]))

        _run(_go())
        assert "probably reframes the passage (shifts the frame)" in llm.stream_calls[0].system

    def test_consumer_gone_before_first_event_leaves_no_exchange(self):
        llm = FakeLLM()

        async def _go():
            session = _session(llm)
            events = await session.discuss(0, "Passage.", [make_paper("a")])
            await events.aclose()
            return await session.conversations.get(0)

        assert _run(_go()) is None
        assert llm.stream_calls == []

    def test_exchange_opens_with_first_event(self):
        async def _go():
            session = _session(FakeLLM())
            events = await session.discuss(0, "Passage.", [make_paper("a")], question="Why?")
            before = await session.conversations.get(0)
            first = await anext(events)
            during = await session.conversations.get(0)
            await events.aclose()
            return before, first, during

        before, first, during = _run(_go())
        assert before is None
        assert first.type == AgentEventType.START
        assert [e.question for e in during.exchanges] == ["Why?"]
        assert during.exchanges[0].responses == []

    def test_invalid_request_leaves_no_exchange(self):
        async def _go():
            session = _session(FakeLLM())
            with pytest.raises(InvalidRequestError):
                await session.discuss(0, "Passage.", [])
            return await session.conversations.get(0)

        assert _run(_go()) is None


# ---------------------------------------------------------------------------
# 4. Restore and Clear
# ---------------------------------------------------------------------------


class TestRestore:
    def test_responders_merge_into_engagements(self):
        llm = FakeLLM()

        async def _go():
            store = InMemoryStore()
            session = _session(llm, store)
            await session.engagement_cache.put(
                0,
                [EngagementEntry(source_id="a", type=EngagementType.CHALLENGES, angle="x")],
            )
            await _drain(await session.discuss(0, "P0.", [make_paper("a"), make_paper("b")]))
            await _drain(await session.discuss(3, "P3.", [make_paper("c")]))
            state = await _session(store=store).restore()
            return state, await session.engagement_cache.get(3)

        state, cached_3 = _run(_go())
        assert [c.paragraph_index for c in state.conversations] == [0, 3]
        assert [(e.source_id, e.type) for e in state.engagements[0]] == [
            ("a", EngagementType.CHALLENGES),
            ("b", EngagementType.CONTEXTUALIZES),
        ]
        assert state.engagements[0][1].angle == settings.responded_default_angle
        assert [e.source_id for e in state.engagements[3]] == ["c"]
        assert cached_3 is None

    def test_clear_and_refresh(self):
        llm = FakeLLM(completions=["[]", CHALLENGES_A])

        async def _go():
            session = _session(llm)
            await session.engagements(0, "Passage.", [make_paper("a")])
            await _drain(await session.discuss(0, "Passage.", [make_paper("a")]))
            refreshed = await session.clear_and_refresh(0, "Passage.", [make_paper("a")])
            return refreshed, await session.conversations.get(0)

        refreshed, conversation = _run(_go())
        assert [e.source_id for e in refreshed] == ["a"]
        assert conversation is None

# =============================================================================
# Unit Tests — Conversation Store and Engagement Cache
# =============================================================================
#
# Runs against the in-memory persistence port, plus file-backed SQLite for
# writers that share a paragraph through separate store instances (one per
# request). Covers exchange creation, history ordering, concurrent writes
# to one paragraph, and clearing.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from marginalia.models.domain import EngagementEntry, EngagementType
from marginalia.services.conversations import ConversationStore, ExchangeNotFoundError
from marginalia.services.engagements import EngagementCache
from marginalia.services.store import InMemoryStore

from fakes import sqlite_file_store


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _conversations(store=None, paper_id="target"):
    return ConversationStore(store or InMemoryStore(), "ws1", paper_id)


# ---------------------------------------------------------------------------
# Test: Exchanges
# ---------------------------------------------------------------------------


class TestExchanges:
    def test_identical_questions_get_distinct_exchanges(self):
        async def _go():
            convs = _conversations()
            first = await convs.start_exchange(0, "Passage.", question="Why?")
            second = await convs.start_exchange(0, "Passage.", question="Why?")
            return first, second, await convs.get(0)

        first, second, conversation = _run(_go())
        assert first.id != second.id
        assert [e.id for e in conversation.exchanges] == [first.id, second.id]
        assert conversation.paragraph_text == "Passage."

    def test_append_to_unknown_exchange_raises(self):
        async def _go():
            convs = _conversations()
            await convs.start_exchange(0, "Passage.")
            await convs.append_response(0, "missing", "a", "text")

        with pytest.raises(ExchangeNotFoundError):
            _run(_go())

    def test_append_to_paragraph_without_record_raises(self):
        with pytest.raises(ExchangeNotFoundError):
            _run(_conversations().append_response(3, "missing", "a", "text"))

    def test_concurrent_appends_are_all_kept(self):
        async def _go():
            convs = _conversations()
            exchange = await convs.start_exchange(0, "Passage.")
            await asyncio.gather(
                *(
                    convs.append_response(0, exchange.id, f"p{i}", f"reply {i}")
                    for i in range(6)
                )
            )
            return await convs.get(0)

        conversation = _run(_go())
        responders = {r.paper_id for r in conversation.exchanges[0].responses}
        assert responders == {f"p{i}" for i in range(6)}

    def test_paragraph_keys_do_not_overlap(self):
        async def _go():
            convs = _conversations()
            one = await convs.start_exchange(1, "One.")
            ten = await convs.start_exchange(10, "Ten.")
            await convs.append_response(10, ten.id, "a", "Ten answer.")
            return one, await convs.get(1), await convs.get(10)

        one, paragraph_1, paragraph_10 = _run(_go())
        assert [e.id for e in paragraph_1.exchanges] == [one.id]
        assert paragraph_1.exchanges[0].responses == []
        assert paragraph_10.paragraph_text == "Ten."

    def test_resubmitted_response_replaces_earlier(self):
        async def _go():
            convs = _conversations()
            exchange = await convs.start_exchange(0, "Passage.")
            await convs.append_response(0, exchange.id, "a", "Draft.")
            await convs.append_response(0, exchange.id, "a", "Final.")
            return await convs.get(0)

        [exchange] = _run(_go()).exchanges
        assert [r.content for r in exchange.responses] == ["Final."]

    def test_all_sorted_by_paragraph_index(self):
        async def _go():
            convs = _conversations()
            await convs.start_exchange(10, "Ten.")
            await convs.start_exchange(2, "Two.")
            return await convs.all()

        assert [c.paragraph_index for c in _run(_go())] == [2, 10]

    def test_scoped_to_active_paper(self):
        async def _go():
            store = InMemoryStore()
            await _conversations(store, "target").start_exchange(0, "Passage.")
            return await _conversations(store, "other").all()

        assert _run(_go()) == []


# ---------------------------------------------------------------------------
# Test: Concurrent Requests on One Paragraph
# ---------------------------------------------------------------------------


class TestConcurrentRequests:
    """Two requests, two ConversationStore instances, one SQL database."""

    def test_append_and_new_exchange_both_survive(self, tmp_path):
        async def _go():
            async with sqlite_file_store(tmp_path / "kv.db") as store:
                request_a = _conversations(store)
                request_b = _conversations(store)
                first = await request_a.start_exchange(0, "Passage.")
                _, second = await asyncio.gather(
                    request_a.append_response(0, first.id, "noble", "Search is not neutral."),
                    request_b.start_exchange(0, "Passage.", question="Follow-up?"),
                )
                return first, second, await _conversations(store).get(0)

        first, second, conversation = _run(_go())
        assert [e.id for e in conversation.exchanges] == [first.id, second.id]
        assert [(r.paper_id, r.content) for r in conversation.exchanges[0].responses] == [
            ("noble", "Search is not neutral."),
        ]
        assert conversation.exchanges[1].question == "Follow-up?"

    def test_first_exchanges_on_a_new_paragraph(self, tmp_path):
        async def _go():
            async with sqlite_file_store(tmp_path / "kv.db") as store:
                opened = await asyncio.gather(
                    *(_conversations(store).start_exchange(4, "Passage.") for _ in range(4))
                )
                return opened, await _conversations(store).get(4)

        opened, conversation = _run(_go())
        assert {e.id for e in conversation.exchanges} == {e.id for e in opened}

    def test_parallel_agents_from_separate_requests(self, tmp_path):
        async def _go():
            async with sqlite_file_store(tmp_path / "kv.db") as store:
                exchange = await _conversations(store).start_exchange(0, "Passage.")
                await asyncio.gather(
                    *(
                        _conversations(store).append_response(
                            0, exchange.id, f"p{i}", f"reply {i}",
                        )
                        for i in range(5)
                    )
                )
                return await _conversations(store).history_for(0, "p3")

        assert [h.response for h in _run(_go())] == ["reply 3"]


# ---------------------------------------------------------------------------
# Test: History
# ---------------------------------------------------------------------------


class TestHistory:
    def test_exchange_order_independent_of_completion_order(self):
        async def _go():
            convs = _conversations()
            first = await convs.start_exchange(0, "Passage.")
            second = await convs.start_exchange(0, "Passage.", question="More?")
            await convs.append_response(0, second.id, "a", "Second answer.")
            await convs.append_response(0, first.id, "a", "First answer.")
            return await convs.history_for(0, "a")

        history = _run(_go())
        assert [(h.question, h.response) for h in history] == [
            (None, "First answer."),
            ("More?", "Second answer."),
        ]

    def test_skips_exchanges_the_paper_did_not_answer(self):
        async def _go():
            convs = _conversations()
            first = await convs.start_exchange(0, "Passage.")
            await convs.start_exchange(0, "Passage.", question="Ignored by a")
            await convs.append_response(0, first.id, "a", "Only answer.")
            return await convs.history_for(0, "a"), await convs.history_for(0, "b")

        history_a, history_b = _run(_go())
        assert [h.response for h in history_a] == ["Only answer."]
        assert history_b == []

    def test_clear_removes_everything(self):
        async def _go():
            convs = _conversations()
            exchange = await convs.start_exchange(0, "Passage.")
            await convs.append_response(0, exchange.id, "a", "Answer.")
            await convs.clear(0)
            return await convs.get(0), await convs.history_for(0, "a")

        conversation, history = _run(_go())
        assert conversation is None
        assert history == []

    def test_response_after_clear_is_rejected(self):
        async def _go():
            convs = _conversations()
            exchange = await convs.start_exchange(0, "Passage.")
            await convs.clear(0)
            with pytest.raises(ExchangeNotFoundError):
                await convs.append_response(0, exchange.id, "a", "Late answer.")
            return await convs.get(0)

        assert _run(_go()) is None


# ---------------------------------------------------------------------------
# Test: Engagement Cache
# ---------------------------------------------------------------------------


class TestEngagementCache:
    def test_never_computed_differs_from_empty(self):
        async def _go():
            cache = EngagementCache(InMemoryStore(), "ws1", "target")
            before = await cache.get(0)
            await cache.put(0, [])
            return before, await cache.get(0)

        before, after = _run(_go())
        assert before is None
        assert after == []

    def test_all_and_invalidate(self):
        entry = EngagementEntry(
            source_id="a", type=EngagementType.AFFIRMS, angle="agrees",
        )

        async def _go():
            cache = EngagementCache(InMemoryStore(), "ws1", "target")
            await cache.put(1, [entry])
            await cache.put(12, [])
            everything = await cache.all()
            await cache.invalidate(1)
            return everything, await cache.all()

        everything, remaining = _run(_go())
        assert everything == {1: [entry], 12: []}
        assert remaining == {12: []}

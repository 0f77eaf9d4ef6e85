# =============================================================================
# Engagement Cache — Prefilter Results per Paragraph
# =============================================================================
# The prefilter runs once per paragraph and its verdict is reused on every
# later selection. Only an explicit refresh (or a "clear & refresh") puts a
# new value in place. An empty list is a valid cached verdict and is
# distinct from "never computed" (None).
# =============================================================================

from __future__ import annotations

from marginalia.models.domain import EngagementEntry
from marginalia.services.store import KeyValueStore


class EngagementCache:
    def __init__(
        self,
        store: KeyValueStore,
        workspace_id: str,
        active_paper_id: str,
    ) -> None:
        self._store = store
        self._prefix = f"engagements:{workspace_id}:{active_paper_id}:"

    def _key(self, paragraph_index: int) -> str:
        return f"{self._prefix}{paragraph_index}"

    async def get(self, paragraph_index: int) -> list[EngagementEntry] | None:
        data = await self._store.get(self._key(paragraph_index))
        if data is None:
            return None
        return [EngagementEntry.model_validate(item) for item in data]

    async def put(self, paragraph_index: int, entries: list[EngagementEntry]) -> None:
        await self._store.put(
            self._key(paragraph_index), [entry.to_wire() for entry in entries],
        )

    async def invalidate(self, paragraph_index: int) -> None:
        await self._store.delete(self._key(paragraph_index))

    async def all(self) -> dict[int, list[EngagementEntry]]:
        cached: dict[int, list[EngagementEntry]] = {}
        for key in await self._store.keys(self._prefix):
            index = int(key.rsplit(":", 1)[1])
            entries = await self.get(index)
            if entries is not None:
                cached[index] = entries
        return cached

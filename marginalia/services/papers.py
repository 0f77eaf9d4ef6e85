# =============================================================================
# Paper Repository — Papers over the Persistence Port
# =============================================================================
# Papers are stored one per key (`papers:{id}`) as camelCase JSON.
# `save()` bumps `updated_at`; the whole record is rewritten (last write
# wins), which is how extraction results replace a processing placeholder.
# =============================================================================

from __future__ import annotations

from marginalia.models.domain import Paper
from marginalia.services.store import KeyValueStore

_PREFIX = "papers:"


class PaperRepository:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get(self, paper_id: str) -> Paper | None:
        data = await self._store.get(_PREFIX + paper_id)
        return Paper.model_validate(data) if data is not None else None

    async def save(self, paper: Paper) -> Paper:
        paper.touch()
        await self._store.put(_PREFIX + paper.id, paper.to_wire())
        return paper

    async def list(self) -> list[Paper]:
        papers = []
        for key in await self._store.keys(_PREFIX):
            data = await self._store.get(key)
            if data is not None:
                papers.append(Paper.model_validate(data))
        return sorted(papers, key=lambda p: p.created_at)

    async def delete(self, paper_id: str) -> None:
        await self._store.delete(_PREFIX + paper_id)

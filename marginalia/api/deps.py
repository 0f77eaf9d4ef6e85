# =============================================================================
# API Dependencies — Collaborators Injected into Route Handlers
# =============================================================================
#
#   get_llm()            — provider for identity extraction + agents
#   get_prefilter_llm()  — provider bound to the fast prefilter model
#   get_kv_store()       — the configured persistence port
#   get_ingestor()       — background identity ingestion
#
# DESIGN DECISION: FastAPI dependencies (not module globals in routes).
# Tests swap any of them via `app.dependency_overrides`, so no route test
# needs an API key, a database or a broker.
#
# A provider that cannot be built (no credential configured) raises
# ValueError; it surfaces here as 503 before any work starts.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException

from marginalia.agents.ingestion import IdentityIngestor
from marginalia.services.llm import (
    LLMProvider,
    get_llm_provider,
    get_prefilter_provider,
)
from marginalia.services.store import KeyValueStore, get_store

logger = logging.getLogger(__name__)


def _unavailable(exc: ValueError) -> HTTPException:
    logger.error("Configuration error: %s", exc)
    return HTTPException(
        status_code=503,
        detail=f"Service configuration error: {exc}",
    )


def get_llm() -> LLMProvider:
    try:
        return get_llm_provider()
    except ValueError as exc:
        raise _unavailable(exc) from exc


def get_prefilter_llm() -> LLMProvider:
    try:
        return get_prefilter_provider()
    except ValueError as exc:
        raise _unavailable(exc) from exc


def get_kv_store() -> KeyValueStore:
    return get_store()


_ingestor: IdentityIngestor | None = None


def get_ingestor(
    store: KeyValueStore = Depends(get_kv_store),
    llm: LLMProvider = Depends(get_llm),
) -> IdentityIngestor:
    """Process-wide ingestor; its task handles outlive single requests."""
    global _ingestor
    if _ingestor is None:
        _ingestor = IdentityIngestor(store, llm)
    return _ingestor

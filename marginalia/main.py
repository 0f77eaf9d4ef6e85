# =============================================================================
# FastAPI Application — Marginalia Reading Service
# =============================================================================
#
# Run locally:
#   uvicorn marginalia.main:app --reload
#
# ROUTERS:
#   /health                                   — liveness
#   /agents/prefilter, /agents/respond        — api/agents.py
#   /identity/extract                         — api/identity.py
#   /papers...                                — api/papers.py
#   /workspaces/{ws}/papers/{paper}/...       — api/conversations.py
#
# STARTUP:
# With STORE_BACKEND=sql the `kv_entries` table is created on startup
# (create_all; there is one table and no migrations yet). The in-memory
# backend needs no setup.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marginalia.api import agents, conversations, identity, papers
from marginalia.config import settings
from marginalia.models.responses import HealthResponse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "Starting %s v%s (store=%s, llm=%s/%s)",
        settings.app_name,
        settings.app_version,
        settings.store_backend,
        settings.llm_provider,
        settings.llm_model,
    )
    if settings.store_backend == "sql":
        from marginalia.db.engine import get_async_engine, init_models

        await init_models(get_async_engine())
    yield
    if settings.store_backend == "sql":
        from marginalia.db.engine import get_async_engine

        await get_async_engine().dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Papers become agents: select a paragraph and the other loaded "
        "papers comment on it, streamed side by side."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agents.router)
app.include_router(identity.router)
app.include_router(papers.router)
app.include_router(conversations.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(
        version=settings.app_version,
        service=settings.app_name,
        store=settings.store_backend,
    )

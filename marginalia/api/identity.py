# =============================================================================
# Identity API — One-Shot Identity Extraction
# =============================================================================
#
# POST /identity/extract {text, title?, author?} → {identityLayer, metadata}
#
# Stateless: nothing is stored. Stored papers get their identity layer
# through the ingestion pipeline (/papers endpoints) instead.
#
#   400 — no text
#   500 — the model's response held no usable JSON, or the call failed
#   503 — no LLM credential configured
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from marginalia.agents.identity import IdentityExtractionError, extract_identity
from marginalia.api.deps import get_llm
from marginalia.models.requests import ExtractIdentityRequest
from marginalia.models.responses import ExtractIdentityResponse, MetadataResponse
from marginalia.services.llm import LLMError, LLMProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/identity", tags=["Identity"])


@router.post(
    "/extract",
    response_model=ExtractIdentityResponse,
    summary="Extract a text's identity layer and metadata",
)
async def extract_identity_endpoint(
    request: ExtractIdentityRequest,
    llm: LLMProvider = Depends(get_llm),
) -> ExtractIdentityResponse:
    if not request.text.strip():
        raise HTTPException(status_code=400, detail="No text provided")

    try:
        result = await extract_identity(llm, request.text, request.title, request.author)
    except IdentityExtractionError as exc:
        raise HTTPException(
            status_code=500,
            detail="Failed to parse identity layer from response",
        ) from exc
    except LLMError as exc:
        logger.exception("Identity extraction failed: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to extract identity") from exc

    return ExtractIdentityResponse(
        identity_layer=result.identity_layer,
        metadata=MetadataResponse(**result.metadata.to_wire()),
    )

"""
Assistant catalog API: GET /assistants, GET /assistants/{id}, GET /assistants/{id}/capabilities.

Capabilities of an unknown assistant are an empty list, not a 404.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from persona_gateway.dependencies import get_engine
from persona_gateway.engine import ConversationEngine
from persona_gateway.models import AssistantConfig

router = APIRouter(prefix="/assistants", tags=["assistants"])


def _summary(config: AssistantConfig) -> Dict[str, Any]:
    return {
        "id": config.id,
        "name": config.name,
        "name_ar": config.name_ar,
        "model": config.model,
        "capabilities": list(config.capabilities),
    }


@router.get("")
async def get_assistants(engine: ConversationEngine = Depends(get_engine)) -> JSONResponse:
    items = [_summary(c) for c in engine.list_assistants()]
    return JSONResponse(status_code=200, content={"assistants": items, "count": len(items)})


@router.get("/{assistant_id}")
async def get_assistant(assistant_id: str, engine: ConversationEngine = Depends(get_engine)) -> JSONResponse:
    """Full persona configuration; 404 UNKNOWN_ASSISTANT when not registered."""
    config = engine.get_assistant_config(assistant_id)
    return JSONResponse(status_code=200, content=config.model_dump(mode="json"))


@router.get("/{assistant_id}/capabilities")
async def get_assistant_capabilities(
    assistant_id: str,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content={"assistant_id": assistant_id, "capabilities": engine.get_capabilities(assistant_id)},
    )

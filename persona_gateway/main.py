from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dependencies import AuthError, get_engine
from .engine import ConversationEngine
from .envelope import build_error_envelope, envelope_for, new_request_id
from .errors import EngineError
from .persona_loader import PersonaLoadError
from .routers import assistants as assistants_router
from .routers import sessions as sessions_router


logger = logging.getLogger("persona-gateway")


async def reap_idle_sessions(engine: ConversationEngine, max_idle_seconds: float, interval_seconds: float) -> None:
    """Periodically drop sessions idle longer than max_idle_seconds."""
    while True:
        await asyncio.sleep(interval_seconds)
        engine.prune_inactive(max_idle_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine and run the idle-session reaper when configured."""
    settings = get_settings()
    logger.setLevel(settings.log_level)
    engine = app.dependency_overrides.get(get_engine, get_engine)()

    reaper = None
    if settings.session_idle_ttl_seconds > 0:
        reaper = asyncio.create_task(
            reap_idle_sessions(engine, settings.session_idle_ttl_seconds, settings.reaper_interval_seconds)
        )
    try:
        yield
    finally:
        if reaper is not None:
            reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper


app = FastAPI(title="Persona Conversation Gateway", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(assistants_router.router)
app.include_router(sessions_router.router)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    status_code, body = envelope_for(exc)
    if exc.status_code >= 500:
        logger.warning("request failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=401,
        code="UNAUTHORIZED",
        message=str(exc),
    )
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"path": list(err.get("loc", [])), "message": err.get("msg", "")} for err in exc.errors()]
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=422,
        code="INPUT_VALIDATION_ERROR",
        message="Request body failed validation",
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health")
async def health() -> JSONResponse:
    """
    Simple health check. Returns 200 when the persona catalog loads.
    """
    try:
        engine = app.dependency_overrides.get(get_engine, get_engine)()
    except PersonaLoadError as exc:
        status_code, body = build_error_envelope(
            request_id=new_request_id(),
            status_code=500,
            code="INTERNAL_ERROR",
            message=str(exc),
        )
        return JSONResponse(status_code=status_code, content=body)

    payload: Dict[str, Any] = {
        "status": "ok",
        "assistants": len(engine.registry),
        "sessions": len(engine.sessions),
        "provider": engine.provider.name,
    }
    return JSONResponse(status_code=200, content=payload)


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app

"""Standard success/error envelopes shared by the routers and app handlers."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Tuple

from .errors import EngineError


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    retryable: bool = False,
    session_id: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    meta: Dict[str, Any] = {"request_id": request_id}
    if session_id is not None:
        meta["session_id"] = session_id
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "retryable": retryable,
        },
        "meta": meta,
    }
    return status_code, body


def envelope_for(exc: EngineError, request_id: Optional[str] = None) -> Tuple[int, Dict[str, Any]]:
    return build_error_envelope(
        request_id=request_id or new_request_id(),
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        retryable=exc.retryable,
    )

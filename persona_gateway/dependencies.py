from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Request
import jwt
from jwt import PyJWKClient

from .config import get_settings
from .engine import ConversationEngine
from .providers import build_provider
from .registry import AssistantRegistry

logger = logging.getLogger("persona-gateway")

_engine: Optional[ConversationEngine] = None


def build_engine() -> ConversationEngine:
    """Create the process-wide engine from the current settings."""
    settings = get_settings()
    registry = AssistantRegistry.from_directory()
    provider = build_provider()
    logger.info("engine ready assistants=%d provider=%s", len(registry), provider.name)
    return ConversationEngine(registry, provider, provider_timeout=settings.provider_timeout_seconds)


def get_engine() -> ConversationEngine:
    """
    Dependency returning the shared engine.

    Tests rely on this function name to swap in an engine with a scripted
    provider via FastAPI's dependency_overrides.
    """
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def reset_engine() -> None:
    global _engine
    _engine = None


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def _get_session_cookie(request: Request) -> Optional[str]:
    cookie_token = request.cookies.get("__session")
    return cookie_token or None


_jwks_clients: Dict[str, PyJWKClient] = {}


def _get_cached_jwks_client(jwks_url: str) -> PyJWKClient:
    # PyJWKClient caches keys by kid; keep one instance per URL.
    if not jwks_url:
        raise AuthError("Clerk JWKS URL is not configured")
    client = _jwks_clients.get(jwks_url)
    if client is None:
        client = PyJWKClient(jwks_url)
        _jwks_clients[jwks_url] = client
    return client


def _verify_clerk_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    clerk_jwt_key = settings.clerk_jwt_key
    clerk_jwks_url = settings.clerk_jwks_url

    if not clerk_jwt_key and not clerk_jwks_url:
        raise AuthError("Clerk auth is not configured")

    try:
        unverified_header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid session token") from exc

    if unverified_header.get("alg") != "RS256":
        raise AuthError("Unsupported token algorithm")

    decode_kwargs: Dict[str, Any] = {
        "algorithms": ["RS256"],
        "options": {"verify_aud": bool(settings.clerk_audience)},
    }
    if settings.clerk_issuer:
        decode_kwargs["issuer"] = settings.clerk_issuer
    if settings.clerk_audience:
        decode_kwargs["audience"] = settings.clerk_audience

    try:
        if clerk_jwt_key:
            claims = jwt.decode(token, clerk_jwt_key, **decode_kwargs)
        else:
            jwks_client = _get_cached_jwks_client(clerk_jwks_url or "")
            signing_key = jwks_client.get_signing_key_from_jwt(token).key
            claims = jwt.decode(token, signing_key, **decode_kwargs)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid or expired session token") from exc

    authorized_parties = settings.clerk_authorized_parties
    if authorized_parties:
        azp = claims.get("azp")
        if not azp or azp not in authorized_parties:
            raise AuthError("Unauthorized token issuer")

    return claims


def require_clerk_user_id(request: Request) -> str:
    """Require Clerk authentication and return the Clerk user id (sub)."""
    token = _get_bearer_token(request) or _get_session_cookie(request)
    if not token:
        raise AuthError("Missing session token")

    claims = _verify_clerk_token(token)
    user_id = claims.get("sub")
    if not user_id:
        raise AuthError("Missing user id in token")
    return str(user_id)


def enforce_auth(request: Request) -> None:
    """
    Auth guard for session endpoints.

    Priority:
    - If AUTH_TOKEN is set, accept only that bearer token.
    - Otherwise, if Clerk is configured, require a valid Clerk session token.
    - If neither is configured, authentication is disabled.
    """
    settings = get_settings()
    if settings.auth_token:
        supplied = _get_bearer_token(request)
        if supplied is None:
            raise AuthError("Missing or invalid Authorization header")
        if supplied != settings.auth_token:
            raise AuthError("Invalid bearer token")
        return

    if settings.clerk_jwt_key or settings.clerk_jwks_url:
        require_clerk_user_id(request)


def authenticated_user_id(request: Request) -> Optional[str]:
    """Clerk subject of the caller, or None when requests carry no verified user."""
    settings = get_settings()
    if settings.auth_token or not (settings.clerk_jwt_key or settings.clerk_jwks_url):
        return None
    return require_clerk_user_id(request)


def resolve_user_id(request: Request, fallback: Optional[str]) -> str:
    """
    Map the caller to a user id.

    With Clerk configured the token subject wins; otherwise the id supplied in
    the request body is used, or "anonymous".
    """
    return authenticated_user_id(request) or fallback or "anonymous"


class AuthError(RuntimeError):
    """Raised when authentication fails."""

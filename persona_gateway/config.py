import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    provider_name: str
    anthropic_api_key: Optional[str]
    openrouter_api_key: Optional[str]
    openrouter_model: Optional[str]
    personas_dir: Optional[str]
    auth_token: Optional[str]
    clerk_jwks_url: Optional[str]
    clerk_jwt_key: Optional[str]
    clerk_issuer: Optional[str]
    clerk_audience: Optional[str]
    clerk_authorized_parties: List[str]
    provider_timeout_seconds: float = 120.0
    session_idle_ttl_seconds: float = 0.0
    reaper_interval_seconds: float = 60.0
    cors_origins: str = "*"
    log_level: str = "INFO"

    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Defaults only. `get_settings` rebuilds Settings from the current
    environment on every call so tests can flip env vars at runtime.
    """

    return Settings(
        provider_name="stub",
        anthropic_api_key=None,
        openrouter_api_key=None,
        openrouter_model=None,
        personas_dir=None,
        auth_token=None,
        clerk_jwks_url=None,
        clerk_jwt_key=None,
        clerk_issuer=None,
        clerk_audience=None,
        clerk_authorized_parties=[],
    )


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_settings() -> Settings:
    """Return Settings built from the *current* environment."""

    base = _base_settings()
    clerk_authorized_parties_raw = os.getenv("CLERK_AUTHORIZED_PARTIES") or ""
    clerk_authorized_parties = [
        part.strip() for part in clerk_authorized_parties_raw.split(",") if part.strip()
    ]

    return Settings(
        provider_name=(os.getenv("PROVIDER") or base.provider_name).lower(),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        openrouter_model=os.getenv("OPENROUTER_MODEL") or None,
        personas_dir=os.getenv("PERSONAS_DIR") or None,
        auth_token=os.getenv("AUTH_TOKEN") or None,
        clerk_jwks_url=os.getenv("CLERK_JWKS_URL") or None,
        clerk_jwt_key=os.getenv("CLERK_JWT_KEY") or None,
        clerk_issuer=os.getenv("CLERK_ISSUER") or None,
        clerk_audience=os.getenv("CLERK_AUDIENCE") or None,
        clerk_authorized_parties=clerk_authorized_parties,
        provider_timeout_seconds=_float_env("PROVIDER_TIMEOUT_SECONDS", base.provider_timeout_seconds),
        session_idle_ttl_seconds=_float_env("SESSION_IDLE_TTL_SECONDS", base.session_idle_ttl_seconds),
        reaper_interval_seconds=_float_env("REAPER_INTERVAL_SECONDS", base.reaper_interval_seconds),
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        http_port=base.http_port,
    )

"""
Configuration and startup checks for the session core.

Why: The client runs with the anon key so Row Level Security applies to every
call. A service-role key would silently bypass RLS and make the role-scoped
query layer the only guard, so startup refuses it.

Permissions: The caller needs no special privileges. Functions read
environment variables and raise `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass
from typing import Optional

PROFILE_RESOLVE_TIMEOUT_DEFAULT = 10.0
SESSION_INIT_TIMEOUT_DEFAULT = 8.0
READ_RETRY_BACKOFF_DEFAULT = 0.5
POSTGREST_TIMEOUT_DEFAULT = 120


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _parse_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return value


def _load_dotenv_if_requested() -> None:
    if os.getenv("PROGRESS_TRACKER_LOAD_DOTENV", "0") != "1":
        return
    from dotenv import load_dotenv

    load_dotenv()


@dataclass(frozen=True)
class SessionSettings:
    supabase_url: str
    supabase_anon_key: str
    environment: str = "dev"
    profile_resolve_timeout: float = PROFILE_RESOLVE_TIMEOUT_DEFAULT
    session_init_timeout: float = SESSION_INIT_TIMEOUT_DEFAULT
    read_retry_backoff: float = READ_RETRY_BACKOFF_DEFAULT
    postgrest_timeout: int = POSTGREST_TIMEOUT_DEFAULT


def load_settings() -> SessionSettings:
    """Read settings from the environment (optionally after loading `.env`).

    Env:
        SUPABASE_URL, SUPABASE_ANON_KEY – project endpoint and public key.
        APP_ENV – dev (default) or prod/production/stage/staging.
        PROFILE_RESOLVE_TIMEOUT_SECONDS – bound for profile lookup (default 10).
        SESSION_INIT_TIMEOUT_SECONDS – liveness bound for startup (default 8).
        READ_RETRY_BACKOFF_SECONDS – pause before the single read retry (0.5).
        POSTGREST_CLIENT_TIMEOUT_SECONDS – HTTP timeout of the client (120).
    Invalid or non-positive numbers fall back to the defaults.
    """
    _load_dotenv_if_requested()
    return SessionSettings(
        supabase_url=(os.getenv("SUPABASE_URL") or "").strip(),
        supabase_anon_key=(os.getenv("SUPABASE_ANON_KEY") or "").strip(),
        environment=(os.getenv("APP_ENV") or "dev").strip().lower(),
        profile_resolve_timeout=_parse_float_env("PROFILE_RESOLVE_TIMEOUT_SECONDS", PROFILE_RESOLVE_TIMEOUT_DEFAULT),
        session_init_timeout=_parse_float_env("SESSION_INIT_TIMEOUT_SECONDS", SESSION_INIT_TIMEOUT_DEFAULT),
        read_retry_backoff=_parse_float_env("READ_RETRY_BACKOFF_SECONDS", READ_RETRY_BACKOFF_DEFAULT),
        postgrest_timeout=int(_parse_float_env("POSTGREST_CLIENT_TIMEOUT_SECONDS", POSTGREST_TIMEOUT_DEFAULT)),
    )


def jwt_role(token: str) -> Optional[str]:
    """Return the unverified ``role`` claim of a JWT, or None if not a JWT."""
    parts = (token or "").split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        return None
    role = claims.get("role") if isinstance(claims, dict) else None
    return str(role) if role is not None else None


def ensure_client_config(settings: SessionSettings) -> None:
    """Fail fast on configurations that would break or bypass RLS.

    Checks:
    - SUPABASE_URL and SUPABASE_ANON_KEY must be set.
    - The key must not be a service-role JWT (bypasses RLS).
    - Prod-like environments must use https.
    """
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise SystemExit("Refusing to start: SUPABASE_URL and SUPABASE_ANON_KEY must be set.")
    if jwt_role(settings.supabase_anon_key) == "service_role":
        raise SystemExit(
            "Refusing to start: SUPABASE_ANON_KEY is a service_role key. Clients must use the anon key so RLS applies."
        )
    if _is_prod_like(settings.environment) and settings.supabase_url.lower().startswith("http://"):
        raise SystemExit("Refusing to start: SUPABASE_URL must use https in production (got http).")


__all__ = ["SessionSettings", "ensure_client_config", "jwt_role", "load_settings"]

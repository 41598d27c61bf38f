"""
Compose a ready-to-start SessionOrchestrator from configuration.

Why:
    The presentation layer should receive one injected object rather than
    building clients and adapters itself. This module is the only place that
    knows which concrete adapters back the ports.

Security:
    Requires SUPABASE_URL and SUPABASE_ANON_KEY. `ensure_client_config` refuses
    service-role keys so every call stays subject to RLS.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from identity_access.profiles import ProfileResolver
from identity_access.stores import IdentityStore
from identity_access.supabase_auth import SupabaseAuthBackend
from live_sync.channel_supabase import SupabasePushChannel
from live_sync.subscriptions import SubscriptionManager
from storage.supabase_store import SupabaseRemoteStore

from .config import SessionSettings, ensure_client_config, load_settings
from .orchestrator import SessionOrchestrator

logger = logging.getLogger("progress_tracker.session")


async def create_client(settings: SessionSettings) -> Any:
    """Create the supabase async client with the configured HTTP timeout."""
    # Lazy import keeps the client library out of pure-domain imports.
    from supabase import acreate_client
    from supabase.lib.client_options import AsyncClientOptions

    options = AsyncClientOptions(postgrest_client_timeout=settings.postgrest_timeout)
    return await acreate_client(settings.supabase_url, settings.supabase_anon_key, options=options)


def compose(client: Any, settings: SessionSettings) -> SessionOrchestrator:
    """Wire adapters, stores and services around an existing client."""
    store = SupabaseRemoteStore(client)
    identity_store = IdentityStore(SupabaseAuthBackend(client))
    resolver = ProfileResolver(store, timeout_seconds=settings.profile_resolve_timeout)
    subscriptions = SubscriptionManager(SupabasePushChannel(client))
    return SessionOrchestrator(
        identity_store,
        resolver,
        store,
        subscriptions,
        init_timeout_seconds=settings.session_init_timeout,
        read_backoff_seconds=settings.read_retry_backoff,
    )


async def build_session(settings: Optional[SessionSettings] = None, *, client: Any = None) -> SessionOrchestrator:
    """Validate configuration and return a composed (not yet started) session.

    Raises:
        SystemExit: on missing or unsafe configuration.
    """
    settings = settings or load_settings()
    ensure_client_config(settings)
    if client is None:
        client = await create_client(settings)
    logger.info("Session wired (env=%s)", settings.environment)
    return compose(client, settings)


__all__ = ["build_session", "compose", "create_client"]

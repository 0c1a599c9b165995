"""Supabase client singletons for database and realtime operations."""

from functools import lru_cache
from typing import Any

from supabase import AsyncClient, Client, acreate_client, create_client

from src.core.config import get_settings
from src.core.store import SupabaseStore


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client singleton for database operations.

    Uses the secret key for backend operations, which bypasses RLS at the
    PostgREST level. Callers must resolve the cart owner before touching
    rows on their behalf.

    Returns:
        Client: Supabase client instance.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


@lru_cache
def get_store() -> SupabaseStore:
    """Get the cached ``DataStore`` used by the cart and webhook services."""
    return SupabaseStore(get_supabase_client())


async def create_realtime_client() -> AsyncClient:
    """Create an async Supabase client for realtime channels.

    The sync client has no realtime support, so subscriptions get their
    own async client. A new one is created per subscription attempt so a
    broken socket is never reused after a resubscribe.

    Returns:
        AsyncClient: Fresh async Supabase client.
    """
    settings = get_settings()
    return await acreate_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


async def check_database_connection() -> dict[str, Any]:
    """Check if database connection is healthy.

    Returns:
        dict: Connection status with 'healthy' boolean and optional 'error' message.
    """
    try:
        client = get_supabase_client()
        client.table("cart_transactions").select("id").limit(1).execute()
        return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}

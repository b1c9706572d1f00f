"""
Database Module - Supabase and Redis Clients

Provides singleton instances of:
- Async Supabase client for the remote cart tables (PostgREST)
- Sync Upstash Redis client for browser-scoped local cart storage
"""

import os
from typing import Optional

from supabase._async.client import AsyncClient, create_client as acreate_client
from upstash_redis import Redis


SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

UPSTASH_REDIS_REST_URL = os.environ.get("UPSTASH_REDIS_REST_URL", "")
UPSTASH_REDIS_REST_TOKEN = os.environ.get("UPSTASH_REDIS_REST_TOKEN", "")


_async_supabase_client: Optional[AsyncClient] = None
_sync_redis_client: Optional[Redis] = None


async def get_supabase() -> AsyncClient:
    """
    Get async Supabase client (singleton).
    Used by the cart repository and the product catalog.
    """
    global _async_supabase_client

    if _async_supabase_client is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _async_supabase_client = await acreate_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)

    return _async_supabase_client


def get_redis_sync() -> Redis:
    """
    Get sync Upstash Redis client (singleton).

    Cart store mutations are synchronous, so local snapshots use the sync
    client.
    """
    global _sync_redis_client

    if _sync_redis_client is None:
        if not UPSTASH_REDIS_REST_URL or not UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set")
        _sync_redis_client = Redis(url=UPSTASH_REDIS_REST_URL, token=UPSTASH_REDIS_REST_TOKEN)

    return _sync_redis_client


class Tables:
    """Remote table names."""

    CART = "cart"
    CART_LINE = "cart_line"
    PRODUCTS = "products"


class RedisKeys:
    """Redis key prefixes for browser-scoped data."""

    PREFIX = "cartsync:"

    # Opaque anonymous identity, one per browser
    SESSION_TOKEN = "session_token"

    # Persisted cart snapshot (owner + lines)
    CART_SNAPSHOT = "cart"

    @staticmethod
    def browser_key(browser_id: str, name: str) -> str:
        return f"{RedisKeys.PREFIX}{browser_id}:{name}"


class TTL:
    """Time-to-live constants for Redis keys (seconds)."""

    LOCAL_CART = int(os.environ.get("CART_LOCAL_TTL_SECONDS", 30 * 86400))

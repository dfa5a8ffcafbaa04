"""Supabase client configuration for auth, RPC and realtime broadcast.

SECURITY NOTICE:
- SB_SECRET_KEY is server-only (NEVER exposed to clients); it bypasses RLS.
- The payment handlers act on behalf of the platform (insert purchase rows,
  resolve any user's token), so they use the secret key.

KEY NAMING TRANSITION:
- New Supabase UI (2024+): SB_SECRET_KEY
- Legacy (pre-2024): SUPABASE_SERVICE_ROLE_KEY
- Falls back to the legacy name if the new one is not set
"""

import logging
import os
from functools import lru_cache

from supabase import Client, create_client

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_supabase_url() -> str:
    """Get Supabase project URL from environment.

    Raises:
        RuntimeError: If SUPABASE_URL not set
    """
    url = os.getenv("SUPABASE_URL")
    if not url:
        raise RuntimeError(
            "SUPABASE_URL environment variable not set. "
            "Required for authentication and realtime notifications."
        )
    return url.rstrip("/")


@lru_cache(maxsize=1)
def get_supabase_secret_key() -> str:
    """Get Supabase secret (service role) key from environment.

    Priority:
    1. SB_SECRET_KEY (new standard)
    2. SUPABASE_SERVICE_ROLE_KEY (legacy)

    Raises:
        RuntimeError: If neither key is set
    """
    key = os.getenv("SB_SECRET_KEY")
    if key:
        return key

    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if key:
        logger.info(
            "Using legacy SUPABASE_SERVICE_ROLE_KEY (consider migrating to SB_SECRET_KEY)"
        )
        return key

    raise RuntimeError(
        "Neither SB_SECRET_KEY nor SUPABASE_SERVICE_ROLE_KEY environment variable is set. "
        "Required for server-side payment operations."
    )


@lru_cache(maxsize=1)
def get_supabase_admin_client() -> Client:
    """Get Supabase admin client for server-side operations.

    Uses SECRET_KEY which bypasses RLS.

    Raises:
        RuntimeError: If environment variables not set
    """
    url = get_supabase_url()
    secret_key = get_supabase_secret_key()

    logger.info(
        "Initializing Supabase admin client",
        extra={"supabase_url": url, "key_type": "secret"},
    )

    return create_client(url, secret_key)

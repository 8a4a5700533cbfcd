"""
Supabase client initialization for server-side code.

The API and the worker both act with the service role key; ownership checks
happen in our code (sheets are scoped by owner_id), not through RLS.
"""

import logging
from typing import Optional

from supabase import create_client, Client
from yarl import URL

logger = logging.getLogger(__name__)


def normalize_supabase_url(url: Optional[str]) -> Optional[str]:
    """Ensure Supabase URL ends with a trailing slash to satisfy storage client."""
    if not url:
        return None
    return url if url.endswith("/") else f"{url}/"


def get_service_client(config) -> Client:
    """
    Return a Supabase client using the service role key (bypasses RLS).

    Raises RuntimeError when SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is missing.
    """
    supabase_url = normalize_supabase_url(config.supabase_url)
    if not supabase_url or not config.supabase_service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")

    client: Client = create_client(supabase_url, config.supabase_service_role_key)

    # Ensure storage_url ends with a slash to avoid storage3 warnings.
    try:
        storage_url = str(client.storage_url)
        if not storage_url.endswith("/"):
            client.storage_url = URL(f"{storage_url}/")
    except AttributeError:
        logger.debug("Supabase client has no storage_url attribute; leaving it as is")

    return client

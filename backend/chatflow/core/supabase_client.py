"""
Supabase connection shared by the supabase-backed adapters
"""
import logging
from typing import Optional, Any, Dict
from supabase import create_client, Client
from .config import settings

logger = logging.getLogger(__name__)

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """
    Return the process-wide Supabase client, created on first use.

    Raises:
        RuntimeError: if SUPABASE_URL or SUPABASE_KEY is missing
    """
    global _supabase_client

    if _supabase_client is None:
        if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set to use the supabase backend")
        _supabase_client = create_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_KEY
        )
        logger.info(f"Supabase client created for {settings.SUPABASE_URL}")

    return _supabase_client


def first_row(response: Any) -> Optional[Dict[str, Any]]:
    """First row of an executed query, None when nothing matched"""
    data = getattr(response, "data", None)
    return data[0] if data else None

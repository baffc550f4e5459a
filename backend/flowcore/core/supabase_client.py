"""
Supabase client connection - Lazy initialization
"""
from typing import Optional
from supabase import create_client, Client
from .config import settings

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """Create and return Supabase client (lazy initialization)"""
    global _supabase_client

    if _supabase_client is None:
        if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set to use the supabase store")
        _supabase_client = create_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_KEY
        )

    return _supabase_client

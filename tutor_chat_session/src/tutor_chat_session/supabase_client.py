"""
Supabase client used by the remote session mirror and struggle-topic reset.

One client is shared per process. Credentials come from the arguments or,
failing that, SUPABASE_URL / SUPABASE_SERVICE_KEY.
"""
import os
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

load_dotenv()

_client: Optional[Client] = None


def get_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Client:
    global _client

    if _client is not None:
        return _client

    url = url or os.getenv("SUPABASE_URL")
    key = key or os.getenv("SUPABASE_SERVICE_KEY")
    if not url or not key:
        raise ValueError("Supabase is not configured: set SUPABASE_URL and SUPABASE_SERVICE_KEY")

    _client = create_client(url, key)
    return _client


def reset_supabase_client():
    """Forget the shared client (credentials changed, or between tests)."""
    global _client
    _client = None

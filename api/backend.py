"""
Access to the hosted portal database through supabase-py.

Queries are built with the client's table/rpc builders and executed through `run`,
so PostgREST errors and transport failures both surface as BackendError.
"""
import logging
from typing import Any, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client
from supabase.client import ClientOptions

import settings

log = logging.getLogger("uvicorn.error")


class BackendError(RuntimeError):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


def get_client(url: Optional[str] = None, service_key: Optional[str] = None,
               timeout: Optional[float] = None) -> Client:
    url = url or settings.SUPABASE_URL
    service_key = service_key or settings.SUPABASE_SERVICE_KEY
    if not url or not service_key:
        raise BackendError("backend is not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY)")
    options = ClientOptions(postgrest_client_timeout=timeout or settings.BACKEND_TIMEOUT)
    return create_client(url, service_key, options=options)


def run(query, what: str) -> Any:
    """Execute a query builder and return its rows (or the RPC result)."""
    try:
        result = query.execute()
    except APIError as e:
        log.warning("backend %s failed: %s", what, e.message)
        raise BackendError(f"backend {what} failed: {e.message}", code=e.code) from e
    except httpx.HTTPError as e:
        log.warning("backend %s failed: %s", what, e)
        raise BackendError(f"backend unreachable: {e}") from e
    return result.data

"""Service-role Supabase client factory and executor helper."""

import asyncio
import functools
from typing import Any, Callable

from supabase import create_client, Client
from visionary.config import Settings


def create_supabase(settings: Settings) -> Client:
    """Create the Supabase client using the service role key."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
        )
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key,
    )


async def run_blocking(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking supabase-py call in the default thread executor.

    supabase-py's sync client performs network I/O on the calling thread,
    so it must not run directly on the event loop.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

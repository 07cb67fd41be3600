"""Optional Supabase JWT validation dependency for FastAPI."""

import logging
from typing import Optional

from fastapi import Header, HTTPException
from supabase import create_client

from visionary.config import settings
from visionary.db.supabase_client import run_blocking

logger = logging.getLogger(__name__)


async def optional_user_id(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Resolve the caller's user id from a Bearer token.

    Anonymous requests are allowed and yield None; a token that is present
    but not accepted by Supabase auth is a 401.
    """
    if not authorization:
        return None
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    token = authorization.replace("Bearer ", "")
    try:
        client = create_client(settings.supabase_url, settings.supabase_anon_key)
        user_response = await run_blocking(client.auth.get_user, token)
    except Exception as e:
        logger.warning("Token validation failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")
    user = getattr(user_response, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user.id

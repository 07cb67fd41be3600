"""Turn stored-object URLs into URLs an external fetcher can read.

The inference provider downloads its inputs itself and does not share our
Supabase auth context, so a public-looking storage URL is not enough for
private buckets. The resolver walks a fallback chain and always hands back
some URL; it never raises.
"""

import base64
import logging
from typing import Any, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import httpx

from visionary.config import Settings
from visionary.db.supabase_client import run_blocking
from visionary.io.media_reader import fetch_media, is_reachable

logger = logging.getLogger(__name__)

PUBLIC_OBJECT_MARKER = "/storage/v1/object/public/"


def with_download_marker(url: str) -> str:
    if "download=true" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}download=true"


def has_access_marker(url: str) -> bool:
    """True when the URL already carries a signing token or a download flag."""
    query = parse_qs(urlsplit(url).query)
    return "token" in query or "true" in query.get("download", [])


def split_storage_url(url: str) -> Optional[Tuple[str, str]]:
    """Split a public object URL into ``(bucket, path)``."""
    parts = url.split(PUBLIC_OBJECT_MARKER)
    if len(parts) != 2:
        return None
    object_ref = parts[1].split("?", 1)[0]
    bucket, _, path = object_ref.partition("/")
    if not bucket or not path:
        return None
    return bucket, path


def signed_url_from(result: Any) -> Optional[str]:
    """storage3 has returned both ``signedURL`` and ``signedUrl`` across versions."""
    if not isinstance(result, dict):
        return None
    return result.get("signedUrl") or result.get("signedURL")


class AccessUrlResolver:
    def __init__(self, supabase, http: httpx.AsyncClient, settings: Settings):
        self._supabase = supabase
        self._http = http
        self._settings = settings

    async def resolve(self, url: str) -> str:
        """Return a URL the provider can fetch. Falls back to ``url`` itself."""
        try:
            return await self._resolve(url)
        except Exception:
            logger.exception("Error preparing %s for external access, using it unchanged", url[:120])
            return url

    async def _resolve(self, url: str) -> str:
        if has_access_marker(url):
            logger.info("URL already has an access parameter, using as is")
            return url

        if self._settings.user_uploads_bucket in url:
            return await self._resolve_user_upload(url)

        if PUBLIC_OBJECT_MARKER in url:
            return await self._resolve_stored_object(url)

        logger.info("External URL, using as is")
        return url

    async def _create_signed_url(self, bucket: str, path: str, ttl: int) -> Optional[str]:
        result = await run_blocking(
            self._supabase.storage.from_(bucket).create_signed_url, path, ttl
        )
        return signed_url_from(result)

    async def _resolve_user_upload(self, url: str) -> str:
        ref = split_storage_url(url)
        if ref is None:
            logger.warning("Unrecognised storage URL format, adding download parameter instead")
            return with_download_marker(url)
        bucket, path = ref

        try:
            signed = await self._create_signed_url(
                bucket, path, self._settings.user_upload_signed_url_ttl
            )
        except Exception as e:
            logger.error("Could not sign user upload %s/%s: %s", bucket, path, e)
            return await self._degrade_user_upload(url)

        if not signed:
            logger.error("No signed URL returned for user upload %s/%s", bucket, path)
            return with_download_marker(url)

        logger.info("Created signed URL for user upload %s/%s", bucket, path)
        return signed

    async def _degrade_user_upload(self, url: str) -> str:
        candidate = with_download_marker(url)
        if await is_reachable(self._http, candidate, self._settings.probe_timeout_seconds):
            logger.info("User upload reachable with download parameter")
            return candidate

        logger.warning("User upload not reachable with download parameter, inlining as data URL")
        try:
            media = await fetch_media(self._http, url, self._settings.fetch_timeout_seconds)
        except httpx.HTTPError as e:
            logger.error("Could not inline user upload, using original URL: %s", e)
            return url

        encoded = base64.b64encode(media.data).decode("ascii")
        logger.info("Inlined user upload as data URL (%d bytes, %s)", media.size, media.content_type)
        return f"data:{media.content_type};base64,{encoded}"

    async def _resolve_stored_object(self, url: str) -> str:
        ref = split_storage_url(url)
        if ref is None:
            logger.warning("Unrecognised storage URL format, adding download parameter instead")
            return with_download_marker(url)
        bucket, path = ref

        try:
            signed = await self._create_signed_url(
                bucket, path, self._settings.storage_signed_url_ttl
            )
        except Exception as e:
            logger.error("Could not sign %s/%s, falling back to download parameter: %s", bucket, path, e)
            return with_download_marker(url)

        if not signed:
            logger.error("No signed URL returned for %s/%s, falling back to download parameter", bucket, path)
            return with_download_marker(url)

        logger.info("Created signed URL for %s/%s", bucket, path)
        return signed

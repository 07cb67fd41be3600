"""Permanent storage for finished media.

Provider output URLs expire, so final results are copied into our own
bucket. Object paths are derived from the prediction id: persisting the same
prediction twice overwrites one object instead of producing a second one.
"""

import logging

import httpx

from visionary.config import Settings
from visionary.db.supabase_client import run_blocking
from visionary.errors import PersistenceFailed
from visionary.io.media_reader import extension_for, fetch_media, is_reachable
from visionary.storage.access_urls import signed_url_from, with_download_marker

logger = logging.getLogger(__name__)


class MediaStore:
    """Copies provider output into the generated-media bucket."""

    def __init__(self, supabase, http: httpx.AsyncClient, settings: Settings):
        self._supabase = supabase
        self._http = http
        self._settings = settings

    @property
    def bucket(self) -> str:
        return self._settings.generated_bucket

    def object_path(self, prediction_id: str, content_type: str) -> str:
        return f"{self._settings.final_folder}/{prediction_id}{extension_for(content_type)}"

    async def persist(self, source_url: str, prediction_id: str) -> str:
        """Fetch ``source_url`` and store it. Returns a URL to the stored copy.

        Raises:
            PersistenceFailed: the media could not be fetched or stored.
        """
        try:
            media = await fetch_media(self._http, source_url, self._settings.fetch_timeout_seconds)
        except httpx.HTTPError as e:
            raise PersistenceFailed(f"Failed to fetch media from {source_url}: {e}") from e

        path = self.object_path(prediction_id, media.content_type)
        bucket = self._supabase.storage.from_(self.bucket)
        logger.info(
            "Uploading %d bytes to %s/%s prediction=%s",
            media.size, self.bucket, path, prediction_id,
        )
        try:
            await run_blocking(
                bucket.upload,
                path,
                media.data,
                {"content-type": media.content_type, "upsert": "true"},
            )
            public_url = await run_blocking(bucket.get_public_url, path)
        except Exception as e:
            raise PersistenceFailed(f"Upload to {self.bucket}/{path} failed: {e}") from e

        accessible = with_download_marker(public_url.rstrip("?"))

        if await is_reachable(self._http, accessible, self._settings.probe_timeout_seconds):
            return accessible

        logger.warning("Stored media not directly reachable, trying signed URL for %s/%s", self.bucket, path)
        try:
            signed = signed_url_from(
                await run_blocking(
                    bucket.create_signed_url, path, self._settings.saved_media_signed_url_ttl
                )
            )
        except Exception as e:
            logger.error("Failed to create signed URL for %s/%s: %s", self.bucket, path, e)
            return accessible
        return signed or accessible

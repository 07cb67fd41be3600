"""Fetch remote media and work out what it is.

Used by the access-URL resolver (data-URL fallback), the face-swap
reachability probe and the media store.
"""

import io
import logging
import mimetypes
from dataclasses import dataclass
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

USER_AGENT = "VisionaryAI-Service/1.0"

# Extensions for types mimetypes maps poorly or not at all
_EXTENSION_OVERRIDES = {
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
}


@dataclass
class FetchedMedia:
    url: str
    data: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.data)


def sniff_content_type(data: bytes) -> Optional[str]:
    """Identify image bytes with Pillow. Returns None for anything else."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    if not fmt:
        return None
    return Image.MIME.get(fmt.upper())


def extension_for(content_type: str, default: str = ".jpg") -> str:
    base = content_type.split(";", 1)[0].strip().lower()
    if base in _EXTENSION_OVERRIDES:
        return _EXTENSION_OVERRIDES[base]
    return mimetypes.guess_extension(base) or default


async def fetch_media(
    http: httpx.AsyncClient,
    url: str,
    timeout: float,
    default_content_type: str = "image/jpeg",
) -> FetchedMedia:
    """GET ``url`` and return its bytes and content type.

    Raises httpx.HTTPError on transport failure or a non-2xx answer.
    """
    r = await http.get(
        url,
        headers={"User-Agent": USER_AGENT},
        timeout=timeout,
        follow_redirects=True,
    )
    r.raise_for_status()
    data = r.content
    header = r.headers.get("content-type", "").split(";", 1)[0].strip()
    if not header or header == "application/octet-stream":
        header = sniff_content_type(data) or header or default_content_type
    return FetchedMedia(url=url, data=data, content_type=header)


async def is_reachable(http: httpx.AsyncClient, url: str, timeout: float) -> bool:
    """HEAD probe. Any transport failure counts as unreachable."""
    try:
        r = await http.head(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.warning("HEAD probe failed for %s: %s", url[:120], e)
        return False
    return r.is_success

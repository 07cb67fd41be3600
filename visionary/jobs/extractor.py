"""Pull a single media URL out of a prediction's ``output`` field.

Model providers return inconsistent shapes (a bare URL, a list of URLs, a
list of objects, an object keyed by ``url``/``image``/``video``, or an
object wrapping another ``output``). The lookup order below is a
disambiguation rule callers rely on; first match wins.
"""

import json
import logging
from typing import Any, Optional

from visionary.errors import ExtractionFailed

logger = logging.getLogger(__name__)

_PRIORITY_KEYS = ("url", "image", "video")


def _is_url(value: Any) -> bool:
    return isinstance(value, str) and (
        value.startswith("http://") or value.startswith("https://")
    )


def _first_url(values) -> Optional[str]:
    for value in values:
        if _is_url(value):
            return value
    return None


def _find(output: Any) -> Optional[str]:
    if not output:
        return None

    if _is_url(output):
        return output

    if isinstance(output, (list, tuple)):
        found = _first_url(output)
        if found:
            return found
        first = output[0]
        # A lone non-URL string is still taken as the location
        if isinstance(first, str):
            return first
        if isinstance(first, dict):
            return _first_url(first.values())
        return None

    if isinstance(output, dict):
        for key in _PRIORITY_KEYS:
            if isinstance(output.get(key), str):
                return output[key]
        if "output" in output:
            return _find(output["output"])
        return _first_url(output.values())

    return None


def extract_output_url(output: Any) -> str:
    """Return the media URL carried by ``output``.

    Raises:
        ExtractionFailed: no URL could be found.
    """
    url = _find(output)
    if not url:
        try:
            shown = json.dumps(output)[:500]
        except (TypeError, ValueError):
            shown = repr(output)[:500]
        logger.warning("Could not extract URL from output: %s", shown)
        raise ExtractionFailed(f"Prediction succeeded but no output URL found. Output: {shown}")
    return url

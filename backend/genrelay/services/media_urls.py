"""Result URL extraction for history record items.

Item shapes differ between models and regions, so the extractor walks a
fixed list of known locations and takes the first hit.
"""

from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# Final video URLs occasionally appear in the raw history payload before the
# record status flips to success; the poller scans for this.
VIDEO_URL_PATTERN = re.compile(r"https://v[0-9]+-artist\.vlabvod\.com/[^\"\s]+")

_VIDEO_URL_PATHS: tuple[tuple[str, ...], ...] = (
    ("video", "transcoded_video", "origin", "video_url"),
    ("video", "play_url"),
    ("video", "download_url"),
    ("video", "url"),
)


def _dig(obj: Any, path: tuple[str | int, ...]) -> Any:
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        elif isinstance(obj, dict):
            obj = obj.get(key)
        else:
            return None
    return obj


def extract_video_url(item: Any) -> str | None:
    """First non-empty video URL in ``item``, or None."""
    for path in _VIDEO_URL_PATHS:
        url = _dig(item, path)
        if url:
            return url
    return None


_IMAGE_URL_PATHS: tuple[tuple[str | int, ...], ...] = (
    ("image", "large_images", 0, "image_url"),
    ("common_attr", "cover_url"),
    ("image_url",),
    ("url",),
)


def extract_image_url(item: Any) -> str | None:
    """First non-empty image URL in ``item``, or None."""
    for path in _IMAGE_URL_PATHS:
        url = _dig(item, path)
        if url:
            return url
    return None


def extract_image_urls(items: Any) -> list[str]:
    """Image URLs for every item that carries one, in item order."""
    urls = []
    for index, item in enumerate(items or []):
        url = extract_image_url(item)
        if url:
            urls.append(url)
        else:
            logger.warning("Image %d: no URL in item %s", index + 1, item)
    return urls

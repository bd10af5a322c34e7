"""Decide whether a raw entry can plausibly yield an image."""

from __future__ import annotations

from typing import Any, Final, Mapping

from bs4 import BeautifulSoup

_INLINE_MARKERS: Final[tuple[str, ...]] = ("<img", "<figure", "<picture")
# Checked in order; the first non-blank value is also the fallback image URL.
MEDIA_METADATA_KEYS: Final[tuple[str, ...]] = (
    "enclosure_url",
    "media_content",
    "media_thumbnail",
    "itunes_image",
)


def _media_value(value: Any) -> str | None:
    """Return a URL from a metadata value (plain string, ``{"url": ...}`` or a list of those)."""

    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, Mapping):
        return _media_value(value.get("url") or value.get("href"))
    if isinstance(value, (list, tuple)):
        for item in value:
            found = _media_value(item)
            if found:
                return found
    return None


def has_potential_image(content: str | None, metadata: Mapping[str, Any] | None = None) -> bool:
    """Return True when content markup or provider metadata shows evidence of an image."""

    lowered = (content or "").lower()
    if any(marker in lowered for marker in _INLINE_MARKERS):
        return True

    metadata = metadata or {}
    return any(_media_value(metadata.get(key)) for key in MEDIA_METADATA_KEYS)


def extract_image_url(content: str | None, metadata: Mapping[str, Any] | None = None) -> str | None:
    """Return the first usable image URL for an entry, or None.

    Inline ``<img src>`` wins over metadata; empty and ``data:`` sources are
    skipped.
    """

    if content:
        soup = BeautifulSoup(content, "html.parser")
        for img in soup.find_all("img", src=True):
            src = str(img["src"]).strip()
            if src and not src.lower().startswith("data:"):
                return src

    metadata = metadata or {}
    for key in MEDIA_METADATA_KEYS:
        found = _media_value(metadata.get(key))
        if found:
            return found
    return None


__all__ = ["MEDIA_METADATA_KEYS", "extract_image_url", "has_potential_image"]

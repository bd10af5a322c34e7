"""Content and source fingerprints for the image download cache."""

from __future__ import annotations

from pathlib import Path
from typing import Final

import xxhash

KIND_URL: Final[str] = "url"
KIND_CONTENT: Final[str] = "content"


def compute_content_hash(path: Path, chunk_size: int = 1 << 20) -> str:
    """Compute the 64-bit content hash for a file.

    Uses ``xxhash.xxh64`` over the raw file bytes and returns a 16-character
    lowercase hexadecimal string.
    """

    hasher = xxhash.xxh64()

    with path.open("rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)

    return f"{hasher.intdigest():016x}"


def compute_url_hash(url: str) -> str:
    """Hash the originating URL, stripped of surrounding whitespace."""

    return f"{xxhash.xxh64(url.strip().encode('utf-8')).intdigest():016x}"


def cache_key(kind: str, preset: str, digest: str) -> str:
    """Build the ``<kind>:<preset>:<digest>`` key used by the image cache."""

    return f"{kind}:{preset}:{digest}"


def url_cache_key(url: str, preset: str) -> str:
    return cache_key(KIND_URL, preset, compute_url_hash(url))


def content_cache_key(path: Path, preset: str) -> str:
    return cache_key(KIND_CONTENT, preset, compute_content_hash(path))


__all__ = [
    "KIND_CONTENT",
    "KIND_URL",
    "cache_key",
    "compute_content_hash",
    "compute_url_hash",
    "content_cache_key",
    "url_cache_key",
]

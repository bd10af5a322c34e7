"""
Storage backends for processed images.

The backend is chosen once at worker startup from ``storage.backend``:
``s3`` (boto3), ``cdn`` (Cloudinary) or ``local`` (filesystem).
"""

from __future__ import annotations

from imagefeed.config import StorageConfig
from imagefeed.errors import ConfigurationError

from .base import BaseStorage
from .local import LocalStorage


def build_storage(config: StorageConfig) -> BaseStorage:
    """Instantiate the configured storage backend."""

    backend = (config.backend or "").strip().lower()
    if backend == "local":
        return LocalStorage(config)
    if backend == "s3":
        from .s3 import S3Storage

        return S3Storage(config)
    if backend == "cdn":
        from .cdn import CdnStorage

        return CdnStorage(config)
    raise ConfigurationError(f"unknown storage backend: {config.backend!r}")


__all__ = [
    "BaseStorage",
    "LocalStorage",
    "build_storage",
]

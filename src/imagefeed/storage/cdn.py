"""Cloudinary image CDN backend."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

from imagefeed.config import StorageConfig
from imagefeed.errors import ConfigurationError, ImageStoreError
from imagefeed.storage.base import BaseStorage
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "storage"})


def _configure(cdn_url: str) -> None:
    """Apply a ``cloudinary://<key>:<secret>@<cloud>`` URL to the SDK."""

    parsed = urlparse(cdn_url)
    if parsed.scheme != "cloudinary" or not parsed.hostname:
        raise ConfigurationError("storage.cdn_url must look like cloudinary://<key>:<secret>@<cloud>")
    cloudinary.config(
        cloud_name=parsed.hostname,
        api_key=parsed.username,
        api_secret=parsed.password,
        secure=True,
    )


class CdnStorage(BaseStorage):
    """Upload processed images to Cloudinary under a fixed folder."""

    def __init__(self, config: StorageConfig) -> None:
        if not config.cdn_url:
            raise ConfigurationError("storage.cdn_url is required for the cdn backend")
        _configure(config.cdn_url)
        self.folder = config.cdn_folder

    def store(self, local_file: Path, identity: str) -> str:
        try:
            result = cloudinary.uploader.upload(
                str(local_file),
                public_id=identity,
                folder=self.folder,
                overwrite=True,
            )
        except CloudinaryError as exc:
            raise ImageStoreError(f"cdn upload of {identity} failed: {exc}") from exc

        url = result.get("secure_url") if isinstance(result, dict) else None
        if not url:
            raise ImageStoreError(f"cdn upload of {identity} returned no url")
        LOGGER.debug("cdn_object_stored", extra={"identity": identity, "url": url})
        return str(url)

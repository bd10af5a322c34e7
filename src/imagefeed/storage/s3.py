"""S3-compatible object storage backend."""

from __future__ import annotations

from pathlib import Path

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from imagefeed.config import StorageConfig
from imagefeed.errors import ConfigurationError, ImageStoreError
from imagefeed.storage.base import BaseStorage
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "storage"})

_EXTRA_ARGS = {"ContentType": "image/jpeg", "CacheControl": "max-age=31536000"}


class S3Storage(BaseStorage):
    """Upload processed images to an S3 (or S3-compatible) bucket."""

    def __init__(self, config: StorageConfig, client=None) -> None:
        if not config.bucket:
            raise ConfigurationError("storage.bucket is required for the s3 backend")

        self.bucket = config.bucket
        self.region = config.region
        self.endpoint_url = config.endpoint_url
        self.public_base_url = config.public_base_url
        self.key_prefix = config.key_prefix or ""

        if client is None:
            session = boto3.session.Session()
            client = session.client(
                "s3",
                region_name=config.region,
                endpoint_url=config.endpoint_url,
                aws_access_key_id=config.access_key_id,
                aws_secret_access_key=config.secret_access_key,
            )
        self.client = client

    def _public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint_url:
            protocol, _, host = self.endpoint_url.partition("://")
            return f"{protocol}://{self.bucket}.{host.rstrip('/')}/{key}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def store(self, local_file: Path, identity: str) -> str:
        key = f"{self.key_prefix}{self.object_name(identity)}"
        try:
            self.client.upload_file(str(local_file), self.bucket, key, ExtraArgs=dict(_EXTRA_ARGS))
        except (BotoCoreError, ClientError, S3UploadFailedError) as exc:
            raise ImageStoreError(f"s3 upload of {key} failed: {exc}") from exc

        url = self._public_url(key)
        LOGGER.debug("s3_object_stored", extra={"bucket": self.bucket, "key": key, "url": url})
        return url

"""Fetch, transform, store and persist the image of one entry.

Each job walks ``PENDING -> FETCHED -> TRANSFORMED -> STORED -> PERSISTED``
and always ends in ``CLEANED`` once its temporary files are gone. A failure
of the image stage itself ends the job in ``FAILED``; there is no retry and
the entry is left to the completeness purge.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from imagefeed.config import ImageConfig
from imagefeed.db import Entry
from imagefeed.errors import ImageFetchError, ImagePipelineError
from imagefeed.hasher import KIND_CONTENT, KIND_URL, content_cache_key, url_cache_key
from imagefeed.image_cache import CachedImage, ImageCache
from imagefeed.payloads import ImageJob
from imagefeed.storage.base import BaseStorage
from imagefeed.thumbnailing import transform_image
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "image_pipeline"})


class ImageJobState(str, Enum):
    PENDING = "pending"
    FETCHED = "fetched"
    TRANSFORMED = "transformed"
    STORED = "stored"
    PERSISTED = "persisted"
    FAILED = "failed"
    CLEANED = "cleaned"


@dataclass
class ImageJobResult:
    """Outcome of one job, including every state it passed through."""

    job: ImageJob
    state: ImageJobState = ImageJobState.PENDING
    history: list[ImageJobState] = field(default_factory=lambda: [ImageJobState.PENDING])
    image: dict[str, Any] | None = None
    cache_hit: str | None = None
    error: str | None = None

    def advance(self, state: ImageJobState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def persisted(self) -> bool:
        return ImageJobState.PERSISTED in self.history

    @property
    def failed(self) -> bool:
        return ImageJobState.FAILED in self.history


class ImageUploadPipeline:
    """Run image jobs against a storage backend and the entry store."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        storage: BaseStorage,
        *,
        settings: ImageConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._storage = storage
        self._settings = settings or ImageConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(self._settings.read_timeout, connect=self._settings.connect_timeout),
            follow_redirects=True,
            headers={"User-Agent": self._settings.user_agent},
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def run(self, job: ImageJob | Mapping[str, Any]) -> ImageJobResult:
        if not isinstance(job, ImageJob):
            job = ImageJob.from_dict(job)

        result = ImageJobResult(job=job)
        temp_files: list[Path] = []
        try:
            with self._session_factory() as session:
                try:
                    image = self._process(job, ImageCache(session), result, temp_files)
                    self._persist(session, job, image, result)
                except ImagePipelineError as exc:
                    session.rollback()
                    result.error = str(exc)
                    result.advance(ImageJobState.FAILED)
                    LOGGER.warning(
                        "image_job_failed",
                        extra={"id": job.id, "original_url": job.original_url, "error": str(exc)},
                    )
        finally:
            self._cleanup(temp_files)
            result.advance(ImageJobState.CLEANED)
        return result

    def _preset_name(self, job: ImageJob) -> str:
        if job.transform_preset in self._settings.presets:
            return job.transform_preset
        return self._settings.default_preset

    def _process(
        self, job: ImageJob, cache: ImageCache, result: ImageJobResult, temp_files: list[Path]
    ) -> CachedImage:
        preset_name = self._preset_name(job)
        preset = self._settings.preset(preset_name)

        url_key = url_cache_key(job.original_url, preset_name)
        cached = cache.lookup(url_key)
        if cached is not None:
            result.cache_hit = KIND_URL
            return cached

        source = self._fetch(job.original_url, temp_files)
        result.advance(ImageJobState.FETCHED)

        content_key = content_cache_key(source, preset_name)
        cached = cache.lookup(content_key)
        if cached is not None:
            result.cache_hit = KIND_CONTENT
            image = CachedImage(
                original_url=job.original_url,
                processed_url=cached.processed_url,
                width=cached.width,
                height=cached.height,
            )
            self._remember(cache, [(url_key, KIND_URL)], preset_name, image)
            return image

        output = self._temp_path(".jpg", temp_files)
        transformed = transform_image(source, output, preset)
        result.advance(ImageJobState.TRANSFORMED)

        processed_url = self._storage.store(transformed.path, job.id)
        result.advance(ImageJobState.STORED)

        image = CachedImage(
            original_url=job.original_url,
            processed_url=processed_url,
            width=transformed.width,
            height=transformed.height,
        )
        self._remember(cache, [(url_key, KIND_URL), (content_key, KIND_CONTENT)], preset_name, image)
        return image

    def _temp_path(self, suffix: str, temp_files: list[Path]) -> Path:
        handle, name = tempfile.mkstemp(prefix="imagefeed-", suffix=suffix, dir=self._settings.temp_dir)
        os.close(handle)
        path = Path(name)
        temp_files.append(path)
        return path

    def _fetch(self, url: str, temp_files: list[Path]) -> Path:
        """Stream ``url`` into a temp file, enforcing the byte ceiling."""

        max_bytes = self._settings.max_bytes
        path = self._temp_path(".download", temp_files)
        try:
            with self._client.stream("GET", url) as response:
                if not response.is_success:
                    raise ImageFetchError(f"GET {url} returned {response.status_code}")

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise ImageFetchError(f"GET {url} declares {declared} bytes, limit is {max_bytes}")

                total = 0
                with path.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        total += len(chunk)
                        if total > max_bytes:
                            raise ImageFetchError(f"GET {url} exceeded {max_bytes} bytes")
                        handle.write(chunk)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ImageFetchError(f"GET {url} failed: {exc}") from exc

        if total == 0:
            raise ImageFetchError(f"GET {url} returned an empty body")
        return path

    def _remember(
        self, cache: ImageCache, keys: list[tuple[str, str]], preset_name: str, image: CachedImage
    ) -> None:
        for fingerprint, kind in keys:
            try:
                cache.record(fingerprint, kind, preset_name, image)
            except SQLAlchemyError as exc:
                cache.rollback()
                LOGGER.warning("image_cache_write_failed", extra={"fingerprint": fingerprint, "error": str(exc)})

    def _persist(self, session: Session, job: ImageJob, image: CachedImage, result: ImageJobResult) -> None:
        """Replace the entry's image in a single statement."""

        payload = image.as_image()
        outcome = session.execute(
            update(Entry)
            .where(Entry.public_id == job.id)
            .values(image=payload)
            .execution_options(synchronize_session=False)
        )
        if not outcome.rowcount:
            raise ImagePipelineError(f"entry {job.id} no longer exists")
        session.commit()

        result.image = payload
        result.advance(ImageJobState.PERSISTED)
        LOGGER.info("image_uploaded", extra={"id": job.id, **payload, "cache_hit": result.cache_hit})

    def _cleanup(self, temp_files: list[Path]) -> None:
        for path in temp_files:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("image_temp_cleanup_failed", extra={"path": str(path), "error": str(exc)})


__all__ = ["ImageJobResult", "ImageJobState", "ImageUploadPipeline"]

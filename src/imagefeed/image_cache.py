"""Content-addressed cache of already processed and stored images."""

from __future__ import annotations

import time
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from imagefeed.db import ImageCacheRecord
from imagefeed.db_helpers import dialect_insert


@dataclass(frozen=True)
class CachedImage:
    """Stored image attributes, shaped like the ``entries.image`` object."""

    original_url: str
    processed_url: str
    width: int
    height: int

    def as_image(self) -> dict[str, object]:
        return {
            "original_url": self.original_url,
            "processed_url": self.processed_url,
            "width": self.width,
            "height": self.height,
        }


class ImageCache:
    """Look up and record processed images by fingerprint."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def lookup(self, fingerprint: str) -> CachedImage | None:
        row = self._session.execute(
            select(ImageCacheRecord).where(ImageCacheRecord.fingerprint == fingerprint)
        ).scalar_one_or_none()
        if row is None:
            return None
        return CachedImage(
            original_url=row.original_url,
            processed_url=row.processed_url,
            width=row.width,
            height=row.height,
        )

    def record(self, fingerprint: str, kind: str, preset: str, image: CachedImage) -> None:
        """Insert a cache row; an existing row for the fingerprint wins."""

        stmt = dialect_insert(self._session, ImageCacheRecord).values(
            fingerprint=fingerprint,
            kind=kind,
            transform_preset=preset,
            original_url=image.original_url,
            processed_url=image.processed_url,
            width=image.width,
            height=image.height,
            created_at=time.time(),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=[ImageCacheRecord.fingerprint])
        self._session.execute(stmt)
        self._session.commit()

    def rollback(self) -> None:
        self._session.rollback()


__all__ = ["CachedImage", "ImageCache"]

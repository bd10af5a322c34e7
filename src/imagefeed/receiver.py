"""Idempotent upsert of dispatcher batches into the entry store."""

from __future__ import annotations

import time
import traceback
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from imagefeed.candidates import extract_image_url, has_potential_image
from imagefeed.config import ImageConfig
from imagefeed.db import Entry, Feed
from imagefeed.errors import ErrorKind, FeedNotFoundError, PayloadValidationError, classify_exception
from imagefeed.observability import (
    ENTRY_ALTERNATE_EXISTS,
    ENTRY_CREATE,
    ENTRY_SKIPPED_NO_IMAGE,
    CounterMetrics,
    ErrorReporter,
    LoggingErrorReporter,
    Metrics,
)
from imagefeed.payloads import DispatchMessage, EntryPayload, ImageJob, parse_timestamp
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "receiver"})

ImageEnqueuer = Callable[[ImageJob], None]

_FEED_COLUMNS = frozenset({"title", "feed_url", "site_url", "self_url", "etag", "last_modified"})
_FEED_TIMESTAMP_COLUMNS = frozenset({"last_published_entry"})


@dataclass
class ReceiveResult:
    """Per-outcome counts for one dispatcher batch."""

    feed_id: int
    created: int = 0
    updated: int = 0
    skipped_no_image: int = 0
    alternate_exists: int = 0
    conflicts: int = 0
    invalid: int = 0
    failed: int = 0
    image_jobs: list[ImageJob] = field(default_factory=list)


class EntryReceiver:
    """Upsert a batch of items for one feed.

    Each item is handled in its own transaction: a failing item is rolled
    back and dropped while the rest of the batch continues. Existing rows
    are found by ``public_id`` first and by ``(feed_id, url)`` second.
    """

    def __init__(
        self,
        session: Session,
        *,
        metrics: Metrics | None = None,
        error_reporter: ErrorReporter | None = None,
        image_enqueuer: ImageEnqueuer | None = None,
        image_settings: ImageConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._metrics = metrics or CounterMetrics()
        self._error_reporter = error_reporter or LoggingErrorReporter()
        self._image_enqueuer = image_enqueuer
        self._image_settings = image_settings or ImageConfig()
        self._clock = clock

    def receive(self, message: DispatchMessage | Mapping[str, Any]) -> ReceiveResult:
        """Process one dispatcher message and update feed metadata afterwards."""

        if not isinstance(message, DispatchMessage):
            message = DispatchMessage.from_dict(message)

        feed_id = message.feed.id
        feed = self._session.get(Feed, feed_id)
        if feed is None:
            raise FeedNotFoundError(f"feed {feed_id} does not exist")

        result = ReceiveResult(feed_id=feed_id)
        if message.entries:
            self.receive_entries(message.entries, feed_id, result)

        self._update_feed(feed_id, message.feed.metadata)
        LOGGER.info(
            "receive_complete",
            extra={
                "feed_id": feed_id,
                "items": len(message.entries),
                "created_count": result.created,
                "updated": result.updated,
                "skipped_no_image": result.skipped_no_image,
                "failed": result.failed,
            },
        )
        return result

    def receive_entries(
        self, items: Iterable[Mapping[str, Any]], feed_id: int, result: ReceiveResult | None = None
    ) -> ReceiveResult:
        items = list(items)
        result = result or ReceiveResult(feed_id=feed_id)
        by_public_id, by_url = self._prefetch(items, feed_id)

        for raw in items:
            updating = False
            try:
                payload = EntryPayload.from_dict(raw)
                entry = self._find_existing(payload, feed_id, by_public_id, by_url)
                if entry is not None:
                    updating = True
                    self._update_entry(entry, payload)
                    result.updated += 1
                else:
                    entry = self._create_entry(payload, feed_id, result)
                if entry is not None:
                    # Later items in this batch must see rows written by earlier ones.
                    by_public_id.setdefault(payload.public_id, entry.id)
                    if payload.url:
                        by_url.setdefault(payload.url, entry.id)
            except OperationalError:
                self._session.rollback()
                raise
            except Exception as exc:
                self._session.rollback()
                self._handle_item_error(exc, raw, feed_id, updating, result)

        return result

    def _prefetch(
        self, items: list[Mapping[str, Any]], feed_id: int
    ) -> tuple[dict[str, int], dict[str, int]]:
        public_ids = [item.get("public_id") for item in items if isinstance(item, Mapping)]
        public_ids = [value for value in public_ids if isinstance(value, str) and value]
        urls = [item.get("url") for item in items if isinstance(item, Mapping)]
        urls = [value for value in urls if isinstance(value, str) and value]

        by_public_id: dict[str, int] = {}
        if public_ids:
            rows = self._session.execute(
                select(Entry.id, Entry.public_id).where(Entry.public_id.in_(public_ids))
            ).all()
            by_public_id = {row.public_id: row.id for row in rows}

        by_url: dict[str, int] = {}
        if urls:
            rows = self._session.execute(
                select(Entry.id, Entry.url).where(Entry.feed_id == feed_id, Entry.url.in_(urls))
            ).all()
            by_url = {row.url: row.id for row in rows}

        return by_public_id, by_url

    def _find_existing(
        self,
        payload: EntryPayload,
        feed_id: int,
        by_public_id: dict[str, int],
        by_url: dict[str, int],
    ) -> Entry | None:
        entry_id = by_public_id.get(payload.public_id)
        if entry_id is None and payload.url:
            entry_id = by_url.get(payload.url)
        if entry_id is None:
            return None
        # The prefetched row may have been purged since the batch started.
        return self._session.get(Entry, entry_id)

    def _find_for_create(self, payload: EntryPayload, feed_id: int) -> Entry | None:
        stmt = select(Entry).where(Entry.feed_id == feed_id)
        if payload.url:
            stmt = stmt.where(Entry.url == payload.url)
        else:
            stmt = stmt.where(Entry.public_id == payload.public_id)
        return self._session.execute(stmt.order_by(Entry.id).limit(1)).scalar_one_or_none()

    def _public_id_exists(self, public_id: str) -> bool:
        found = self._session.execute(select(Entry.id).where(Entry.public_id == public_id).limit(1))
        return found.scalar_one_or_none() is not None

    def _assign(self, entry: Entry, payload: EntryPayload, now: float) -> None:
        for key, value in payload.content_fields().items():
            setattr(entry, key, value)
        if payload.provider_metadata:
            entry.data = {**(entry.data or {}), **payload.provider_metadata}
        entry.updated_at = now

    def _update_entry(self, entry: Entry, payload: EntryPayload) -> None:
        self._assign(entry, payload, self._clock())
        self._session.commit()
        LOGGER.debug("entry_updated", extra={"entry_id": entry.id, "public_id": payload.public_id})

    def _create_entry(self, payload: EntryPayload, feed_id: int, result: ReceiveResult) -> Entry | None:
        alternate = payload.alternate_public_id
        if alternate and self._public_id_exists(alternate):
            self._metrics.increment(ENTRY_ALTERNATE_EXISTS)
            result.alternate_exists += 1
            return None

        if not has_potential_image(payload.content, payload.provider_metadata):
            self._metrics.increment(ENTRY_SKIPPED_NO_IMAGE)
            result.skipped_no_image += 1
            LOGGER.info("entry_skipped_no_image", extra={"feed_id": feed_id, "public_id": payload.public_id})
            return None

        now = self._clock()
        entry = self._find_for_create(payload, feed_id)
        is_new = entry is None
        if entry is None:
            entry = Entry(feed_id=feed_id, public_id=payload.public_id, data={}, created_at=now)
            self._session.add(entry)
        self._assign(entry, payload, now)
        # A concurrent worker inserting the same identity surfaces here as IntegrityError.
        self._session.flush()
        self._session.commit()

        if not is_new:
            result.updated += 1
            return entry

        self._metrics.increment(ENTRY_CREATE)
        result.created += 1
        LOGGER.info("entry_created", extra={"feed_id": feed_id, "entry_id": entry.id, "public_id": payload.public_id})
        self._enqueue_image(payload, result)
        return entry

    def _enqueue_image(self, payload: EntryPayload, result: ReceiveResult) -> None:
        image_url = extract_image_url(payload.content, payload.provider_metadata)
        if not image_url:
            LOGGER.info("entry_image_url_missing", extra={"public_id": payload.public_id})
            return
        if payload.url:
            image_url = urljoin(payload.url, image_url)

        job = ImageJob(
            id=payload.public_id,
            original_url=image_url,
            transform_preset=self._image_settings.default_preset,
        )
        result.image_jobs.append(job)
        if self._image_enqueuer is not None:
            self._image_enqueuer(job)

    def _handle_item_error(
        self, exc: Exception, raw: Any, feed_id: int, updating: bool, result: ReceiveResult
    ) -> None:
        kind = classify_exception(exc)
        if kind is ErrorKind.IDENTITY_CONFLICT:
            result.conflicts += 1
            LOGGER.debug("entry_identity_conflict", extra={"feed_id": feed_id, "error": str(exc)})
            return
        if kind is ErrorKind.VALIDATION:
            result.invalid += 1
            LOGGER.debug("entry_validation_failed", extra={"feed_id": feed_id, "error": str(exc)})
            return

        result.failed += 1
        action = "update" if updating else "create"
        self._error_reporter.notify(
            error_class=f"Receiver#{action}",
            message=f"Entry {action} failed",
            parameters={
                "feed_id": feed_id,
                "item": raw,
                "exception": exc,
                "backtrace": traceback.format_exception(type(exc), exc, exc.__traceback__),
            },
        )
        LOGGER.info("entry_error", extra={"feed_id": feed_id, "error": repr(exc)})

    def _update_feed(self, feed_id: int, metadata: Mapping[str, Any]) -> None:
        feed = self._session.get(Feed, feed_id)
        if feed is None:
            LOGGER.warning("feed_missing_after_batch", extra={"feed_id": feed_id})
            return

        now = self._clock()
        extras: dict[str, Any] = {}
        for key, value in metadata.items():
            if key in _FEED_COLUMNS:
                setattr(feed, key, value)
            elif key in _FEED_TIMESTAMP_COLUMNS:
                try:
                    setattr(feed, key, parse_timestamp(value))
                except PayloadValidationError as exc:
                    LOGGER.debug("feed_metadata_invalid", extra={"feed_id": feed_id, "key": key, "error": str(exc)})
            else:
                extras[key] = value

        if extras:
            feed.options = {**(feed.options or {}), **extras}
        feed.last_crawled_at = now
        feed.updated_at = now
        self._session.commit()


__all__ = ["EntryReceiver", "ImageEnqueuer", "ReceiveResult"]

"""Remove stale entries that never acquired a complete image."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field

from sqlalchemy import or_, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from imagefeed.db import IMAGE_FIELDS, Entry
from imagefeed.db_helpers import dialect_name
from imagefeed.dependents import delete_entries_with_dependents, present_dependent_tables
from imagefeed.errors import ErrorKind
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "purge"})

DEFAULT_GRACE_PERIOD_SECONDS = 3600.0
DEFAULT_BATCH_SIZE = 500


@dataclass
class PurgeResult:
    """Summary of one purge run."""

    purged: int = 0
    batches: int = 0
    failed_batches: int = 0
    dependents: Counter = field(default_factory=Counter)


def incomplete_image_clause():
    """SQL predicate matching entries whose image is missing or lacks a required key."""

    return or_(Entry.image.is_(None), *(Entry.image[key].as_string().is_(None) for key in IMAGE_FIELDS))


def _stale_incomplete(cutoff: float):
    return (Entry.created_at < cutoff, incomplete_image_clause())


def _lock_still_incomplete(session: Session, entry_ids: list[int], cutoff: float) -> list[int]:
    """Re-check ``entry_ids`` inside the delete transaction.

    An image job may have completed an entry since the batch was selected.
    On PostgreSQL the surviving rows are locked so a concurrent image write
    waits for the delete.
    """

    stmt = select(Entry.id).where(Entry.id.in_(entry_ids), *_stale_incomplete(cutoff)).order_by(Entry.id)
    if dialect_name(session) == "postgresql":
        stmt = stmt.with_for_update()
    return list(session.execute(stmt).scalars())


def purge_entries_without_images(
    session: Session,
    *,
    grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
    batch_size: int = DEFAULT_BATCH_SIZE,
    now: float | None = None,
) -> PurgeResult:
    """Delete entries older than the grace period whose image is incomplete.

    Ids are taken in ascending batches; each batch clears its dependent rows
    and the entries in one transaction. A batch that fails with a database
    error is rolled back and skipped, the next run picks it up again. Rows
    are re-checked inside the delete transaction so an image completed in
    the meantime survives. Connectivity errors propagate.
    """

    cutoff = (time.time() if now is None else now) - grace_period_seconds
    batch_size = max(1, int(batch_size))
    tables = present_dependent_tables(session)
    result = PurgeResult()

    last_id = 0
    while True:
        batch_ids = list(
            session.execute(
                select(Entry.id)
                .where(*_stale_incomplete(cutoff), Entry.id > last_id)
                .order_by(Entry.id)
                .limit(batch_size)
            ).scalars()
        )
        if not batch_ids:
            break
        last_id = batch_ids[-1]
        result.batches += 1

        try:
            doomed_ids = _lock_still_incomplete(session, batch_ids, cutoff)
            deleted, counts = delete_entries_with_dependents(session, doomed_ids, tables)
            session.commit()
        except OperationalError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            result.failed_batches += 1
            LOGGER.error(
                "purge_batch_failed",
                extra={
                    "kind": ErrorKind.MAINTENANCE.value,
                    "first_id": batch_ids[0],
                    "last_id": last_id,
                    "size": len(batch_ids),
                    "error": str(exc),
                },
            )
            continue

        result.purged += deleted
        result.dependents.update(counts)
        LOGGER.info("purge_batch_done", extra={"deleted": deleted, "last_id": last_id})

    if result.batches:
        LOGGER.info(
            "purge_complete",
            extra={"purged": result.purged, "batches": result.batches, "failed_batches": result.failed_batches},
        )
    return result


__all__ = ["PurgeResult", "incomplete_image_clause", "purge_entries_without_images"]

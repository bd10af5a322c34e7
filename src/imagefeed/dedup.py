"""Collapse historical ``(feed_id, url)`` duplicates and enforce uniqueness going forward."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from imagefeed.db import Entry
from imagefeed.dependents import collapse_dependents, present_dependent_tables, repoint_dependents
from imagefeed.errors import ErrorKind
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "dedup"})

UNIQUE_URL_INDEX = "index_entries_on_feed_id_and_url_hash"
_URL_PRESENT = "url IS NOT NULL AND url <> ''"


@dataclass
class DedupResult:
    groups: int = 0
    entries_removed: int = 0
    dependents_repointed: int = 0
    dependents_collapsed: int = 0
    failed_groups: int = 0
    index_name: str | None = None


def _duplicate_groups(session: Session) -> list[tuple[int, str]]:
    stmt = (
        select(Entry.feed_id, Entry.url)
        .where(Entry.url.is_not(None), Entry.url != "")
        .group_by(Entry.feed_id, Entry.url)
        .having(func.count(Entry.id) > 1)
        .order_by(Entry.feed_id, Entry.url)
    )
    return [(row.feed_id, row.url) for row in session.execute(stmt)]


def deduplicate_entries(session: Session) -> DedupResult:
    """Keep the lowest id of every duplicate group and fold the others into it.

    Dependent rows of each duplicate are re-pointed at the kept entry before
    the duplicate is deleted; rows that then repeat an owner for the kept
    entry are collapsed. Each group commits on its own, so the job can be
    interrupted and re-run safely.
    """

    tables = present_dependent_tables(session)
    result = DedupResult()

    for feed_id, url in _duplicate_groups(session):
        ids = list(
            session.execute(
                select(Entry.id).where(Entry.feed_id == feed_id, Entry.url == url).order_by(Entry.id)
            ).scalars()
        )
        if len(ids) < 2:
            continue

        kept_id, duplicate_ids = ids[0], ids[1:]
        try:
            repointed = 0
            for duplicate_id in duplicate_ids:
                repointed += repoint_dependents(session, duplicate_id, kept_id, tables)
                session.execute(delete(Entry).where(Entry.id == duplicate_id))
            collapsed = collapse_dependents(session, kept_id, tables)
            session.commit()
        except OperationalError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            result.failed_groups += 1
            LOGGER.error(
                "dedup_group_failed",
                extra={"kind": ErrorKind.MAINTENANCE.value, "feed_id": feed_id, "kept_id": kept_id, "error": str(exc)},
            )
            continue

        result.groups += 1
        result.entries_removed += len(duplicate_ids)
        result.dependents_repointed += repointed
        result.dependents_collapsed += collapsed
        LOGGER.debug(
            "dedup_group_done",
            extra={"feed_id": feed_id, "kept_id": kept_id, "removed": len(duplicate_ids), "collapsed": collapsed},
        )

    LOGGER.info(
        "dedup_complete",
        extra={
            "groups": result.groups,
            "entries_removed": result.entries_removed,
            "dependents_repointed": result.dependents_repointed,
            "dependents_collapsed": result.dependents_collapsed,
            "failed_groups": result.failed_groups,
        },
    )
    return result


def install_unique_url_index(engine: Engine) -> str:
    """Create the partial unique index on ``(feed_id, url)``; a no-op when it exists.

    PostgreSQL indexes ``md5(url)`` so long URLs stay within the btree row
    limit and builds the index concurrently outside a transaction.
    """

    dialect = engine.dialect.name
    if dialect == "sqlite":
        ddl = (
            f"CREATE UNIQUE INDEX IF NOT EXISTS {UNIQUE_URL_INDEX} "
            f"ON entries (feed_id, url) WHERE {_URL_PRESENT}"
        )
        with engine.begin() as conn:
            conn.execute(text(ddl))
    elif dialect.startswith("postgresql"):
        ddl = (
            f"CREATE UNIQUE INDEX CONCURRENTLY IF NOT EXISTS {UNIQUE_URL_INDEX} "
            f"ON entries (feed_id, md5(url)) WHERE {_URL_PRESENT}"
        )
        with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.execute(text(ddl))
    else:
        raise NotImplementedError(f"Unsupported dialect for unique url index: {dialect}")

    LOGGER.info("unique_url_index_installed", extra={"index": UNIQUE_URL_INDEX, "dialect": dialect})
    return UNIQUE_URL_INDEX


def reconcile(session: Session) -> DedupResult:
    """Deduplicate, then install the unique index on the session's engine."""

    result = deduplicate_entries(session)
    session.commit()
    bind = session.get_bind()
    engine = bind if isinstance(bind, Engine) else bind.engine
    result.index_name = install_unique_url_index(engine)
    return result


__all__ = ["UNIQUE_URL_INDEX", "DedupResult", "deduplicate_entries", "install_unique_url_index", "reconcile"]

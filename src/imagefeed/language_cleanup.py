"""Remove entries whose title or summary is written in a non-Latin script."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from imagefeed.db import Entry
from imagefeed.dependents import delete_entries_with_dependents, present_dependent_tables
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "language_cleanup"})

NON_ENGLISH_PATTERN = re.compile(
    r"["
    r"\u4E00-\u9FFF"  # CJK unified ideographs
    r"\u3040-\u30FF"  # hiragana, katakana
    r"\uAC00-\uD7AF"  # hangul syllables
    r"\u1100-\u11FF"  # hangul jamo
    r"\u0400-\u04FF"  # cyrillic
    r"\u0600-\u06FF"  # arabic
    r"\u0590-\u05FF"  # hebrew
    r"\u0E00-\u0E7F"  # thai
    r"\u3000-\u303F"  # CJK punctuation
    r"\uFF00-\uFFEF"  # half/full width forms
    r"]"
)


@dataclass
class CleanupResult:
    checked: int = 0
    deleted: int = 0
    dry_run: bool = False
    dependents: Counter = field(default_factory=Counter)


def is_non_english(text: str | None) -> bool:
    if not text or not text.strip():
        return False
    return NON_ENGLISH_PATTERN.search(text) is not None


def cleanup_non_english_entries(
    session: Session,
    *,
    dry_run: bool = False,
    batch_size: int = 500,
    max_deletions: int = 5000,
) -> CleanupResult:
    """Scan entries in id order and delete the non-English ones with their dependents.

    ``dry_run`` only counts matches. The scan stops once ``max_deletions``
    entries have been deleted (or would have been).
    """

    batch_size = max(1, int(batch_size))
    tables = [] if dry_run else present_dependent_tables(session)
    result = CleanupResult(dry_run=dry_run)
    LOGGER.info("cleanup_start", extra={"dry_run": dry_run, "batch_size": batch_size, "max_deletions": max_deletions})

    last_id = 0
    while result.deleted < max_deletions:
        rows = session.execute(
            select(Entry.id, Entry.title, Entry.summary)
            .where(Entry.id > last_id)
            .order_by(Entry.id)
            .limit(batch_size)
        ).all()
        if not rows:
            break
        last_id = rows[-1].id

        matches: list[int] = []
        for row in rows:
            result.checked += 1
            if is_non_english(f"{row.title or ''} {row.summary or ''}"):
                matches.append(row.id)
                LOGGER.debug("cleanup_match", extra={"entry_id": row.id, "title": (row.title or "")[:60]})

        matches = matches[: max_deletions - result.deleted]
        if not matches:
            continue

        if dry_run:
            LOGGER.info("cleanup_dry_run_batch", extra={"would_delete": len(matches)})
            result.deleted += len(matches)
            continue

        deleted, counts = delete_entries_with_dependents(session, matches, tables)
        session.commit()
        result.deleted += deleted
        result.dependents.update(counts)
        LOGGER.info("cleanup_batch_deleted", extra={"deleted": deleted, "last_id": last_id})

    LOGGER.info("cleanup_complete", extra={"checked": result.checked, "deleted": result.deleted, "dry_run": dry_run})
    return result


__all__ = ["CleanupResult", "NON_ENGLISH_PATTERN", "cleanup_non_english_entries", "is_non_english"]

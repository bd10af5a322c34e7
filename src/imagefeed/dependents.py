"""Dependent association tables that reference entries by id.

None of these tables cascade on delete, so every component that removes or
merges entries goes through the helpers here to keep references valid.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from imagefeed.db import (
    DigestEntry,
    Entry,
    QueuedEntry,
    RecentlyPlayedEntry,
    RecentlyReadEntry,
    StarredEntry,
    UnreadEntry,
    UpdatedEntry,
)
from imagefeed.db_helpers import existing_tables
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "dependents"})


@dataclass(frozen=True)
class DependentTable:
    """A model referencing ``entries.id`` plus the columns that identify a duplicate row."""

    model: Any
    owner_column: str

    @property
    def table_name(self) -> str:
        return self.model.__tablename__


DEPENDENT_TABLES: tuple[DependentTable, ...] = (
    DependentTable(UnreadEntry, "user_id"),
    DependentTable(StarredEntry, "user_id"),
    DependentTable(UpdatedEntry, "user_id"),
    DependentTable(RecentlyReadEntry, "user_id"),
    DependentTable(RecentlyPlayedEntry, "user_id"),
    DependentTable(QueuedEntry, "user_id"),
    DependentTable(DigestEntry, "smart_rule_id"),
)


def present_dependent_tables(session: Session) -> list[DependentTable]:
    """Return the dependent tables that exist in the connected database."""

    names = existing_tables(session, [table.table_name for table in DEPENDENT_TABLES])
    missing = [table.table_name for table in DEPENDENT_TABLES if table.table_name not in names]
    if missing:
        LOGGER.info("dependent_tables_missing", extra={"tables": missing})
    return [table for table in DEPENDENT_TABLES if table.table_name in names]


def delete_dependents(
    session: Session, entry_ids: Sequence[int], tables: Sequence[DependentTable]
) -> dict[str, int]:
    """Delete every dependent row referencing ``entry_ids``; returns counts per table."""

    counts: dict[str, int] = {}
    if not entry_ids:
        return counts
    for table in tables:
        result = session.execute(delete(table.model).where(table.model.entry_id.in_(entry_ids)))
        counts[table.table_name] = int(result.rowcount or 0)
    return counts


def delete_entries_with_dependents(
    session: Session, entry_ids: Sequence[int], tables: Sequence[DependentTable]
) -> tuple[int, dict[str, int]]:
    """Delete dependents first, then the entries. The caller owns the transaction."""

    dependent_counts = delete_dependents(session, entry_ids, tables)
    result = session.execute(delete(Entry).where(Entry.id.in_(entry_ids)))
    return int(result.rowcount or 0), dependent_counts


def repoint_dependents(
    session: Session, from_entry_id: int, to_entry_id: int, tables: Sequence[DependentTable]
) -> int:
    """Move dependent rows from one entry to another; returns rows moved."""

    moved = 0
    for table in tables:
        result = session.execute(
            update(table.model).where(table.model.entry_id == from_entry_id).values(entry_id=to_entry_id)
        )
        moved += int(result.rowcount or 0)
    return moved


def collapse_dependents(session: Session, entry_id: int, tables: Sequence[DependentTable]) -> int:
    """Remove rows that duplicate another row's owner for ``entry_id``; the lowest id survives."""

    removed = 0
    for table in tables:
        owner = getattr(table.model, table.owner_column)
        rows = session.execute(
            select(table.model.id, owner).where(table.model.entry_id == entry_id).order_by(table.model.id)
        ).all()

        seen: set[Any] = set()
        redundant: list[int] = []
        for row_id, owner_value in rows:
            if owner_value in seen:
                redundant.append(row_id)
            else:
                seen.add(owner_value)

        if redundant:
            session.execute(delete(table.model).where(table.model.id.in_(redundant)))
            removed += len(redundant)
    return removed


__all__ = [
    "DEPENDENT_TABLES",
    "DependentTable",
    "collapse_dependents",
    "delete_dependents",
    "delete_entries_with_dependents",
    "present_dependent_tables",
    "repoint_dependents",
]

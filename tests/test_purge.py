"""Tests for the completeness purge job."""

from __future__ import annotations

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import COMPLETE_IMAGE, add_entry
from imagefeed.db import DigestEntry, Entry, StarredEntry, UnreadEntry, get_engine
from imagefeed.purge import purge_entries_without_images

NOW = 10_000.0
OLD = 0.0
YOUNG = NOW - 60.0


def _public_ids(session) -> set[str]:
    session.expire_all()
    return set(session.execute(select(Entry.public_id)).scalars())


def test_only_stale_incomplete_entries_are_purged(session, feed) -> None:
    add_entry(session, "old-null", created_at=OLD)
    add_entry(session, "old-partial", created_at=OLD, image={**COMPLETE_IMAGE, "height": None})
    add_entry(session, "old-missing-key", created_at=OLD, image={"original_url": "https://example.com/a.jpg"})
    add_entry(session, "old-complete", created_at=OLD, image=dict(COMPLETE_IMAGE))
    add_entry(session, "young-null", created_at=YOUNG)

    result = purge_entries_without_images(session, now=NOW)

    assert result.purged == 3
    assert _public_ids(session) == {"old-complete", "young-null"}


def test_dependent_rows_are_removed_first(session, feed) -> None:
    doomed = add_entry(session, "doomed", created_at=OLD)
    kept = add_entry(session, "kept", created_at=OLD, image=dict(COMPLETE_IMAGE))
    session.add_all(
        [
            UnreadEntry(user_id=1, entry_id=doomed.id, feed_id=1),
            StarredEntry(user_id=1, entry_id=doomed.id, feed_id=1),
            DigestEntry(smart_rule_id=5, entry_id=doomed.id),
            UnreadEntry(user_id=1, entry_id=kept.id, feed_id=1),
        ]
    )
    session.commit()
    kept_id = kept.id

    result = purge_entries_without_images(session, now=NOW)

    assert result.purged == 1
    assert result.dependents["unread_entries"] == 1
    assert result.dependents["digest_entries"] == 1
    assert session.execute(select(UnreadEntry.entry_id)).scalars().all() == [kept_id]
    assert session.execute(select(StarredEntry)).first() is None
    assert session.execute(select(DigestEntry)).first() is None


def test_small_batches_cover_every_candidate(session, feed) -> None:
    for index in range(5):
        add_entry(session, f"e{index}", created_at=OLD)

    result = purge_entries_without_images(session, now=NOW, batch_size=2)

    assert result.purged == 5
    assert result.batches == 3


def test_missing_dependent_table_is_skipped(db_url, session, feed) -> None:
    StarredEntry.__table__.drop(get_engine(db_url))
    add_entry(session, "doomed", created_at=OLD)

    result = purge_entries_without_images(session, now=NOW)

    assert result.purged == 1
    assert "starred_entries" not in result.dependents


def test_failed_batch_is_abandoned_and_others_continue(session, feed, monkeypatch) -> None:
    for index in range(3):
        add_entry(session, f"e{index}", created_at=OLD)

    from imagefeed import purge as purge_module

    real = purge_module.delete_entries_with_dependents
    calls = {"count": 0}

    def _flaky(session, entry_ids, tables):
        calls["count"] += 1
        if calls["count"] == 1:
            raise IntegrityError("DELETE FROM entries", {}, Exception("constraint"))
        return real(session, entry_ids, tables)

    monkeypatch.setattr(purge_module, "delete_entries_with_dependents", _flaky)

    result = purge_entries_without_images(session, now=NOW, batch_size=1)

    assert result.failed_batches == 1
    assert result.purged == 2
    assert _public_ids(session) == {"e0"}


def test_connectivity_errors_escalate(session, feed, monkeypatch) -> None:
    add_entry(session, "doomed", created_at=OLD)

    def _down(*_args, **_kwargs):
        raise OperationalError("DELETE", {}, Exception("server closed the connection"))

    monkeypatch.setattr("imagefeed.purge.delete_entries_with_dependents", _down)

    with pytest.raises(OperationalError):
        purge_entries_without_images(session, now=NOW)


def test_entry_completed_after_selection_survives(session, feed, monkeypatch) -> None:
    racing = add_entry(session, "racing", created_at=OLD)
    doomed = add_entry(session, "doomed", created_at=OLD)
    session.add_all(
        [UnreadEntry(user_id=1, entry_id=racing.id, feed_id=1), UnreadEntry(user_id=1, entry_id=doomed.id, feed_id=1)]
    )
    session.commit()
    racing_id = racing.id

    from imagefeed import purge as purge_module

    real = purge_module._lock_still_incomplete

    def _image_lands_first(session, entry_ids, cutoff):
        # An image job finishes between batch selection and deletion.
        session.execute(
            update(Entry).where(Entry.public_id == "racing").values(image=dict(COMPLETE_IMAGE)),
            execution_options={"synchronize_session": False},
        )
        return real(session, entry_ids, cutoff)

    monkeypatch.setattr(purge_module, "_lock_still_incomplete", _image_lands_first)

    result = purge_entries_without_images(session, now=NOW)

    assert result.purged == 1
    assert result.dependents["unread_entries"] == 1
    assert _public_ids(session) == {"racing"}
    assert session.execute(select(UnreadEntry.entry_id)).scalars().all() == [racing_id]

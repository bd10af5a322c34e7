"""Behavioural tests for the entry receiver upsert."""

from __future__ import annotations

import logging
from typing import Any

import pytest
from sqlalchemy import func, select

from conftest import COMPLETE_IMAGE, add_entry
from imagefeed.db import Entry, Feed
from imagefeed.errors import FeedNotFoundError
from imagefeed.observability import ENTRY_ALTERNATE_EXISTS, ENTRY_CREATE, ENTRY_SKIPPED_NO_IMAGE, CounterMetrics
from imagefeed.receiver import EntryReceiver

IMG = '<p>Body</p><img src="/media/photo.jpg">'


class RecordingReporter:
    def __init__(self) -> None:
        self.reports: list[dict[str, Any]] = []

    def notify(self, *, error_class: str, message: str, parameters: Any) -> None:
        self.reports.append({"error_class": error_class, "message": message, "parameters": parameters})


def _receiver(session, **kwargs):
    jobs: list = []
    metrics = CounterMetrics()
    reporter = RecordingReporter()
    receiver = EntryReceiver(
        session,
        metrics=metrics,
        error_reporter=reporter,
        image_enqueuer=jobs.append,
        clock=lambda: 1000.0,
        **kwargs,
    )
    return receiver, jobs, metrics, reporter


def _message(*entries: dict[str, Any], **feed: Any) -> dict[str, Any]:
    return {"feed": {"id": 1, **feed}, "entries": list(entries)}


def _entry_count(session) -> int:
    return session.execute(select(func.count(Entry.id))).scalar_one()


def test_new_item_with_image_is_created_and_enqueued(session, feed) -> None:
    receiver, jobs, metrics, reporter = _receiver(session)

    result = receiver.receive(
        _message({"public_id": "abc", "url": "https://example.com/post", "title": "First", "content": IMG})
    )

    assert result.created == 1
    assert metrics.get(ENTRY_CREATE) == 1
    entry = session.execute(select(Entry).where(Entry.public_id == "abc")).scalar_one()
    assert entry.title == "First"
    assert entry.image is None
    assert [job.to_dict() for job in jobs] == [
        {"id": "abc", "original_url": "https://example.com/media/photo.jpg", "transform_preset": "primary"}
    ]
    assert reporter.reports == []


def test_redelivery_updates_in_place_without_new_job(session, feed) -> None:
    receiver, jobs, metrics, _ = _receiver(session)
    item = {"public_id": "abc", "url": "https://example.com/post", "title": "First", "content": IMG}
    receiver.receive(_message(item))

    result = receiver.receive(_message({**item, "title": "Second"}))

    assert result.created == 0
    assert result.updated == 1
    assert _entry_count(session) == 1
    assert len(jobs) == 1
    assert metrics.get(ENTRY_CREATE) == 1
    entry = session.execute(select(Entry).where(Entry.public_id == "abc")).scalar_one()
    assert entry.title == "Second"


def test_same_batch_redelivery_updates_row_created_earlier(session, feed) -> None:
    receiver, jobs, _, _ = _receiver(session)

    result = receiver.receive(
        _message(
            {"public_id": "abc", "url": "https://example.com/1", "title": "A", "content": '<img src="/a.jpg">'},
            {"public_id": "abc", "title": "A v2"},
            {"public_id": "other-id", "url": "https://example.com/1", "title": "A v3"},
        )
    )

    assert result.created == 1
    assert result.updated == 2
    assert result.skipped_no_image == 0
    assert len(jobs) == 1
    entry = session.execute(select(Entry)).scalar_one()
    assert entry.public_id == "abc"
    assert entry.title == "A v3"


def test_receive_logs_batch_summary(session, feed, caplog) -> None:
    receiver, _, _, _ = _receiver(session)

    with caplog.at_level(logging.INFO, logger="imagefeed.receiver"):
        receiver.receive(_message({"public_id": "abc", "content": IMG}))

    summary = next(record for record in caplog.records if record.getMessage() == "receive_complete")
    assert summary.created_count == 1
    assert summary.feed_id == 1


def test_url_identity_matches_existing_row(session, feed) -> None:
    add_entry(session, "original-id", url="https://example.com/post", title="Old", image=dict(COMPLETE_IMAGE))
    receiver, jobs, _, _ = _receiver(session)

    result = receiver.receive(
        _message({"public_id": "new-id", "url": "https://example.com/post", "title": "New", "content": IMG})
    )

    assert result.updated == 1
    assert jobs == []
    entry = session.execute(select(Entry)).scalar_one()
    assert entry.public_id == "original-id"
    assert entry.title == "New"
    assert entry.image == COMPLETE_IMAGE
    assert entry.has_complete_image


def test_update_merges_provider_metadata(session, feed) -> None:
    add_entry(session, "abc", data={"enclosure_url": "https://example.com/a.jpg", "keep": 1})
    receiver, _, _, _ = _receiver(session)

    receiver.receive(_message({"public_id": "abc", "provider_metadata": {"keep": 2, "extra": "x"}}))

    entry = session.execute(select(Entry)).scalar_one()
    assert entry.data == {"enclosure_url": "https://example.com/a.jpg", "keep": 2, "extra": "x"}


def test_text_only_item_is_skipped(session, feed) -> None:
    receiver, jobs, metrics, _ = _receiver(session)

    result = receiver.receive(_message({"public_id": "txt", "title": "Words only", "content": "<p>No image</p>"}))

    assert result.skipped_no_image == 1
    assert metrics.get(ENTRY_SKIPPED_NO_IMAGE) == 1
    assert _entry_count(session) == 0
    assert jobs == []


def test_alternate_public_id_skips_creation(session, feed) -> None:
    add_entry(session, "legacy-id", url="https://example.com/legacy")
    receiver, _, metrics, _ = _receiver(session)

    result = receiver.receive(
        _message({"public_id": "fresh-id", "content": IMG, "provider_metadata": {"public_id_alt": "legacy-id"}})
    )

    assert result.alternate_exists == 1
    assert metrics.get(ENTRY_ALTERNATE_EXISTS) == 1
    assert _entry_count(session) == 1


def test_concurrent_insert_conflict_is_swallowed(session, feed, monkeypatch) -> None:
    add_entry(session, "dup")
    receiver, _, _, reporter = _receiver(session)
    # Another worker inserted "dup" after this batch looked it up.
    monkeypatch.setattr(receiver, "_prefetch", lambda items, feed_id: ({}, {}))
    monkeypatch.setattr(receiver, "_find_for_create", lambda payload, feed_id: None)

    result = receiver.receive(
        _message({"public_id": "dup", "content": IMG}, {"public_id": "other", "content": IMG})
    )

    assert result.conflicts == 1
    assert result.created == 1
    assert reporter.reports == []
    assert _entry_count(session) == 2


def test_unexpected_error_is_reported_and_batch_continues(session, feed, monkeypatch) -> None:
    receiver, _, _, reporter = _receiver(session)

    def _explode(content, metadata):
        if "boom" in (content or ""):
            raise RuntimeError("parser crashed")
        return True

    monkeypatch.setattr("imagefeed.receiver.has_potential_image", _explode)

    bad = {"public_id": "bad", "content": "boom"}
    result = receiver.receive(_message(bad, {"public_id": "good", "content": IMG}))

    assert result.failed == 1
    assert result.created == 1
    assert len(reporter.reports) == 1
    report = reporter.reports[0]
    assert report["error_class"] == "Receiver#create"
    assert report["parameters"]["feed_id"] == 1
    assert report["parameters"]["item"] == bad
    assert isinstance(report["parameters"]["exception"], RuntimeError)
    assert report["parameters"]["backtrace"]


def test_validation_failure_is_not_reported(session, feed) -> None:
    receiver, _, _, reporter = _receiver(session)

    result = receiver.receive(_message({"title": "no id", "content": IMG}, {"public_id": "ok", "content": IMG}))

    assert result.invalid == 1
    assert result.created == 1
    assert reporter.reports == []


def test_feed_metadata_is_applied_after_batch(session, feed) -> None:
    receiver, _, _, _ = _receiver(session)

    receiver.receive(_message(title="Renamed", etag='"v2"', last_published_entry=1500, hub="https://hub.example"))

    row = session.get(Feed, 1)
    assert row.title == "Renamed"
    assert row.etag == '"v2"'
    assert row.last_published_entry == 1500.0
    assert row.options == {"hub": "https://hub.example"}
    assert row.last_crawled_at == 1000.0


def test_unknown_feed_raises(session) -> None:
    receiver, _, _, _ = _receiver(session)

    with pytest.raises(FeedNotFoundError):
        receiver.receive({"feed": {"id": 99}, "entries": [{"public_id": "abc", "content": IMG}]})

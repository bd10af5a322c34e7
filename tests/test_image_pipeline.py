"""Tests for the image upload pipeline state machine."""

from __future__ import annotations

import io
from pathlib import Path

import httpx
import pytest
from PIL import Image
from sqlalchemy import select

from conftest import add_entry
from imagefeed.config import ImageConfig
from imagefeed.db import Entry, session_factory
from imagefeed.errors import ImageStoreError
from imagefeed.image_pipeline import ImageJobState, ImageUploadPipeline
from imagefeed.payloads import ImageJob
from imagefeed.storage.base import BaseStorage


def _jpeg_bytes(size: tuple[int, int], color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format="JPEG")
    return buffer.getvalue()


class FakeStorage(BaseStorage):
    def __init__(self, error: Exception | None = None) -> None:
        self.stored: list[str] = []
        self.error = error

    def store(self, local_file: Path, identity: str) -> str:
        assert local_file.exists()
        if self.error is not None:
            raise self.error
        self.stored.append(identity)
        return f"https://cdn.example.com/{self.object_name(identity)}"


class Server:
    """Serves fixed bodies per URL through ``httpx.MockTransport``."""

    def __init__(self, routes: dict[str, tuple[int, bytes]]) -> None:
        self.routes = routes
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        status, body = self.routes.get(url, (404, b"missing"))
        return httpx.Response(status, content=body, headers={"content-type": "image/jpeg"})


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


def _pipeline(db_url: str, server: Server, storage: BaseStorage, temp_dir: Path, **settings) -> ImageUploadPipeline:
    config = ImageConfig(temp_dir=str(temp_dir), **settings)
    client = httpx.Client(transport=httpx.MockTransport(server))
    return ImageUploadPipeline(session_factory(db_url), storage, settings=config, http_client=client)


def _image_of(session, public_id: str):
    session.expire_all()
    return session.execute(select(Entry.image).where(Entry.public_id == public_id)).scalar_one()


def test_job_persists_complete_image(db_url, session, feed, temp_dir) -> None:
    add_entry(session, "abc")
    server = Server({"https://img.example.com/a.jpg": (200, _jpeg_bytes((2000, 1000)))})
    storage = FakeStorage()

    result = _pipeline(db_url, server, storage, temp_dir).run(
        ImageJob(id="abc", original_url="https://img.example.com/a.jpg")
    )

    assert result.history == [
        ImageJobState.PENDING,
        ImageJobState.FETCHED,
        ImageJobState.TRANSFORMED,
        ImageJobState.STORED,
        ImageJobState.PERSISTED,
        ImageJobState.CLEANED,
    ]
    assert _image_of(session, "abc") == {
        "original_url": "https://img.example.com/a.jpg",
        "processed_url": "https://cdn.example.com/abc.jpg",
        "width": 1200,
        "height": 600,
    }
    assert storage.stored == ["abc"]
    assert list(temp_dir.iterdir()) == []


def test_url_cache_hit_skips_fetch_and_store(db_url, session, feed, temp_dir) -> None:
    add_entry(session, "first")
    add_entry(session, "second")
    server = Server({"https://img.example.com/a.jpg": (200, _jpeg_bytes((800, 600)))})
    storage = FakeStorage()
    pipeline = _pipeline(db_url, server, storage, temp_dir)

    pipeline.run(ImageJob(id="first", original_url="https://img.example.com/a.jpg"))
    result = pipeline.run(ImageJob(id="second", original_url="https://img.example.com/a.jpg"))

    assert result.cache_hit == "url"
    assert len(server.requests) == 1
    assert storage.stored == ["first"]
    assert _image_of(session, "second")["processed_url"] == "https://cdn.example.com/first.jpg"


def test_content_cache_hit_skips_store(db_url, session, feed, temp_dir) -> None:
    add_entry(session, "first")
    add_entry(session, "second")
    body = _jpeg_bytes((800, 600))
    server = Server({"https://a.example.com/x.jpg": (200, body), "https://b.example.com/y.jpg": (200, body)})
    storage = FakeStorage()
    pipeline = _pipeline(db_url, server, storage, temp_dir)

    pipeline.run(ImageJob(id="first", original_url="https://a.example.com/x.jpg"))
    result = pipeline.run(ImageJob(id="second", original_url="https://b.example.com/y.jpg"))

    assert result.cache_hit == "content"
    assert ImageJobState.STORED not in result.history
    assert storage.stored == ["first"]
    assert _image_of(session, "second")["original_url"] == "https://b.example.com/y.jpg"
    assert list(temp_dir.iterdir()) == []


@pytest.mark.parametrize(
    ("routes", "settings"),
    [
        ({}, {}),
        ({"https://img.example.com/a.jpg": (200, b"not an image")}, {}),
        ({"https://img.example.com/a.jpg": (200, _jpeg_bytes((40, 40)))}, {}),
        ({"https://img.example.com/a.jpg": (200, _jpeg_bytes((800, 600)))}, {"max_bytes": 100}),
    ],
    ids=["http-404", "undecodable", "too-small", "oversized"],
)
def test_image_failures_leave_entry_incomplete(db_url, session, feed, temp_dir, routes, settings) -> None:
    add_entry(session, "abc")
    storage = FakeStorage()

    result = _pipeline(db_url, Server(routes), storage, temp_dir, **settings).run(
        {"id": "abc", "original_url": "https://img.example.com/a.jpg"}
    )

    assert result.failed
    assert result.state is ImageJobState.CLEANED
    assert result.error
    assert storage.stored == []
    assert _image_of(session, "abc") is None
    assert list(temp_dir.iterdir()) == []


def test_store_failure_is_final(db_url, session, feed, temp_dir) -> None:
    add_entry(session, "abc")
    server = Server({"https://img.example.com/a.jpg": (200, _jpeg_bytes((800, 600)))})

    result = _pipeline(db_url, server, FakeStorage(ImageStoreError("bucket gone")), temp_dir).run(
        ImageJob(id="abc", original_url="https://img.example.com/a.jpg")
    )

    assert result.failed
    assert ImageJobState.TRANSFORMED in result.history
    assert _image_of(session, "abc") is None


def test_missing_entry_fails_without_writing(db_url, session, feed, temp_dir) -> None:
    server = Server({"https://img.example.com/a.jpg": (200, _jpeg_bytes((800, 600)))})

    result = _pipeline(db_url, server, FakeStorage(), temp_dir).run(
        ImageJob(id="purged", original_url="https://img.example.com/a.jpg")
    )

    assert result.failed
    assert not result.persisted
    assert session.execute(select(Entry)).first() is None


def test_unexpected_errors_propagate_after_cleanup(db_url, session, feed, temp_dir) -> None:
    add_entry(session, "abc")
    server = Server({"https://img.example.com/a.jpg": (200, _jpeg_bytes((800, 600)))})

    with pytest.raises(RuntimeError):
        _pipeline(db_url, server, FakeStorage(RuntimeError("bug")), temp_dir).run(
            ImageJob(id="abc", original_url="https://img.example.com/a.jpg")
        )

    assert list(temp_dir.iterdir()) == []

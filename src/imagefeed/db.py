"""SQLAlchemy schema definitions and session management for the entry store."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any, Callable

from sqlalchemy import (
    JSON,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from imagefeed.db_helpers import normalize_database_url
from utils.logging import get_logger

LOGGER = get_logger(__name__)

IMAGE_FIELDS: tuple[str, ...] = ("original_url", "processed_url", "width", "height")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class Feed(Base):
    """A syndication source; metadata is written by the crawl dispatcher."""

    __tablename__ = "feeds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    feed_url: Mapped[str | None] = mapped_column(String, nullable=True)
    site_url: Mapped[str | None] = mapped_column(String, nullable=True)
    self_url: Mapped[str | None] = mapped_column(String, nullable=True)
    etag: Mapped[str | None] = mapped_column(String, nullable=True)
    last_modified: Mapped[str | None] = mapped_column(String, nullable=True)
    last_published_entry: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_crawled_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    options: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class Entry(Base):
    """One ingested item of a feed.

    ``image`` is either SQL NULL or a JSON object carrying all of
    :data:`IMAGE_FIELDS`; it is written only by the image upload pipeline.
    """

    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feed_id: Mapped[int] = mapped_column(Integer, ForeignKey("feeds.id"), nullable=False)
    public_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    author: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    published: Mapped[float | None] = mapped_column(Float, nullable=True)
    data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    image: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_entries_feed_url", "feed_id", "url"),
        Index("idx_entries_created_at", "created_at"),
    )

    @property
    def has_complete_image(self) -> bool:
        image = self.image
        return isinstance(image, dict) and all(image.get(key) is not None for key in IMAGE_FIELDS)


class _UserEntryState:
    """Columns shared by per-user entry state tables."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_id: Mapped[int] = mapped_column(Integer, ForeignKey("entries.id"), nullable=False, index=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class UnreadEntry(_UserEntryState, Base):
    __tablename__ = "unread_entries"

    feed_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class StarredEntry(_UserEntryState, Base):
    __tablename__ = "starred_entries"

    feed_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class UpdatedEntry(_UserEntryState, Base):
    __tablename__ = "updated_entries"

    feed_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class QueuedEntry(_UserEntryState, Base):
    __tablename__ = "queued_entries"

    feed_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class RecentlyReadEntry(_UserEntryState, Base):
    __tablename__ = "recently_read_entries"


class RecentlyPlayedEntry(_UserEntryState, Base):
    __tablename__ = "recently_played_entries"


class DigestEntry(Base):
    """Entry linked into a smart-rule digest."""

    __tablename__ = "digest_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    smart_rule_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_id: Mapped[int] = mapped_column(Integer, ForeignKey("entries.id"), nullable=False, index=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class ImageCacheRecord(Base):
    """Content-addressed record of an already processed and stored image."""

    __tablename__ = "image_cache"

    fingerprint: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    transform_preset: Mapped[str] = mapped_column(String, nullable=False)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    processed_url: Mapped[str] = mapped_column(Text, nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _ensure_parent_directory(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.error("db_parent_directory_error", extra={"path": str(path), "error": str(exc)})
        raise


def get_engine(target: str | Path) -> Engine:
    """Return a cached SQLAlchemy engine for the provided target, creating schema if needed."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")

        engine_kwargs: dict[str, object] = {}
        if is_sqlite:
            if sa_url.database and sa_url.database not in {":memory:"}:
                _ensure_parent_directory(Path(sa_url.database))
            engine_kwargs["connect_args"] = {"timeout": 30.0}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
                """Configure SQLite for concurrent workers and enforce entry references."""

                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                    cursor.execute("PRAGMA foreign_keys = ON")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Several workers starting together can race on CREATE TABLE.
            if "already exists" in str(exc).lower():
                LOGGER.info("db_create_all_table_exists_race", extra={"target": normalized, "error": str(exc)})
            else:
                raise

        _ENGINE_CACHE[normalized] = engine
        return engine


def open_primary_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session for the entry store."""

    return Session(get_engine(target))


def session_factory(target: str | Path) -> Callable[[], Session]:
    """Return a zero-argument callable opening sessions on ``target``."""

    engine = get_engine(target)
    return lambda: Session(engine)


__all__ = [
    "IMAGE_FIELDS",
    "Base",
    "DigestEntry",
    "Entry",
    "Feed",
    "ImageCacheRecord",
    "QueuedEntry",
    "RecentlyPlayedEntry",
    "RecentlyReadEntry",
    "StarredEntry",
    "UnreadEntry",
    "UpdatedEntry",
    "get_engine",
    "open_primary_session",
    "session_factory",
]

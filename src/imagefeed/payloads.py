"""Typed payloads exchanged with the crawl dispatcher and the image queue.

Dispatcher messages arrive as JSON-decoded mappings. They are parsed into
frozen dataclasses at the ingestion boundary so the receiver never relies on
ad hoc key lookups; anything that does not fit raises
:class:`~imagefeed.errors.PayloadValidationError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from imagefeed.errors import PayloadValidationError

_TEXT_FIELDS = ("title", "author", "summary", "content")


def _optional_text(raw: Mapping[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadValidationError(f"Validation failed: {key} must be a string, got {type(value).__name__}")
    return value


def parse_timestamp(value: Any) -> float | None:
    """Parse an epoch number or ISO-8601 string into epoch seconds."""

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise PayloadValidationError("Validation failed: published must be a timestamp")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise PayloadValidationError(f"Validation failed: unparseable published {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise PayloadValidationError(f"Validation failed: published has unsupported type {type(value).__name__}")


@dataclass(frozen=True)
class EntryPayload:
    """One item of a dispatcher batch."""

    public_id: str
    url: str | None = None
    title: str | None = None
    author: str | None = None
    summary: str | None = None
    content: str | None = None
    published: float | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "EntryPayload":
        if not isinstance(raw, Mapping):
            raise PayloadValidationError("Validation failed: entry must be an object")

        public_id = raw.get("public_id")
        if not isinstance(public_id, str) or not public_id.strip():
            raise PayloadValidationError("Validation failed: public_id is required")

        url = _optional_text(raw, "url")
        if url is not None:
            url = url.strip() or None

        metadata = raw.get("provider_metadata", raw.get("data"))
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, Mapping):
            raise PayloadValidationError("Validation failed: provider_metadata must be an object")

        texts = {key: _optional_text(raw, key) for key in _TEXT_FIELDS}
        return cls(
            public_id=public_id.strip(),
            url=url,
            published=parse_timestamp(raw.get("published")),
            provider_metadata=dict(metadata),
            **texts,
        )

    @property
    def alternate_public_id(self) -> str | None:
        value = self.provider_metadata.get("public_id_alt")
        if isinstance(value, str) and value:
            return value
        return None

    def content_fields(self) -> dict[str, Any]:
        """Return content columns carried by this payload, omitting absent values."""

        values: dict[str, Any] = {
            "title": self.title,
            "author": self.author,
            "summary": self.summary,
            "content": self.content,
            "published": self.published,
            "url": self.url,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True)
class FeedPayload:
    """Feed descriptor and feed-level metadata sent with a batch."""

    id: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FeedPayload":
        if not isinstance(raw, Mapping):
            raise PayloadValidationError("Validation failed: feed must be an object")
        feed_id = raw.get("id")
        if isinstance(feed_id, str) and feed_id.isdigit():
            feed_id = int(feed_id)
        if not isinstance(feed_id, int) or isinstance(feed_id, bool):
            raise PayloadValidationError("Validation failed: feed.id must be an integer")
        metadata = {str(key): value for key, value in raw.items() if key != "id"}
        return cls(id=feed_id, metadata=metadata)


@dataclass(frozen=True)
class DispatchMessage:
    """A whole dispatcher message: one feed plus its raw entry items.

    Items stay raw here; each one is parsed on its own so a malformed item
    only drops that item.
    """

    feed: FeedPayload
    entries: tuple[Mapping[str, Any], ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DispatchMessage":
        if not isinstance(raw, Mapping):
            raise PayloadValidationError("Validation failed: message must be an object")
        feed = FeedPayload.from_dict(raw.get("feed"))
        entries = raw.get("entries") or []
        if not isinstance(entries, (list, tuple)):
            raise PayloadValidationError("Validation failed: entries must be a list")
        return cls(feed=feed, entries=tuple(entries))


@dataclass(frozen=True)
class ImageJob:
    """Descriptor consumed by the image upload pipeline."""

    id: str
    original_url: str
    transform_preset: str = "primary"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ImageJob":
        job_id = raw.get("id")
        original_url = raw.get("original_url")
        if not isinstance(job_id, str) or not job_id:
            raise PayloadValidationError("Validation failed: image job id is required")
        if not isinstance(original_url, str) or not original_url:
            raise PayloadValidationError("Validation failed: image job original_url is required")
        preset = raw.get("transform_preset") or "primary"
        return cls(id=job_id, original_url=original_url, transform_preset=str(preset))

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "original_url": self.original_url, "transform_preset": self.transform_preset}


__all__ = ["DispatchMessage", "EntryPayload", "FeedPayload", "ImageJob", "parse_timestamp"]

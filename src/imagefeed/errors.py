"""Error kinds and exceptions shared by the ingestion and image workers."""

from __future__ import annotations

from enum import Enum

from sqlalchemy.exc import IntegrityError


class ErrorKind(str, Enum):
    """Failure classes callers branch on instead of matching messages."""

    IDENTITY_CONFLICT = "identity_conflict"  # concurrent duplicate insert
    VALIDATION = "validation"  # malformed payload or rejected field
    UNEXPECTED = "unexpected"  # anything else raised while handling an item
    IMAGE = "image"  # fetch/transform/store failure, never retried
    MAINTENANCE = "maintenance"  # purge/reconcile batch failure


class ImagefeedError(Exception):
    """Base exception carrying an :class:`ErrorKind`."""

    kind: ErrorKind = ErrorKind.UNEXPECTED


class ConfigurationError(ImagefeedError):
    """Settings are missing or inconsistent for the requested component."""


class PayloadValidationError(ImagefeedError):
    """A dispatcher payload does not match the expected schema."""

    kind = ErrorKind.VALIDATION


class FeedNotFoundError(ImagefeedError, LookupError):
    """The dispatcher referenced a feed that is not in the store."""


class ImagePipelineError(ImagefeedError):
    """Base class for image stage failures."""

    kind = ErrorKind.IMAGE


class ImageFetchError(ImagePipelineError):
    """The source image could not be downloaded."""


class ImageTransformError(ImagePipelineError):
    """The downloaded bytes could not be decoded or resized."""


class ImageStoreError(ImagePipelineError):
    """The storage backend rejected the processed image."""


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an exception raised during item handling to its :class:`ErrorKind`."""

    if isinstance(exc, IntegrityError):
        return ErrorKind.IDENTITY_CONFLICT
    if isinstance(exc, ImagefeedError):
        return exc.kind
    return ErrorKind.UNEXPECTED


__all__ = [
    "ConfigurationError",
    "ErrorKind",
    "FeedNotFoundError",
    "ImageFetchError",
    "ImagePipelineError",
    "ImageStoreError",
    "ImageTransformError",
    "ImagefeedError",
    "PayloadValidationError",
    "classify_exception",
]

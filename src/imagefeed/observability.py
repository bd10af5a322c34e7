"""Counters and error reporting collaborators."""

from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Any, Mapping, Protocol

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "observability"})

ENTRY_CREATE = "entry.create"
ENTRY_SKIPPED_NO_IMAGE = "entry.skipped_no_image"
ENTRY_ALTERNATE_EXISTS = "entry.alternate_exists"


class Metrics(Protocol):
    def increment(self, name: str, value: int = 1) -> None: ...


class ErrorReporter(Protocol):
    def notify(self, *, error_class: str, message: str, parameters: Mapping[str, Any]) -> None: ...


class CounterMetrics:
    """Process-local counters, also emitted as debug log lines."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._lock = Lock()

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counts[name] += value
        LOGGER.debug("metric_increment", extra={"metric": name, "value": value})

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)


class LoggingErrorReporter:
    """Report unexpected failures as structured error log records."""

    def notify(self, *, error_class: str, message: str, parameters: Mapping[str, Any]) -> None:
        LOGGER.error(
            "error_report",
            extra={"error_class": error_class, "error_message": message, "parameters": dict(parameters)},
        )


__all__ = [
    "ENTRY_ALTERNATE_EXISTS",
    "ENTRY_CREATE",
    "ENTRY_SKIPPED_NO_IMAGE",
    "CounterMetrics",
    "ErrorReporter",
    "LoggingErrorReporter",
    "Metrics",
]

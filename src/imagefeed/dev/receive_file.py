"""Feed a JSON dispatcher message from disk through the entry receiver."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from imagefeed.config import load_settings
from imagefeed.db import open_primary_session
from imagefeed.observability import CounterMetrics
from imagefeed.receiver import EntryReceiver
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "receive_file"})


def main(
    message_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file holding {feed, entries}."),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="Primary database URL or path. Defaults to databases.primary_url in settings.yaml.",
    ),
    enqueue_images: bool = typer.Option(
        False,
        "--enqueue-images/--no-enqueue-images",
        help="Send image jobs for new entries to the Celery image queue.",
    ),
) -> None:
    """Upsert one dispatcher message into the entry store."""

    settings = load_settings()
    target = db or settings.databases.primary_url

    with message_file.open("r", encoding="utf-8") as fp:
        message = json.load(fp)

    enqueuer = None
    if enqueue_images:
        from imagefeed.task_queue import enqueue_image_job

        enqueuer = enqueue_image_job

    metrics = CounterMetrics()
    with open_primary_session(target) as session:
        receiver = EntryReceiver(session, metrics=metrics, image_enqueuer=enqueuer, image_settings=settings.images)
        result = receiver.receive(message)

    LOGGER.info(
        "receive_file_complete",
        extra={
            "file": str(message_file),
            "created_count": result.created,
            "updated": result.updated,
            "skipped_no_image": result.skipped_no_image,
            "alternate_exists": result.alternate_exists,
            "conflicts": result.conflicts,
            "invalid": result.invalid,
            "failed": result.failed,
            "image_jobs": len(result.image_jobs),
            "counters": metrics.snapshot(),
        },
    )
    for job in result.image_jobs:
        typer.echo(json.dumps(job.to_dict()))


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]

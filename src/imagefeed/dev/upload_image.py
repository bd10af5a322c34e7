"""Run a single image job synchronously, bypassing the Celery image queue."""

from __future__ import annotations

from typing import Optional

import typer

from imagefeed.config import load_settings
from imagefeed.db import session_factory
from imagefeed.image_pipeline import ImageUploadPipeline
from imagefeed.payloads import ImageJob
from imagefeed.storage import build_storage
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "upload_image_cli"})


def main(
    public_id: str = typer.Argument(..., help="Public id of the entry receiving the image."),
    original_url: str = typer.Argument(..., help="Source image URL."),
    preset: Optional[str] = typer.Option(None, "--preset", help="Transform preset name."),
    db: Optional[str] = typer.Option(None, "--db", help="Primary database URL or path."),
    backend: Optional[str] = typer.Option(None, "--backend", help="Override storage.backend (s3, cdn, local)."),
) -> None:
    """Fetch, transform, store and persist one entry image."""

    settings = load_settings()
    if backend:
        settings.storage.backend = backend
    target = db or settings.databases.primary_url

    job = ImageJob(id=public_id, original_url=original_url, transform_preset=preset or settings.images.default_preset)
    pipeline = ImageUploadPipeline(session_factory(target), build_storage(settings.storage), settings=settings.images)
    try:
        result = pipeline.run(job)
    finally:
        pipeline.close()

    LOGGER.info(
        "upload_image_cli_complete",
        extra={
            "id": public_id,
            "state": result.state.value,
            "history": [state.value for state in result.history],
            "cache_hit": result.cache_hit,
            "error": result.error,
        },
    )
    if result.failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]

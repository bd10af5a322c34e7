"""Celery task wiring for entry ingestion, image uploads and store maintenance."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from celery import Celery

from imagefeed.config import Settings, load_settings
from imagefeed.db import open_primary_session, session_factory
from imagefeed.dedup import reconcile
from imagefeed.image_pipeline import ImageUploadPipeline
from imagefeed.language_cleanup import cleanup_non_english_entries
from imagefeed.payloads import ImageJob
from imagefeed.purge import purge_entries_without_images
from imagefeed.receiver import EntryReceiver
from imagefeed.storage import build_storage
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "task_queue"})


@lru_cache(maxsize=1)
def _load_settings() -> Settings:
    return load_settings()


def _default_primary_db() -> str:
    settings = _load_settings()
    return settings.databases.primary_url


def _init_celery() -> Celery:
    settings = _load_settings()
    queues = settings.queues
    app = Celery("imagefeed")
    app.conf.update(
        broker_url=queues.broker_url,
        result_backend=queues.result_backend,
        worker_concurrency=queues.default_concurrency,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_default_queue=queues.ingest_queue,
        task_routes={
            "imagefeed.task_queue.receive_entries": {"queue": queues.ingest_queue},
            "imagefeed.task_queue.upload_image": {"queue": queues.image_queue},
            "imagefeed.task_queue.purge_entries_without_images": {"queue": queues.maintenance_queue},
            "imagefeed.task_queue.deduplicate_entries": {"queue": queues.maintenance_queue},
            "imagefeed.task_queue.cleanup_non_english_entries": {"queue": queues.maintenance_queue},
        },
        beat_schedule={
            "purge-entries-without-images": {
                "task": "imagefeed.task_queue.purge_entries_without_images",
                "schedule": settings.purge.schedule_seconds,
            },
        },
    )
    return app


celery_app = _init_celery()


@lru_cache(maxsize=1)
def _image_pipeline() -> ImageUploadPipeline:
    """Build the per-process pipeline; the storage backend is resolved once here."""

    settings = _load_settings()
    return ImageUploadPipeline(
        session_factory(_default_primary_db()),
        build_storage(settings.storage),
        settings=settings.images,
    )


def enqueue_image_job(job: ImageJob) -> None:
    upload_image.apply_async(args=[job.to_dict()], queue=_load_settings().queues.image_queue)


@celery_app.task(name="imagefeed.task_queue.receive_entries", acks_late=True)
def receive_entries(message: dict[str, Any]) -> dict[str, Any]:
    """Upsert one dispatcher batch and enqueue image jobs for new entries."""

    settings = _load_settings()
    with open_primary_session(_default_primary_db()) as session:
        receiver = EntryReceiver(session, image_enqueuer=enqueue_image_job, image_settings=settings.images)
        result = receiver.receive(message)

    return {
        "feed_id": result.feed_id,
        "created": result.created,
        "updated": result.updated,
        "skipped_no_image": result.skipped_no_image,
        "alternate_exists": result.alternate_exists,
        "conflicts": result.conflicts,
        "invalid": result.invalid,
        "failed": result.failed,
    }


@celery_app.task(name="imagefeed.task_queue.upload_image", acks_late=True, max_retries=0)
def upload_image(job: dict[str, Any]) -> str:
    """Process one image job; failures are final and leave the entry to the purge."""

    result = _image_pipeline().run(job)
    return "failed" if result.failed else "persisted"


@celery_app.task(name="imagefeed.task_queue.purge_entries_without_images", acks_late=True)
def purge_entries_without_images_task() -> dict[str, Any]:
    """Purge stale entries whose image never completed."""

    settings = _load_settings()
    with open_primary_session(_default_primary_db()) as session:
        result = purge_entries_without_images(
            session,
            grace_period_seconds=settings.purge.grace_period_seconds,
            batch_size=settings.purge.batch_size,
        )
    return {"purged": result.purged, "batches": result.batches, "failed_batches": result.failed_batches}


@celery_app.task(name="imagefeed.task_queue.deduplicate_entries", acks_late=True)
def deduplicate_entries_task() -> dict[str, Any]:
    """Collapse duplicate ``(feed_id, url)`` entries and install the unique index."""

    with open_primary_session(_default_primary_db()) as session:
        result = reconcile(session)
    return {
        "groups": result.groups,
        "entries_removed": result.entries_removed,
        "dependents_repointed": result.dependents_repointed,
        "dependents_collapsed": result.dependents_collapsed,
        "failed_groups": result.failed_groups,
    }


@celery_app.task(name="imagefeed.task_queue.cleanup_non_english_entries", acks_late=True)
def cleanup_non_english_entries_task(dry_run: bool = False) -> dict[str, Any]:
    settings = _load_settings()
    with open_primary_session(_default_primary_db()) as session:
        result = cleanup_non_english_entries(
            session,
            dry_run=dry_run,
            batch_size=settings.cleanup.batch_size,
            max_deletions=settings.cleanup.max_deletions,
        )
    return {"checked": result.checked, "deleted": result.deleted, "dry_run": result.dry_run}


__all__ = [
    "celery_app",
    "cleanup_non_english_entries_task",
    "deduplicate_entries_task",
    "enqueue_image_job",
    "purge_entries_without_images_task",
    "receive_entries",
    "upload_image",
]

"""Run the completeness purge once against the configured store."""

from __future__ import annotations

from typing import Optional

import typer

from imagefeed.config import load_settings
from imagefeed.db import open_primary_session
from imagefeed.purge import purge_entries_without_images
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "purge_cli"})


def main(
    db: Optional[str] = typer.Option(None, "--db", help="Primary database URL or path."),
    grace_period: Optional[float] = typer.Option(
        None,
        "--grace-period",
        min=0.0,
        help="Seconds an entry is exempt after creation. Defaults to purge.grace_period_seconds.",
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Entries deleted per transaction."),
) -> None:
    """Delete stale entries whose image never completed."""

    settings = load_settings()
    target = db or settings.databases.primary_url

    with open_primary_session(target) as session:
        result = purge_entries_without_images(
            session,
            grace_period_seconds=settings.purge.grace_period_seconds if grace_period is None else grace_period,
            batch_size=batch_size or settings.purge.batch_size,
        )

    LOGGER.info(
        "purge_cli_complete",
        extra={
            "purged": result.purged,
            "batches": result.batches,
            "failed_batches": result.failed_batches,
            "dependents": dict(result.dependents),
        },
    )


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]

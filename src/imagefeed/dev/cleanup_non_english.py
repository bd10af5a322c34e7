"""Delete entries whose title or summary is not English."""

from __future__ import annotations

from typing import Optional

import typer

from imagefeed.config import load_settings
from imagefeed.db import open_primary_session
from imagefeed.language_cleanup import cleanup_non_english_entries
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "cleanup_cli"})


def main(
    db: Optional[str] = typer.Option(None, "--db", help="Primary database URL or path."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Count matches without deleting."),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1),
    max_deletions: Optional[int] = typer.Option(None, "--max-deletions", min=0),
) -> None:
    settings = load_settings()
    target = db or settings.databases.primary_url

    with open_primary_session(target) as session:
        result = cleanup_non_english_entries(
            session,
            dry_run=dry_run,
            batch_size=batch_size or settings.cleanup.batch_size,
            max_deletions=settings.cleanup.max_deletions if max_deletions is None else max_deletions,
        )

    typer.echo(f"checked={result.checked} deleted={result.deleted} dry_run={result.dry_run}")


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]

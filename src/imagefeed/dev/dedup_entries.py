"""Collapse duplicate entries and install the (feed_id, url) unique index."""

from __future__ import annotations

from typing import Optional

import typer

from imagefeed.config import load_settings
from imagefeed.db import get_engine, open_primary_session
from imagefeed.dedup import deduplicate_entries, install_unique_url_index, reconcile
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "dedup_cli"})


def main(
    db: Optional[str] = typer.Option(None, "--db", help="Primary database URL or path."),
    skip_index: bool = typer.Option(
        False,
        "--skip-index",
        help="Only collapse duplicates; do not install the unique index.",
    ),
    index_only: bool = typer.Option(False, "--index-only", help="Only install the unique index."),
) -> None:
    """Run the deduplication reconciler; safe to run repeatedly."""

    if skip_index and index_only:
        raise typer.BadParameter("--skip-index and --index-only are mutually exclusive")

    target = db or load_settings().databases.primary_url

    if index_only:
        index_name = install_unique_url_index(get_engine(target))
        LOGGER.info("dedup_cli_index_only", extra={"index": index_name})
        return

    with open_primary_session(target) as session:
        result = deduplicate_entries(session) if skip_index else reconcile(session)

    LOGGER.info(
        "dedup_cli_complete",
        extra={
            "groups": result.groups,
            "entries_removed": result.entries_removed,
            "dependents_repointed": result.dependents_repointed,
            "dependents_collapsed": result.dependents_collapsed,
            "failed_groups": result.failed_groups,
            "index": result.index_name,
        },
    )


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]

"""Initialize the entry store schema and, optionally, the unique URL index."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure src/ is on sys.path so we can import shared logging and DB helpers.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.append(str(SRC_ROOT))

from utils.logging import get_logger  # noqa: E402
from imagefeed.config import load_settings  # noqa: E402
from imagefeed.db import get_engine  # noqa: E402
from imagefeed.dedup import install_unique_url_index  # noqa: E402

LOGGER = get_logger(__name__)


def _init_image_root(root: Path) -> None:
    root.mkdir(parents=True, exist_ok=True)
    LOGGER.info("init_image_root_ok", extra={"root": str(root)})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the entry store schema.")
    parser.add_argument(
        "--data-db",
        type=str,
        default=None,
        help="Primary database URL or path. Defaults to databases.primary_url in settings.yaml.",
    )
    parser.add_argument(
        "--with-unique-index",
        action="store_true",
        help="Also install the (feed_id, url) unique index. Only safe on a store without duplicates.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings()
    primary_target = args.data_db or settings.databases.primary_url

    engine = get_engine(primary_target)
    LOGGER.info("init_primary_db_ok", extra={"target": str(primary_target)})

    if args.with_unique_index:
        install_unique_url_index(engine)
    if settings.storage.backend == "local":
        _init_image_root(Path(settings.storage.local_root))

    LOGGER.info("init_databases_complete", extra={"primary": str(primary_target)})


if __name__ == "__main__":
    main()

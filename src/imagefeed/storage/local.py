"""Filesystem backend serving processed images from a static directory."""

from __future__ import annotations

import shutil
from pathlib import Path

from imagefeed.config import StorageConfig
from imagefeed.errors import ImageStoreError
from imagefeed.storage.base import BaseStorage


class LocalStorage(BaseStorage):
    """Copy processed images under ``local_root`` and return ``local_base_url + name``."""

    def __init__(self, config: StorageConfig) -> None:
        self.root = Path(config.local_root).expanduser()
        self.base_url = config.local_base_url
        if not self.base_url.endswith("/"):
            self.base_url += "/"

    def store(self, local_file: Path, identity: str) -> str:
        name = self.object_name(identity)
        destination = self.root / name
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_file, destination)
        except OSError as exc:
            raise ImageStoreError(f"cannot write {destination}: {exc}") from exc
        return f"{self.base_url}{name}"

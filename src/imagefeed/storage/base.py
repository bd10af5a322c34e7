"""Storage interface shared by the processed-image backends."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import Path

import xxhash

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class BaseStorage(ABC):
    """Abstract base class for processed-image storage.

    Backends expose a single capability: put a local file under a stable
    identity and return the public URL it is served from.
    """

    extension: str = ".jpg"

    @abstractmethod
    def store(self, local_file: Path, identity: str) -> str:
        """Upload ``local_file`` under ``identity``.

        Args:
            local_file: Path of the encoded image on local disk.
            identity: Stable identifier of the image, normally the entry public id.

        Returns:
            str: The public URL of the stored object.

        Raises:
            ImageStoreError: If the backend rejects or cannot receive the file.
        """

    def object_name(self, identity: str) -> str:
        """Return a path-safe object name for ``identity``.

        Identities that need rewriting get a hash of the raw value appended
        so that ``a/b`` and ``a_b`` never share an object.
        """

        safe = _UNSAFE_NAME.sub("_", identity).strip("._") or "image"
        if safe != identity:
            safe = f"{safe}-{xxhash.xxh64(identity.encode('utf-8')).intdigest():016x}"
        return f"{safe}{self.extension}"

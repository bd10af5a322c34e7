from __future__ import annotations

import os
import shutil
import socket
import subprocess
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import pytest
from sqlalchemy.orm import Session

from imagefeed.db import Entry, Feed, open_primary_session

COMPLETE_IMAGE = {
    "original_url": "https://example.com/a.jpg",
    "processed_url": "https://cdn.example.com/a.jpg",
    "width": 640,
    "height": 480,
}


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'data' / 'imagefeed.db'}"


@pytest.fixture
def session(db_url: str) -> Iterator[Session]:
    with open_primary_session(db_url) as session:
        yield session


@pytest.fixture
def feed(session: Session) -> Feed:
    row = Feed(id=1, title="Example", feed_url="https://example.com/feed.xml", created_at=0.0, updated_at=0.0)
    session.add(row)
    session.commit()
    return row


def add_entry(session: Session, public_id: str, *, feed_id: int = 1, **values: Any) -> Entry:
    now = time.time()
    values.setdefault("created_at", now)
    values.setdefault("updated_at", now)
    values.setdefault("data", {})
    entry = Entry(public_id=public_id, feed_id=feed_id, **values)
    session.add(entry)
    session.commit()
    return entry


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@contextmanager
def temporary_postgres(base_dir: Path) -> Iterator[str]:
    """Run a throwaway PostgreSQL cluster under ``base_dir`` and yield its URL."""

    binaries = {name: os.environ.get(name.upper()) or shutil.which(name) for name in ("initdb", "pg_ctl")}
    if not all(binaries.values()):
        pytest.skip("PostgreSQL binaries are not available")

    workdir = Path(tempfile.mkdtemp(dir=base_dir))
    data_dir = workdir / "pgdata"
    log_file = workdir / "postgresql.log"

    init = subprocess.run(
        [binaries["initdb"], "-D", str(data_dir), "--username", "postgres", "--auth", "trust", "--nosync"],
        capture_output=True,
        text=True,
    )
    if init.returncode != 0:
        pytest.skip(f"initdb failed: {init.stderr.strip()}")

    port = _free_port()
    start = subprocess.run(
        [binaries["pg_ctl"], "-D", str(data_dir), "-l", str(log_file), "-o", f"-p {port}", "-w", "start"],
        capture_output=True,
        text=True,
    )
    if start.returncode != 0:
        pytest.skip(f"pg_ctl start failed: {start.stderr.strip()}")

    try:
        yield f"postgresql+psycopg://postgres@127.0.0.1:{port}/postgres"
    finally:
        subprocess.run(
            [binaries["pg_ctl"], "-D", str(data_dir), "-m", "immediate", "stop"],
            capture_output=True,
            text=True,
        )
        shutil.rmtree(workdir, ignore_errors=True)

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path

import pytest

from photobackup import exif_utils
from photobackup.config import Config


@pytest.fixture(autouse=True)
def _no_exiftool(monkeypatch):
    # Keep file dates deterministic regardless of what is installed on the host.
    monkeypatch.delenv("PHOTO_BACKUP_BUCKET", raising=False)
    monkeypatch.setattr(exif_utils, "_via_exiftool", lambda path: None)
    exif_utils._cached_capture.cache_clear()


@pytest.fixture
def cfg(tmp_path: Path) -> Config:
    return Config(s3_bucket="test-bucket", local_import_base=tmp_path / "imports")


@pytest.fixture
def make_media():
    """Create a file whose mtime is local noon on `day`."""

    def _make(path: Path, day: str = "2024-12-25", content: bytes | None = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content if content is not None else f"data:{path.name}".encode())
        ts = datetime.strptime(day, "%Y-%m-%d").replace(hour=12).timestamp()
        os.utime(path, (ts, ts))
        return path

    return _make


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config" / "config"
    path.parent.mkdir(parents=True)
    path.write_text(
        'S3_BUCKET="test-bucket"\n'
        f'LOCAL_IMPORT_BASE="{tmp_path / "imports"}"\n'
        'S3_STORAGE_CLASS="STANDARD"\n',
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    # setup_logging binds a StreamHandler to the stream pytest captured for that test.
    logger = logging.getLogger("photobackup")
    logger.handlers.clear()
    logger.propagate = True

from __future__ import annotations

import enum
import os
from pathlib import Path

from .config import Config


class FileCategory(str, enum.Enum):
    RAW = "raw"
    COMPRESSED = "compressed"
    UNKNOWN = "unknown"


def extension_of(name: str | Path) -> str:
    return Path(name).suffix.lower().lstrip(".")


def classify(name: str | Path, cfg: Config) -> FileCategory:
    ext = extension_of(name)
    if ext in cfg.raw_extensions:
        return FileCategory.RAW
    if ext in cfg.jpg_extensions:
        return FileCategory.COMPRESSED
    return FileCategory.UNKNOWN


def is_importable(name: str | Path, cfg: Config) -> bool:
    return extension_of(name) in cfg.importable_extensions


def prefix_for(category: FileCategory, cfg: Config) -> str | None:
    if category is FileCategory.RAW:
        return cfg.s3_prefix_raw
    if category is FileCategory.COMPRESSED:
        return cfg.s3_prefix_jpg
    return None


def iter_media_files(root: Path, cfg: Config, logger=None) -> list[Path]:
    """
    Recursively list files under `root` whose extension is importable.
    Walk order is os.walk order with names sorted inside each directory.
    Symlinks are not listed or followed (regular files only, like `find -type f`).
    """
    out: list[Path] = []
    all_files_count = 0

    def _on_error(e: OSError) -> None:
        if logger:
            logger.warning(f"Cannot list {e.filename}: {e.strerror}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
        dirnames.sort()
        base = Path(dirpath)
        for filename in sorted(filenames):
            path = base / filename
            if path.is_symlink():
                continue
            all_files_count += 1
            if is_importable(filename, cfg):
                out.append(path)

    if logger:
        logger.debug(f"Found {len(out)} media files out of {all_files_count} total files in {root}")
    return out

from __future__ import annotations

import shutil
import subprocess
from datetime import datetime
from functools import lru_cache
from pathlib import Path

from PIL import Image


# EXIF tag IDs
_TAG_DATETIME_ORIGINAL = 36867
_IFD_EXIF = 0x8769


def _parse_exif_datetime(s: str) -> datetime | None:
    """
    Common EXIF datetime format: 'YYYY:MM:DD HH:MM:SS'
    """
    s = (s or "").strip().rstrip("\x00")
    if not s:
        return None
    for fmt in ("%Y:%m:%d %H:%M:%S", "%Y:%m:%d %H:%M:%S%z", "%Y:%m:%d %H:%M:%S.%f"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None


def _via_pillow(path: Path) -> datetime | None:
    try:
        with Image.open(path) as im:
            exif = im.getexif()
            if not exif:
                return None
            dt_original = exif.get_ifd(_IFD_EXIF).get(_TAG_DATETIME_ORIGINAL)
            if dt_original is None:
                # Some writers put it in IFD0. DateTime (306) is never used.
                dt_original = exif.get(_TAG_DATETIME_ORIGINAL)
            if dt_original is None:
                return None
            return _parse_exif_datetime(str(dt_original))
    except Exception:
        # Not an image Pillow understands (most RAW formats) or corrupt metadata.
        return None


def _via_exiftool(path: Path) -> datetime | None:
    if shutil.which("exiftool") is None:
        return None
    try:
        proc = subprocess.run(
            ["exiftool", "-DateTimeOriginal", "-s3", str(path)],
            capture_output=True,
            text=True,
            timeout=30,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    return _parse_exif_datetime(proc.stdout.strip())


@lru_cache(maxsize=4096)
def _cached_capture(path_str: str, mtime_ns: int, size: int) -> datetime | None:
    p = Path(path_str)
    return _via_pillow(p) or _via_exiftool(p)


def capture_datetime(path: Path) -> datetime | None:
    """
    Best-effort EXIF capture time (DateTimeOriginal only).
    Pillow first; exiftool when it is installed and Pillow found nothing.
    """
    st = path.stat()
    return _cached_capture(str(path), st.st_mtime_ns, st.st_size)

"""
Date selection for imports (one exact day) and uploads (inclusive range).

A file's date is its EXIF capture time when one can be read, otherwise its
filesystem modification time, both as reported in local time. Dates are
compared as fixed-width YYYY-MM-DD strings.
"""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path

from .errors import PreconditionError
from .exif_utils import capture_datetime


DATE_FORMAT = "%Y-%m-%d"


def parse_date_arg(value: str | None, *, name: str = "date") -> str | None:
    """Validate a YYYY-MM-DD argument and return it normalized; None/'' pass through."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return datetime.strptime(value, DATE_FORMAT).date().strftime(DATE_FORMAT)
    except ValueError:
        raise PreconditionError(f"Invalid {name} '{value}' (expected YYYY-MM-DD)") from None


def today() -> str:
    return date.today().strftime(DATE_FORMAT)


def compact_date(value: str) -> str:
    """'2024-12-25' -> '20241225' (import folder name)."""
    return value.replace("-", "")


def file_datetime(path: Path) -> datetime:
    captured = capture_datetime(path)
    if captured is not None:
        return captured
    return datetime.fromtimestamp(path.stat().st_mtime)


def file_date(path: Path) -> str:
    return file_datetime(path).strftime(DATE_FORMAT)


def year_month(path: Path) -> str:
    return file_datetime(path).strftime("%Y-%m")


def matches_date(path: Path, target: str) -> bool:
    return file_date(path) == target


def date_in_range(value: str, start: str | None, end: str | None) -> bool:
    if start and value < start:
        return False
    if end and value > end:
        return False
    return True


def in_date_range(path: Path, start: str | None, end: str | None) -> bool:
    if not start and not end:
        return True
    return date_in_range(file_date(path), start, end)

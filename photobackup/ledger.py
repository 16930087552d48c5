"""
Per-directory ledger of uploaded files.

Each source directory gets an append-only `.uploaded` file with one line per
successful upload:

    2024-12-25T10:00:00+00:00|100CANON/IMG_0001.CR3|<sha256 hex>

A file counts as uploaded only if both its current relative path and its
current content hash appear on the same line, so editing a file after upload
makes it eligible again.
"""

from __future__ import annotations

import hashlib
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path


LEDGER_NAME = ".uploaded"

_locks_guard = threading.Lock()
_locks: dict[Path, threading.Lock] = {}


@dataclass(frozen=True)
class LedgerEntry:
    timestamp: str
    relative_path: str
    sha256: str


def sha256_file(path: Path, *, chunk_size: int | None = None) -> tuple[str, int]:
    """Return (hex digest, size in bytes). Chunk size scales with file size when not given."""
    if chunk_size is None:
        try:
            file_size = path.stat().st_size
            if file_size > 50 * 1024 * 1024:
                chunk_size = 8 * 1024 * 1024
            elif file_size > 10 * 1024 * 1024:
                chunk_size = 4 * 1024 * 1024
            else:
                chunk_size = 1024 * 1024
        except OSError:
            chunk_size = 1024 * 1024

    h = hashlib.sha256()
    size = 0
    with path.open("rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            size += len(chunk)
            h.update(chunk)
    return h.hexdigest(), size


def ledger_path(source_dir: Path) -> Path:
    return source_dir / LEDGER_NAME


def relative_key(source_dir: Path, file_path: Path) -> str:
    """POSIX path of `file_path` under `source_dir`. Lexical: symlinks are not resolved."""
    rel = Path(os.path.abspath(file_path)).relative_to(os.path.abspath(source_dir))
    return rel.as_posix()


def _lock_for(source_dir: Path) -> threading.Lock:
    key = source_dir.resolve()
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


def _parse_line(line: str) -> LedgerEntry | None:
    line = line.rstrip("\n")
    if line.count("|") < 2:
        return None
    timestamp, rest = line.split("|", 1)
    relative_path, sha = rest.rsplit("|", 1)
    return LedgerEntry(timestamp=timestamp, relative_path=relative_path, sha256=sha)


def entries(source_dir: Path) -> list[LedgerEntry]:
    path = ledger_path(source_dir)
    if not path.is_file():
        return []
    out: list[LedgerEntry] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            entry = _parse_line(line)
            if entry is not None:
                out.append(entry)
    return out


def is_uploaded(source_dir: Path, file_path: Path) -> bool:
    """True when (relative path, current SHA-256) is already in the ledger."""
    path = ledger_path(source_dir)
    if not path.is_file():
        return False

    rel = relative_key(source_dir, file_path)
    sha, _ = sha256_file(file_path)
    return any(e.relative_path == rel and e.sha256 == sha for e in entries(source_dir))


def record_uploaded(source_dir: Path, file_path: Path) -> LedgerEntry:
    rel = relative_key(source_dir, file_path)
    sha, _ = sha256_file(file_path)
    entry = LedgerEntry(
        timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        relative_path=rel,
        sha256=sha,
    )
    line = f"{entry.timestamp}|{entry.relative_path}|{entry.sha256}\n"

    # One write per line on an O_APPEND handle, serialized per directory.
    with _lock_for(source_dir):
        with ledger_path(source_dir).open("a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
    return entry

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger("photobackup.volumes")


def _mounts_under(root: Path) -> list[Path]:
    """
    Mounted volumes directly under a mount root.
    On Linux, /media and /run/media nest volumes one level deeper, under the user name.
    """
    try:
        children = sorted(p for p in root.iterdir() if p.is_dir())
    except OSError as e:
        logger.debug(f"Cannot list mount root {root}: {e}")
        return []

    user = os.environ.get("USER") or os.environ.get("LOGNAME") or ""
    if root.name == "media" and user:
        nested = root / user
        if nested in children:
            try:
                return sorted(p for p in nested.iterdir() if p.is_dir())
            except OSError:
                return []
    return children


def list_volumes(mount_roots: list[Path], *, home: Path | None = None) -> list[dict[str, str]]:
    """
    Candidate source locations for the UI picker: removable volumes under the
    mount roots, then common folders in the user's home directory.
    """
    volumes: list[dict[str, str]] = []
    seen: set[Path] = set()
    for root in mount_roots:
        if not root.is_dir():
            continue
        for vol in _mounts_under(root):
            if vol in seen:
                continue
            seen.add(vol)
            volumes.append({"name": vol.name, "path": str(vol), "type": "volume"})

    home = home or Path.home()
    for name in ("Desktop", "Pictures", "Downloads"):
        volumes.append({"name": name, "path": str(home / name), "type": "folder"})
    return volumes

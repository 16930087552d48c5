from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from . import dates, media
from .config import Config
from .errors import ImportFailed, PreconditionError
from .uploader import destination_key


# Called with the destination folder once the copy phase is over. The CLI
# passes a synchronous upload; the HTTP service passes JobTracker-backed
# start and gets a job id back.
UploadHook = Callable[[Path], "str | None"]


@dataclass
class ImportResult:
    imported: int
    skipped: int
    dest_dir: Path
    upload_id: str | None = None


def destination_dir(cfg: Config, target_date: str) -> Path:
    return cfg.local_import_base / dates.compact_date(target_date)


def check_source_volume(source: Path) -> Path:
    try:
        if not source.is_dir():
            raise PreconditionError(f"Directory does not exist: {source}")
        next(source.iterdir(), None)
    except PermissionError as e:
        raise PreconditionError(f"Volume is not readable: {source}\n  Error: {e}") from e
    except OSError as e:
        raise PreconditionError(
            f"Volume is not accessible: {source}\n"
            f"  Error: {e}\n"
            f"  Try: Check that the SD card is properly mounted and readable."
        ) from e
    return source


def run_import(
    *,
    cfg: Config,
    source_volume: Path,
    target_date: str,
    dry_run: bool = False,
    logger: logging.Logger,
    upload: UploadHook | None = None,
) -> ImportResult:
    """
    Copy media files taken on `target_date` from `source_volume` into
    LOCAL_IMPORT_BASE/YYYYMMDD, then hand that folder to `upload`.

    A file whose name already exists in the destination is skipped without
    comparing content. Any read or copy error aborts the import.
    """
    target_date = dates.parse_date_arg(target_date, name="import date") or dates.today()
    check_source_volume(source_volume)

    dest_dir = destination_dir(cfg, target_date)
    imported = 0
    skipped = 0
    # Names taken by this run, so a dry run sees the same collisions a copy would.
    planned: dict[str, Path] = {}

    logger.info("Importing photos from card")
    logger.info(f"Source: {source_volume}")
    logger.info(f"Target date: {target_date}")
    logger.info(f"Destination: {dest_dir}")
    if dry_run:
        logger.warning("Dry run: nothing will be copied")

    if not dry_run:
        dest_dir.mkdir(parents=True, exist_ok=True)

    for src in media.iter_media_files(source_volume, cfg, logger=logger):
        try:
            if not dates.matches_date(src, target_date):
                continue
        except OSError as e:
            raise ImportFailed(f"Cannot read {src}: {e}") from e

        dst = dest_dir / src.name
        if dst.exists() or src.name in planned:
            skipped += 1
            logger.debug(f"Skipped (already exists): {src.name}")
            continue

        planned[src.name] = src
        if dry_run:
            imported += 1
            logger.info(f"[DRY RUN] Copy: {src.name} -> {dest_dir}/")
            continue

        try:
            shutil.copy2(src, dst)
        except OSError as e:
            raise ImportFailed(f"Copy failed: {src} -> {dst}\n  Error: {e}") from e
        imported += 1
        logger.debug(f"Copied: {src.name}")

    logger.info(f"Import complete: {imported} files (skipped: {skipped})")

    result = ImportResult(imported=imported, skipped=skipped, dest_dir=dest_dir)
    if upload is None:
        return result

    if imported > 0 and not dry_run:
        result.upload_id = upload(dest_dir)
    elif dry_run and dest_dir.is_dir():
        result.upload_id = upload(dest_dir)
    elif dry_run:
        # Nothing to walk yet; preview the keys the copied files would get.
        for name, src in planned.items():
            logger.info(f"[DRY RUN] {name} -> s3://{cfg.s3_bucket}/{destination_key(src, cfg)}")
        logger.info(f"[DRY RUN] {imported} files would be uploaded from {dest_dir}")
    return result

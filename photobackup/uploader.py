from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from . import dates, ledger, media
from .aws_boto3 import AwsBoto3Error, get_caller_identity, s3_upload_file
from .config import Config, load_config
from .errors import PreconditionError, TransferFailed, UploadCancelled


Transfer = Callable[..., None]


@dataclass(frozen=True)
class UploadParams:
    source_path: str
    start_date: str | None = None
    end_date: str | None = None
    dry_run: bool = False

    def validated(self) -> "UploadParams":
        """Normalized copy; raises PreconditionError on a bad path or date."""
        if not self.source_path:
            raise PreconditionError("Source path is required")
        source = Path(self.source_path).expanduser()
        if not source.is_dir():
            raise PreconditionError(f"Directory does not exist: {self.source_path}")
        start = dates.parse_date_arg(self.start_date, name="start date")
        end = dates.parse_date_arg(self.end_date, name="end date")
        if start and end and start > end:
            raise PreconditionError(f"Start date {start} is after end date {end}")
        return UploadParams(
            source_path=str(source.resolve()),
            start_date=start,
            end_date=end,
            dry_run=bool(self.dry_run),
        )

    def to_argv(self) -> list[str]:
        """The `photobackup backup` flags that run the same upload from the CLI."""
        argv = ["--source", self.source_path]
        if self.start_date:
            argv += ["--start", self.start_date]
        if self.end_date:
            argv += ["--end", self.end_date]
        if self.dry_run:
            argv.append("--dry-run")
        return argv


@dataclass
class UploadSummary:
    file_count: int = 0
    upload_count: int = 0
    skip_count: int = 0
    total_bytes: int = 0
    skipped_by_reason: dict[str, int] = field(default_factory=dict)

    @property
    def total_mb(self) -> float:
        return self.total_bytes / 1024 / 1024


class ProgressListener:
    """Receives per-file events from run_upload. Methods are no-ops by default."""

    def started(self, total: int) -> None:
        pass

    def file(self, path: Path) -> None:
        pass

    def uploaded(self, path: Path, key: str) -> None:
        pass

    def skipped(self, path: Path, reason: str) -> None:
        pass


def destination_key(path: Path, cfg: Config) -> str | None:
    """`{prefix}/{YYYY-MM}/{filename}`, or None for files that are neither RAW nor JPG."""
    prefix = media.prefix_for(media.classify(path.name, cfg), cfg)
    if prefix is None:
        return None
    return f"{prefix}/{dates.year_month(path)}/{path.name}"


def _excluded_by(name: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern and pattern in name:
            return pattern
    return None


def run_upload(
    *,
    cfg: Config,
    source_dir: Path,
    start_date: str | None = None,
    end_date: str | None = None,
    dry_run: bool = False,
    logger: logging.Logger,
    progress: ProgressListener | None = None,
    cancel: threading.Event | None = None,
    transfer: Transfer = s3_upload_file,
) -> UploadSummary:
    """
    Upload every new media file under `source_dir` to S3.

    Files are skipped when they match an exclusion pattern, fall outside
    [start_date, end_date], are already in the directory's ledger, or are
    neither RAW nor JPG. A failed transfer aborts the whole run; files
    uploaded before it stay recorded in the ledger.
    """
    if not source_dir.is_dir():
        raise PreconditionError(f"Directory does not exist: {source_dir}")
    progress = progress or ProgressListener()
    summary = UploadSummary()

    def _skip(path: Path, reason: str, detail: str) -> None:
        summary.skip_count += 1
        summary.skipped_by_reason[reason] = summary.skipped_by_reason.get(reason, 0) + 1
        logger.debug(f"Skipped ({detail}): {path.name}")
        progress.skipped(path, reason)

    logger.info("Starting backup")
    logger.info(f"Source: {source_dir}")
    logger.info(f"S3 bucket: s3://{cfg.s3_bucket}/")
    if start_date or end_date:
        logger.info(f"Date range: {start_date or '(no start)'} to {end_date or '(no end)'}")
    if dry_run:
        logger.warning("Dry run: nothing will be uploaded")

    files = media.iter_media_files(source_dir, cfg, logger=logger)
    progress.started(len(files))

    for path in files:
        if cancel is not None and cancel.is_set():
            raise UploadCancelled(
                f"Upload stopped after {summary.upload_count} uploads "
                f"({summary.file_count} of {len(files)} files processed)"
            )

        summary.file_count += 1
        progress.file(path)

        pattern = _excluded_by(path.name, cfg.exclude_patterns)
        if pattern is not None:
            _skip(path, "excluded", f"matches exclusion pattern '{pattern}'")
            continue

        try:
            if not dates.in_date_range(path, start_date, end_date):
                _skip(path, "out_of_range", "outside date range")
                continue

            if ledger.is_uploaded(source_dir, path):
                _skip(path, "already_uploaded", "already uploaded")
                continue

            key = destination_key(path, cfg)
            if key is None:
                _skip(path, "unknown_type", "unsupported file type")
                continue

            size = path.stat().st_size
        except OSError as e:
            raise TransferFailed(f"Cannot read {path}: {e}") from e

        summary.total_bytes += size

        if dry_run:
            logger.info(f"[DRY RUN] {path.name} -> s3://{cfg.s3_bucket}/{key}")
            continue

        logger.info(f"Uploading: {path.name} -> {key.rsplit('/', 2)[-2]}/")
        try:
            transfer(
                path,
                bucket=cfg.s3_bucket,
                key=key,
                storage_class=cfg.s3_storage_class,
                profile=cfg.aws_profile,
                region=cfg.aws_region,
            )
        except AwsBoto3Error as e:
            raise TransferFailed(f"Upload failed: {path.name}\n{e}") from e

        try:
            ledger.record_uploaded(source_dir, path)
        except OSError as e:
            raise TransferFailed(f"Uploaded {path.name} but could not record it in the ledger: {e}") from e
        summary.upload_count += 1
        logger.debug(f"Done: {path.name}")
        progress.uploaded(path, key)

    log_summary(summary, logger=logger, dry_run=dry_run)
    return summary


def log_summary(summary: UploadSummary, *, logger: logging.Logger, dry_run: bool) -> None:
    logger.info("====================")
    logger.info("Backup complete")
    logger.info("====================")
    logger.info(f"Total files: {summary.file_count}")
    logger.info(f"Uploaded: {summary.upload_count}")
    logger.info(f"Skipped: {summary.skip_count}")
    logger.info(f"Total size: {summary.total_mb:.2f} MB")
    if dry_run:
        logger.warning("This was a dry run. Remove --dry-run to upload.")


def ensure_credentials(cfg: Config, *, identity_check: Callable[..., dict] = get_caller_identity) -> dict:
    """Fail fast when the configured AWS profile cannot authenticate."""
    try:
        return identity_check(profile=cfg.aws_profile, region=cfg.aws_region)
    except AwsBoto3Error as e:
        raise PreconditionError(f"AWS authentication failed. Run: aws configure\n{e}") from e


def make_upload_runner(
    *,
    config_file: Path | None = None,
    identity_check: Callable[..., dict] = get_caller_identity,
    transfer: Transfer = s3_upload_file,
) -> Callable[..., UploadSummary]:
    """
    The job body used by the HTTP service: resolve config once, check
    credentials, then run the upload with the job's logger and listener.
    """

    def runner(
        params: UploadParams,
        *,
        logger: logging.Logger,
        progress: ProgressListener | None = None,
        cancel: threading.Event | None = None,
    ) -> UploadSummary:
        cfg = load_config(config_file=config_file)
        ensure_credentials(cfg, identity_check=identity_check)
        return run_upload(
            cfg=cfg,
            source_dir=Path(params.source_path),
            start_date=params.start_date,
            end_date=params.end_date,
            dry_run=params.dry_run,
            logger=logger,
            progress=progress,
            cancel=cancel,
            transfer=transfer,
        )

    return runner

from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path

from . import dates
from .aws_boto3 import AwsBoto3Error, get_caller_identity
from .config import (
    Config,
    STORAGE_CLASSES,
    config_file_path,
    load_config,
    load_server_config,
    merge_config,
    render_config_file,
    save_config,
    try_load_config,
)
from .errors import BackupError
from .importer import run_import
from .jobs import JobTracker
from .logging_utils import setup_logging
from .uploader import UploadParams, ensure_credentials, make_upload_runner, run_upload
from .web import ControlApi, PhotoBackupServer


def _config_file(args: argparse.Namespace) -> Path | None:
    return Path(args.config_file).expanduser() if args.config_file else None


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config-file", default=None, help="Config file (default: ~/.photo-backup-config/config)")
    p.add_argument("-v", "--verbose", action="store_true", help="Show per-file skip reasons (DEBUG logs)")


def _prompt(label: str, default: str) -> str:
    value = input(f"{label} [{default}]: ").strip()
    return value or default


def cmd_config(args: argparse.Namespace) -> int:
    """Show the config file, create it interactively on first run, or open it in $EDITOR."""
    path = _config_file(args) or config_file_path()
    cfg = try_load_config(path)

    if cfg is None:
        print("photobackup setup")
        print("=" * 60)
        defaults = Config(s3_bucket="")
        try:
            bucket = _prompt("S3 bucket", "")
            while not bucket:
                print("  A bucket name is required.")
                bucket = _prompt("S3 bucket", "")
            updates = {
                "S3_BUCKET": bucket,
                "LOCAL_IMPORT_BASE": _prompt("Local import folder", str(defaults.local_import_base)),
                "AWS_PROFILE": _prompt("AWS profile", defaults.aws_profile),
                "AWS_REGION": _prompt("AWS region", defaults.aws_region),
                "S3_STORAGE_CLASS": _prompt(
                    f"Storage class ({', '.join(sorted(STORAGE_CLASSES))})", defaults.s3_storage_class
                ),
            }
        except (EOFError, KeyboardInterrupt):
            print()
            print("Setup cancelled.")
            return 130
        try:
            cfg = merge_config(None, updates)
        except BackupError as e:
            print(str(e), file=sys.stderr)
            return 1
        save_config(cfg, path)
        print(f"Configuration saved to {path}")
        return 0

    if args.edit:
        editor = os.environ.get("EDITOR") or "vi"
        return subprocess.call([editor, str(path)])

    print(f"# {path}")
    print(render_config_file(cfg), end="")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    if args.config:
        return cmd_config(args)

    logger = setup_logging(verbose=args.verbose)
    try:
        cfg = load_config(
            config_file=_config_file(args),
            s3_bucket=args.s3_bucket,
            aws_profile=args.aws_profile,
            aws_region=args.aws_region,
        )

        if args.import_path:
            target_date = dates.parse_date_arg(args.import_date, name="import date") or dates.today()
            ensure_credentials(cfg)

            def upload_now(dest_dir: Path) -> None:
                run_upload(cfg=cfg, source_dir=dest_dir, dry_run=args.dry_run, logger=logger)

            run_import(
                cfg=cfg,
                source_volume=Path(args.import_path).expanduser(),
                target_date=target_date,
                dry_run=args.dry_run,
                logger=logger,
                upload=upload_now,
            )
            return 0

        params = UploadParams(
            source_path=args.source,
            start_date=args.start,
            end_date=args.end,
            dry_run=args.dry_run,
        ).validated()
        ensure_credentials(cfg)
        run_upload(
            cfg=cfg,
            source_dir=Path(params.source_path),
            start_date=params.start_date,
            end_date=params.end_date,
            dry_run=params.dry_run,
            logger=logger,
        )
        return 0
    except BackupError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted; files uploaded so far are recorded in .uploaded")
        return 130


def cmd_serve(args: argparse.Namespace) -> int:
    logger = setup_logging(verbose=args.verbose)
    scfg = load_server_config(host=args.host, port=args.port, progress_dir=args.progress_dir)
    config_file = _config_file(args)

    tracker = JobTracker(
        scfg.progress_dir,
        runner=make_upload_runner(config_file=config_file),
        retention_seconds=scfg.retention_seconds,
    )
    interrupted = tracker.reconcile_on_startup()
    if interrupted:
        logger.warning(f"{len(interrupted)} upload(s) were interrupted by the last shutdown")

    api = ControlApi(tracker=tracker, mount_roots=scfg.mount_roots, config_file=config_file)
    server = PhotoBackupServer(api=api, host=scfg.host, port=scfg.port)
    if not server.start():
        tracker.close()
        return 1
    logger.info(f"Control API listening on {server.get_url()}")
    logger.info(f"Job records: {scfg.progress_dir}")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.stop()
        tracker.close()
    return 0


def cmd_check_aws(args: argparse.Namespace) -> int:
    logger = setup_logging(verbose=args.verbose)
    try:
        cfg = try_load_config(_config_file(args)) or Config(s3_bucket="")
    except BackupError as e:
        logger.error(str(e))
        return 1
    try:
        identity = get_caller_identity(profile=cfg.aws_profile, region=cfg.aws_region)
    except AwsBoto3Error as e:
        logger.error(f"AWS credentials are not working:\n{e}")
        return 1
    print(f"Account: {identity.get('Account')}")
    print(f"Arn:     {identity.get('Arn')}")
    print(f"UserId:  {identity.get('UserId')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="photobackup", description="Back up camera photos to S3")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_backup = sub.add_parser("backup", help="Upload a folder, import an SD card, or manage the config")
    _add_common_args(p_backup)
    mode = p_backup.add_mutually_exclusive_group(required=True)
    mode.add_argument("-s", "--source", default=None, help="Folder to upload")
    mode.add_argument(
        "-i",
        "--import",
        dest="import_path",
        default=None,
        help="SD card path to import into LOCAL_IMPORT_BASE/YYYYMMDD, then upload",
    )
    mode.add_argument("-c", "--config", action="store_true", help="Show the config (creates it on first run)")
    p_backup.add_argument("--edit", action="store_true", help="With --config: open the config file in $EDITOR")
    p_backup.add_argument("--start", default=None, help="Only upload files taken on or after YYYY-MM-DD")
    p_backup.add_argument("--end", default=None, help="Only upload files taken on or before YYYY-MM-DD")
    p_backup.add_argument("--import-date", default=None, help="Shooting date to import (default: today)")
    p_backup.add_argument("-d", "--dry-run", action="store_true", help="Show what would happen without changing anything")
    p_backup.add_argument("--s3-bucket", default=None, help="Override S3_BUCKET")
    p_backup.add_argument("--aws-profile", default=None, help="Override AWS_PROFILE")
    p_backup.add_argument("--aws-region", default=None, help="Override AWS_REGION")
    p_backup.set_defaults(func=cmd_backup)

    p_serve = sub.add_parser("serve", help="Run the HTTP control API")
    _add_common_args(p_serve)
    p_serve.add_argument("--host", default=None, help="Bind host (default: 127.0.0.1, or PHOTO_BACKUP_HOST)")
    p_serve.add_argument("--port", type=int, default=None, help="Bind port (default: 3001, or PHOTO_BACKUP_PORT)")
    p_serve.add_argument(
        "--progress-dir",
        default=None,
        help="Where job records are kept (default: ~/.photo-backup-config/uploads)",
    )
    p_serve.set_defaults(func=cmd_serve)

    p_aws = sub.add_parser("check-aws", help="Verify AWS credentials for the configured profile")
    _add_common_args(p_aws)
    p_aws.set_defaults(func=cmd_check_aws)

    return p


def main(argv: list[str] | None = None) -> None:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    rc = args.func(args)
    raise SystemExit(rc)

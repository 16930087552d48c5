"""
Background upload jobs.

Each job runs the uploader on its own thread and keeps a JobRecord that is
mirrored to `<progress_dir>/<job id>.json` after every change. The JSON copy
is only read back by `reconcile_on_startup`, which turns records left in
`running` by a previous process into `interrupted`.

    (start) -> running -> completed   exit code 0
                       -> failed      any other exit code
                       -> cancelled   stop() was requested
    running --(service restart)--> interrupted

Terminal records are dropped from memory and disk once the retention window
has passed.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .errors import BackupError, UploadCancelled
from .logging_utils import child_logger
from .uploader import ProgressListener, UploadParams, UploadSummary


CANCELLED_EXIT_CODE = 143
DEFAULT_RETENTION_SECONDS = 3600.0

Runner = Callable[..., UploadSummary]


class JobStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


TERMINAL = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.INTERRUPTED, JobStatus.CANCELLED})
RESUMABLE = frozenset({JobStatus.FAILED, JobStatus.INTERRUPTED, JobStatus.CANCELLED})


class JobNotFound(KeyError):
    pass


class JobStateError(RuntimeError):
    pass


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_utc(s: str) -> float:
    return datetime.fromisoformat(s.replace("Z", "+00:00")).timestamp()


@dataclass
class JobProgress:
    total: int = 0
    completed: int = 0
    skipped: int = 0


@dataclass
class JobRecord:
    id: str
    status: JobStatus
    source_path: str
    start_date: str | None
    end_date: str | None
    dry_run: bool
    start_time: str
    end_time: str | None = None
    exit_code: int | None = None
    output: str = ""
    error: str = ""
    current_file: str | None = None
    progress: JobProgress = field(default_factory=JobProgress)
    resumed_from: str | None = None

    @property
    def params(self) -> UploadParams:
        return UploadParams(
            source_path=self.source_path,
            start_date=self.start_date,
            end_date=self.end_date,
            dry_run=self.dry_run,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "sourcePath": self.source_path,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "dryRun": self.dry_run,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "exitCode": self.exit_code,
            "output": self.output,
            "error": self.error,
            "currentFile": self.current_file,
            "progress": {
                "total": self.progress.total,
                "completed": self.progress.completed,
                "skipped": self.progress.skipped,
            },
            "resumedFrom": self.resumed_from,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobRecord":
        progress = data.get("progress") or {}
        return cls(
            id=str(data["id"]),
            status=JobStatus(data["status"]),
            source_path=data["sourcePath"],
            start_date=data.get("startDate"),
            end_date=data.get("endDate"),
            dry_run=bool(data.get("dryRun", False)),
            start_time=data["startTime"],
            end_time=data.get("endTime"),
            exit_code=data.get("exitCode"),
            output=data.get("output") or "",
            error=data.get("error") or "",
            current_file=data.get("currentFile"),
            progress=JobProgress(
                total=int(progress.get("total", 0)),
                completed=int(progress.get("completed", 0)),
                skipped=int(progress.get("skipped", 0)),
            ),
            resumed_from=data.get("resumedFrom"),
        )


class _JobProgress(ProgressListener):
    def __init__(self, tracker: "JobTracker", job_id: str) -> None:
        self.tracker = tracker
        self.job_id = job_id

    def started(self, total: int) -> None:
        self.tracker._update(self.job_id, lambda r: setattr(r.progress, "total", total))

    def file(self, path: Path) -> None:
        self.tracker._update(self.job_id, lambda r: setattr(r, "current_file", str(path)))

    def uploaded(self, path: Path, key: str) -> None:
        def _apply(r: JobRecord) -> None:
            r.progress.completed += 1

        self.tracker._update(self.job_id, _apply)

    def skipped(self, path: Path, reason: str) -> None:
        def _apply(r: JobRecord) -> None:
            r.progress.skipped += 1

        self.tracker._update(self.job_id, _apply)


class JobTracker:
    def __init__(
        self,
        progress_dir: Path,
        *,
        runner: Runner,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.progress_dir = progress_dir
        self.runner = runner
        self.retention_seconds = retention_seconds
        self.logger = logger or logging.getLogger("photobackup.jobs")

        self._lock = threading.RLock()
        self._jobs: dict[str, JobRecord] = {}
        self._cancel: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._timers: dict[str, threading.Timer] = {}

        self.progress_dir.mkdir(parents=True, exist_ok=True)

    # ---- persistence ----

    def _path_for(self, job_id: str) -> Path:
        return self.progress_dir / f"{job_id}.json"

    def _persist(self, payload: dict[str, Any]) -> None:
        path = self._path_for(payload["id"])
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + os.linesep, encoding="utf-8")
        tmp.replace(path)

    def _update(self, job_id: str, fn: Callable[[JobRecord], None]) -> None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return
            fn(record)
            payload = record.to_dict()
        self._persist(payload)

    # ---- reads ----

    def get(self, job_id: str) -> dict[str, Any]:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFound(job_id)
            return record.to_dict()

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            records = sorted(self._jobs.values(), key=lambda r: r.start_time, reverse=True)
            return [r.to_dict() for r in records]

    # ---- lifecycle ----

    def start(self, params: UploadParams, *, resumed_from: str | None = None) -> str:
        """Register a running job and start it on a background thread. Returns the job id."""
        params = params.validated()
        job_id = uuid.uuid4().hex
        record = JobRecord(
            id=job_id,
            status=JobStatus.RUNNING,
            source_path=params.source_path,
            start_date=params.start_date,
            end_date=params.end_date,
            dry_run=params.dry_run,
            start_time=_utc_now(),
            resumed_from=resumed_from,
        )
        cancel = threading.Event()
        thread = threading.Thread(
            target=self._drive,
            args=(job_id, params, cancel),
            name=f"upload-{job_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._jobs[job_id] = record
            self._cancel[job_id] = cancel
            self._threads[job_id] = thread
            payload = record.to_dict()
        self._persist(payload)

        self.logger.info(f"Job {job_id} started: photobackup backup {' '.join(params.to_argv())}")
        thread.start()
        return job_id

    def _drive(self, job_id: str, params: UploadParams, cancel: threading.Event) -> None:
        def on_line(levelno: int, line: str) -> None:
            def _apply(r: JobRecord) -> None:
                if levelno >= logging.ERROR:
                    r.error += line + "\n"
                else:
                    r.output += line + "\n"

            self._update(job_id, _apply)

        job_logger, handler = child_logger(f"jobs.{job_id}", on_line)
        try:
            self.runner(params, logger=job_logger, progress=_JobProgress(self, job_id), cancel=cancel)
        except UploadCancelled as e:
            job_logger.warning(str(e))
            self.finalize(job_id, CANCELLED_EXIT_CODE, cancelled=True)
        except BackupError as e:
            job_logger.error(str(e))
            self.finalize(job_id, 1)
        except Exception as e:
            job_logger.exception(f"Unexpected error ({type(e).__name__}): {e}")
            self.finalize(job_id, 1)
        else:
            self.finalize(job_id, 0)
        finally:
            job_logger.removeHandler(handler)

    def finalize(self, job_id: str, exit_code: int, *, cancelled: bool = False) -> None:
        def _apply(r: JobRecord) -> None:
            if r.status in TERMINAL:
                return
            if cancelled:
                r.status = JobStatus.CANCELLED
            else:
                r.status = JobStatus.COMPLETED if exit_code == 0 else JobStatus.FAILED
            r.exit_code = exit_code
            r.end_time = _utc_now()
            r.current_file = None

        self._update(job_id, _apply)
        with self._lock:
            self._cancel.pop(job_id, None)
            status = self._jobs[job_id].status.value if job_id in self._jobs else "unknown"
        self.logger.info(f"Job {job_id} finished: {status} (exit code {exit_code})")
        self._schedule_expiry(job_id, self.retention_seconds)

    def stop(self, job_id: str) -> dict[str, Any]:
        """Ask a running job to stop after its current file."""
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFound(job_id)
            if record.status is not JobStatus.RUNNING:
                raise JobStateError(f"Job {job_id} is {record.status.value}, not running")
            event = self._cancel.get(job_id)
        if event is None:
            raise JobStateError(f"Job {job_id} is not owned by this process")
        event.set()
        self.logger.info(f"Job {job_id}: stop requested")
        return self.get(job_id)

    def resume(self, job_id: str) -> str:
        """Start a new job with the parameters of a failed, cancelled or interrupted one."""
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFound(job_id)
            if record.status not in RESUMABLE:
                raise JobStateError(f"Job {job_id} is {record.status.value} and cannot be resumed")
            params = record.params
        return self.start(params, resumed_from=job_id)

    def wait(self, job_id: str, timeout: float | None = None) -> dict[str, Any]:
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.get(job_id)

    # ---- retention ----

    def _schedule_expiry(self, job_id: str, delay: float) -> None:
        timer = threading.Timer(max(0.0, delay), self._expire, args=(job_id,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(job_id, None)
            self._timers[job_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _expire(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            self._threads.pop(job_id, None)
            self._timers.pop(job_id, None)
        self._path_for(job_id).unlink(missing_ok=True)
        self.logger.debug(f"Job {job_id} expired")

    def close(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for t in timers:
            t.cancel()

    # ---- recovery ----

    def reconcile_on_startup(self) -> list[str]:
        """
        Load persisted records. Records still marked running belonged to a
        process that no longer exists and become interrupted. Must run before
        any job is started by this tracker. Returns the interrupted job ids.
        """
        interrupted: list[str] = []
        now = time.time()
        for path in sorted(self.progress_dir.glob("*.json")):
            try:
                last_write = path.stat().st_mtime
                record = JobRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError) as e:
                self.logger.warning(f"Ignoring unreadable job record {path.name}: {e}")
                continue
            if record.id != path.stem:
                self.logger.warning(f"Ignoring job record {path.name}: id mismatch ({record.id})")
                continue

            if record.status is JobStatus.RUNNING:
                record = replace(record, status=JobStatus.INTERRUPTED)
                self._persist(record.to_dict())
                interrupted.append(record.id)
                self.logger.warning(f"Job {record.id} was running when the service stopped; marked interrupted")

            try:
                since = _parse_utc(record.end_time) if record.end_time else last_write
            except ValueError:
                since = last_write
            remaining = self.retention_seconds - (now - since)
            if remaining <= 0:
                self._path_for(record.id).unlink(missing_ok=True)
                continue

            with self._lock:
                self._jobs[record.id] = record
            self._schedule_expiry(record.id, remaining)

        return interrupted

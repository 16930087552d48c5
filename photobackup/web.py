"""
HTTP control service for photobackup.

JSON endpoints for the local UI: read and edit the config, list candidate
volumes, run an SD card import, and start/inspect/stop/resume background
upload jobs. Every route also answers under an `/api` prefix.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlparse

from . import aws_boto3, dates
from .aws_boto3 import AwsBoto3Error
from .config import (
    Config,
    config_file_path,
    load_config,
    merge_config,
    read_config_file,
    save_config,
    try_load_config,
)
from .errors import BackupError, ConfigError, PreconditionError
from .importer import run_import
from .jobs import JobNotFound, JobStateError, JobTracker
from .logging_utils import child_logger
from .uploader import UploadParams
from .volumes import list_volumes


Response = tuple[int, Any]


def _opt_str(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ControlApi:
    """
    Route bodies, independent of the HTTP plumbing. Each method returns
    (status code, JSON-serializable payload).
    """

    def __init__(
        self,
        *,
        tracker: JobTracker,
        mount_roots: list[Path],
        config_file: Path | None = None,
        identity_check: Callable[..., dict] = aws_boto3.get_caller_identity,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tracker = tracker
        self.mount_roots = mount_roots
        self.config_file = config_file
        self.identity_check = identity_check
        self.logger = logger or logging.getLogger("photobackup.web")

    @property
    def _config_path(self) -> Path:
        return self.config_file or config_file_path()

    # ---- config ----

    def get_config(self) -> Response:
        try:
            cfg = try_load_config(self._config_path)
        except ConfigError as e:
            return 200, {"configured": False, "message": str(e)}
        if cfg is None:
            return 200, {"configured": False, "message": "Configuration file not found"}
        return 200, cfg.public_view()

    def post_config(self, body: Any) -> Response:
        if not isinstance(body, dict):
            return 400, {"success": False, "error": "Expected a JSON object"}
        path = self._config_path
        try:
            # Merge onto the file contents, not the env-overridden view.
            current = Config.from_values(read_config_file(path)) if path.is_file() else None
            cfg = merge_config(current, body)
        except ConfigError as e:
            return 400, {"success": False, "error": str(e)}
        save_config(cfg, path)
        aws_boto3.reset_clients()
        self.logger.info(f"Configuration saved to {path}")
        return 200, {"success": True, "message": "Configuration saved"}

    # ---- volumes ----

    def get_volumes(self) -> Response:
        return 200, list_volumes(self.mount_roots)

    # ---- import ----

    def post_import(self, body: Any) -> Response:
        if not isinstance(body, dict):
            return 400, {"success": False, "error": "Expected a JSON object", "output": ""}
        source = _opt_str(body, "sourcePath")
        if source is None:
            return 400, {"success": False, "error": "Source path is required", "output": ""}
        dry_run = bool(body.get("dryRun", False))

        lines: list[str] = []
        log, handler = child_logger(f"import.{uuid.uuid4().hex[:8]}", lambda _lvl, line: lines.append(line))

        def start_upload(dest_dir: Path) -> str:
            return self.tracker.start(UploadParams(source_path=str(dest_dir), dry_run=dry_run))

        try:
            cfg = load_config(config_file=self.config_file)
            result = run_import(
                cfg=cfg,
                source_volume=Path(source).expanduser(),
                target_date=_opt_str(body, "importDate") or dates.today(),
                dry_run=dry_run,
                logger=log,
                upload=start_upload,
            )
        except PreconditionError as e:
            log.error(str(e))
            return 400, {"success": False, "error": str(e), "output": "\n".join(lines)}
        except BackupError as e:
            log.error(str(e))
            return 500, {"success": False, "error": str(e), "output": "\n".join(lines)}
        finally:
            log.removeHandler(handler)

        payload: dict[str, Any] = {
            "success": True,
            "output": "\n".join(lines),
            "message": "Import completed successfully",
            "imported": result.imported,
            "skipped": result.skipped,
        }
        if result.upload_id is not None:
            payload["uploadId"] = result.upload_id
        return 200, payload

    # ---- uploads ----

    def post_upload(self, body: Any) -> Response:
        if not isinstance(body, dict):
            return 400, {"error": "Expected a JSON object"}
        params = UploadParams(
            source_path=_opt_str(body, "sourcePath") or "",
            start_date=_opt_str(body, "startDate"),
            end_date=_opt_str(body, "endDate"),
            dry_run=bool(body.get("dryRun", False)),
        )
        try:
            job_id = self.tracker.start(params)
        except PreconditionError as e:
            return 400, {"error": str(e)}
        return 200, {"uploadId": job_id, "status": "running"}

    def list_uploads(self) -> Response:
        return 200, self.tracker.list()

    def get_upload(self, job_id: str) -> Response:
        try:
            return 200, self.tracker.get(job_id)
        except JobNotFound:
            return 404, {"error": "Upload not found"}

    def stop_upload(self, job_id: str) -> Response:
        try:
            return 200, self.tracker.stop(job_id)
        except JobNotFound:
            return 404, {"error": "Upload not found"}
        except JobStateError as e:
            return 409, {"error": str(e)}

    def resume_upload(self, job_id: str) -> Response:
        try:
            new_id = self.tracker.resume(job_id)
        except JobNotFound:
            return 404, {"error": "Upload not found"}
        except JobStateError as e:
            return 409, {"error": str(e)}
        except PreconditionError as e:
            return 400, {"error": str(e)}
        return 200, {"uploadId": new_id, "status": "running", "resumedFrom": job_id}

    # ---- aws ----

    def check_aws(self) -> Response:
        try:
            cfg = try_load_config(self._config_path) or Config(s3_bucket="")
        except ConfigError as e:
            return 200, {"configured": False, "message": str(e)}
        try:
            identity = self.identity_check(profile=cfg.aws_profile, region=cfg.aws_region)
        except AwsBoto3Error as e:
            return 200, {"configured": False, "message": str(e)}
        return 200, {"configured": True, "identity": identity}

    # ---- routing ----

    def dispatch(self, method: str, path: str, body: Any = None) -> Response:
        if path.startswith("/api/") or path == "/api":
            path = path[len("/api"):]
        path = path.rstrip("/") or "/"
        parts = [p for p in path.split("/") if p]

        if method == "GET":
            if path == "/config":
                return self.get_config()
            if path == "/volumes":
                return self.get_volumes()
            if path == "/uploads":
                return self.list_uploads()
            if len(parts) == 2 and parts[0] == "uploads":
                return self.get_upload(parts[1])
            if path == "/check-aws":
                return self.check_aws()
        elif method == "POST":
            if path == "/config":
                return self.post_config(body)
            if path == "/import":
                return self.post_import(body)
            if path == "/upload":
                return self.post_upload(body)
            if len(parts) == 3 and parts[0] == "uploads":
                if parts[2] == "stop":
                    return self.stop_upload(parts[1])
                if parts[2] == "resume":
                    return self.resume_upload(parts[1])
        return 404, {"error": "Not found"}


class PhotoBackupHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the control API."""

    def __init__(self, *args, api: ControlApi, **kwargs):
        self.api = api
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        """Only log errors (4xx/5xx)."""
        if len(args) > 1:
            try:
                status_code = int(args[1])
            except (TypeError, ValueError):
                return
            if status_code >= 400:
                self.api.logger.warning(f"{self.address_string()} {format % args}")

    def do_OPTIONS(self):
        self.send_response(204)
        self._send_cors_headers()
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self):
        self._handle("GET")

    def do_POST(self):
        self._handle("POST")

    def _handle(self, method: str):
        path = urlparse(self.path).path
        try:
            body = self._read_json_body() if method == "POST" else None
        except ValueError as e:
            self._send_json(400, {"error": f"Invalid JSON body: {e}"})
            return
        try:
            status, payload = self.api.dispatch(method, path, body)
        except Exception as e:
            self.api.logger.exception(f"Unhandled error on {method} {path}")
            status, payload = 500, {"error": f"Internal error: {e}"}
        self._send_json(status, payload)

    def _read_json_body(self) -> Any:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0:
            return {}
        raw = self.rfile.read(length)
        return json.loads(raw.decode("utf-8"))

    def _send_cors_headers(self):
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")

    def _send_json(self, status: int, payload: Any):
        content = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(content)))
        self.send_header("Cache-Control", "no-cache")
        self._send_cors_headers()
        self.end_headers()
        self.wfile.write(content)


class PhotoBackupServer:
    """Threaded HTTP server hosting the control API."""

    def __init__(self, *, api: ControlApi, host: str = "127.0.0.1", port: int = 3001):
        self.api = api
        self.host = host
        self.port = port
        self.server: ThreadingHTTPServer | None = None
        self.thread: threading.Thread | None = None
        self._running = False

    def start(self) -> bool:
        """Start serving on a background thread. Returns False if the address cannot be bound."""
        if self._running:
            return True

        def handler_factory(*args, **kwargs):
            return PhotoBackupHandler(*args, api=self.api, **kwargs)

        try:
            self.server = ThreadingHTTPServer((self.host, self.port), handler_factory)
        except OSError as e:
            self.api.logger.error(f"Cannot bind {self.host}:{self.port}: {e}")
            return False

        # Port 0 binds an ephemeral port.
        self.port = self.server.server_address[1]
        self._running = True
        self.thread = threading.Thread(target=self.server.serve_forever, name="photobackup-http", daemon=True)
        self.thread.start()
        return True

    def stop(self):
        if not self._running:
            return
        self._running = False
        if self.server:
            self.server.shutdown()
            self.server.server_close()

    def get_url(self) -> str:
        host_display = self.host if self.host not in ("127.0.0.1", "0.0.0.0") else "localhost"
        return f"http://{host_display}:{self.port}"

    @property
    def is_running(self) -> bool:
        return self._running

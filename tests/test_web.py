from __future__ import annotations

import json
import urllib.error
import urllib.request
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from photobackup.aws_boto3 import AwsBoto3Error
from photobackup.config import read_config_file
from photobackup.jobs import JobTracker
from photobackup.uploader import UploadSummary
from photobackup.web import ControlApi, PhotoBackupServer


def fake_runner(params, *, logger, progress, cancel):
    logger.info(f"Uploading from {params.source_path}")
    return UploadSummary()


@pytest.fixture
def tracker(tmp_path: Path):
    t = JobTracker(tmp_path / "uploads", runner=fake_runner)
    yield t
    t.close()


@pytest.fixture
def api(tracker: JobTracker, config_file: Path, tmp_path: Path) -> ControlApi:
    return ControlApi(
        tracker=tracker,
        mount_roots=[tmp_path / "mnt"],
        config_file=config_file,
        identity_check=MagicMock(return_value={"UserId": "U", "Account": "123", "Arn": "arn:aws:iam::123:user/me"}),
    )


def test_get_config(api: ControlApi, tmp_path: Path):
    status, body = api.get_config()
    assert status == 200
    assert body["configured"] is True
    assert body["S3_BUCKET"] == "test-bucket"
    assert body["S3_STORAGE_CLASS"] == "STANDARD"
    assert body["LOCAL_IMPORT_BASE"] == str((tmp_path / "imports").resolve())


def test_get_config_unconfigured(tracker: JobTracker, tmp_path: Path):
    api = ControlApi(tracker=tracker, mount_roots=[], config_file=tmp_path / "missing")
    status, body = api.get_config()
    assert status == 200
    assert body["configured"] is False
    assert "message" in body


def test_post_config_merges_and_persists(api: ControlApi, config_file: Path):
    status, body = api.post_config({"AWS_REGION": "us-east-1", "configured": True, "S3_BUCKET": None})
    assert status == 200
    assert body["success"] is True

    values = read_config_file(config_file)
    assert values["AWS_REGION"] == "us-east-1"
    assert values["S3_BUCKET"] == "test-bucket"
    assert values["S3_STORAGE_CLASS"] == "STANDARD"


def test_post_config_creates_file(tracker: JobTracker, tmp_path: Path):
    path = tmp_path / "new" / "config"
    api = ControlApi(tracker=tracker, mount_roots=[], config_file=path)
    status, _ = api.post_config({"S3_BUCKET": "fresh"})
    assert status == 200
    assert read_config_file(path)["S3_BUCKET"] == "fresh"


def test_post_config_does_not_persist_env_bucket(api: ControlApi, config_file: Path, monkeypatch):
    monkeypatch.setenv("PHOTO_BACKUP_BUCKET", "env-bucket")
    assert api.get_config()[1]["S3_BUCKET"] == "env-bucket"

    api.post_config({"AWS_REGION": "us-east-1"})
    assert read_config_file(config_file)["S3_BUCKET"] == "test-bucket"


@pytest.mark.parametrize("body", [{"NOPE": "x"}, {"S3_STORAGE_CLASS": "COLD"}, ["S3_BUCKET"]])
def test_post_config_rejects_bad_input(api: ControlApi, config_file: Path, body):
    before = config_file.read_text(encoding="utf-8")
    status, payload = api.post_config(body)
    assert status == 400
    assert payload["success"] is False
    assert config_file.read_text(encoding="utf-8") == before


def test_get_volumes(api: ControlApi, tmp_path: Path):
    (tmp_path / "mnt" / "EOS_DIGITAL").mkdir(parents=True)
    status, body = api.get_volumes()
    assert status == 200
    assert body[0] == {"name": "EOS_DIGITAL", "path": str(tmp_path / "mnt" / "EOS_DIGITAL"), "type": "volume"}
    assert {v["name"] for v in body if v["type"] == "folder"} == {"Desktop", "Pictures", "Downloads"}


def test_post_upload_and_poll(api: ControlApi, tracker: JobTracker, tmp_path: Path):
    src = tmp_path / "photos"
    src.mkdir()
    status, body = api.post_upload({"sourcePath": str(src), "startDate": "2024-12-01", "dryRun": True})
    assert status == 200
    assert body["status"] == "running"
    tracker.wait(body["uploadId"], timeout=5)

    status, record = api.get_upload(body["uploadId"])
    assert status == 200
    assert record["status"] == "completed"
    assert record["dryRun"] is True
    assert record["startDate"] == "2024-12-01"

    status, records = api.list_uploads()
    assert [r["id"] for r in records] == [body["uploadId"]]


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"sourcePath": "/definitely/not/here"},
        {"sourcePath": ".", "startDate": "bad"},
        {"sourcePath": ".", "startDate": "2024-12-31", "endDate": "2024-01-01"},
    ],
)
def test_post_upload_rejects_bad_input(api: ControlApi, tracker: JobTracker, body):
    status, payload = api.post_upload(body)
    assert status == 400
    assert payload["error"]
    assert tracker.list() == []


def test_unknown_upload(api: ControlApi):
    assert api.get_upload("nope")[0] == 404
    assert api.stop_upload("nope")[0] == 404
    assert api.resume_upload("nope")[0] == 404


def test_stop_and_resume_state_conflicts(api: ControlApi, tracker: JobTracker, tmp_path: Path):
    src = tmp_path / "photos"
    src.mkdir()
    _, body = api.post_upload({"sourcePath": str(src)})
    tracker.wait(body["uploadId"], timeout=5)

    status, payload = api.stop_upload(body["uploadId"])
    assert status == 409
    status, payload = api.resume_upload(body["uploadId"])
    assert status == 409


def test_post_import(api: ControlApi, tracker: JobTracker, tmp_path: Path, make_media):
    card = tmp_path / "card"
    make_media(card / "DCIM" / "IMG_0001.CR3", day="2024-12-25")
    make_media(card / "DCIM" / "IMG_0002.CR3", day="2024-12-26")

    status, body = api.post_import({"sourcePath": str(card), "importDate": "2024-12-25"})
    assert status == 200
    assert body["success"] is True
    assert body["imported"] == 1
    assert body["skipped"] == 0
    assert "Import complete" in body["output"]

    dest = tmp_path / "imports" / "20241225"
    assert (dest / "IMG_0001.CR3").exists()
    record = tracker.wait(body["uploadId"], timeout=5)
    assert record["sourcePath"] == str(dest.resolve())


def test_post_import_nothing_new(api: ControlApi, tmp_path: Path, make_media):
    card = tmp_path / "card"
    make_media(card / "IMG_0001.CR3", day="2024-12-25")

    status, body = api.post_import({"sourcePath": str(card), "importDate": "2023-01-01"})
    assert status == 200
    assert body["imported"] == 0
    assert "uploadId" not in body


def test_post_import_precondition_errors(api: ControlApi, tmp_path: Path):
    status, body = api.post_import({})
    assert status == 400
    assert body["success"] is False

    status, body = api.post_import({"sourcePath": str(tmp_path / "missing")})
    assert status == 400
    assert "Directory does not exist" in body["error"]


def test_post_import_copy_failure(api: ControlApi, tmp_path: Path, make_media, monkeypatch):
    from photobackup import importer

    card = tmp_path / "card"
    make_media(card / "IMG_0001.CR3", day="2024-12-25")

    def failing_copy(src, dst):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(importer.shutil, "copy2", failing_copy)
    status, body = api.post_import({"sourcePath": str(card), "importDate": "2024-12-25"})
    assert status == 500
    assert body["success"] is False
    assert "Copy failed" in body["error"]
    assert "Importing photos from card" in body["output"]


def test_check_aws(api: ControlApi):
    status, body = api.check_aws()
    assert status == 200
    assert body == {"configured": True, "identity": {"UserId": "U", "Account": "123", "Arn": "arn:aws:iam::123:user/me"}}


def test_check_aws_failure(tracker: JobTracker, config_file: Path):
    api = ControlApi(
        tracker=tracker,
        mount_roots=[],
        config_file=config_file,
        identity_check=MagicMock(side_effect=AwsBoto3Error("AWS credentials not configured.")),
    )
    status, body = api.check_aws()
    assert status == 200
    assert body["configured"] is False
    assert "credentials" in body["message"]


def test_dispatch_routes(api: ControlApi):
    assert api.dispatch("GET", "/api/uploads") == (200, [])
    assert api.dispatch("GET", "/uploads/") == (200, [])
    assert api.dispatch("GET", "/api/check-aws")[1]["configured"] is True
    assert api.dispatch("GET", "/nope")[0] == 404
    assert api.dispatch("POST", "/api/uploads")[0] == 404
    assert api.dispatch("DELETE", "/api/uploads")[0] == 404


def _request(url: str, method: str = "GET", data: bytes | None = None):
    req = urllib.request.Request(url, data=data, method=method, headers={"Content-Type": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status, dict(resp.headers), resp.read()
    except urllib.error.HTTPError as e:
        return e.code, dict(e.headers), e.read()


def test_http_server(api: ControlApi, tmp_path: Path):
    server = PhotoBackupServer(api=api, host="127.0.0.1", port=0)
    assert server.start() is True
    try:
        assert server.port != 0
        assert server.get_url() == f"http://localhost:{server.port}"
        base = f"http://127.0.0.1:{server.port}"

        status, headers, raw = _request(f"{base}/api/uploads")
        assert status == 200
        assert json.loads(raw) == []
        assert headers["Access-Control-Allow-Origin"] == "*"

        status, _, raw = _request(f"{base}/api/upload", "POST", b"{not json")
        assert status == 400
        assert "Invalid JSON" in json.loads(raw)["error"]

        src = tmp_path / "photos"
        src.mkdir()
        status, _, raw = _request(f"{base}/upload", "POST", json.dumps({"sourcePath": str(src)}).encode())
        assert status == 200
        upload_id = json.loads(raw)["uploadId"]
        api.tracker.wait(upload_id, timeout=5)

        status, _, raw = _request(f"{base}/api/uploads/{upload_id}")
        assert status == 200
        assert json.loads(raw)["status"] == "completed"

        status, headers, _ = _request(f"{base}/api/config", "OPTIONS")
        assert status == 204
        assert "POST" in headers["Access-Control-Allow-Methods"]

        status, _, _ = _request(f"{base}/api/uploads/missing")
        assert status == 404
    finally:
        server.stop()
    assert server.is_running is False

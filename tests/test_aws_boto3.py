from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, NoCredentialsError

from photobackup import aws_boto3
from photobackup.aws_boto3 import AwsBoto3Error, _parse_boto3_error, get_caller_identity, s3_upload_file


@pytest.fixture(autouse=True)
def _fresh_clients():
    aws_boto3.reset_clients()
    yield
    aws_boto3.reset_clients()


def _client_error(code: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, "PutObject")


def test_s3_upload_file(tmp_path: Path):
    f = tmp_path / "IMG_0001.CR3"
    f.write_bytes(b"raw")
    client = MagicMock()

    with patch.object(aws_boto3, "_get_client", return_value=client) as get_client:
        s3_upload_file(f, bucket="b", key="raw/2024-12/IMG_0001.CR3", storage_class="DEEP_ARCHIVE", profile="p", region="r")

    get_client.assert_called_once_with("s3", profile="p", region="r")
    client.upload_file.assert_called_once_with(
        str(f), "b", "raw/2024-12/IMG_0001.CR3", ExtraArgs={"StorageClass": "DEEP_ARCHIVE"}
    )


def test_s3_upload_file_multipart(tmp_path: Path, monkeypatch):
    f = tmp_path / "big.dng"
    f.write_bytes(b"x" * 64)
    monkeypatch.setattr(aws_boto3, "_MULTIPART_THRESHOLD", 16)
    client = MagicMock()

    with patch.object(aws_boto3, "_get_client", return_value=client):
        s3_upload_file(f, bucket="b", key="raw/2024-12/big.dng")

    kwargs = client.upload_file.call_args.kwargs
    assert kwargs["ExtraArgs"] == {"StorageClass": "STANDARD"}
    assert isinstance(kwargs["Config"], TransferConfig)


def test_s3_upload_file_error(tmp_path: Path):
    f = tmp_path / "a.jpg"
    f.write_bytes(b"x")
    client = MagicMock()
    client.upload_file.side_effect = _client_error("AccessDenied", "Access Denied")

    with patch.object(aws_boto3, "_get_client", return_value=client):
        with pytest.raises(AwsBoto3Error, match="Access denied") as exc:
            s3_upload_file(f, bucket="b", key="jpg/2024-12/a.jpg")
    assert "s3://b/jpg/2024-12/a.jpg" in str(exc.value)


def test_get_caller_identity():
    client = MagicMock()
    client.get_caller_identity.return_value = {
        "UserId": "AID",
        "Account": "123",
        "Arn": "arn:aws:iam::123:user/me",
        "ResponseMetadata": {},
    }
    with patch.object(aws_boto3, "_get_client", return_value=client):
        assert get_caller_identity(profile="default", region="us-east-1") == {
            "UserId": "AID",
            "Account": "123",
            "Arn": "arn:aws:iam::123:user/me",
        }


def test_get_caller_identity_no_credentials():
    client = MagicMock()
    client.get_caller_identity.side_effect = NoCredentialsError()
    with patch.object(aws_boto3, "_get_client", return_value=client):
        with pytest.raises(AwsBoto3Error, match="aws configure"):
            get_caller_identity()


def test_get_client_is_cached_per_profile_and_region():
    with patch.object(aws_boto3.boto3.session, "Session") as session_cls:
        a = aws_boto3._get_client("s3", profile="default", region="us-east-1")
        b = aws_boto3._get_client("s3", profile="default", region="us-east-1")
        aws_boto3._get_client("s3", profile="work", region="us-east-1")

    assert a is b
    assert session_cls.call_count == 2
    assert session_cls.call_args_list[0].kwargs == {"profile_name": None, "region_name": "us-east-1"}
    assert session_cls.call_args_list[1].kwargs == {"profile_name": "work", "region_name": "us-east-1"}


def test_parse_boto3_error():
    assert "aws configure" in _parse_boto3_error(NoCredentialsError())
    assert "expired" in _parse_boto3_error(_client_error("ExpiredToken"))
    assert "Access denied" in _parse_boto3_error(_client_error("AccessDenied"))
    assert "does not exist" in _parse_boto3_error(_client_error("NoSuchBucket"))
    assert "storage class" in _parse_boto3_error(_client_error("InvalidStorageClass"))
    assert _parse_boto3_error(_client_error("SlowDown")) == "Error code: SlowDown"

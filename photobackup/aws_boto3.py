from __future__ import annotations

import threading
from pathlib import Path
from typing import TYPE_CHECKING

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

if TYPE_CHECKING:
    from botocore.client import BaseClient


class AwsBoto3Error(RuntimeError):
    pass


# Clients are reused per (service, profile, region) for connection pooling.
_clients: dict[tuple[str, str | None, str | None], "BaseClient"] = {}
_clients_lock = threading.Lock()

_MULTIPART_THRESHOLD = 100 * 1024 * 1024


def _get_client(service: str, *, profile: str | None, region: str | None) -> "BaseClient":
    key = (service, profile or None, region or None)
    with _clients_lock:
        client = _clients.get(key)
        if client is None:
            # "default" means whatever the default credential chain resolves.
            profile_name = profile if profile and profile != "default" else None
            session = boto3.session.Session(profile_name=profile_name, region_name=region or None)
            config = Config(
                max_pool_connections=50,
                retries={"max_attempts": 3, "mode": "standard"},
            )
            client = session.client(service, config=config)
            _clients[key] = client
        return client


def reset_clients() -> None:
    """Drop cached clients (after the AWS profile or region changed)."""
    with _clients_lock:
        _clients.clear()


def _parse_boto3_error(error: Exception) -> str:
    """Return actionable guidance for a boto3/botocore error."""
    if isinstance(error, NoCredentialsError):
        return (
            "AWS credentials not configured.\n"
            "  Run: aws configure\n"
            "  Or set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY environment variables."
        )

    error_code = ""
    error_message = str(error)
    if isinstance(error, ClientError):
        error_code = error.response.get("Error", {}).get("Code", "")
        error_message = error.response.get("Error", {}).get("Message", str(error))
    error_message_lower = error_message.lower()

    if "credentials" in error_message_lower or error_code in ("InvalidClientTokenId", "ExpiredToken"):
        return (
            "AWS credentials not configured or expired.\n"
            "  Run: aws configure\n"
            "  Or set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY environment variables."
        )
    if error_code == "AccessDenied" or "access denied" in error_message_lower or "forbidden" in error_message_lower:
        return (
            "Access denied. Check your AWS IAM permissions:\n"
            "  - s3:PutObject for uploading files\n"
            "  Verify with: aws sts get-caller-identity"
        )
    if error_code == "NoSuchBucket" or "does not exist" in error_message_lower:
        return (
            "S3 bucket does not exist or is not accessible.\n"
            "  Verify the bucket name and your access permissions.\n"
            "  Check with: aws s3 ls s3://<bucket-name>"
        )
    if error_code == "InvalidStorageClass":
        return "The configured S3 storage class is not valid for this bucket."
    if "network" in error_message_lower or "timeout" in error_message_lower or "connection" in error_message_lower:
        return (
            "Network error connecting to AWS.\n"
            "  Check your internet connection and AWS service status."
        )

    return f"Error code: {error_code}" if error_code else ""


def s3_upload_file(
    local_path: Path,
    *,
    bucket: str,
    key: str,
    storage_class: str = "STANDARD",
    profile: str | None = None,
    region: str | None = None,
) -> None:
    """Upload one file to s3://bucket/key with the given storage class.

    Files over 100MB go through multipart upload. There is no retry loop here
    beyond botocore's own transport retries; a failure raises AwsBoto3Error.
    """
    file_size = local_path.stat().st_size

    transfer_config = None
    if file_size > _MULTIPART_THRESHOLD:
        transfer_config = TransferConfig(
            multipart_threshold=_MULTIPART_THRESHOLD,
            max_concurrency=10,
            multipart_chunksize=10 * 1024 * 1024,
        )

    extra_args = {"StorageClass": storage_class}
    try:
        client = _get_client("s3", profile=profile, region=region)
        if transfer_config:
            client.upload_file(str(local_path), bucket, key, ExtraArgs=extra_args, Config=transfer_config)
        else:
            client.upload_file(str(local_path), bucket, key, ExtraArgs=extra_args)
    except (ClientError, BotoCoreError, S3UploadFailedError) as e:
        guidance = _parse_boto3_error(e)
        error_msg = f"Failed to upload {local_path.name} to s3://{bucket}/{key}"
        if guidance:
            error_msg += f"\n\n{guidance}\n"
        error_msg += f"\nError: {e}"
        raise AwsBoto3Error(error_msg) from e


def get_caller_identity(*, profile: str | None = None, region: str | None = None) -> dict[str, str]:
    """STS GetCallerIdentity; returns {UserId, Account, Arn}."""
    try:
        client = _get_client("sts", profile=profile, region=region)
        resp = client.get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        guidance = _parse_boto3_error(e)
        error_msg = "AWS identity check failed"
        if guidance:
            error_msg += f"\n\n{guidance}\n"
        error_msg += f"\nError: {e}"
        raise AwsBoto3Error(error_msg) from e
    return {k: resp[k] for k in ("UserId", "Account", "Arn") if k in resp}

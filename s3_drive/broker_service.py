from __future__ import annotations
"""Server side of the presigned-URL broker."""
from datetime import datetime, timezone
import logging
import re
import secrets
import string
from typing import Any, Callable, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import RecordConflict, RecordNotFoundError
from .limits import GIB
from .records import RecordStore

LOGGER = logging.getLogger(__name__)

Response = tuple[int, dict[str, Any]]

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def sanitize_object_name(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", name.strip()).strip("._")
    return cleaned or "file"


def build_object_key(
    user_id: str,
    file_name: str,
    *,
    now: datetime | None = None,
    suffix: str | None = None,
) -> str:
    """Return ``{user}/{epoch_ms}-{random}-{name}``; clients never derive keys."""

    moment = now or datetime.now(timezone.utc)
    timestamp = int(moment.timestamp() * 1000)
    random_part = suffix or "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(13))
    return f"{user_id}/{timestamp}-{random_part}-{sanitize_object_name(file_name)}"


class PresignedUrlBroker:
    """Answers the four broker actions for an authenticated user."""

    def __init__(
        self,
        *,
        bucket: str,
        records: RecordStore,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        max_file_size: int = 5 * GIB,
        url_ttl: int = 3600,
        client_factory: Callable[..., object] | None = None,
        key_factory: Callable[[str, str], str] = build_object_key,
    ):
        if not bucket:
            raise ValueError("bucket must be configured")
        self._bucket = bucket
        self._records = records
        self._region = region
        self._endpoint_url = endpoint_url
        self._access_key = access_key
        self._secret_key = secret_key
        self._max_file_size = max_file_size
        self._url_ttl = url_ttl
        self._client_factory = client_factory or boto3.client
        self._key_factory = key_factory
        self._handlers: dict[str, Callable[[dict[str, Any], str], Response]] = {
            "get-presigned-url": self._presign_upload,
            "get-upload-credential": self._presign_upload,
            "create-file-record": self._create_file_record,
            "commit-record": self._create_file_record,
            "get-signed-url": self._presign_download,
            "get-download-credential": self._presign_download,
            "delete-file": self._delete_object,
            "delete-object": self._delete_object,
        }

    def handle(self, body: dict[str, Any], *, user_id: Optional[str]) -> Response:
        if not user_id:
            return 401, {"error": "Unauthorized"}
        handler = self._handlers.get(str(body.get("action")))
        if handler is None:
            return 400, {"error": "Invalid action"}
        try:
            return handler(body, user_id)
        except (BotoCoreError, ClientError) as exc:
            LOGGER.exception("Storage error handling '%s'", body.get("action"))
            return 500, {"error": str(exc)}
        except Exception as exc:
            LOGGER.exception("Broker error handling '%s'", body.get("action"))
            return 500, {"error": str(exc)}

    def object_url(self, key: str) -> str:
        if self._endpoint_url:
            return f"{self._endpoint_url.rstrip('/')}/{self._bucket}/{key}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"

    def _presign_upload(self, body: dict[str, Any], user_id: str) -> Response:
        file_name = body.get("fileName")
        file_type = body.get("fileType") or "application/octet-stream"
        try:
            file_size = int(body.get("fileSize"))
        except (TypeError, ValueError):
            return 400, {"error": "fileSize is required"}
        if not file_name:
            return 400, {"error": "fileName is required"}
        if file_size > self._max_file_size:
            return 413, {"error": f"File size exceeds {self._max_file_size // GIB}GB limit."}

        key = self._key_factory(user_id, file_name)
        presigned = self._create_client().generate_presigned_post(
            Bucket=self._bucket,
            Key=key,
            Fields={"Content-Type": file_type},
            Conditions=[
                {"Content-Type": file_type},
                ["content-length-range", 0, self._max_file_size],
            ],
            ExpiresIn=self._url_ttl,
        )
        LOGGER.debug("Issued upload credential for '%s'", key)
        return 200, {
            "uploadUrl": presigned["url"],
            "s3Key": key,
            "formData": dict(presigned.get("fields") or {}),
        }

    def _create_file_record(self, body: dict[str, Any], user_id: str) -> Response:
        s3_key = body.get("s3Key")
        if not s3_key or not body.get("fileName"):
            return 400, {"error": "s3Key and fileName are required"}
        if not str(s3_key).startswith(f"{user_id}/"):
            return 404, {"error": "Object not found"}
        try:
            record = self._records.create_file(
                user_id=user_id,
                s3_key=s3_key,
                name=body["fileName"],
                mime_type=body.get("fileType"),
                size_bytes=int(body.get("fileSize") or 0),
                folder_id=body.get("folderId") or None,
                s3_url=self.object_url(s3_key),
            )
        except RecordConflict as exc:
            return 409, {"error": "Failed to create file record", "details": str(exc)}
        except RecordNotFoundError as exc:
            return 404, {"error": "Failed to create file record", "details": str(exc)}
        return 200, {"fileRecord": record.to_dict()}

    def _presign_download(self, body: dict[str, Any], user_id: str) -> Response:
        s3_key = body.get("s3Key")
        if not s3_key:
            return 400, {"error": "s3Key is required"}
        if not str(s3_key).startswith(f"{user_id}/"):
            return 404, {"error": "Object not found"}
        signed_url = self._create_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": s3_key},
            ExpiresIn=self._url_ttl,
        )
        return 200, {"signedUrl": signed_url, "expiresIn": self._url_ttl}

    def _delete_object(self, body: dict[str, Any], user_id: str) -> Response:
        s3_key = body.get("s3Key")
        if not s3_key:
            return 400, {"error": "s3Key is required"}
        if not str(s3_key).startswith(f"{user_id}/"):
            return 404, {"error": "Object not found"}
        try:
            self._create_client().delete_object(Bucket=self._bucket, Key=s3_key)
        except (BotoCoreError, ClientError) as exc:
            LOGGER.error("S3 deletion error for '%s': %s", s3_key, exc)
            return 500, {"error": "Failed to delete file from S3", "details": str(exc)}
        return 200, {"success": True, "message": "File deleted from S3"}

    def _create_client(self):
        config = Config(signature_version="s3v4")
        return self._client_factory(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
            aws_access_key_id=self._access_key,
            aws_secret_access_key=self._secret_key,
            config=config,
        )

from __future__ import annotations
"""Client for the presigned-URL broker function."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, ClassVar, Optional, Union

import requests

from .errors import (
    AuthError,
    BrokerError,
    NetworkError,
    ProtocolError,
    RecordConflict,
    SizeLimitExceeded,
)
from .models import FileRecord, TransferItem

LOGGER = logging.getLogger(__name__)

DEFAULT_URL_TTL = 3600


@dataclass(frozen=True)
class GetUploadCredential:
    action: ClassVar[str] = "get-presigned-url"

    file_name: str
    file_type: str
    file_size: int

    def payload(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "fileName": self.file_name,
            "fileType": self.file_type,
            "fileSize": self.file_size,
        }


@dataclass(frozen=True)
class CommitRecord:
    action: ClassVar[str] = "create-file-record"

    s3_key: str
    file_name: str
    file_type: str
    file_size: int
    folder_id: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "s3Key": self.s3_key,
            "fileName": self.file_name,
            "fileType": self.file_type,
            "fileSize": self.file_size,
            "folderId": self.folder_id,
        }


@dataclass(frozen=True)
class GetDownloadCredential:
    action: ClassVar[str] = "get-signed-url"

    s3_key: str

    def payload(self) -> dict[str, Any]:
        return {"action": self.action, "s3Key": self.s3_key}


@dataclass(frozen=True)
class DeleteObject:
    action: ClassVar[str] = "delete-file"

    s3_key: str

    def payload(self) -> dict[str, Any]:
        return {"action": self.action, "s3Key": self.s3_key}


BrokerRequest = Union[GetUploadCredential, CommitRecord, GetDownloadCredential, DeleteObject]


@dataclass(frozen=True)
class UploadCredential:
    """Presigned POST target for exactly one object key."""

    upload_url: str
    object_key: str
    form_fields: dict[str, str] = field(default_factory=dict)

    def commit_request(self, item: TransferItem) -> CommitRecord:
        return CommitRecord(
            s3_key=self.object_key,
            file_name=item.display_name,
            file_type=item.mime_type,
            file_size=item.byte_size,
            folder_id=item.destination_container,
        )


@dataclass(frozen=True)
class DownloadCredential:
    signed_url: str
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class BrokerClient:
    """Sends the four broker requests over one authenticated endpoint."""

    def __init__(
        self,
        endpoint_url: str,
        token_provider: Callable[[], str],
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ):
        self._endpoint_url = endpoint_url
        self._token_provider = token_provider
        self._session = session or requests.Session()
        self._timeout = timeout

    def get_upload_credential(self, file_name: str, file_type: str, file_size: int) -> UploadCredential:
        return self.send(GetUploadCredential(file_name=file_name, file_type=file_type, file_size=file_size))

    def commit_record(self, request: CommitRecord) -> FileRecord:
        return self.send(request)

    def get_download_credential(self, s3_key: str) -> DownloadCredential:
        return self.send(GetDownloadCredential(s3_key=s3_key))

    def delete_object(self, s3_key: str) -> None:
        self.send(DeleteObject(s3_key=s3_key))

    def send(self, request: BrokerRequest):
        parser = _PARSERS.get(type(request))
        if parser is None:
            raise TypeError(f"Unsupported broker request: {type(request).__name__}")
        LOGGER.debug("Broker request '%s'", request.action)
        data = self._post(request.payload())
        try:
            return parser(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(
                f"Malformed '{request.action}' response: {exc!r}"
            ) from exc

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._token_provider()}",
            "Content-Type": "application/json",
        }
        try:
            response = self._session.post(
                self._endpoint_url,
                json=payload,
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(f"Broker unreachable: {exc}") from exc

        status = response.status_code
        if 200 <= status < 300:
            try:
                data = response.json()
            except ValueError as exc:
                raise ProtocolError("Broker returned a non-JSON body", status_code=status) from exc
            if not isinstance(data, dict):
                raise ProtocolError("Broker returned an unexpected body", status_code=status)
            return data

        message = _error_message(response)
        if status in (401, 403):
            raise AuthError(message, status_code=status)
        if status == 413:
            raise SizeLimitExceeded(message, status_code=status)
        if status == 409:
            raise RecordConflict(message, status_code=status)
        if status in (502, 503, 504):
            raise NetworkError(message, status_code=status)
        raise BrokerError(message, status_code=status)


def _error_message(response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    text = (getattr(response, "text", "") or "").strip()
    return text or f"Broker request failed with status {response.status_code}"


def _parse_upload_credential(data: dict[str, Any]) -> UploadCredential:
    fields = data.get("formData") or {}
    if not isinstance(fields, dict):
        raise TypeError("formData must be an object")
    return UploadCredential(
        upload_url=str(data["uploadUrl"]),
        object_key=str(data["s3Key"]),
        form_fields={str(k): str(v) for k, v in fields.items()},
    )


def _parse_file_record(data: dict[str, Any]) -> FileRecord:
    return FileRecord.from_dict(data["fileRecord"])


def _parse_download_credential(data: dict[str, Any]) -> DownloadCredential:
    ttl = int(data.get("expiresIn") or DEFAULT_URL_TTL)
    return DownloadCredential(
        signed_url=str(data["signedUrl"]),
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl),
    )


def _parse_delete(data: dict[str, Any]) -> None:
    if data.get("success") is not True:
        raise BrokerError(str(data.get("error") or "Object deletion was not confirmed"))


_PARSERS: dict[type, Callable[[dict[str, Any]], Any]] = {
    GetUploadCredential: _parse_upload_credential,
    CommitRecord: _parse_file_record,
    GetDownloadCredential: _parse_download_credential,
    DeleteObject: _parse_delete,
}

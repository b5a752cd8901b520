from __future__ import annotations
"""Direct transfers against presigned object-store URLs."""
import logging
import os
from typing import BinaryIO, Callable, Optional
import uuid

import requests

from .errors import NetworkError, ObjectStoreError

LOGGER = logging.getLogger(__name__)

ProgressFn = Callable[[int, int], None]

CHUNK_SIZE = 1024 * 1024


class MultipartFormStream:
    """Streams a ``multipart/form-data`` body without loading the file.

    Form fields are written first and the file part last under the
    ``file`` field, which is the order S3 presigned POSTs require.
    Only file bytes are reported to ``progress_callback``.
    """

    def __init__(
        self,
        *,
        fields: dict[str, str],
        source_path: str,
        file_name: str,
        content_type: str,
        progress_callback: Optional[ProgressFn] = None,
    ):
        self.boundary = uuid.uuid4().hex
        self._source_path = source_path
        self._progress_callback = progress_callback
        self._file_size = os.path.getsize(source_path)
        self._head = self._encode_head(fields, file_name, content_type)
        self._tail = f"\r\n--{self.boundary}--\r\n".encode("utf-8")
        self._file: BinaryIO | None = None
        self._stage = 0
        self._offset = 0
        self._sent = 0

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    @property
    def file_size(self) -> int:
        return self._file_size

    def __len__(self) -> int:
        return len(self._head) + self._file_size + len(self._tail)

    def __enter__(self) -> MultipartFormStream:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self)
        chunks: list[bytes] = []
        while size > 0 and self._stage < 3:
            if self._stage == 0:
                chunk = self._read_static(self._head, size)
            elif self._stage == 1:
                chunk = self._read_file(size)
            else:
                chunk = self._read_static(self._tail, size)
            size -= len(chunk)
            chunks.append(chunk)
        return b"".join(chunks)

    def _read_static(self, data: bytes, size: int) -> bytes:
        chunk = data[self._offset:self._offset + size]
        self._offset += len(chunk)
        if self._offset >= len(data):
            self._stage += 1
            self._offset = 0
        return chunk

    def _read_file(self, size: int) -> bytes:
        if self._file is None:
            self._file = open(self._source_path, "rb")
        chunk = self._file.read(size)
        if chunk:
            self._sent += len(chunk)
            if self._progress_callback:
                self._progress_callback(self._sent, self._file_size)
        if not chunk or self._sent >= self._file_size:
            self.close()
            self._stage += 1
        return chunk

    def _encode_head(self, fields: dict[str, str], file_name: str, content_type: str) -> bytes:
        parts = []
        for name, value in fields.items():
            parts.append(
                f"--{self.boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            )
        quoted_name = file_name.replace('"', "%22").replace("\r", "%0D").replace("\n", "%0A")
        parts.append(
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{quoted_name}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        )
        return "".join(parts).encode("utf-8")


class ObjectStoreService:
    """Performs the byte transfer half of uploads and downloads."""

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout: float = 300.0,
        chunk_size: int = CHUNK_SIZE,
    ):
        self._session = session or requests.Session()
        self._timeout = timeout
        self._chunk_size = chunk_size

    def upload_form(
        self,
        *,
        upload_url: str,
        form_fields: dict[str, str],
        source_path: str,
        file_name: str,
        content_type: str,
        progress_callback: Optional[ProgressFn] = None,
    ) -> None:
        """POST a file to a presigned form target; any 2xx is success."""

        with MultipartFormStream(
            fields=form_fields,
            source_path=source_path,
            file_name=file_name,
            content_type=content_type,
            progress_callback=progress_callback,
        ) as body:
            headers = {
                "Content-Type": body.content_type,
                "Content-Length": str(len(body)),
            }
            try:
                response = self._session.post(
                    upload_url,
                    data=body,
                    headers=headers,
                    timeout=self._timeout,
                )
            except requests.RequestException as exc:
                raise NetworkError(f"Upload of {file_name} failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise ObjectStoreError(
                f"S3 upload failed for {file_name} (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        LOGGER.debug("Uploaded %s (%d bytes)", file_name, body.file_size)

    def download(
        self,
        *,
        url: str,
        destination: str,
        expected_size: int | None = None,
        progress_callback: Optional[ProgressFn] = None,
    ) -> int:
        """Stream ``url`` into ``destination`` and return the byte count."""

        partial_path = f"{destination}.part"
        written = 0
        try:
            with self._session.get(url, stream=True, timeout=self._timeout) as response:
                if not 200 <= response.status_code < 300:
                    raise ObjectStoreError(
                        f"Failed to download file from S3 (HTTP {response.status_code})",
                        status_code=response.status_code,
                    )
                total = _content_length(response, expected_size)
                directory = os.path.dirname(destination)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(partial_path, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=self._chunk_size):
                        if not chunk:
                            continue
                        handle.write(chunk)
                        written += len(chunk)
                        if progress_callback:
                            progress_callback(written, total)
        except requests.RequestException as exc:
            _discard(partial_path)
            raise NetworkError(f"Download failed: {exc}") from exc
        except (ObjectStoreError, OSError):
            _discard(partial_path)
            raise
        os.replace(partial_path, destination)
        LOGGER.debug("Downloaded %d bytes to %s", written, destination)
        return written


def _content_length(response, fallback: int | None) -> int:
    header = response.headers.get("Content-Length")
    try:
        return int(header) if header is not None else int(fallback or 0)
    except (TypeError, ValueError):
        return int(fallback or 0)


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        return

from __future__ import annotations
"""Drives transfer items through the broker and the object store."""
from concurrent.futures import ThreadPoolExecutor
import logging
from typing import Callable, Optional, Sequence

from .broker import BrokerClient, DownloadCredential, UploadCredential
from .errors import OrphanedObjectWarning, TransferCancelledError, TransferError
from .limits import DEFAULT_LIMITS, TransferLimits
from .models import (
    BatchResult,
    DeleteResult,
    FileRecord,
    TransferItem,
    TransferStatus,
)
from .progress import ProgressReporter
from .services import ObjectStoreService
from .state import advance, fail

LOGGER = logging.getLogger(__name__)

ItemObserver = Callable[[TransferItem], None]
CancelFn = Callable[[], bool]


def split_into_windows(items: Sequence[TransferItem], size: int) -> list[list[TransferItem]]:
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


def _log_orphan(object_key: str, reason: str) -> OrphanedObjectWarning:
    warning = OrphanedObjectWarning(object_key, reason)
    LOGGER.warning("%s: %s", type(warning).__name__, warning)
    return warning


class BatchTransferController:
    """Runs uploads and downloads in fixed-size concurrent windows."""

    def __init__(
        self,
        broker: BrokerClient,
        object_store: ObjectStoreService | None = None,
        *,
        records=None,
        limits: TransferLimits = DEFAULT_LIMITS,
        cleanup_on_commit_failure: bool = False,
    ):
        self._broker = broker
        self._object_store = object_store or ObjectStoreService(timeout=limits.transfer_timeout)
        self._records = records
        self._limits = limits
        self._cleanup_on_commit_failure = cleanup_on_commit_failure

    @property
    def limits(self) -> TransferLimits:
        return self._limits

    def run_batch(
        self,
        items: Sequence[TransferItem],
        concurrency_limit: int | None = None,
        *,
        on_item_changed: Optional[ItemObserver] = None,
        cancel_requested: Optional[CancelFn] = None,
    ) -> BatchResult:
        """Transfer ``items`` and aggregate the outcome.

        Each window of ``concurrency_limit`` items runs concurrently and
        settles completely before the next window starts. Item failures
        are recorded on the item and in the result; they never abort the
        batch.
        """

        if items is None:
            raise TypeError("items must be a sequence of TransferItem")
        limit = self._limits.max_concurrent_transfers if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        started = [item.item_id for item in items if item.status is not TransferStatus.QUEUED]
        if started:
            raise ValueError(f"Only queued items can be run; retry others as new items: {started}")

        result = BatchResult()
        windows = split_into_windows(list(items), limit)
        LOGGER.debug("Running %d item(s) in %d window(s) of %d", len(items), len(windows), limit)
        for number, window in enumerate(windows, start=1):
            with ThreadPoolExecutor(max_workers=len(window)) as executor:
                futures = [
                    executor.submit(self._run_item, item, result, on_item_changed, cancel_requested)
                    for item in window
                ]
                for future in futures:
                    future.result()
            LOGGER.debug("Window %d settled", number)

        for item in items:
            if item.status is TransferStatus.SUCCEEDED:
                result.succeeded.append(item)
        LOGGER.debug(
            "Batch finished: %d succeeded, %d failed",
            result.succeeded_count,
            result.failed_count,
        )
        return result

    def download_credential(self, object_key: str) -> DownloadCredential:
        """Request a fresh signed URL for previewing a stored object."""

        return self._broker.get_download_credential(object_key)

    def delete_file(self, record: FileRecord, *, user_id: str) -> DeleteResult:
        """Delete the metadata row, then its stored object on a best-effort basis."""

        deleted = self._require_records().delete_file(record.id, user_id=user_id)
        result = DeleteResult(deleted_files=[deleted])
        self._delete_objects([deleted.s3_key], result)
        return result

    def delete_folder(self, folder_id: str, *, user_id: str) -> DeleteResult:
        deleted = self._require_records().delete_folder(folder_id, user_id=user_id)
        result = DeleteResult(deleted_files=list(deleted))
        self._delete_objects([record.s3_key for record in deleted], result)
        return result

    def _run_item(
        self,
        item: TransferItem,
        result: BatchResult,
        notify: Optional[ItemObserver],
        cancel_requested: Optional[CancelFn],
    ) -> None:
        try:
            if item.is_upload:
                self._upload(item, result, notify, cancel_requested)
            else:
                self._download(item, notify, cancel_requested)
        except TransferError as exc:
            LOGGER.debug("Transfer of %s failed: %s", item.display_name, exc)
            self._fail(item, exc, result, notify)
        except Exception as exc:
            LOGGER.exception("Unexpected error transferring %s", item.display_name)
            self._fail(item, exc, result, notify)

    def _notify(self, notify: Optional[ItemObserver], item: TransferItem) -> None:
        if not notify:
            return
        try:
            notify(item)
        except Exception:
            LOGGER.exception("Item observer failed for %s", item.display_name)

    def _upload(
        self,
        item: TransferItem,
        result: BatchResult,
        notify: Optional[ItemObserver],
        cancel_requested: Optional[CancelFn],
    ) -> None:
        self._check_cancelled(cancel_requested)
        self._transition(item, TransferStatus.REQUESTING_CREDENTIAL, notify)
        credential = self._broker.get_upload_credential(item.display_name, item.mime_type, item.byte_size)
        item.object_key = credential.object_key

        self._check_cancelled(cancel_requested)
        self._transition(item, TransferStatus.TRANSFERRING, notify)
        self._object_store.upload_form(
            upload_url=credential.upload_url,
            form_fields=credential.form_fields,
            source_path=item.source_location,
            file_name=item.display_name,
            content_type=item.mime_type,
            progress_callback=ProgressReporter(item, lambda changed: self._notify(notify, changed)),
        )

        try:
            self._check_cancelled(cancel_requested)
            self._transition(item, TransferStatus.COMMITTING, notify)
            item.record = self._broker.commit_record(credential.commit_request(item))
        except TransferError as exc:
            self._handle_commit_failure(credential, exc, result)
            raise
        self._transition(item, TransferStatus.SUCCEEDED, notify)

    def _download(
        self,
        item: TransferItem,
        notify: Optional[ItemObserver],
        cancel_requested: Optional[CancelFn],
    ) -> None:
        self._check_cancelled(cancel_requested)
        self._transition(item, TransferStatus.REQUESTING_CREDENTIAL, notify)
        credential = self._broker.get_download_credential(item.object_key)

        self._check_cancelled(cancel_requested)
        self._transition(item, TransferStatus.TRANSFERRING, notify)
        self._object_store.download(
            url=credential.signed_url,
            destination=item.destination,
            expected_size=item.byte_size,
            progress_callback=ProgressReporter(item, lambda changed: self._notify(notify, changed)),
        )
        self._transition(item, TransferStatus.SUCCEEDED, notify)

    def _handle_commit_failure(
        self,
        credential: UploadCredential,
        exc: Exception,
        result: BatchResult,
    ) -> None:
        key = credential.object_key
        if self._cleanup_on_commit_failure:
            try:
                self._broker.delete_object(key)
            except TransferError as cleanup_exc:
                _log_orphan(key, f"record commit failed ({exc}); cleanup failed ({cleanup_exc})")
            else:
                LOGGER.debug("Removed uncommitted object '%s'", key)
                return
        else:
            _log_orphan(key, f"bytes stored but record commit failed ({exc})")
        result.orphaned_keys.append(key)

    def _delete_objects(self, keys: list[str], result: DeleteResult) -> None:
        for key in keys:
            try:
                self._broker.delete_object(key)
            except TransferError as exc:
                _log_orphan(key, f"record deleted but object deletion failed ({exc})")
                result.orphaned_keys.append(key)

    def _transition(
        self,
        item: TransferItem,
        status: TransferStatus,
        notify: Optional[ItemObserver],
    ) -> None:
        advance(item, status)
        self._notify(notify, item)

    def _fail(
        self,
        item: TransferItem,
        exc: Exception,
        result: BatchResult,
        notify: Optional[ItemObserver],
    ) -> None:
        if item.status.is_terminal:
            LOGGER.debug("Ignoring late error for finished item %s: %s", item.display_name, exc)
            return
        fail(item, exc)
        result.failed.append((item, exc))
        self._notify(notify, item)

    def _check_cancelled(self, cancel_requested: Optional[CancelFn]) -> None:
        if cancel_requested and cancel_requested():
            raise TransferCancelledError("Transfer cancelled by user")

    def _require_records(self):
        if self._records is None:
            raise RuntimeError("A record store is required to delete files")
        return self._records

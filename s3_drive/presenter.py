from __future__ import annotations
"""View-agnostic presenter that runs transfers in the background."""
from dataclasses import replace
import logging
import threading
from typing import Callable, Iterable

from .broker import BrokerClient
from .controller import BatchTransferController
from .errors import AuthError
from .models import BatchResult, DeleteResult, FileRecord, TransferCandidate, TransferItem, TransferStatus
from .records import RecordStore
from .services import ObjectStoreService
from .session import AuthSession, SessionStorage
from .settings import AppSettings, SettingsStorage
from .transfer_queue import TransferQueue, download_items
from .ui_utils import PackageInfo, describe_admission, load_package_info, summarize_batch
from .validation import AdmissionResult


DispatchFn = Callable[[Callable[[], None]], None]
ErrorFn = Callable[[str], None]
DoneFn = Callable[[], None]
SnapshotFn = Callable[[tuple[TransferItem, ...]], None]

LOGGER = logging.getLogger(__name__)


class NotAuthenticatedError(RuntimeError):
    """Raised when a transfer is attempted without a signed-in session."""


def _format_error(exc: Exception) -> str:
    return str(exc)


class DrivePresenter:
    """Owns the upload queue and reports results via callbacks."""

    def __init__(
        self,
        *,
        controller: BatchTransferController,
        session_storage: SessionStorage | None = None,
        settings_storage: SettingsStorage | None = None,
        upload_queue: TransferQueue | None = None,
        dispatch: DispatchFn | None = None,
        on_session_expired: DoneFn | None = None,
    ) -> None:
        self._controller = controller
        self._session_storage = session_storage or SessionStorage()
        self._settings_storage = settings_storage or SettingsStorage()
        self._settings = self._settings_storage.load()
        self._session = self._session_storage.load()
        self._queue = upload_queue or TransferQueue(controller.limits)
        self._dispatch = dispatch or (lambda func: func())
        self._on_session_expired = on_session_expired
        self._package_info = load_package_info()
        self._state_lock = threading.Lock()
        self._is_uploading = False
        self._active_downloads: set[str] = set()

    @property
    def settings(self) -> AppSettings:
        return replace(self._settings)

    @property
    def package_info(self) -> PackageInfo:
        return self._package_info

    @property
    def upload_queue(self) -> TransferQueue:
        return self._queue

    @property
    def is_uploading(self) -> bool:
        return self._is_uploading

    @property
    def session(self) -> AuthSession | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    def access_token(self) -> str:
        return self._require_session().access_token

    def sign_in(self, session: AuthSession) -> None:
        self._session = session
        self._session_storage.save(session)

    def sign_out(self) -> None:
        self._session = None
        self._session_storage.clear()

    def save_settings(self, settings: AppSettings) -> None:
        self._settings = settings
        self._settings_storage.save(settings)

    def update_last_folder(self, folder_id: str | None) -> None:
        if not self._settings.remember_last_folder:
            return
        self._settings = replace(self._settings, last_folder_id=folder_id or "")
        self._settings_storage.save(self._settings)

    def add_files(self, candidates: Iterable[TransferCandidate]) -> tuple[AdmissionResult, str]:
        admission = self._queue.add_candidates(candidates)
        return admission, describe_admission(admission)

    def retry_failed(self) -> list[TransferItem]:
        """Requeue failed uploads as new items and drop the failed originals."""

        failed = [item for item in self._queue.snapshot() if item.status is TransferStatus.FAILED]
        for item in failed:
            self._queue.remove(item.item_id)
        retries = [item.retry() for item in failed]
        if retries:
            self._queue.add_items(retries)
        return retries

    def start_upload(
        self,
        *,
        on_success: Callable[[BatchResult, str], None],
        on_error: ErrorFn,
        on_done: DoneFn | None = None,
        on_update: SnapshotFn | None = None,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> bool:
        """Upload every queued file; returns ``False`` if a run is in flight."""

        with self._state_lock:
            if self._is_uploading:
                LOGGER.debug("Upload already running; ignoring request")
                return False
            self._is_uploading = True

        unsubscribe = None
        if on_update:
            unsubscribe = self._queue.subscribe(lambda snapshot: self._dispatch(lambda: on_update(snapshot)))

        def task() -> None:
            try:
                self._require_session()
                with self._queue.run_guard() as items:
                    LOGGER.debug("Uploading %d queued file(s)", len(items))
                    result = self._controller.run_batch(
                        items,
                        self._settings.max_concurrent_transfers,
                        on_item_changed=self._queue.notify_changed,
                        cancel_requested=cancel_requested,
                    )
            except Exception as exc:
                LOGGER.exception("Upload batch error")
                self._dispatch(lambda: on_error(_format_error(exc)))
            else:
                self._check_auth_failures(result)
                message = summarize_batch(result, verb="uploaded")
                LOGGER.debug(message)
                self._dispatch(lambda: on_success(result, message))
            finally:
                if unsubscribe:
                    unsubscribe()
                with self._state_lock:
                    self._is_uploading = False
                if on_done:
                    self._dispatch(on_done)

        threading.Thread(target=task, daemon=True).start()
        return True

    def download_files(
        self,
        records: Iterable[FileRecord],
        *,
        destination_dir: str | None = None,
        on_success: Callable[[BatchResult, str], None],
        on_error: ErrorFn,
        on_progress: Callable[[TransferItem], None] | None = None,
        on_done: DoneFn | None = None,
    ) -> list[TransferItem]:
        """Download files not already downloading; returns the started items."""

        directory = destination_dir or self._settings.download_directory or "."
        with self._state_lock:
            fresh = [record for record in records if record.id not in self._active_downloads]
            self._active_downloads.update(record.id for record in fresh)
        if not fresh:
            return []
        items = download_items(fresh, directory)

        progress_callback = None
        if on_progress:
            progress_callback = lambda item: self._dispatch(lambda: on_progress(replace(item)))

        def task() -> None:
            try:
                self._require_session()
                result = self._controller.run_batch(
                    items,
                    self._settings.max_concurrent_transfers,
                    on_item_changed=progress_callback,
                )
            except Exception as exc:
                LOGGER.exception("Download batch error")
                self._dispatch(lambda: on_error(_format_error(exc)))
            else:
                self._check_auth_failures(result)
                message = summarize_batch(result, verb="downloaded")
                self._dispatch(lambda: on_success(result, message))
            finally:
                with self._state_lock:
                    self._active_downloads.difference_update(record.id for record in fresh)
                if on_done:
                    self._dispatch(on_done)

        threading.Thread(target=task, daemon=True).start()
        return items

    def delete_file(
        self,
        record: FileRecord,
        *,
        on_success: Callable[[DeleteResult], None],
        on_error: ErrorFn,
    ) -> None:
        def task() -> None:
            try:
                result = self._controller.delete_file(record, user_id=self._require_session().user_id)
            except AuthError as exc:
                self._expire_session()
                self._dispatch(lambda: on_error(_format_error(exc)))
            except Exception as exc:
                LOGGER.exception("Delete error for '%s'", record.name)
                self._dispatch(lambda: on_error(_format_error(exc)))
            else:
                self._dispatch(lambda: on_success(result))

        threading.Thread(target=task, daemon=True).start()

    def delete_folder(
        self,
        folder_id: str,
        *,
        on_success: Callable[[DeleteResult], None],
        on_error: ErrorFn,
    ) -> None:
        def task() -> None:
            try:
                result = self._controller.delete_folder(folder_id, user_id=self._require_session().user_id)
            except AuthError as exc:
                self._expire_session()
                self._dispatch(lambda: on_error(_format_error(exc)))
            except Exception as exc:
                LOGGER.exception("Delete error for folder '%s'", folder_id)
                self._dispatch(lambda: on_error(_format_error(exc)))
            else:
                self._dispatch(lambda: on_success(result))

        threading.Thread(target=task, daemon=True).start()

    def preview_url(
        self,
        record: FileRecord,
        *,
        on_success: Callable[[str], None],
        on_error: ErrorFn,
    ) -> None:
        """Fetch a fresh signed URL; signed URLs are never cached."""

        def task() -> None:
            try:
                self._require_session()
                credential = self._controller.download_credential(record.s3_key)
            except AuthError as exc:
                self._expire_session()
                self._dispatch(lambda: on_error(_format_error(exc)))
            except Exception as exc:
                self._dispatch(lambda: on_error(_format_error(exc)))
            else:
                self._dispatch(lambda: on_success(credential.signed_url))

        threading.Thread(target=task, daemon=True).start()

    def _check_auth_failures(self, result: BatchResult) -> None:
        if any(isinstance(error, AuthError) for _, error in result.failed):
            self._expire_session()

    def _expire_session(self) -> None:
        LOGGER.debug("Session rejected by broker; signing out")
        self.sign_out()
        if self._on_session_expired:
            self._dispatch(self._on_session_expired)

    def _require_session(self) -> AuthSession:
        if self._session is None:
            raise NotAuthenticatedError("Sign in before transferring files")
        return self._session


def build_presenter(
    *,
    records: RecordStore | None = None,
    session_storage: SessionStorage | None = None,
    settings_storage: SettingsStorage | None = None,
    dispatch: DispatchFn | None = None,
    on_session_expired: DoneFn | None = None,
) -> DrivePresenter:
    """Wire the broker client, object store and controller from saved settings."""

    session_storage = session_storage or SessionStorage()
    settings_storage = settings_storage or SettingsStorage()
    settings = settings_storage.load()
    session = session_storage.load()
    limits = settings.limits()
    broker_url = settings.broker_url or (session.broker_url if session else "")
    presenter: DrivePresenter | None = None

    def token() -> str:
        if presenter is None:
            raise NotAuthenticatedError("Presenter is not ready")
        return presenter.access_token()

    broker = BrokerClient(broker_url, token)
    controller = BatchTransferController(
        broker,
        ObjectStoreService(timeout=limits.transfer_timeout),
        records=records,
        limits=limits,
    )
    presenter = DrivePresenter(
        controller=controller,
        session_storage=session_storage,
        settings_storage=settings_storage,
        dispatch=dispatch,
        on_session_expired=on_session_expired,
    )
    return presenter

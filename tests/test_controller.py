import tempfile
import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from botocore.exceptions import ClientError

from s3_drive.broker import BrokerClient, DownloadCredential, UploadCredential
from s3_drive.broker_service import PresignedUrlBroker
from s3_drive.controller import BatchTransferController, split_into_windows
from s3_drive.errors import (
    AuthError,
    BrokerError,
    NetworkError,
    ObjectStoreError,
    TransferCancelledError,
)
from s3_drive.models import FileRecord, TransferCandidate, TransferItem, TransferStatus
from s3_drive.records import create_record_store


def upload_item(name, size=10, folder_id=None):
    return TransferItem.for_upload(
        TransferCandidate(
            display_name=name,
            source_location=f"/tmp/{name}",
            mime_type="image/png",
            byte_size=size,
            destination_container=folder_id,
        )
    )


def file_record(name="a.png", key="user-1/1-abc-a.png", file_id="file-1"):
    return FileRecord(
        id=file_id,
        name=name,
        original_name=name,
        mime_type="image/png",
        size_bytes=10,
        folder_id=None,
        user_id="user-1",
        s3_key=key,
    )


class FakeBroker:
    def __init__(self, upload_errors=None, commit_errors=None, delete_errors=None):
        self.upload_errors = upload_errors or {}
        self.commit_errors = commit_errors or {}
        self.delete_errors = delete_errors or {}
        self.credential_calls = []
        self.commit_calls = []
        self.download_calls = []
        self.delete_calls = []
        self._lock = threading.Lock()

    def get_upload_credential(self, file_name, file_type, file_size):
        with self._lock:
            self.credential_calls.append(file_name)
        error = self.upload_errors.get(file_name)
        if error is not None:
            raise error
        return UploadCredential(
            upload_url="https://bucket.s3.amazonaws.com/",
            object_key=f"user-1/1-abc-{file_name}",
            form_fields={"key": f"user-1/1-abc-{file_name}"},
        )

    def commit_record(self, request):
        with self._lock:
            self.commit_calls.append(request)
        error = self.commit_errors.get(request.file_name)
        if error is not None:
            raise error
        return FileRecord(
            id=f"id-{request.file_name}",
            name=request.file_name,
            original_name=request.file_name,
            mime_type=request.file_type,
            size_bytes=request.file_size,
            folder_id=request.folder_id,
            user_id="user-1",
            s3_key=request.s3_key,
        )

    def get_download_credential(self, s3_key):
        self.download_calls.append(s3_key)
        return DownloadCredential(
            signed_url=f"https://signed/{s3_key}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    def delete_object(self, s3_key):
        self.delete_calls.append(s3_key)
        error = self.delete_errors.get(s3_key)
        if error is not None:
            raise error


class FakeObjectStore:
    def __init__(self, upload_errors=None, delay=0.0):
        self.upload_errors = upload_errors or {}
        self.delay = delay
        self.events = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.download_calls = []
        self._lock = threading.Lock()

    def upload_form(self, *, upload_url, form_fields, source_path, file_name, content_type, progress_callback=None):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.events.append(("start", file_name))
        try:
            time.sleep(self.delay)
            error = self.upload_errors.get(file_name)
            if error is not None:
                raise error
            if progress_callback:
                progress_callback(5, 10)
                progress_callback(10, 10)
        finally:
            with self._lock:
                self.in_flight -= 1
                self.events.append(("end", file_name))

    def download(self, *, url, destination, expected_size=None, progress_callback=None):
        self.download_calls.append((url, destination, expected_size))
        if progress_callback:
            progress_callback(expected_size or 0, expected_size or 0)
        return expected_size or 0


class RecordsSpy:
    def __init__(self, records):
        self.records = records
        self.deleted = []

    def delete_file(self, file_id, *, user_id):
        self.deleted.append((file_id, user_id))
        return self.records[file_id]

    def delete_folder(self, folder_id, *, user_id):
        self.deleted.append((folder_id, user_id))
        return list(self.records.values())


class BatchTransferControllerTests(unittest.TestCase):
    def test_split_into_windows(self):
        items = [upload_item(f"{i}.png") for i in range(5)]

        windows = split_into_windows(items, 2)

        self.assertEqual([2, 2, 1], [len(window) for window in windows])
        self.assertEqual(items, [item for window in windows for item in window])

    def test_windows_settle_before_next_window_starts(self):
        store = FakeObjectStore(delay=0.02)
        controller = BatchTransferController(FakeBroker(), store)
        items = [upload_item(f"{i}.png") for i in range(5)]

        result = controller.run_batch(items, 2)

        self.assertEqual(5, result.succeeded_count)
        self.assertLessEqual(store.max_in_flight, 2)
        positions = {(kind, name): index for index, (kind, name) in enumerate(store.events)}
        windows = [["0.png", "1.png"], ["2.png", "3.png"], ["4.png"]]
        for current, following in zip(windows, windows[1:]):
            last_end = max(positions[("end", name)] for name in current)
            first_start = min(positions[("start", name)] for name in following)
            self.assertLess(last_end, first_start)

    def test_successful_upload_commits_record(self):
        broker = FakeBroker()
        controller = BatchTransferController(broker, FakeObjectStore())
        item = upload_item("a.png", size=10, folder_id="folder-1")
        seen = []

        result = controller.run_batch([item], on_item_changed=lambda changed: seen.append(changed.status))

        self.assertEqual([item], result.succeeded)
        self.assertEqual(TransferStatus.SUCCEEDED, item.status)
        self.assertEqual(1.0, item.progress_fraction)
        self.assertEqual("user-1/1-abc-a.png", item.object_key)
        self.assertEqual("folder-1", broker.commit_calls[0].folder_id)
        self.assertEqual(10, item.record.size_bytes)
        self.assertEqual("a.png", item.record.name)
        self.assertEqual(
            [
                TransferStatus.REQUESTING_CREDENTIAL,
                TransferStatus.TRANSFERRING,
                TransferStatus.TRANSFERRING,
                TransferStatus.TRANSFERRING,
                TransferStatus.COMMITTING,
                TransferStatus.SUCCEEDED,
            ],
            seen,
        )

    def test_one_failure_does_not_abort_batch(self):
        error = ObjectStoreError("S3 upload failed for a.png (HTTP 403)", status_code=403)
        broker = FakeBroker()
        controller = BatchTransferController(broker, FakeObjectStore(upload_errors={"a.png": error}))
        first = upload_item("a.png")
        second = upload_item("b.png")

        result = controller.run_batch([first, second], 2)

        self.assertEqual(1, result.succeeded_count)
        self.assertEqual([(first, error)], result.failed)
        self.assertEqual(TransferStatus.FAILED, first.status)
        self.assertEqual(str(error), first.error_detail)
        self.assertEqual(TransferStatus.SUCCEEDED, second.status)
        self.assertEqual(["b.png"], [call.file_name for call in broker.commit_calls])

    def test_credential_failure_fails_item(self):
        broker = FakeBroker(upload_errors={"a.png": AuthError("Unauthorized", status_code=401)})
        store = FakeObjectStore()
        controller = BatchTransferController(broker, store)
        item = upload_item("a.png")

        result = controller.run_batch([item])

        self.assertEqual(1, result.failed_count)
        self.assertEqual("Unauthorized", item.error_detail)
        self.assertIsNone(item.object_key)
        self.assertEqual([], store.events)

    def test_commit_failure_orphans_object(self):
        broker = FakeBroker(commit_errors={"a.png": BrokerError("Failed to create file record", status_code=500)})
        controller = BatchTransferController(broker, FakeObjectStore())
        item = upload_item("a.png")

        with self.assertLogs("s3_drive.controller", level="WARNING") as logs:
            result = controller.run_batch([item])

        self.assertEqual(TransferStatus.FAILED, item.status)
        self.assertEqual(["user-1/1-abc-a.png"], result.orphaned_keys)
        self.assertEqual([], broker.delete_calls)
        self.assertIn("OrphanedObjectWarning", logs.output[0])
        self.assertIn("user-1/1-abc-a.png", logs.output[0])

    def test_commit_failure_cleanup_removes_object(self):
        broker = FakeBroker(commit_errors={"a.png": BrokerError("conflict", status_code=500)})
        controller = BatchTransferController(broker, FakeObjectStore(), cleanup_on_commit_failure=True)
        item = upload_item("a.png")

        result = controller.run_batch([item])

        self.assertEqual(TransferStatus.FAILED, item.status)
        self.assertEqual([], result.orphaned_keys)
        self.assertEqual(["user-1/1-abc-a.png"], broker.delete_calls)

    def test_commit_failure_cleanup_failure_still_orphans(self):
        broker = FakeBroker(
            commit_errors={"a.png": BrokerError("conflict", status_code=500)},
            delete_errors={"user-1/1-abc-a.png": NetworkError("offline")},
        )
        controller = BatchTransferController(broker, FakeObjectStore(), cleanup_on_commit_failure=True)

        with self.assertLogs("s3_drive.controller", level="WARNING"):
            result = controller.run_batch([upload_item("a.png")])

        self.assertEqual(["user-1/1-abc-a.png"], result.orphaned_keys)

    def test_cancellation_fails_items_before_network(self):
        broker = FakeBroker()
        controller = BatchTransferController(broker, FakeObjectStore())
        items = [upload_item("a.png"), upload_item("b.png")]

        result = controller.run_batch(items, cancel_requested=lambda: True)

        self.assertEqual(2, result.failed_count)
        self.assertTrue(all(isinstance(error, TransferCancelledError) for _, error in result.failed))
        self.assertEqual([], broker.credential_calls)

    def test_cancellation_before_commit(self):
        broker = FakeBroker()
        store = FakeObjectStore()
        controller = BatchTransferController(broker, store)
        item = upload_item("a.png")

        result = controller.run_batch([item], cancel_requested=lambda: bool(store.events))

        self.assertEqual(TransferStatus.FAILED, item.status)
        self.assertEqual([], broker.commit_calls)
        self.assertEqual(["user-1/1-abc-a.png"], result.orphaned_keys)

    def test_unexpected_errors_are_contained(self):
        store = FakeObjectStore(upload_errors={"a.png": RuntimeError("disk on fire")})
        controller = BatchTransferController(FakeBroker(), store)
        item = upload_item("a.png")

        with self.assertLogs("s3_drive.controller", level="ERROR"):
            result = controller.run_batch([item])

        self.assertEqual("disk on fire", item.error_detail)
        self.assertEqual(1, result.failed_count)

    def test_raising_observer_does_not_fail_finished_item(self):
        def observer(item):
            if item.status is TransferStatus.SUCCEEDED:
                raise RuntimeError("view closed")

        controller = BatchTransferController(FakeBroker(), FakeObjectStore())
        items = [upload_item("a.png"), upload_item("b.png")]

        with self.assertLogs("s3_drive.controller", level="ERROR") as logs:
            result = controller.run_batch(items, 1, on_item_changed=observer)

        self.assertEqual(2, result.succeeded_count)
        self.assertEqual(0, result.failed_count)
        self.assertTrue(all(item.status is TransferStatus.SUCCEEDED for item in items))
        self.assertIn("Item observer failed for a.png", logs.output[0])

    def test_raising_observer_on_failure_keeps_later_windows_running(self):
        error = ObjectStoreError("S3 upload failed for a.png (HTTP 500)", status_code=500)
        seen = []

        def observer(item):
            seen.append((item.display_name, item.status))
            if item.status is TransferStatus.FAILED:
                raise RuntimeError("view closed")

        controller = BatchTransferController(FakeBroker(), FakeObjectStore(upload_errors={"a.png": error}))
        first = upload_item("a.png")
        second = upload_item("b.png")

        with self.assertLogs("s3_drive.controller", level="ERROR"):
            result = controller.run_batch([first, second], 1, on_item_changed=observer)

        self.assertEqual([(first, error)], result.failed)
        self.assertEqual([second], result.succeeded)
        self.assertEqual(TransferStatus.FAILED, first.status)
        self.assertEqual(TransferStatus.SUCCEEDED, second.status)
        self.assertIn(("b.png", TransferStatus.SUCCEEDED), seen)

    def test_download(self):
        broker = FakeBroker()
        store = FakeObjectStore()
        controller = BatchTransferController(broker, store)
        item = TransferItem.for_download(file_record(), "/tmp/a.png")

        result = controller.run_batch([item])

        self.assertEqual(TransferStatus.SUCCEEDED, item.status)
        self.assertEqual(1, result.succeeded_count)
        self.assertEqual(["user-1/1-abc-a.png"], broker.download_calls)
        self.assertEqual([("https://signed/user-1/1-abc-a.png", "/tmp/a.png", 10)], store.download_calls)
        self.assertEqual([], broker.commit_calls)

    def test_download_credential_for_preview(self):
        broker = FakeBroker()
        controller = BatchTransferController(broker, FakeObjectStore())

        credential = controller.download_credential("user-1/k")

        self.assertEqual("https://signed/user-1/k", credential.signed_url)

    def test_argument_checks(self):
        controller = BatchTransferController(FakeBroker(), FakeObjectStore())
        started = upload_item("a.png")
        started.status = TransferStatus.FAILED

        with self.assertRaises(TypeError):
            controller.run_batch(None)
        with self.assertRaises(ValueError):
            controller.run_batch([upload_item("b.png")], 0)
        with self.assertRaises(ValueError):
            controller.run_batch([started])

    def test_empty_batch(self):
        controller = BatchTransferController(FakeBroker(), FakeObjectStore())

        result = controller.run_batch([])

        self.assertEqual(0, result.succeeded_count)
        self.assertEqual(0, result.failed_count)

    def test_delete_file_keeps_going_when_object_delete_fails(self):
        record = file_record()
        records = RecordsSpy({record.id: record})
        broker = FakeBroker(delete_errors={record.s3_key: NetworkError("offline")})
        controller = BatchTransferController(broker, FakeObjectStore(), records=records)

        with self.assertLogs("s3_drive.controller", level="WARNING") as logs:
            result = controller.delete_file(record, user_id="user-1")

        self.assertEqual([("file-1", "user-1")], records.deleted)
        self.assertEqual([record], result.deleted_files)
        self.assertEqual([record.s3_key], result.orphaned_keys)
        self.assertFalse(result.fully_deleted)
        self.assertIn("OrphanedObjectWarning", logs.output[0])

    def test_delete_folder_deletes_every_object(self):
        first = file_record()
        second = file_record(name="b.png", key="user-1/1-abc-b.png", file_id="file-2")
        broker = FakeBroker()
        controller = BatchTransferController(
            broker,
            FakeObjectStore(),
            records=RecordsSpy({first.id: first, second.id: second}),
        )

        result = controller.delete_folder("folder-1", user_id="user-1")

        self.assertTrue(result.fully_deleted)
        self.assertEqual([first.s3_key, second.s3_key], broker.delete_calls)

    def test_delete_requires_record_store(self):
        controller = BatchTransferController(FakeBroker(), FakeObjectStore())

        with self.assertRaises(RuntimeError):
            controller.delete_file(file_record(), user_id="user-1")


class FakeS3Client:
    def __init__(self, delete_error=None):
        self.delete_error = delete_error
        self.presigned_post_calls = []
        self.deleted = []

    def generate_presigned_post(self, **kwargs):
        self.presigned_post_calls.append(kwargs)
        return {
            "url": "https://bucket.s3.amazonaws.com/",
            "fields": {"key": kwargs["Key"], **kwargs["Fields"]},
        }

    def generate_presigned_url(self, operation, Params=None, ExpiresIn=None):
        return f"https://signed/{Params['Key']}"

    def delete_object(self, **kwargs):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(kwargs["Key"])


class BrokerResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = ""

    def json(self):
        return self._payload


class InProcessBrokerSession:
    """Routes broker client requests straight into a broker handler."""

    def __init__(self, broker, user_id):
        self.broker = broker
        self.user_id = user_id

    def post(self, url, json=None, headers=None, timeout=None):
        status, payload = self.broker.handle(json, user_id=self.user_id)
        return BrokerResponse(status, payload)


class EndToEndTests(unittest.TestCase):
    def setUp(self):
        self.records = create_record_store()
        self.s3 = FakeS3Client()
        self.server = PresignedUrlBroker(
            bucket="drive-bucket",
            records=self.records,
            client_factory=lambda *args, **kwargs: self.s3,
        )
        client = BrokerClient(
            "https://broker.test",
            lambda: "token",
            session=InProcessBrokerSession(self.server, "user-1"),
        )
        self.controller = BatchTransferController(client, FakeObjectStore(), records=self.records)

    def test_committed_upload_matches_candidate(self):
        folder = self.records.create_folder(user_id="user-1", name="Photos")
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "beach day.png"
            path.write_bytes(b"x" * 42)
            item = TransferItem.for_upload(
                TransferCandidate(
                    display_name="beach day.png",
                    source_location=str(path),
                    mime_type="image/png",
                    byte_size=42,
                    destination_container=folder.id,
                )
            )

            result = self.controller.run_batch([item], 1)

        self.assertEqual(1, result.succeeded_count)
        self.assertEqual(42, item.record.size_bytes)
        self.assertEqual("beach day.png", item.record.name)
        self.assertEqual(folder.id, item.record.folder_id)
        self.assertTrue(item.object_key.startswith("user-1/"))
        self.assertTrue(item.object_key.endswith("-beach_day.png"))
        stored = self.records.list_files(user_id="user-1", folder_id=folder.id).records
        self.assertEqual([item.record.id], [record.id for record in stored])

    def test_failed_object_delete_still_removes_row(self):
        record = self.records.create_file(
            user_id="user-1",
            s3_key="user-1/1-abc-a.png",
            name="a.png",
            mime_type="image/png",
            size_bytes=10,
        )
        self.s3.delete_error = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}},
            "DeleteObject",
        )

        with self.assertLogs("s3_drive.controller", level="WARNING") as logs:
            result = self.controller.delete_file(record, user_id="user-1")

        self.assertEqual(["user-1/1-abc-a.png"], result.orphaned_keys)
        self.assertEqual((0, 0), self.records.storage_stats(user_id="user-1"))
        self.assertTrue(any("OrphanedObjectWarning" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()

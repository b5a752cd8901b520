from __future__ import annotations
"""Observable queue of pending uploads and downloads."""
from contextlib import contextmanager
from dataclasses import replace
import logging
import os
import threading
from typing import Callable, Iterable, Iterator

from .limits import DEFAULT_LIMITS, TransferLimits
from .models import FileRecord, TransferCandidate, TransferItem, TransferStatus
from .ui_utils import suggest_download_filename
from .validation import AdmissionResult, screen_candidates

LOGGER = logging.getLogger(__name__)

Subscriber = Callable[[tuple[TransferItem, ...]], None]


class QueueBusyError(RuntimeError):
    """Raised when the queue is mutated or run while a batch owns it."""


def download_items(records: Iterable[FileRecord], destination_dir: str) -> list[TransferItem]:
    return [
        TransferItem.for_download(
            record,
            os.path.join(destination_dir, suggest_download_filename(record.name)),
        )
        for record in records
    ]


class TransferQueue:
    """Ordered transfer items with a single writer at a time.

    Between runs the caller owns the queue and may add, select and remove
    items. ``run_guard`` hands ownership to the batch controller until the
    run finishes; subscribers receive read-only snapshots after every
    change either way.
    """

    def __init__(self, limits: TransferLimits = DEFAULT_LIMITS):
        self._limits = limits
        self._items: list[TransferItem] = []
        self._subscribers: list[Subscriber] = []
        self._lock = threading.RLock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> tuple[TransferItem, ...]:
        with self._lock:
            return tuple(replace(item) for item in self._items)

    def pending(self) -> list[TransferItem]:
        with self._lock:
            return [item for item in self._items if item.status is TransferStatus.QUEUED]

    def add_candidates(self, candidates: Iterable[TransferCandidate]) -> AdmissionResult:
        with self._lock:
            self._require_idle()
            admission = screen_candidates(
                candidates,
                queued_sizes=[item.byte_size for item in self._items if item.is_upload],
                limits=self._limits,
            )
            self._items.extend(TransferItem.for_upload(candidate) for candidate in admission.admitted)
        LOGGER.debug(
            "Admitted %d candidate(s), rejected %d",
            len(admission.admitted),
            len(admission.rejected),
        )
        if admission.admitted:
            self._publish()
        return admission

    def add_downloads(self, records: Iterable[FileRecord], destination_dir: str) -> list[TransferItem]:
        with self._lock:
            self._require_idle()
            items = download_items(records, destination_dir)
            self._items.extend(items)
        if items:
            self._publish()
        return items

    def add_items(self, items: Iterable[TransferItem]) -> None:
        """Queue already-built items, e.g. the result of ``TransferItem.retry``."""

        with self._lock:
            self._require_idle()
            self._items.extend(items)
        self._publish()

    def remove(self, item_id: str) -> bool:
        """Remove a queued or finished item; in-flight items stay put."""

        with self._lock:
            self._require_idle()
            for index, item in enumerate(self._items):
                if item.item_id != item_id:
                    continue
                if item.status is not TransferStatus.QUEUED and not item.status.is_terminal:
                    return False
                del self._items[index]
                break
            else:
                return False
        self._publish()
        return True

    def toggle_selected(self, item_id: str) -> bool:
        with self._lock:
            for item in self._items:
                if item.item_id == item_id:
                    item.selected = not item.selected
                    selected = item.selected
                    break
            else:
                raise KeyError(item_id)
        self._publish()
        return selected

    def select_all(self) -> None:
        self._set_selection(True)

    def clear_selection(self) -> None:
        self._set_selection(False)

    def selected_items(self) -> list[TransferItem]:
        with self._lock:
            return [replace(item) for item in self._items if item.selected]

    def remove_selected(self) -> int:
        with self._lock:
            self._require_idle()
            before = len(self._items)
            self._items = [item for item in self._items if not item.selected]
            removed = before - len(self._items)
        if removed:
            self._publish()
        return removed

    def clear_finished(self) -> int:
        with self._lock:
            self._require_idle()
            before = len(self._items)
            self._items = [item for item in self._items if not item.status.is_terminal]
            removed = before - len(self._items)
        if removed:
            self._publish()
        return removed

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def notify_changed(self, item: TransferItem | None = None) -> None:
        self._publish()

    @contextmanager
    def run_guard(self) -> Iterator[list[TransferItem]]:
        """Mark the queue busy for one batch run and yield its queued items."""

        with self._lock:
            if self._running:
                raise QueueBusyError("A transfer batch is already running on this queue")
            self._running = True
            items = [item for item in self._items if item.status is TransferStatus.QUEUED]
        try:
            yield items
        finally:
            with self._lock:
                self._running = False
            self._publish()

    def _set_selection(self, value: bool) -> None:
        with self._lock:
            for item in self._items:
                item.selected = value
        self._publish()

    def _require_idle(self) -> None:
        if self._running:
            raise QueueBusyError("The queue cannot be changed while a batch is running")

    def _publish(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            return
        snapshot = self.snapshot()
        for callback in subscribers:
            callback(snapshot)

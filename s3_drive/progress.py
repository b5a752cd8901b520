from __future__ import annotations
"""Byte-level progress to per-item fractions."""
from typing import Callable, Optional

from .models import TransferItem


def progress_fraction(bytes_sent: int, bytes_total: int) -> float:
    if bytes_total <= 0:
        return 0.0
    return min(max(bytes_sent / bytes_total, 0.0), 1.0)


class ProgressReporter:
    """Callable passed to the transport as its ``(sent, total)`` callback."""

    def __init__(
        self,
        item: TransferItem,
        on_update: Optional[Callable[[TransferItem], None]] = None,
    ):
        self._item = item
        self._on_update = on_update

    def __call__(self, bytes_sent: int, bytes_total: int) -> None:
        self._item.progress_fraction = progress_fraction(bytes_sent, bytes_total)
        if self._on_update:
            self._on_update(self._item)

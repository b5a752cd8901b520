from __future__ import annotations
"""Allowed status transitions for transfer items."""
from typing import Optional

from .models import TransferDirection, TransferItem, TransferStatus

S = TransferStatus

_UPLOAD_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    S.QUEUED: frozenset({S.REQUESTING_CREDENTIAL, S.FAILED}),
    S.REQUESTING_CREDENTIAL: frozenset({S.TRANSFERRING, S.FAILED}),
    S.TRANSFERRING: frozenset({S.COMMITTING, S.FAILED}),
    S.COMMITTING: frozenset({S.SUCCEEDED, S.FAILED}),
}

_DOWNLOAD_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    S.QUEUED: frozenset({S.REQUESTING_CREDENTIAL, S.FAILED}),
    S.REQUESTING_CREDENTIAL: frozenset({S.TRANSFERRING, S.FAILED}),
    S.TRANSFERRING: frozenset({S.SUCCEEDED, S.FAILED}),
}


class InvalidTransitionError(RuntimeError):
    """Raised when code tries to move an item along an edge that does not exist."""


def allowed_transitions(direction: TransferDirection, status: TransferStatus) -> frozenset[TransferStatus]:
    table = _UPLOAD_TRANSITIONS if direction is TransferDirection.UPLOAD else _DOWNLOAD_TRANSITIONS
    return table.get(status, frozenset())


def can_transition(item: TransferItem, target: TransferStatus) -> bool:
    return target in allowed_transitions(item.direction, item.status)


def advance(item: TransferItem, target: TransferStatus, *, error: Optional[str] = None) -> None:
    if not can_transition(item, target):
        raise InvalidTransitionError(
            f"{item.direction.value} item {item.item_id} cannot move from "
            f"{item.status.value} to {target.value}"
        )
    item.status = target
    if target is S.FAILED:
        item.error_detail = error or "Transfer failed"
    elif target is S.SUCCEEDED:
        item.progress_fraction = 1.0


def fail(item: TransferItem, error: BaseException | str) -> None:
    advance(item, S.FAILED, error=str(error))

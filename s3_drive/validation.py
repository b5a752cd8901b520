from __future__ import annotations
"""Pure admission checks applied before a file enters a transfer queue."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from .errors import ValidationError
from .limits import DEFAULT_LIMITS, TransferLimits
from .models import TransferCandidate
from .ui_utils import format_size


class RejectReason(str, Enum):
    FILE_EMPTY = "file_empty"
    FILE_TOO_LARGE = "file_too_large"
    NAME_EMPTY = "name_empty"
    NAME_TOO_LONG = "name_too_long"
    TYPE_NOT_ALLOWED = "type_not_allowed"
    BATCH_TOO_LARGE = "batch_too_large"
    TOO_MANY_FILES = "too_many_files"

    @property
    def is_size_related(self) -> bool:
        return self in (
            RejectReason.FILE_EMPTY,
            RejectReason.FILE_TOO_LARGE,
            RejectReason.BATCH_TOO_LARGE,
        )


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[RejectReason] = None
    message: str = ""

    @classmethod
    def accept(cls) -> ValidationResult:
        return cls(ok=True)

    @classmethod
    def reject(cls, reason: RejectReason, message: str) -> ValidationResult:
        return cls(ok=False, reason=reason, message=message)

    def raise_for_rejection(self) -> None:
        if not self.ok:
            raise ValidationError(self)


@dataclass
class AdmissionResult:
    """Which candidates of an incoming group may join the queue."""

    admitted: list[TransferCandidate] = field(default_factory=list)
    rejected: list[tuple[TransferCandidate, ValidationResult]] = field(default_factory=list)
    batch_rejection: Optional[ValidationResult] = None

    @property
    def all_admitted(self) -> bool:
        return not self.rejected and self.batch_rejection is None


def is_file_size_valid(byte_size: int, limits: TransferLimits = DEFAULT_LIMITS) -> bool:
    return 0 < byte_size <= limits.max_file_size_bytes


def is_name_valid(name: str, limits: TransferLimits = DEFAULT_LIMITS) -> bool:
    return 0 < len(name) <= limits.max_name_length


def is_type_allowed(mime_type: str, limits: TransferLimits = DEFAULT_LIMITS) -> bool:
    return (
        mime_type in limits.allowed_types
        or mime_type.startswith("image/")
        or mime_type.startswith("video/")
    )


def validate(candidate: TransferCandidate, limits: TransferLimits = DEFAULT_LIMITS) -> ValidationResult:
    """Check size, then name, then type; the first broken rule wins."""

    if candidate.byte_size <= 0:
        return ValidationResult.reject(
            RejectReason.FILE_EMPTY, f"{candidate.display_name or 'File'} is empty"
        )
    if candidate.byte_size > limits.max_file_size_bytes:
        return ValidationResult.reject(
            RejectReason.FILE_TOO_LARGE,
            f"{candidate.display_name} exceeds the {format_size(limits.max_file_size_bytes)} file limit",
        )
    if not candidate.display_name:
        return ValidationResult.reject(RejectReason.NAME_EMPTY, "File name cannot be empty")
    if len(candidate.display_name) > limits.max_name_length:
        return ValidationResult.reject(
            RejectReason.NAME_TOO_LONG,
            f"File name is longer than {limits.max_name_length} characters",
        )
    if not is_type_allowed(candidate.mime_type, limits):
        return ValidationResult.reject(
            RejectReason.TYPE_NOT_ALLOWED,
            f"{candidate.display_name} has unsupported type '{candidate.mime_type}'",
        )
    return ValidationResult.accept()


def validate_batch_total(
    existing_sizes: Iterable[int],
    incoming_sizes: Iterable[int],
    limits: TransferLimits = DEFAULT_LIMITS,
) -> ValidationResult:
    total = sum(existing_sizes) + sum(incoming_sizes)
    if total > limits.max_total_batch_bytes:
        return ValidationResult.reject(
            RejectReason.BATCH_TOO_LARGE,
            f"Total upload size exceeds {format_size(limits.max_total_batch_bytes)}. "
            "Please remove some files.",
        )
    return ValidationResult.accept()


def validate_folder_name(name: str, limits: TransferLimits = DEFAULT_LIMITS) -> ValidationResult:
    cleaned = name.strip()
    if not cleaned:
        return ValidationResult.reject(RejectReason.NAME_EMPTY, "Folder name cannot be empty")
    if len(cleaned) > limits.max_name_length:
        return ValidationResult.reject(
            RejectReason.NAME_TOO_LONG,
            f"Folder name is longer than {limits.max_name_length} characters",
        )
    return ValidationResult.accept()


def screen_candidates(
    candidates: Iterable[TransferCandidate],
    *,
    queued_sizes: Iterable[int] = (),
    limits: TransferLimits = DEFAULT_LIMITS,
) -> AdmissionResult:
    """Decide which of an incoming group may be queued.

    Invalid files are dropped one by one, files beyond the per-batch count
    are dropped, and the remaining group is refused as a whole when it
    would push the queue past the total size cap.
    """

    queued = list(queued_sizes)
    result = AdmissionResult()
    valid: list[TransferCandidate] = []
    for candidate in candidates:
        verdict = validate(candidate, limits)
        if verdict.ok:
            valid.append(candidate)
        else:
            result.rejected.append((candidate, verdict))

    capacity = max(limits.max_files_per_batch - len(queued), 0)
    for candidate in valid[capacity:]:
        result.rejected.append(
            (
                candidate,
                ValidationResult.reject(
                    RejectReason.TOO_MANY_FILES,
                    f"Upload queue is limited to {limits.max_files_per_batch} files",
                ),
            )
        )
    valid = valid[:capacity]

    total_check = validate_batch_total(queued, (c.byte_size for c in valid), limits)
    if not total_check.ok:
        result.batch_rejection = total_check
        result.rejected.extend((candidate, total_check) for candidate in valid)
        return result

    result.admitted = valid
    return result

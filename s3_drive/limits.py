from __future__ import annotations
"""Policy limits for uploads and downloads."""
from dataclasses import dataclass

GIB = 1024 * 1024 * 1024

IMAGE_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/heic",
        "image/heif",
    }
)
VIDEO_TYPES = frozenset({"video/mp4", "video/mov", "video/avi", "video/mkv", "video/webm"})
DOCUMENT_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/plain",
        "text/csv",
        "application/zip",
        "application/x-rar-compressed",
        "application/x-7z-compressed",
    }
)


@dataclass(frozen=True)
class TransferLimits:
    """Limits enforced before anything reaches the network."""

    max_files_per_batch: int = 100
    max_file_size_bytes: int = 5 * GIB
    max_total_batch_bytes: int = 10 * GIB
    max_concurrent_transfers: int = 3
    max_name_length: int = 255
    allowed_image_types: frozenset[str] = IMAGE_TYPES
    allowed_video_types: frozenset[str] = VIDEO_TYPES
    allowed_document_types: frozenset[str] = DOCUMENT_TYPES
    transfer_timeout: float = 300.0
    download_url_ttl: int = 3600

    @property
    def allowed_types(self) -> frozenset[str]:
        return self.allowed_image_types | self.allowed_video_types | self.allowed_document_types


DEFAULT_LIMITS = TransferLimits()


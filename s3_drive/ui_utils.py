from __future__ import annotations
"""UI-agnostic helpers for formatting transfer results."""
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, metadata, version
import re

DIST_NAME = "pys3d"


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    summary: str
    homepage: str | None
    repository: str | None
    author: str | None


def load_package_info(dist_name: str = DIST_NAME) -> PackageInfo:
    try:
        distribution_metadata = metadata(dist_name)
        package_version = version(dist_name)
    except PackageNotFoundError:
        return PackageInfo(
            name="S3 Drive",
            version="",
            summary="Upload and download files through presigned S3 URLs.",
            homepage=None,
            repository=None,
            author=None,
        )
    summary = distribution_metadata.get("Summary") or ""
    author = distribution_metadata.get("Author") or distribution_metadata.get("Author-email")
    homepage = distribution_metadata.get("Home-page")
    repository = None
    for entry in distribution_metadata.get_all("Project-URL") or []:
        label, _, link = entry.partition(",")
        label = label.strip().lower()
        url = link.strip()
        if label == "repository":
            repository = url
        elif label == "homepage" and not homepage:
            homepage = url
    return PackageInfo(
        name=distribution_metadata.get("Name"),
        version=package_version,
        summary=summary,
        homepage=homepage or None,
        repository=repository,
        author=author or None,
    )


def format_size(size: int | None) -> str:
    if size is None:
        return "-"
    suffixes = ["B", "KB", "MB", "GB", "TB"]
    value = float(max(size, 0))
    for suffix in suffixes:
        if value < 1024 or suffix == suffixes[-1]:
            return f"{value:.1f} {suffix}" if suffix != "B" else f"{int(value)} {suffix}"
        value /= 1024
    return f"{size} B"


def format_progress(fraction: float) -> str:
    return f"{round(max(0.0, min(fraction, 1.0)) * 100)}%"


def summarize_batch(result, *, verb: str = "uploaded") -> str:
    """Render the end-of-batch message shown once per run."""

    noun = "upload" if verb == "uploaded" else "download"
    if result.failed_count and not result.succeeded_count:
        return f"{result.failed_count} file(s) failed to {noun}."
    message = f"{result.succeeded_count} file(s) {verb} successfully"
    if result.failed_count:
        return f"{message}. {result.failed_count} file(s) failed to {noun}."
    return f"{message}!"


def describe_admission(admission) -> str:
    if admission.batch_rejection is not None:
        return admission.batch_rejection.message
    added = len(admission.admitted)
    if not added:
        return "None of the selected files could be added to the upload queue."
    message = f"{added} file{'' if added == 1 else 's'} added to upload queue"
    if admission.rejected:
        skipped = len(admission.rejected)
        message += f" ({skipped} skipped)"
    return message


def suggest_download_filename(name: str) -> str:
    cleaned = name.strip().rstrip("/")
    if not cleaned:
        return "download"
    cleaned = cleaned.rsplit("/", 1)[-1]
    cleaned = re.sub(r'[\\:*?"<>|\x00-\x1f]', "_", cleaned)
    return cleaned or "download"

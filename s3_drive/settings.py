from __future__ import annotations
"""Application settings persistence helpers."""
from dataclasses import dataclass, replace
import json
from pathlib import Path

from .limits import DEFAULT_LIMITS, TransferLimits


@dataclass
class AppSettings:
    """Simple container for persistent app settings."""

    broker_url: str = ""
    max_concurrent_transfers: int = DEFAULT_LIMITS.max_concurrent_transfers
    transfer_timeout: int = int(DEFAULT_LIMITS.transfer_timeout)
    download_directory: str = ""
    remember_last_folder: bool = False
    last_folder_id: str = ""

    def limits(self, base: TransferLimits = DEFAULT_LIMITS) -> TransferLimits:
        return replace(
            base,
            max_concurrent_transfers=self.max_concurrent_transfers,
            transfer_timeout=float(self.transfer_timeout),
        )


class SettingsStorage:
    """JSON-backed persistence for :class:`AppSettings`."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".pys3d_settings.json"
        self._path = Path(storage_path)

    def load(self) -> AppSettings:
        if not self._path.exists():
            return AppSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return AppSettings()
        if not isinstance(data, dict):
            return AppSettings()
        return AppSettings(
            broker_url=_string(data.get("broker_url")),
            max_concurrent_transfers=_positive_int(
                data.get("max_concurrent_transfers"), AppSettings.max_concurrent_transfers
            ),
            transfer_timeout=_positive_int(data.get("transfer_timeout"), AppSettings.transfer_timeout),
            download_directory=_string(data.get("download_directory")),
            remember_last_folder=data.get("remember_last_folder") is True,
            last_folder_id=_string(data.get("last_folder_id")),
        )

    def save(self, settings: AppSettings) -> None:
        payload = {
            "broker_url": settings.broker_url or "",
            "max_concurrent_transfers": max(int(settings.max_concurrent_transfers), 1),
            "transfer_timeout": max(int(settings.transfer_timeout), 1),
            "download_directory": settings.download_directory or "",
            "remember_last_folder": bool(settings.remember_last_folder),
            "last_folder_id": settings.last_folder_id or "",
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError:
            # Persist best-effort; ignore filesystem issues.
            return


def _positive_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _string(value: object) -> str:
    return value if isinstance(value, str) else ""

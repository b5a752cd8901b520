from __future__ import annotations
"""Authenticated session persistence."""
from dataclasses import dataclass
import json
from pathlib import Path

import keyring
from keyring.errors import KeyringError


@dataclass
class AuthSession:
    """The opaque bearer credential issued by the identity provider."""

    user_id: str
    access_token: str
    broker_url: str
    email: str = ""


class KeychainStore:
    """Encapsulates OS keychain access for access tokens."""

    def __init__(self, service_name: str = "pys3d"):
        self._service_name = service_name

    def get_secret(self, user_id: str) -> str:
        if not user_id:
            return ""
        try:
            return keyring.get_password(self._service_name, user_id) or ""
        except KeyringError:
            return ""

    def set_secret(self, user_id: str, token: str) -> None:
        if not user_id:
            return
        if not token:
            self.delete_secret(user_id)
            return
        try:
            keyring.set_password(self._service_name, user_id, token)
        except KeyringError:
            return

    def delete_secret(self, user_id: str) -> None:
        if not user_id:
            return
        try:
            keyring.delete_password(self._service_name, user_id)
        except KeyringError:
            return


class SessionStorage:
    """JSON file for the session identity; the token lives in the keychain."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".pys3d_session.json"
        self._path = Path(storage_path)
        self._keychain = KeychainStore()

    def load(self) -> AuthSession | None:
        data = self._read()
        if not isinstance(data, dict):
            return None
        try:
            user_id = data["user_id"]
            broker_url = data["broker_url"]
        except KeyError:
            return None
        token = data.get("access_token", "")
        if token:
            self._keychain.set_secret(user_id, token)
            self._write_data(self._sanitized(data))
        else:
            token = self._keychain.get_secret(user_id)
        if not token:
            return None
        return AuthSession(
            user_id=user_id,
            access_token=token,
            broker_url=broker_url,
            email=data.get("email", ""),
        )

    def save(self, session: AuthSession) -> None:
        previous = self._read()
        if isinstance(previous, dict) and previous.get("user_id") not in (None, session.user_id):
            self._keychain.delete_secret(previous["user_id"])
        self._keychain.set_secret(session.user_id, session.access_token)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._write_data(
            {
                "user_id": session.user_id,
                "broker_url": session.broker_url,
                "email": session.email,
            }
        )

    def clear(self) -> None:
        data = self._read()
        if isinstance(data, dict) and data.get("user_id"):
            self._keychain.delete_secret(data["user_id"])
        try:
            self._path.unlink()
        except FileNotFoundError:
            return

    def _read(self):
        if not self._path.exists():
            return None
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    @staticmethod
    def _sanitized(data: dict) -> dict:
        return {key: value for key, value in data.items() if key != "access_token"}

    def _write_data(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")

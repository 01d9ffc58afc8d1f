"""Credential storage keyed by config origin (``scheme://host:port``).

Credentials are kept in a private (0600) JSON file next to the settings.
Encryption at rest is left to the OS account and disk.
"""

from __future__ import annotations

import logging
from pathlib import Path
import threading
from typing import Any

from singlink_client.core.models import Credential
from singlink_client.core.storage import SECRETS_FILE, atomic_write_json, get_config_dir, load_json

logger = logging.getLogger(__name__)


def _normalize_target(target: str | None) -> str | None:
    cleaned = (target or "").strip()
    return cleaned.lower() or None


class FileSecretStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (get_config_dir() / SECRETS_FILE)
        self._lock = threading.Lock()

    def try_read(self, target: str | None) -> Credential | None:
        key = _normalize_target(target)
        if key is None:
            return None
        with self._lock:
            entry = self._load().get(key)
        if not isinstance(entry, dict):
            return None
        username = entry.get("username")
        secret = entry.get("secret")
        if not isinstance(username, str) or not isinstance(secret, str):
            return None
        return Credential(username=username, secret=secret)

    def write(self, target: str | None, credential: Credential) -> None:
        key = _normalize_target(target)
        if key is None:
            return
        with self._lock:
            entries = self._load()
            entries[key] = {"username": credential.username, "secret": credential.secret}
            atomic_write_json(self.path, entries, private=True)
        logger.info("Stored credential for %s", key)

    def delete(self, target: str | None) -> None:
        key = _normalize_target(target)
        if key is None:
            return
        with self._lock:
            entries = self._load()
            if entries.pop(key, None) is None:
                return
            atomic_write_json(self.path, entries, private=True)
        logger.info("Deleted credential for %s", key)

    def _load(self) -> dict[str, Any]:
        data = load_json(self.path, {})
        return data if isinstance(data, dict) else {}

"""Persisted user settings with fail-soft loading and atomic writes."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from typing import Any

from singlink_client.core.models import InboundMode
from singlink_client.core.storage import SETTINGS_FILE, atomic_write_json, get_config_dir

logger = logging.getLogger(__name__)

SETTINGS_SCHEMA_VERSION = 1


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _optional_str(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    cleaned = raw.strip()
    return cleaned or None


@dataclass(frozen=True, slots=True)
class Settings:
    config_url: str | None = None
    last_config_path: str | None = None
    last_updated_at: str | None = None
    autostart: bool = False
    inbound_mode: InboundMode = InboundMode.PROXY

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        autostart = data.get("autostart", False)
        return cls(
            config_url=_optional_str(data.get("config_url")),
            last_config_path=_optional_str(data.get("last_config_path")),
            last_updated_at=_optional_str(data.get("last_updated_at")),
            autostart=autostart if isinstance(autostart, bool) else False,
            inbound_mode=InboundMode.parse(data.get("inbound_mode")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SETTINGS_SCHEMA_VERSION,
            "config_url": self.config_url,
            "last_config_path": self.last_config_path,
            "last_updated_at": self.last_updated_at,
            "autostart": self.autostart,
            "inbound_mode": self.inbound_mode.value,
        }

    def with_config(self, url: str | None, config_path: Path) -> "Settings":
        return replace(
            self,
            config_url=url,
            last_config_path=str(config_path),
            last_updated_at=now_iso(),
        )


class SettingsStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (get_config_dir() / SETTINGS_FILE)
        self.last_load_error: str | None = None

    def load(self) -> Settings:
        self.last_load_error = None
        if not self.path.exists():
            return Settings()

        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            backup_path = self.path.with_suffix(".json.bak")
            try:
                if backup_path.exists():
                    backup_path.unlink()
                os.replace(self.path, backup_path)
                backup_note = f" Backed up as {backup_path.name}."
            except OSError:
                backup_note = " Failed to create backup file."
            self.last_load_error = (
                f"Settings file is corrupted ({exc}). Started with defaults.{backup_note}"
            )
            logger.warning("%s", self.last_load_error)
            return Settings()

        if not isinstance(payload, dict):
            self.last_load_error = "Settings file format is invalid. Started with defaults."
            logger.warning("%s", self.last_load_error)
            return Settings()

        return Settings.from_dict(payload)

    def save(self, settings: Settings) -> None:
        atomic_write_json(self.path, settings.to_dict(), private=True)

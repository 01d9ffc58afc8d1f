from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from singlink_client.core.models import InboundMode
from singlink_client.core.settings_store import Settings, SettingsStore


def test_missing_file_loads_defaults(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    assert store.load() == Settings()
    assert store.last_load_error is None


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    store = SettingsStore(path)
    settings = Settings(
        config_url="https://example.com/sub",
        last_config_path="/tmp/config.json",
        last_updated_at="2026-01-02T03:04:05+00:00",
        autostart=True,
        inbound_mode=InboundMode.TUN,
    )

    store.save(settings)

    assert SettingsStore(path).load() == settings
    assert json.loads(path.read_text(encoding="utf-8"))["inbound_mode"] == "tun"


@pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
def test_save_uses_private_permissions(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings())
    assert (path.stat().st_mode & 0o777) == 0o600


def test_corrupted_file_is_backed_up(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{broken", encoding="utf-8")
    store = SettingsStore(path)

    assert store.load() == Settings()
    assert store.last_load_error is not None
    assert "settings.json.bak" in store.last_load_error
    assert (tmp_path / "settings.json.bak").read_text(encoding="utf-8") == "{broken"
    assert not path.exists()


def test_non_object_root_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("[]", encoding="utf-8")
    store = SettingsStore(path)
    assert store.load() == Settings()
    assert store.last_load_error is not None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("tun", InboundMode.TUN), ("TUN", InboundMode.TUN), (1, InboundMode.TUN), ("mixed", InboundMode.PROXY), (None, InboundMode.PROXY), (True, InboundMode.PROXY)],
)
def test_inbound_mode_parsing(raw, expected) -> None:
    assert Settings.from_dict({"inbound_mode": raw}).inbound_mode is expected


def test_from_dict_ignores_bad_types() -> None:
    settings = Settings.from_dict({"config_url": 5, "autostart": "yes", "last_config_path": "  "})
    assert settings == Settings()


def test_with_config_stamps_update_time(tmp_path: Path) -> None:
    updated = Settings().with_config("https://example.com/a", tmp_path / "config.json")
    assert updated.config_url == "https://example.com/a"
    assert updated.last_config_path == str(tmp_path / "config.json")
    assert updated.last_updated_at is not None
    assert updated.last_updated_at.endswith("+00:00")

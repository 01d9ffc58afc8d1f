"""Storage paths and JSON helpers."""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
from pathlib import Path
import tempfile
from typing import Any

from platformdirs import user_config_path, user_state_path

APP_NAME = "singlink-client"

SETTINGS_FILE = "settings.json"
CONFIG_FILE = "config.json"
SECRETS_FILE = "secrets.json"
RUNTIME_CONFIG_FILE = "runtime-config.json"
ENGINE_LOG_FILE = "singbox.log"
ENGINE_OUTPUT_LOG_FILE = "engine.log"


def get_config_dir() -> Path:
    return Path(user_config_path(APP_NAME))


def get_state_dir() -> Path:
    return Path(user_state_path(APP_NAME))


def get_logs_dir() -> Path:
    return get_state_dir() / "logs"


@dataclass(frozen=True, slots=True)
class AppPaths:
    config_dir: Path
    state_dir: Path

    @classmethod
    def default(cls) -> "AppPaths":
        return cls(config_dir=get_config_dir(), state_dir=get_state_dir())

    @classmethod
    def under(cls, root: Path) -> "AppPaths":
        return cls(config_dir=root / "config", state_dir=root / "state")

    @property
    def settings_path(self) -> Path:
        return self.config_dir / SETTINGS_FILE

    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILE

    @property
    def secrets_path(self) -> Path:
        return self.config_dir / SECRETS_FILE

    @property
    def runtime_config_path(self) -> Path:
        return self.state_dir / RUNTIME_CONFIG_FILE

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def engine_log_path(self) -> Path:
        return self.logs_dir / ENGINE_LOG_FILE

    @property
    def engine_output_log_path(self) -> Path:
        return self.logs_dir / ENGINE_OUTPUT_LOG_FILE


def load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError:
        return default


def atomic_write_bytes(path: Path, data: bytes, *, private: bool = False) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path_str = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_path_str)
    try:
        if private and os.name == "posix":
            os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        if private and os.name == "posix":
            os.chmod(path, 0o600)
    except Exception:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, data: Any, *, private: bool = False) -> None:
    payload = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
    atomic_write_bytes(path, payload.encode("utf-8"), private=private)

"""Start-on-login registration via an XDG autostart desktop entry."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Final, Protocol

from singlink_client.core.storage import APP_NAME, atomic_write_bytes

logger = logging.getLogger(__name__)

AUTOSTART_ARG: Final[str] = "--autostart"


class AutostartBackend(Protocol):
    def enable(self, executable: str) -> bool: ...

    def disable(self) -> bool: ...


def default_autostart_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME", "").strip()
    root = Path(base) if base else Path.home() / ".config"
    return root / "autostart"


def _quote_exec_arg(arg: str) -> str:
    # Desktop Entry Exec rules: reserved characters need a double-quoted argument.
    if not arg or any(ch in arg for ch in ' \t\n"\'\\><~|&;$*?#()`'):
        escaped = arg.replace("\\", "\\\\").replace('"', '\\"').replace("`", "\\`").replace("$", "\\$")
        return f'"{escaped}"'
    return arg


def build_desktop_entry(command: list[str]) -> str:
    exec_line = " ".join(_quote_exec_arg(part) for part in command)
    return "\n".join(
        [
            "[Desktop Entry]",
            "Type=Application",
            "Name=singlink-client",
            "Comment=Start singlink-client on login",
            f"Exec={exec_line}",
            "Terminal=false",
            "X-GNOME-Autostart-enabled=true",
            "",
        ]
    )


class XdgAutostart:
    def __init__(self, autostart_dir: Path | None = None) -> None:
        self.autostart_dir = autostart_dir or default_autostart_dir()

    @property
    def entry_path(self) -> Path:
        return self.autostart_dir / f"{APP_NAME}.desktop"

    def enable(self, executable: str) -> bool:
        executable = (executable or "").strip()
        if not executable:
            logger.error("Cannot register autostart without an executable")
            return False
        try:
            atomic_write_bytes(self.entry_path, build_desktop_entry([executable, AUTOSTART_ARG]).encode("utf-8"))
        except OSError:
            logger.exception("Failed to write autostart entry %s", self.entry_path)
            return False
        logger.info("Autostart enabled: %s", self.entry_path)
        return True

    def disable(self) -> bool:
        try:
            self.entry_path.unlink()
        except FileNotFoundError:
            return True
        except OSError:
            logger.exception("Failed to remove autostart entry %s", self.entry_path)
            return False
        logger.info("Autostart disabled: %s", self.entry_path)
        return True

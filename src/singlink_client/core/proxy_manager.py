"""Apply and restore the desktop-wide system proxy.

The manager points the system proxy at the engine's mixed inbound and keeps a
snapshot of the previous settings so they can be put back exactly on
disconnect or engine exit.

Backends:
- GNOME via the `gsettings` CLI
- Windows via the WinINet registry values (`ProxyEnable`/`ProxyServer`)
"""

from __future__ import annotations

import ast
import logging
import os
import shlex
import shutil
import subprocess
from typing import Any, Final, Protocol

from singlink_client.core.errors import SystemProxyUnavailableError
from singlink_client.core.models import ProxySnapshot, format_proxy_target

logger = logging.getLogger(__name__)


class SystemProxyBackend(Protocol):
    name: str

    def read(self) -> ProxySnapshot: ...

    def write(self, snapshot: ProxySnapshot) -> None:
        """Apply both fields; a ``None`` field is deleted/reset, not blanked."""

    def notify_changed(self) -> None: ...


def proxy_server_matches(current: str | None, target: str) -> bool:
    """Whether ``current`` (plain or ``proto=host:port;...``) targets ``target``."""
    normalized = (current or "").strip()
    if not normalized:
        return False
    if "=" not in normalized:
        return normalized.lower() == target.lower()

    matched_any = False
    for segment in normalized.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        value = segment.split("=", 1)[1] if "=" in segment else segment
        value = value.strip()
        if not value:
            continue
        matched_any = True
        if value.lower() != target.lower():
            return False
    return matched_any


def _targets(snapshot: ProxySnapshot, target: str) -> bool:
    return snapshot.proxy_enabled == 1 and proxy_server_matches(snapshot.proxy_server, target)


# --- gsettings backend --------------------------------------------------------

_SCHEMA_PROXY: Final[str] = "org.gnome.system.proxy"
_PROTOCOL_SCHEMAS: Final[tuple[tuple[str, str], ...]] = (
    ("http", "org.gnome.system.proxy.http"),
    ("https", "org.gnome.system.proxy.https"),
    ("socks", "org.gnome.system.proxy.socks"),
)


def _parse_gsettings_str(raw: str) -> str:
    raw = (raw or "").strip()
    if not raw:
        return ""
    try:
        parsed = ast.literal_eval(raw)
    except Exception:
        parsed = None
    if isinstance(parsed, str):
        return parsed.strip()
    if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
        return raw[1:-1].strip()
    return raw


def _parse_gsettings_int(raw: str, *, default: int = 0) -> int:
    try:
        return int((raw or "").strip())
    except ValueError:
        return default


def _format_gsettings_str(value: str) -> str:
    value = (value or "").replace("'", "\\'")
    return f"'{value}'"


def _format_cmd(cmd: list[str]) -> str:
    try:
        return shlex.join(cmd)
    except Exception:
        return str(cmd)


def _run(cmd: list[str], *, timeout_s: float = 3.0) -> subprocess.CompletedProcess[str]:
    command_text = _format_cmd(cmd)
    logger.info("Running command: %s", command_text)
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as exc:
        logger.exception("Command timed out: %s", command_text)
        raise SystemProxyUnavailableError(
            f"Command timed out: {command_text}",
            user_message="Timed out while changing system proxy settings.",
        ) from exc
    except OSError as exc:
        logger.exception("Command execution failed: %s", command_text)
        raise SystemProxyUnavailableError(
            f"Command failed: {command_text}: {exc}",
            user_message="Failed to change system proxy settings (missing tools/permissions).",
        ) from exc

    if result.returncode != 0:
        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()
        detail = stderr or stdout or "unknown error"
        logger.error(
            "Command failed rc=%s cmd=%s stdout=%r stderr=%r",
            result.returncode,
            command_text,
            stdout,
            stderr,
        )
        raise SystemProxyUnavailableError(
            f"Command failed: {command_text}: {detail}",
            user_message=f"Failed to change system proxy settings: {detail}",
        )

    return result


def _gsettings_available() -> bool:
    if shutil.which("gsettings") is None:
        return False
    try:
        out = _run(["gsettings", "list-keys", _SCHEMA_PROXY], timeout_s=2.0).stdout
    except SystemProxyUnavailableError:
        return False
    return "mode" in out


def _split_host_port(target: str) -> tuple[str, int]:
    target = target.strip()
    host, sep, port = target.rpartition(":")
    if not sep:
        raise SystemProxyUnavailableError(
            f"Proxy target has no port: {target!r}",
            user_message="System proxy target is invalid.",
        )
    host = host.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, _parse_gsettings_int(port)


def _parse_endpoints(server: str) -> dict[str, tuple[str, int]]:
    """Map ``host:port`` or ``proto=host:port;...`` to per-protocol endpoints."""
    if "=" not in server:
        endpoint = _split_host_port(server)
        return {proto: endpoint for proto, _ in _PROTOCOL_SCHEMAS}

    endpoints: dict[str, tuple[str, int]] = {}
    known = {proto for proto, _ in _PROTOCOL_SCHEMAS}
    for segment in server.split(";"):
        proto, sep, value = segment.partition("=")
        proto = proto.strip().lower()
        if not sep or proto not in known or not value.strip():
            continue
        endpoints[proto] = _split_host_port(value)
    return endpoints


class GSettingsProxyBackend:
    name = "gsettings"

    def read(self) -> ProxySnapshot:
        mode = _parse_gsettings_str(self._get(_SCHEMA_PROXY, "mode"))
        endpoints: dict[str, str] = {}
        for proto, schema in _PROTOCOL_SCHEMAS:
            host = _parse_gsettings_str(self._get(schema, "host"))
            port = _parse_gsettings_int(self._get(schema, "port"))
            if host and port > 0:
                endpoints[proto] = format_proxy_target(host, port)

        server: str | None = None
        if endpoints:
            values = set(endpoints.values())
            if len(values) == 1 and len(endpoints) == len(_PROTOCOL_SCHEMAS):
                server = values.pop()
            else:
                server = ";".join(f"{proto}={value}" for proto, value in endpoints.items())

        return ProxySnapshot(
            proxy_enabled=1 if mode.lower() == "manual" else 0,
            proxy_server=server,
            proxy_mode=mode or None,
        )

    def write(self, snapshot: ProxySnapshot) -> None:
        if snapshot.proxy_server is None:
            for _, schema in _PROTOCOL_SCHEMAS:
                self._reset(schema, "host")
                self._reset(schema, "port")
        else:
            endpoints = _parse_endpoints(snapshot.proxy_server)
            for proto, schema in _PROTOCOL_SCHEMAS:
                endpoint = endpoints.get(proto)
                if endpoint is None:
                    self._reset(schema, "host")
                    self._reset(schema, "port")
                    continue
                self._set(schema, "host", _format_gsettings_str(endpoint[0]))
                self._set(schema, "port", str(int(endpoint[1])))

        # Mode goes last so clients never see "manual" with a half-written target.
        if snapshot.proxy_enabled is None and snapshot.proxy_mode is None:
            self._reset(_SCHEMA_PROXY, "mode")
        else:
            mode = snapshot.proxy_mode or ("manual" if snapshot.proxy_enabled == 1 else "none")
            self._set(_SCHEMA_PROXY, "mode", _format_gsettings_str(mode))

    def notify_changed(self) -> None:
        # gsettings commits each write through dconf; listeners are notified by it.
        return None

    @staticmethod
    def _get(schema: str, key: str) -> str:
        return _run(["gsettings", "get", schema, key], timeout_s=2.5).stdout.strip()

    @staticmethod
    def _set(schema: str, key: str, value: str) -> None:
        _run(["gsettings", "set", schema, key, value], timeout_s=2.5)

    @staticmethod
    def _reset(schema: str, key: str) -> None:
        _run(["gsettings", "reset", schema, key], timeout_s=2.5)


# --- WinINet backend ----------------------------------------------------------

INTERNET_SETTINGS_KEY: Final[str] = r"Software\Microsoft\Windows\CurrentVersion\Internet Settings"
_INTERNET_OPTION_SETTINGS_CHANGED: Final[int] = 39
_INTERNET_OPTION_REFRESH: Final[int] = 37


class WinInetProxyBackend:
    name = "wininet"

    def read(self) -> ProxySnapshot:
        import winreg

        try:
            key = winreg.OpenKey(winreg.HKEY_CURRENT_USER, INTERNET_SETTINGS_KEY, 0, winreg.KEY_READ)
        except FileNotFoundError:
            return ProxySnapshot(proxy_enabled=None, proxy_server=None)
        except OSError as exc:
            raise self._error("open", exc) from exc
        try:
            enabled = self._query(winreg, key, "ProxyEnable")
            server = self._query(winreg, key, "ProxyServer")
        finally:
            winreg.CloseKey(key)

        try:
            proxy_enabled = int(enabled) if enabled is not None else None
        except (TypeError, ValueError):
            proxy_enabled = None
        proxy_server = server.strip() if isinstance(server, str) and server.strip() else None
        return ProxySnapshot(proxy_enabled=proxy_enabled, proxy_server=proxy_server)

    def write(self, snapshot: ProxySnapshot) -> None:
        import winreg

        try:
            key = winreg.CreateKeyEx(winreg.HKEY_CURRENT_USER, INTERNET_SETTINGS_KEY, 0, winreg.KEY_WRITE)
        except OSError as exc:
            raise self._error("open", exc) from exc
        try:
            if snapshot.proxy_enabled is None:
                self._delete(winreg, key, "ProxyEnable")
            else:
                winreg.SetValueEx(key, "ProxyEnable", 0, winreg.REG_DWORD, int(snapshot.proxy_enabled))
            if snapshot.proxy_server is None:
                self._delete(winreg, key, "ProxyServer")
            else:
                winreg.SetValueEx(key, "ProxyServer", 0, winreg.REG_SZ, snapshot.proxy_server)
        except OSError as exc:
            raise self._error("write", exc) from exc
        finally:
            winreg.CloseKey(key)

    def notify_changed(self) -> None:
        import ctypes

        wininet = ctypes.windll.wininet  # type: ignore[attr-defined]
        wininet.InternetSetOptionW(0, _INTERNET_OPTION_SETTINGS_CHANGED, 0, 0)
        wininet.InternetSetOptionW(0, _INTERNET_OPTION_REFRESH, 0, 0)

    @staticmethod
    def _query(winreg: Any, key: Any, name: str) -> Any:
        try:
            value, _ = winreg.QueryValueEx(key, name)
        except FileNotFoundError:
            return None
        return value

    @staticmethod
    def _delete(winreg: Any, key: Any, name: str) -> None:
        try:
            winreg.DeleteValue(key, name)
        except FileNotFoundError:
            pass

    @staticmethod
    def _error(action: str, exc: OSError) -> SystemProxyUnavailableError:
        logger.error("Failed to %s Internet Settings: %s", action, exc)
        return SystemProxyUnavailableError(
            f"Failed to {action} Internet Settings: {exc}",
            user_message="Failed to access Windows proxy settings.",
        )


def detect_proxy_backend() -> SystemProxyBackend | None:
    if os.name == "nt":
        return WinInetProxyBackend()
    if _gsettings_available():
        return GSettingsProxyBackend()
    return None


# --- manager ------------------------------------------------------------------


class SystemProxyManager:
    def __init__(self, backend: SystemProxyBackend | None = None) -> None:
        self._backend = backend if backend is not None else detect_proxy_backend()
        self._snapshot: ProxySnapshot | None = None

    @property
    def backend(self) -> SystemProxyBackend | None:
        return self._backend

    @property
    def is_managing(self) -> bool:
        return self._snapshot is not None

    def is_supported(self) -> bool:
        return self._backend is not None

    def _ensure_backend(self) -> SystemProxyBackend:
        if self._backend is None:
            raise SystemProxyUnavailableError(
                "System proxy backend unavailable",
                user_message="System proxy settings are not supported on this desktop/session.",
            )
        return self._backend

    def enable(self, host: str, port: int) -> None:
        backend = self._ensure_backend()
        target = format_proxy_target(host, port)

        current = self._read(backend)
        if _targets(current, target):
            logger.info("System proxy already targets %s; leaving it unchanged", target)
            return

        took_snapshot = self._snapshot is None
        if took_snapshot:
            self._snapshot = current
            logger.info(
                "System proxy snapshot taken: enabled=%s server=%s",
                current.proxy_enabled,
                current.proxy_server,
            )

        try:
            backend.write(ProxySnapshot(proxy_enabled=1, proxy_server=target))
            backend.notify_changed()
        except (SystemProxyUnavailableError, OSError) as exc:
            logger.exception("Failed to apply system proxy %s", target)
            if took_snapshot:
                self._snapshot = None
                self._rollback(backend, current)
            if isinstance(exc, SystemProxyUnavailableError):
                raise
            raise SystemProxyUnavailableError(
                f"Failed to apply system proxy {target}: {exc}",
                user_message=f"Failed to enable the system proxy: {exc}",
            ) from exc

        logger.info("System proxy enabled: %s via %s", target, backend.name)

    def restore(self) -> None:
        snapshot = self._snapshot
        if snapshot is None:
            return
        backend = self._ensure_backend()
        try:
            backend.write(snapshot)
            backend.notify_changed()
        except OSError as exc:
            logger.exception("Failed to restore system proxy")
            raise SystemProxyUnavailableError(
                f"Failed to restore system proxy: {exc}",
                user_message=f"Failed to restore the system proxy: {exc}",
            ) from exc
        self._snapshot = None
        logger.info(
            "System proxy restored: enabled=%s server=%s",
            snapshot.proxy_enabled,
            snapshot.proxy_server,
        )

    @staticmethod
    def _read(backend: SystemProxyBackend) -> ProxySnapshot:
        try:
            return backend.read()
        except OSError as exc:
            logger.exception("Failed to read system proxy settings")
            raise SystemProxyUnavailableError(
                f"Failed to read system proxy settings: {exc}",
                user_message="Failed to read the current system proxy settings.",
            ) from exc

    @staticmethod
    def _rollback(backend: SystemProxyBackend, snapshot: ProxySnapshot) -> None:
        try:
            backend.write(snapshot)
            backend.notify_changed()
        except (SystemProxyUnavailableError, OSError):
            logger.exception("Failed to roll back system proxy settings")

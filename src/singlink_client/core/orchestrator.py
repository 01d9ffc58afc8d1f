"""Connection state machine.

`ConnectionOrchestrator` sequences config updates, connect, disconnect and
inbound-mode switches so that the engine process, the runtime config and the
OS system proxy never disagree. Every state-changing call runs under one
non-reentrant lock: callers that find it held get ``BusyError`` immediately,
while the engine's unsolicited exit notification waits for it.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from enum import Enum
import json
import logging
import os
from pathlib import Path
import sys
import threading
from typing import Any, Callable, Iterator

from singlink_client.core import jsonc
from singlink_client.core.config_fetcher import basic_auth_target
from singlink_client.core.config_inspector import find_mixed_inbound
from singlink_client.core.errors import (
    AppError,
    AuthInvalidError,
    AuthRequiredError,
    BusyError,
    ConfigBuildError,
    NoConfigAvailableError,
    SystemProxyUnavailableError,
)
from singlink_client.core.import_link import parse_import_argument
from singlink_client.core.logging_setup import redact
from singlink_client.core.models import ConnectionState, Credential, InboundMode
from singlink_client.core.runtime_config import build_runtime_config
from singlink_client.core.settings_store import Settings
from singlink_client.core.storage import AppPaths, atomic_write_bytes

logger = logging.getLogger(__name__)

CredentialPrompt = Callable[[str, bool], "Credential | None"]
StateListener = Callable[[ConnectionState], None]
WarningListener = Callable[[str], None]


class AuthStep(Enum):
    AWAITING_CREDENTIAL = "awaiting_credential"
    VERIFYING = "verifying"


def default_executable() -> str:
    if getattr(sys, "frozen", False):
        return sys.executable
    return os.path.abspath(sys.argv[0]) if sys.argv and sys.argv[0] else sys.executable


class ConnectionOrchestrator:
    def __init__(
        self,
        *,
        paths: AppPaths,
        settings_store: Any,
        fetcher: Any,
        secret_store: Any,
        process_manager: Any,
        system_proxy: Any,
        autostart: Any | None = None,
        credential_prompt: CredentialPrompt | None = None,
        on_state_changed: StateListener | None = None,
        on_warning: WarningListener | None = None,
        executable: str | None = None,
    ) -> None:
        self._paths = paths
        self._settings_store = settings_store
        self._fetcher = fetcher
        self._secret_store = secret_store
        self._process_manager = process_manager
        self._system_proxy = system_proxy
        self._autostart = autostart
        self._credential_prompt = credential_prompt
        self._on_state_changed = on_state_changed
        self._on_warning = on_warning
        self._executable = executable or default_executable()

        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._auth_step: AuthStep | None = None
        self._settings: Settings = settings_store.load()

        process_manager.set_exit_handler(self._on_engine_exited)

    # --- read-only views -----------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def settings_load_error(self) -> str | None:
        return getattr(self._settings_store, "last_load_error", None)

    @property
    def auth_step(self) -> AuthStep | None:
        return self._auth_step

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._process_manager.is_running

    def active_config_path(self) -> Path | None:
        last = self._settings.last_config_path
        if last and Path(last).is_file():
            return Path(last)
        if self._paths.config_path.is_file():
            return self._paths.config_path
        return None

    # --- operations ----------------------------------------------------------

    def update_config(self, url: str) -> Path | None:
        """Fetch ``url`` and make it the active config.

        Returns ``None`` when the user cancelled the credential prompt. A
        running connection is stopped for the update and brought back up
        afterwards, with the old config if the fetch did not succeed.
        """
        source = parse_import_argument(url) or (url or "").strip()
        with self._operation("update_config"):
            was_connected = self._process_manager.is_running
            if was_connected:
                self._disconnect_locked()

            try:
                data = self._fetch_with_auth(source)
                config_path = self._store_config(data) if data is not None else None
                if config_path is not None:
                    self._settings = self._settings.with_config(source, config_path)
                    self._save_settings()
            except Exception:
                if was_connected:
                    self._reconnect_previous()
                raise

            if config_path is None:
                logger.info("Config update cancelled for %s", redact(source))
                if was_connected:
                    self._reconnect_previous()
                return None

            logger.info("Config updated from %s -> %s", redact(source), config_path)
            if was_connected:
                self._connect_locked()
            return config_path

    def connect(self) -> None:
        with self._operation("connect"):
            self._connect_locked()

    def disconnect(self) -> None:
        with self._operation("disconnect"):
            self._disconnect_locked()

    def toggle(self) -> ConnectionState:
        with self._operation("toggle"):
            if self._state is ConnectionState.DISCONNECTED:
                self._connect_locked()
            else:
                self._disconnect_locked()
            return self._state

    def switch_inbound_mode(self, mode: InboundMode | str) -> None:
        new_mode = InboundMode.parse(mode)
        with self._operation("switch_inbound_mode"):
            if new_mode is self._settings.inbound_mode:
                return
            self._settings = replace(self._settings, inbound_mode=new_mode)
            self._save_settings()
            logger.info("Inbound mode set to %s", new_mode.value)

            if self._process_manager.is_running:
                self._disconnect_locked()
                self._connect_locked()
            elif new_mode is InboundMode.TUN:
                self._restore_system_proxy()

    def set_autostart(self, enabled: bool) -> bool:
        with self._operation("set_autostart"):
            if self._autostart is None:
                self._warn("Start on login is not supported on this system.")
                return False
            ok = self._autostart.enable(self._executable) if enabled else self._autostart.disable()
            if not ok:
                self._warn("Failed to update the start-on-login registration.")
                return False
            self._settings = replace(self._settings, autostart=bool(enabled))
            self._save_settings()
            return True

    def sync_autostart(self) -> bool:
        """Re-register start-on-login at startup; clears the setting if that fails."""
        with self._operation("sync_autostart"):
            if not self._settings.autostart:
                return True
            if self._autostart is not None and self._autostart.enable(self._executable):
                return True
            logger.warning("Autostart re-registration failed; turning the setting off")
            self._settings = replace(self._settings, autostart=False)
            self._save_settings()
            return False

    def shutdown(self) -> None:
        self._process_manager.set_exit_handler(None)
        with self._lock:
            self._process_manager.stop()
            self._restore_system_proxy()
            self._set_state(ConnectionState.DISCONNECTED)

    # --- internals -------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            logger.info("Rejected %s: another operation is in progress", name)
            raise BusyError(
                f"Cannot run {name}: another operation is in progress",
                user_message="Another operation is in progress. Try again in a moment.",
            )
        try:
            yield
        finally:
            self._lock.release()

    def _connect_locked(self) -> None:
        if self._state is ConnectionState.CONNECTED and self._process_manager.is_running:
            return

        source = self.active_config_path()
        if source is None:
            raise NoConfigAvailableError(
                "No config available to connect with",
                user_message="No config available. Update the config first.",
            )

        mode = self._settings.inbound_mode
        self._set_state(ConnectionState.CONNECTING)
        try:
            runtime_path = build_runtime_config(
                source,
                mode,
                self._paths.runtime_config_path,
                log_output=self._paths.engine_log_path,
            )
            if mode is InboundMode.PROXY:
                self._apply_system_proxy(runtime_path)
            else:
                self._restore_system_proxy()
            self._process_manager.start(runtime_path)
        except Exception as exc:
            logger.exception("Connect failed (mode=%s)", mode.value)
            self._restore_system_proxy()
            self._set_state(ConnectionState.DISCONNECTED)
            if isinstance(exc, AppError):
                exc.user_message = (
                    f"{exc.user_message}\nEngine log: {self._paths.engine_output_log_path}"
                )
            raise

        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected (mode=%s, pid=%s)", mode.value, self._process_manager.pid)

    def _disconnect_locked(self) -> None:
        self._set_state(ConnectionState.DISCONNECTING)
        try:
            self._process_manager.stop()
        finally:
            # Restore even in TUN mode: an earlier proxy-mode session may have left it managed.
            self._restore_system_proxy()
            self._set_state(ConnectionState.DISCONNECTED)

    def _reconnect_previous(self) -> None:
        try:
            self._connect_locked()
        except AppError as exc:
            self._warn(f"Could not reconnect with the previous config: {exc.user_message}")

    def _apply_system_proxy(self, runtime_path: Path) -> None:
        try:
            proxy = find_mixed_inbound(runtime_path)
        except AppError as exc:
            self._warn(f"System proxy was not set: {exc.user_message}")
            self._restore_system_proxy()
            return

        if proxy is None:
            logger.info("Runtime config has no mixed inbound; leaving system proxy unmanaged")
            self._restore_system_proxy()
            return

        logger.info("Pointing system proxy at %s", proxy.target)
        try:
            self._system_proxy.enable(proxy.host, proxy.port)
        except SystemProxyUnavailableError as exc:
            self._warn(f"System proxy was not set: {exc.user_message}")

    def _restore_system_proxy(self) -> None:
        try:
            self._system_proxy.restore()
        except SystemProxyUnavailableError as exc:
            self._warn(f"System proxy could not be restored: {exc.user_message}")

    def _fetch_with_auth(self, source: str) -> bytes | None:
        try:
            return self._fetcher.fetch(source)
        except AuthRequiredError as exc:
            origin = basic_auth_target(source) or exc.origin
            required = exc

        cached = self._secret_store.try_read(origin)
        if cached is not None:
            logger.info("Retrying %s with the stored credential", origin)
            try:
                return self._fetcher.fetch(source, cached)
            except AuthInvalidError:
                logger.warning("Stored credential for %s was rejected; discarding it", origin)
                self._secret_store.delete(origin)

        if self._credential_prompt is None:
            raise required
        return self._prompt_for_credential(source, origin)

    def _prompt_for_credential(self, source: str, origin: str) -> bytes | None:
        invalid = False
        try:
            while True:
                self._auth_step = AuthStep.AWAITING_CREDENTIAL
                credential = self._credential_prompt(origin, invalid) if self._credential_prompt else None
                if credential is None:
                    logger.info("Credential prompt for %s cancelled", origin)
                    return None

                self._auth_step = AuthStep.VERIFYING
                try:
                    data = self._fetcher.fetch(source, credential)
                except AuthInvalidError:
                    logger.warning("Credential for %s rejected; prompting again", origin)
                    invalid = True
                    continue

                try:
                    self._secret_store.write(origin, credential)
                except OSError:
                    logger.exception("Failed to store credential for %s", origin)
                    self._warn("The credential worked but could not be saved.")
                return data
        finally:
            self._auth_step = None

    def _store_config(self, data: bytes) -> Path:
        try:
            document = jsonc.loads(data.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConfigBuildError(
                f"Fetched config is not valid JSON: {exc}",
                user_message=f"The downloaded config is not valid JSON: {exc}",
            ) from exc
        if not isinstance(document, dict):
            raise ConfigBuildError(
                "Fetched config root is not an object",
                user_message="The downloaded config is not a JSON object.",
            )

        path = self._paths.config_path
        atomic_write_bytes(path, data, private=True)
        return path

    def _save_settings(self) -> None:
        try:
            self._settings_store.save(self._settings)
        except OSError as exc:
            logger.exception("Failed to save settings")
            self._warn(f"Settings could not be saved: {exc}")

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        listener = self._on_state_changed
        if listener is None:
            return
        try:
            listener(state)
        except Exception:
            logger.exception("State listener failed")

    def _warn(self, message: str) -> None:
        logger.warning("%s", message)
        listener = self._on_warning
        if listener is None:
            return
        try:
            listener(message)
        except Exception:
            logger.exception("Warning listener failed")

    def _on_engine_exited(self, returncode: int) -> None:
        with self._lock:
            if self._process_manager.is_running:
                logger.info("Ignoring stale engine exit (code %s); a new engine is running", returncode)
                return
            logger.warning("Engine exited on its own (code %s)", returncode)
            self._restore_system_proxy()
            self._set_state(ConnectionState.DISCONNECTED)

"""Application entry point."""

from __future__ import annotations

import logging
import sys

from PyQt6.QtWidgets import QApplication, QSystemTrayIcon

from singlink_client.core.autostart import AUTOSTART_ARG, XdgAutostart
from singlink_client.core.config_fetcher import ConfigFetcher
from singlink_client.core.import_link import find_import_url
from singlink_client.core.logging_setup import redact, setup_logging
from singlink_client.core.orchestrator import ConnectionOrchestrator
from singlink_client.core.process_manager import EngineProcessManager
from singlink_client.core.proxy_manager import SystemProxyManager
from singlink_client.core.secret_store import FileSecretStore
from singlink_client.core.settings_store import SettingsStore
from singlink_client.core.storage import AppPaths
from singlink_client.ui.credential_dialog import CredentialPromptBridge
from singlink_client.ui.main_window import MainWindow, OrchestratorEvents, TrayIcon

logger = logging.getLogger(__name__)


def build_orchestrator(
    paths: AppPaths,
    events: OrchestratorEvents,
    prompt: CredentialPromptBridge,
) -> ConnectionOrchestrator:
    system_proxy = SystemProxyManager()
    if not system_proxy.is_supported():
        logger.warning("No system proxy backend available; proxy mode will not set the OS proxy")

    return ConnectionOrchestrator(
        paths=paths,
        settings_store=SettingsStore(paths.settings_path),
        fetcher=ConfigFetcher(),
        secret_store=FileSecretStore(paths.secrets_path),
        process_manager=EngineProcessManager(output_log_path=paths.engine_output_log_path),
        system_proxy=system_proxy,
        autostart=XdgAutostart() if sys.platform.startswith("linux") else None,
        credential_prompt=prompt.prompt,
        on_state_changed=events.on_state_changed,
        on_warning=events.on_warning,
    )


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv if argv is None else argv)
    paths = AppPaths.default()
    log_path = setup_logging(paths.logs_dir)
    logger.info("Starting singlink-client (log: %s)", log_path)

    app = QApplication(argv)
    app.setApplicationName("singlink-client")

    events = OrchestratorEvents()
    prompt = CredentialPromptBridge()
    orchestrator = build_orchestrator(paths, events, prompt)
    orchestrator.sync_autostart()

    window = MainWindow(orchestrator, events)
    prompt.setParent(window)
    window.prompt_bridge = prompt
    if orchestrator.settings_load_error:
        window.hint_label.setText(orchestrator.settings_load_error)

    tray: TrayIcon | None = None
    if QSystemTrayIcon.isSystemTrayAvailable():
        tray = TrayIcon(window, app)
        tray.quit_action.triggered.connect(app.quit)
        tray.show()
        window.tray = tray
        app.setQuitOnLastWindowClosed(False)

    def _on_about_to_quit() -> None:
        prompt.cancel_pending()
        orchestrator.shutdown()

    app.aboutToQuit.connect(_on_about_to_quit)

    args = argv[1:]
    import_url = find_import_url(args)
    autostarted = any(arg.strip().lower() == AUTOSTART_ARG for arg in args)

    if import_url:
        logger.info("Importing config from link: %s", redact(import_url))
        window.show()
        window.start_update(import_url)
    elif autostarted and tray is not None:
        logger.info("Started on login; staying in the tray")
    elif autostarted:
        window.showMinimized()
    else:
        window.show()

    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())

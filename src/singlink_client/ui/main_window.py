"""Main application window."""

from __future__ import annotations

import logging
from typing import Any, Callable

from PyQt6.QtCore import QObject, QRunnable, Qt, QThreadPool, pyqtSignal
from PyQt6.QtWidgets import (
    QCheckBox,
    QComboBox,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMenu,
    QMessageBox,
    QPushButton,
    QStyle,
    QSystemTrayIcon,
    QVBoxLayout,
    QWidget,
)

from singlink_client.core.errors import AppError
from singlink_client.core.models import ConnectionState, InboundMode
from singlink_client.core.orchestrator import ConnectionOrchestrator
from singlink_client.ui.credential_dialog import CredentialPromptBridge

logger = logging.getLogger(__name__)

_STATE_LABELS = {
    ConnectionState.DISCONNECTED: ("DISCONNECTED", "color: #c62828; font-weight: 600;"),
    ConnectionState.CONNECTING: ("CONNECTING", "color: #546e7a; font-weight: 600;"),
    ConnectionState.CONNECTED: ("CONNECTED", "color: #2e7d32; font-weight: 600;"),
    ConnectionState.DISCONNECTING: ("DISCONNECTING", "color: #546e7a; font-weight: 600;"),
}


class OperationWorkerSignals(QObject):
    result = pyqtSignal(object)
    error = pyqtSignal(object)


class OperationWorker(QRunnable):
    def __init__(self, fn: Callable[[], Any]) -> None:
        super().__init__()
        self.fn = fn
        self.signals = OperationWorkerSignals()

    def run(self) -> None:
        try:
            payload = self.fn()
        except AppError as exc:
            self.signals.error.emit(exc)
            return
        except Exception as exc:  # pragma: no cover
            logger.exception("Background operation failed")
            self.signals.error.emit(exc)
            return
        self.signals.result.emit(payload)


class OrchestratorEvents(QObject):
    """Carries orchestrator callbacks from worker/watcher threads to the GUI thread."""

    state_changed = pyqtSignal(object)
    warning = pyqtSignal(str)

    def on_state_changed(self, state: ConnectionState) -> None:
        self.state_changed.emit(state)

    def on_warning(self, message: str) -> None:
        self.warning.emit(message)


class MainWindow(QMainWindow):
    def __init__(self, orchestrator: ConnectionOrchestrator, events: OrchestratorEvents) -> None:
        super().__init__()
        self.setWindowTitle("singlink-client")
        self.resize(720, 260)

        self._orchestrator = orchestrator
        self._thread_pool = QThreadPool.globalInstance()
        self._busy = False
        self.tray: QSystemTrayIcon | None = None
        self.prompt_bridge: CredentialPromptBridge | None = None

        central = QWidget(self)
        self.setCentralWidget(central)

        self.source_input = QLineEdit()
        self.source_input.setPlaceholderText("Config URL (https://...) or local file path")

        self.update_button = QPushButton("Update")
        self.update_button.clicked.connect(self._on_update_clicked)

        self.connect_button = QPushButton("Connect")
        self.connect_button.clicked.connect(self.toggle_connection)

        self.mode_combo = QComboBox()
        for mode in InboundMode:
            self.mode_combo.addItem(mode.label, mode)
        self.mode_combo.currentIndexChanged.connect(self._on_mode_changed)

        self.autostart_checkbox = QCheckBox("Start on login")
        self.autostart_checkbox.toggled.connect(self._on_autostart_toggled)

        self.status_label = QLabel()
        self.status_label.setAlignment(Qt.AlignmentFlag.AlignLeft | Qt.AlignmentFlag.AlignVCenter)

        self.hint_label = QLabel("")
        self.hint_label.setWordWrap(True)

        top_row = QHBoxLayout()
        top_row.addWidget(self.source_input, 1)
        top_row.addWidget(self.update_button)

        control_row = QHBoxLayout()
        control_row.addWidget(self.connect_button)
        control_row.addWidget(QLabel("Mode:"))
        control_row.addWidget(self.mode_combo)
        control_row.addWidget(QLabel("Status:"))
        control_row.addWidget(self.status_label, 1)
        control_row.addWidget(self.autostart_checkbox)

        layout = QVBoxLayout()
        layout.addLayout(top_row)
        layout.addLayout(control_row)
        layout.addWidget(self.hint_label, 1)
        central.setLayout(layout)

        events.state_changed.connect(self._on_state_changed)
        events.warning.connect(self._on_warning)

        self._load_settings()
        self._on_state_changed(orchestrator.state)

    def start_update(self, source: str) -> None:
        self.source_input.setText(source)
        self._on_update_clicked()

    def refresh_config(self) -> None:
        self.start_update(self.source_input.text())

    def _load_settings(self) -> None:
        settings = self._orchestrator.settings
        if settings.config_url:
            self.source_input.setText(settings.config_url)

        index = self.mode_combo.findData(settings.inbound_mode)
        self.mode_combo.blockSignals(True)
        self.mode_combo.setCurrentIndex(max(index, 0))
        self.mode_combo.blockSignals(False)

        self.autostart_checkbox.blockSignals(True)
        self.autostart_checkbox.setChecked(settings.autostart)
        self.autostart_checkbox.blockSignals(False)

        if settings.last_updated_at:
            self.hint_label.setText(f"Config last updated {settings.last_updated_at}.")

    def _run(self, fn: Callable[[], Any], on_done: Callable[[Any], None] | None = None) -> None:
        if self._busy:
            self.hint_label.setText("Another operation is in progress.")
            return
        self._set_busy(True)

        worker = OperationWorker(fn)
        worker.signals.result.connect(lambda payload: self._on_operation_done(payload, on_done))
        worker.signals.error.connect(self._on_operation_error)
        self._thread_pool.start(worker)

    def _on_operation_done(self, payload: Any, on_done: Callable[[Any], None] | None) -> None:
        self._set_busy(False)
        if on_done is not None:
            on_done(payload)

    def _on_operation_error(self, exc: object) -> None:
        self._set_busy(False)
        message = exc.user_message if isinstance(exc, AppError) else f"Operation failed: {exc}"
        self.hint_label.setText(message)
        self._load_settings()
        QMessageBox.warning(self, "singlink-client", message)

    def _set_busy(self, busy: bool) -> None:
        self._busy = busy
        for widget in (
            self.update_button,
            self.connect_button,
            self.mode_combo,
            self.autostart_checkbox,
            self.source_input,
        ):
            widget.setEnabled(not busy)

    def _on_update_clicked(self) -> None:
        source = self.source_input.text().strip()
        if not source:
            self.hint_label.setText("Enter a config URL or file path.")
            return
        self.hint_label.setText("Updating config...")

        def _done(path: Any) -> None:
            if path is None:
                self.hint_label.setText("Config update cancelled.")
                return
            self._load_settings()
            self.hint_label.setText(f"Config updated: {path}")

        self._run(lambda: self._orchestrator.update_config(source), _done)

    def toggle_connection(self) -> None:
        self._run(self._orchestrator.toggle)

    def _on_mode_changed(self, index: int) -> None:
        mode = self.mode_combo.itemData(index)
        if not isinstance(mode, InboundMode):
            return
        self._run(lambda: self._orchestrator.switch_inbound_mode(mode))

    def _on_autostart_toggled(self, checked: bool) -> None:
        def _done(ok: Any) -> None:
            if not ok:
                self._load_settings()

        self._run(lambda: self._orchestrator.set_autostart(checked), _done)

    def _on_state_changed(self, state: object) -> None:
        if not isinstance(state, ConnectionState):
            return
        text, style = _STATE_LABELS[state]
        self.status_label.setText(text)
        self.status_label.setStyleSheet(style)
        self.connect_button.setText("Disconnect" if state is ConnectionState.CONNECTED else "Connect")
        if state is ConnectionState.DISCONNECTED and not self._busy:
            self.hint_label.setText("Disconnected.")

    def _on_warning(self, message: str) -> None:
        self.hint_label.setText(message)

    def closeEvent(self, event) -> None:  # type: ignore[override]
        # With a tray icon the window only hides; Quit from the tray exits.
        if self.tray is not None and self.tray.isVisible():
            event.ignore()
            self.hide()
            return
        # A worker parked on the credential prompt still holds the operation lock.
        if self.prompt_bridge is not None:
            self.prompt_bridge.cancel_pending()
        self._thread_pool.waitForDone(5000)
        self._orchestrator.shutdown()
        super().closeEvent(event)


class TrayIcon(QSystemTrayIcon):
    def __init__(self, window: MainWindow, parent: QObject | None = None) -> None:
        icon = window.style().standardIcon(QStyle.StandardPixmap.SP_DriveNetIcon)
        super().__init__(icon, parent)
        self.setToolTip("singlink-client")

        self.menu = QMenu()
        show_action = self.menu.addAction("Show")
        show_action.triggered.connect(window.showNormal)
        show_action.triggered.connect(window.activateWindow)
        update_action = self.menu.addAction("Update config")
        update_action.triggered.connect(window.refresh_config)
        toggle_action = self.menu.addAction("Connect / Disconnect")
        toggle_action.triggered.connect(window.toggle_connection)
        self.menu.addSeparator()
        self.quit_action = self.menu.addAction("Quit")
        self.setContextMenu(self.menu)

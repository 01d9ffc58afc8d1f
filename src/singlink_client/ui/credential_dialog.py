"""Basic-auth credential prompt."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading

from PyQt6.QtCore import QObject, Qt, pyqtSignal
from PyQt6.QtWidgets import (
    QDialog,
    QDialogButtonBox,
    QGridLayout,
    QLabel,
    QLineEdit,
    QVBoxLayout,
    QWidget,
)

from singlink_client.core.models import Credential


class CredentialDialog(QDialog):
    def __init__(self, origin: str, *, invalid: bool = False, parent=None) -> None:
        super().__init__(parent)
        self.setWindowTitle("Sign in")
        self.setModal(True)
        self.resize(420, 180)

        message = f"{origin} requires a username and password."
        if invalid:
            message = f"The username or password was rejected by {origin}. Try again."
        self.message_label = QLabel(message)
        self.message_label.setWordWrap(True)

        self.username_input = QLineEdit()
        self.password_input = QLineEdit()
        self.password_input.setEchoMode(QLineEdit.EchoMode.Password)

        form = QGridLayout()
        form.setHorizontalSpacing(10)
        form.setVerticalSpacing(8)
        form.addWidget(QLabel("Username"), 0, 0)
        form.addWidget(self.username_input, 0, 1)
        form.addWidget(QLabel("Password"), 1, 0)
        form.addWidget(self.password_input, 1, 1)

        self.buttons = QDialogButtonBox(
            QDialogButtonBox.StandardButton.Ok | QDialogButtonBox.StandardButton.Cancel
        )
        self.ok_button = self.buttons.button(QDialogButtonBox.StandardButton.Ok)

        layout = QVBoxLayout()
        layout.setContentsMargins(14, 14, 14, 14)
        layout.setSpacing(10)
        layout.addWidget(self.message_label)
        layout.addLayout(form)
        layout.addWidget(self.buttons)
        self.setLayout(layout)

        self.username_input.textChanged.connect(self._refresh_ok_enabled)
        self.password_input.textChanged.connect(self._refresh_ok_enabled)
        self.buttons.accepted.connect(self.accept)
        self.buttons.rejected.connect(self.reject)
        self._refresh_ok_enabled()

    def _refresh_ok_enabled(self) -> None:
        if self.ok_button is not None:
            self.ok_button.setEnabled(
                bool(self.username_input.text().strip()) and bool(self.password_input.text())
            )

    def credential(self) -> Credential:
        return Credential(username=self.username_input.text().strip(), secret=self.password_input.text())


@dataclass(slots=True)
class _PromptRequest:
    origin: str
    invalid: bool
    result: Credential | None = None
    done: threading.Event = field(default_factory=threading.Event)


class CredentialPromptBridge(QObject):
    """Runs the dialog on the GUI thread for callers on worker threads.

    ``prompt`` blocks the calling worker until the dialog closes, so it must
    never be called from the GUI thread itself. The worker waits on an event
    rather than a blocking signal, so ``cancel_pending`` can release it while
    the GUI thread is busy shutting down.
    """

    POLL_INTERVAL_S = 0.1

    requested = pyqtSignal(object)

    def __init__(self, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self._cancelled = threading.Event()
        self._dialog: CredentialDialog | None = None
        self.requested.connect(self._ask, Qt.ConnectionType.QueuedConnection)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel_pending(self) -> None:
        """Answer the open prompt and every later one with ``None``."""
        self._cancelled.set()
        dialog = self._dialog
        if dialog is not None:
            dialog.reject()

    def prompt(self, origin: str, invalid: bool) -> Credential | None:
        if self._cancelled.is_set():
            return None
        request = _PromptRequest(origin, invalid)
        self.requested.emit(request)
        while not request.done.wait(self.POLL_INTERVAL_S):
            if self._cancelled.is_set():
                return None
        return request.result

    def _ask(self, request: _PromptRequest) -> None:
        try:
            if self._cancelled.is_set():
                return
            parent = self.parent()
            dialog = CredentialDialog(
                request.origin,
                invalid=request.invalid,
                parent=parent if isinstance(parent, QWidget) else None,
            )
            self._dialog = dialog
            try:
                accepted = dialog.exec() == QDialog.DialogCode.Accepted
            finally:
                self._dialog = None
            if accepted and not self._cancelled.is_set():
                request.result = dialog.credential()
        finally:
            request.done.set()

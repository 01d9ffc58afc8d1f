from __future__ import annotations

import os
import threading

import pytest

QtWidgets = pytest.importorskip("PyQt6.QtWidgets")

from PyQt6.QtCore import QThreadPool  # noqa: E402

from singlink_client.core.models import ConnectionState  # noqa: E402
from singlink_client.core.settings_store import Settings  # noqa: E402
from singlink_client.ui.credential_dialog import CredentialPromptBridge  # noqa: E402
from singlink_client.ui.main_window import MainWindow, OrchestratorEvents, TrayIcon  # noqa: E402


class StubOrchestrator:
    def __init__(self) -> None:
        self.settings = Settings(config_url="https://example.com/sub")
        self.state = ConnectionState.DISCONNECTED
        self.updates: list[str] = []
        self.shutdowns = 0

    def update_config(self, url: str):  # noqa: ANN201
        self.updates.append(url)
        return None

    def shutdown(self) -> None:
        self.shutdowns += 1


@pytest.fixture(scope="module")
def qapp():
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
    app = QtWidgets.QApplication.instance() or QtWidgets.QApplication([])
    yield app


def test_tray_update_action_refreshes_current_source(qapp) -> None:
    orchestrator = StubOrchestrator()
    window = MainWindow(orchestrator, OrchestratorEvents())
    tray = TrayIcon(window)

    actions = {action.text(): action for action in tray.menu.actions()}
    assert "Update config" in actions
    actions["Update config"].trigger()
    QThreadPool.globalInstance().waitForDone(5000)
    qapp.processEvents()

    assert orchestrator.updates == ["https://example.com/sub"]


def test_close_without_tray_cancels_prompt_before_shutdown(qapp) -> None:
    orchestrator = StubOrchestrator()
    window = MainWindow(orchestrator, OrchestratorEvents())
    bridge = CredentialPromptBridge()
    window.prompt_bridge = bridge

    window.close()

    assert bridge.cancelled
    assert orchestrator.shutdowns == 1


def test_cancel_releases_worker_waiting_on_prompt(qapp) -> None:
    bridge = CredentialPromptBridge()
    answers: list[object] = []

    # The GUI thread never processes the request, as during a blocking shutdown.
    worker = threading.Thread(target=lambda: answers.append(bridge.prompt("https://example.com:443", False)))
    worker.start()
    worker.join(0.3)
    assert worker.is_alive()

    bridge.cancel_pending()
    worker.join(2.0)

    assert not worker.is_alive()
    assert answers == [None]
    assert bridge.prompt("https://example.com:443", True) is None

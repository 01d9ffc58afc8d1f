from __future__ import annotations

import os
from pathlib import Path
import threading
import time

import pytest

import singlink_client.core.process_manager as proc_mod
from singlink_client.core.errors import (
    ConfigMissingError,
    EngineBinaryMissingError,
    LaunchFailedError,
)
from singlink_client.core.process_manager import EngineProcessManager, find_engine_binary

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses a shell script as the engine")


def _script(tmp_path: Path, body: str, name: str = "sing-box") -> Path:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def _config(tmp_path: Path) -> Path:
    path = tmp_path / "runtime-config.json"
    path.write_text("{}", encoding="utf-8")
    return path


def _wait_until(predicate, timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_find_engine_binary_env_override(tmp_path: Path, monkeypatch) -> None:
    engine = _script(tmp_path, "exit 0\n", name="custom-engine")
    monkeypatch.setenv(proc_mod.ENGINE_ENV_VAR, str(engine))
    assert find_engine_binary(tmp_path / "elsewhere") == engine

    monkeypatch.setenv(proc_mod.ENGINE_ENV_VAR, str(tmp_path / "missing"))
    with pytest.raises(EngineBinaryMissingError):
        find_engine_binary(tmp_path)


def test_find_engine_binary_install_dir_then_path(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(proc_mod.ENGINE_ENV_VAR, raising=False)
    install = tmp_path / "install"
    install.mkdir()
    local = _script(install, "exit 0\n", name=proc_mod.ENGINE_NAMES[-1])
    assert find_engine_binary(install) == local

    local.unlink()
    monkeypatch.setattr(proc_mod.shutil, "which", lambda _name: "/usr/local/bin/sing-box")
    assert find_engine_binary(install) == Path("/usr/local/bin/sing-box")

    monkeypatch.setattr(proc_mod.shutil, "which", lambda _name: None)
    with pytest.raises(EngineBinaryMissingError):
        find_engine_binary(install)


def test_start_requires_config(tmp_path: Path) -> None:
    mgr = EngineProcessManager(tmp_path / "sing-box", install_dir=tmp_path, output_log_path=tmp_path / "engine.log")
    with pytest.raises(ConfigMissingError):
        mgr.start(tmp_path / "missing.json")
    assert not mgr.is_running


def test_start_requires_engine(tmp_path: Path) -> None:
    mgr = EngineProcessManager(tmp_path / "sing-box", install_dir=tmp_path, output_log_path=tmp_path / "engine.log")
    with pytest.raises(EngineBinaryMissingError):
        mgr.start(_config(tmp_path))


@posix_only
def test_start_launch_failure(tmp_path: Path) -> None:
    engine = tmp_path / "sing-box"
    engine.write_text("not executable", encoding="utf-8")
    engine.chmod(0o644)
    mgr = EngineProcessManager(engine, install_dir=tmp_path, output_log_path=tmp_path / "engine.log")

    with pytest.raises(LaunchFailedError):
        mgr.start(_config(tmp_path))
    assert not mgr.is_running


@posix_only
def test_start_captures_output_and_stop_is_quiet(tmp_path: Path) -> None:
    engine = _script(tmp_path, 'echo "args: $*"\necho "pwd: $(pwd)"\necho oops 1>&2\nexec sleep 30\n')
    log_path = tmp_path / "logs" / "engine.log"
    exits: list[int] = []
    mgr = EngineProcessManager(engine, install_dir=tmp_path, output_log_path=log_path, on_exit=exits.append)
    config = _config(tmp_path)

    mgr.start(config)
    assert mgr.is_running
    assert mgr.pid is not None
    mgr.start(config)  # already running
    assert _wait_until(lambda: "oops" in log_path.read_text(encoding="utf-8"))

    mgr.stop()
    mgr.stop()

    assert not mgr.is_running
    assert exits == []
    text = log_path.read_text(encoding="utf-8")
    assert f"[STDOUT] args: run -c {config}" in text
    assert f"[STDOUT] pwd: {tmp_path.resolve()}" in text
    assert "[STDERR] oops" in text
    assert "Engine exited with code" in text


@posix_only
def test_unsolicited_exit_notifies_handler(tmp_path: Path) -> None:
    engine = _script(tmp_path, "echo bye\nexit 3\n")
    exited = threading.Event()
    codes: list[int] = []

    def on_exit(code: int) -> None:
        codes.append(code)
        exited.set()

    mgr = EngineProcessManager(engine, install_dir=tmp_path, output_log_path=tmp_path / "engine.log")
    mgr.set_exit_handler(on_exit)
    mgr.start(_config(tmp_path))

    assert exited.wait(5.0)
    assert codes == [3]
    assert _wait_until(lambda: not mgr.is_running)
    assert mgr.returncode == 3
    mgr.stop()


@posix_only
def test_stop_kills_engine_that_ignores_terminate(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(proc_mod, "STOP_TIMEOUT_S", 0.5)
    engine = _script(tmp_path, "trap '' TERM\necho ready\nwhile true; do sleep 0.1; done\n")
    log_path = tmp_path / "engine.log"
    mgr = EngineProcessManager(engine, install_dir=tmp_path, output_log_path=log_path)

    mgr.start(_config(tmp_path))
    assert _wait_until(lambda: "ready" in log_path.read_text(encoding="utf-8"))

    mgr.stop()

    assert not mgr.is_running
    assert "Force killing engine process tree." in log_path.read_text(encoding="utf-8")

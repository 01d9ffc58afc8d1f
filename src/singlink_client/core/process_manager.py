"""Start, watch and stop the sing-box engine process."""

from __future__ import annotations

from datetime import datetime
import logging
import os
from pathlib import Path
import shlex
import shutil
import signal
import subprocess
import sys
import threading
from typing import IO, Any, Callable, Final

import psutil

from singlink_client.core.errors import (
    ConfigMissingError,
    EngineBinaryMissingError,
    LaunchFailedError,
)
from singlink_client.core.storage import ENGINE_OUTPUT_LOG_FILE, get_logs_dir

logger = logging.getLogger(__name__)

ENGINE_ENV_VAR: Final[str] = "SINGLINK_ENGINE"
ENGINE_NAMES: Final[tuple[str, ...]] = ("sing-box.exe", "sing-box") if os.name == "nt" else ("sing-box",)
STOP_TIMEOUT_S: Final[float] = 2.0

ExitHandler = Callable[[int], None]


def get_install_dir() -> Path:
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parents[1]


def find_engine_binary(install_dir: Path | None = None) -> Path:
    override = os.environ.get(ENGINE_ENV_VAR, "").strip()
    if override:
        candidate = Path(override).expanduser()
        if candidate.is_file():
            return candidate
        raise EngineBinaryMissingError(
            f"{ENGINE_ENV_VAR} points to a missing file: {candidate}",
            user_message=f"sing-box not found at {candidate}.",
        )

    base = install_dir or get_install_dir()
    for name in ENGINE_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate

    found = shutil.which("sing-box")
    if found:
        return Path(found)

    raise EngineBinaryMissingError(
        f"sing-box binary not found in {base} or PATH",
        user_message="sing-box is not installed. Place it next to the app or on PATH.",
    )


def _format_cmd(cmd: list[str]) -> str:
    try:
        return shlex.join(cmd)
    except Exception:
        return str(cmd)


def _popen_platform_kwargs() -> dict[str, Any]:
    if os.name == "nt":
        return {
            "creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW,
        }
    return {}


def _request_shutdown(process: subprocess.Popen[str]) -> None:
    try:
        if os.name == "nt":
            process.send_signal(signal.CTRL_BREAK_EVENT)
        else:
            process.terminate()
    except OSError:
        logger.info("Engine pid=%s already gone before shutdown signal", process.pid)


def _kill_process_tree(pid: int) -> None:
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return
    for proc in (*children, parent):
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.exception("Access denied while killing pid=%s", proc.pid)


class _OutputSink:
    """Append-only engine output log, one timestamped line per entry."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.Lock()
        self._handle: IO[str] = path.open("a", encoding="utf-8")

    def write(self, tag: str, text: str) -> None:
        stamp = datetime.now().astimezone().isoformat(timespec="milliseconds")
        with self._lock:
            if self._handle.closed:
                return
            self._handle.write(f"{stamp} [{tag}] {text}\n")
            self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if not self._handle.closed:
                self._handle.close()


class EngineProcessManager:
    def __init__(
        self,
        engine_path: Path | None = None,
        *,
        install_dir: Path | None = None,
        output_log_path: Path | None = None,
        on_exit: ExitHandler | None = None,
    ) -> None:
        self._engine_path = engine_path
        self._install_dir = install_dir or get_install_dir()
        self._output_log_path = output_log_path or (get_logs_dir() / ENGINE_OUTPUT_LOG_FILE)
        self._on_exit = on_exit
        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._watcher: threading.Thread | None = None
        self._sink: _OutputSink | None = None
        self._stop_requested: subprocess.Popen[str] | None = None
        self._returncode: int | None = None

    @property
    def output_log_path(self) -> Path:
        return self._output_log_path

    @property
    def pid(self) -> int | None:
        process = self._process
        return process.pid if process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def is_running(self) -> bool:
        process = self._process
        return process is not None and process.poll() is None

    def set_exit_handler(self, handler: ExitHandler | None) -> None:
        self._on_exit = handler

    def start(self, config_path: Path) -> None:
        with self._lock:
            if self._process is not None and self._process.poll() is None:
                logger.info("Engine already running (pid=%s)", self._process.pid)
                return

            config_path = Path(config_path)
            if not config_path.is_file():
                raise ConfigMissingError(
                    f"Runtime config not found: {config_path}",
                    user_message="Runtime config is missing.",
                )

            engine = Path(self._engine_path) if self._engine_path else find_engine_binary(self._install_dir)
            if not engine.is_file():
                raise EngineBinaryMissingError(
                    f"sing-box binary not found: {engine}",
                    user_message=f"sing-box not found at {engine}.",
                )

            cmd = [str(engine), "run", "-c", str(config_path)]
            command_text = _format_cmd(cmd)
            sink = _OutputSink(self._output_log_path)
            sink.write("INFO", f"Starting engine: {command_text}")
            try:
                process = subprocess.Popen(
                    cmd,
                    cwd=str(self._install_dir),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    **_popen_platform_kwargs(),
                )
            except (OSError, ValueError, subprocess.SubprocessError) as exc:
                logger.exception("Engine launch failed: %s", command_text)
                sink.write("ERROR", f"Failed to start engine: {exc}")
                sink.close()
                raise LaunchFailedError(
                    f"Failed to start sing-box: {command_text}: {exc}",
                    user_message=f"Failed to start sing-box: {exc}",
                ) from exc

            readers = [
                self._spawn_reader(process.stdout, "STDOUT", sink),
                self._spawn_reader(process.stderr, "STDERR", sink),
            ]
            watcher = threading.Thread(
                target=self._watch,
                args=(process, readers, sink),
                name="engine-watcher",
                daemon=True,
            )
            self._process = process
            self._watcher = watcher
            self._sink = sink
            self._stop_requested = None
            self._returncode = None
            watcher.start()

        logger.info("Engine started pid=%s cmd=%s", process.pid, command_text)

    def stop(self) -> None:
        with self._lock:
            process = self._process
            watcher = self._watcher
            sink = self._sink
            if process is None:
                return
            self._stop_requested = process

        logger.info("Stopping engine pid=%s", process.pid)
        if sink is not None:
            sink.write("INFO", "Stopping engine.")

        if process.poll() is None:
            _request_shutdown(process)
            try:
                process.wait(timeout=STOP_TIMEOUT_S)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Engine pid=%s did not exit within %.0fs; killing process tree",
                    process.pid,
                    STOP_TIMEOUT_S,
                )
                if sink is not None:
                    sink.write("INFO", "Force killing engine process tree.")
                _kill_process_tree(process.pid)
                try:
                    process.wait(timeout=STOP_TIMEOUT_S)
                except subprocess.TimeoutExpired:
                    logger.error("Engine pid=%s still alive after kill", process.pid)

        # The exit handler may call stop() from the watcher thread itself.
        if watcher is not None and watcher is not threading.current_thread():
            watcher.join(timeout=STOP_TIMEOUT_S * 2)

        with self._lock:
            if self._process is process:
                self._process = None
                self._returncode = process.returncode
        logger.info("Engine stopped pid=%s rc=%s", process.pid, process.returncode)

    def _spawn_reader(self, stream: IO[str] | None, tag: str, sink: _OutputSink) -> threading.Thread:
        def _pump() -> None:
            if stream is None:
                return
            try:
                for line in stream:
                    sink.write(tag, line.rstrip("\r\n"))
            except (OSError, ValueError):
                logger.exception("Engine %s reader failed", tag)
            finally:
                stream.close()

        reader = threading.Thread(target=_pump, name=f"engine-{tag.lower()}", daemon=True)
        reader.start()
        return reader

    def _watch(
        self,
        process: subprocess.Popen[str],
        readers: list[threading.Thread],
        sink: _OutputSink,
    ) -> None:
        returncode = process.wait()
        for reader in readers:
            reader.join(timeout=STOP_TIMEOUT_S)
        sink.write("INFO", f"Engine exited with code {returncode}")
        sink.close()

        with self._lock:
            unsolicited = self._stop_requested is not process
            if self._process is process:
                self._process = None
                self._returncode = returncode

        if not unsolicited:
            return

        logger.warning("Engine pid=%s exited unexpectedly with code %s", process.pid, returncode)
        handler = self._on_exit
        if handler is None:
            return
        try:
            handler(returncode)
        except Exception:
            logger.exception("Engine exit handler failed")

"""Test configuration helpers: stable temp directory on WSL and an in-memory executor."""

from __future__ import annotations

import os
import platform
import sys
import tempfile
from typing import Dict, List, Optional, Sequence

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from reforger_ctrl.common.errors import ExecutorConnectionError  # noqa: E402
from reforger_ctrl.core.executors.base import Executor, OutputStream, command_to_string  # noqa: E402
from reforger_ctrl.core.models import CommandResult, ProcessInfo  # noqa: E402


def _is_wsl() -> bool:
    release = platform.release().lower()
    version = platform.version().lower()
    return "microsoft" in release or "microsoft" in version


if _is_wsl() and os.path.isdir("/tmp"):
    os.environ["TMPDIR"] = "/tmp"
    os.environ["TEMP"] = "/tmp"
    os.environ["TMP"] = "/tmp"
    tempfile.tempdir = "/tmp"


class FakeStream(OutputStream):
    def __init__(self, lines: Sequence[str], exit_code: int = 0, pid: int = 4242,
                 fail_after: Optional[int] = None) -> None:
        self._lines = list(lines)
        self._index = 0
        self._exit_code = exit_code
        self._fail_after = fail_after
        self.pid = pid
        self.closed = False

    def __next__(self) -> str:
        if self._fail_after is not None and self._index >= self._fail_after:
            raise ExecutorConnectionError("connection reset")
        if self._index >= len(self._lines):
            raise StopIteration
        line = self._lines[self._index]
        self._index += 1
        return line

    def wait(self, timeout: Optional[float] = None) -> int:
        return self._exit_code

    def close(self) -> None:
        self.closed = True


class FakeExecutor(Executor):
    """Executor double keeping files and processes in memory."""

    def __init__(self) -> None:
        self.connected = False
        self.files: Dict[str, str] = {}
        self.dirs: List[str] = []
        self.commands: List[str] = []
        self.streams: List[FakeStream] = []
        self.stream_commands: List[List[str]] = []
        self.launched: List[List[str]] = []
        self.running: set = set()
        self.kills: List[tuple] = []
        self.tree_kills: List[int] = []
        self.ignore_sigterm = False
        self.next_pid = 1000
        self.run_results: Dict[str, CommandResult] = {}

    def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.connected = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    def run_command(self, command, cwd=None, timeout=None, check=False) -> CommandResult:
        text = command_to_string(command)
        self.commands.append(text)
        result = CommandResult(0, "", "")
        for prefix, canned in self.run_results.items():
            if text.startswith(prefix):
                result = canned
        if check:
            self.check_result(command, result)
        return result

    def stream_output(self, command, cwd=None) -> OutputStream:
        self.stream_commands.append(list(command))
        return self.streams.pop(0)

    def upload_file(self, local_path: str, remote_path: str) -> None:
        with open(local_path, encoding="utf-8") as f:
            self.files[remote_path] = f.read()

    def download_file(self, remote_path: str, local_path: str) -> None:
        with open(local_path, "w", encoding="utf-8") as f:
            f.write(self.files[remote_path])

    def read_text(self, path: str) -> str:
        return self.files[path]

    def write_text(self, path: str, content: str) -> None:
        self.files[path] = content

    def file_exists(self, path: str) -> bool:
        return path in self.files or path in self.dirs

    def make_dirs(self, path: str) -> None:
        self.dirs.append(path)

    def remove_file(self, path: str) -> bool:
        return self.files.pop(path, None) is not None

    def launch_process(self, command, cwd=None, log_path=None) -> int:
        self.next_pid += 1
        self.launched.append(list(command))
        self.running.add(self.next_pid)
        return self.next_pid

    def is_process_running(self, pid) -> bool:
        return pid in self.running

    def kill_process(self, pid: int, force: bool = False, tree: bool = False) -> bool:
        self.kills.append((pid, force))
        if tree:
            self.tree_kills.append(pid)
        if pid not in self.running:
            return False
        if force or not self.ignore_sigterm:
            self.running.discard(pid)
        return True

    def process_info(self, pid: int) -> Optional[ProcessInfo]:
        if pid not in self.running:
            return None
        return ProcessInfo(pid=pid, cpu=12.5, memory=3.0, uptime=60.0)


class FakeClock:
    """Monotonic clock advanced by the code under test through ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0.01)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()

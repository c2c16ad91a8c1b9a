"""Executor for a server running on the controlling host."""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Dict, Optional, Sequence

import psutil

from reforger_ctrl.common.errors import CommandError
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.executors.base import Command, Executor, OutputStream, command_to_string
from reforger_ctrl.core.models import CommandResult, ProcessInfo

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


class LocalOutputStream(OutputStream):
    """Line stream over a local child process (stderr merged into stdout)."""

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process
        self.pid = process.pid

    def __next__(self) -> str:
        if self._process.stdout is None:
            raise StopIteration
        line = self._process.stdout.readline()
        if not line:
            raise StopIteration
        return line.rstrip("\r\n")

    def wait(self, timeout: Optional[float] = None) -> int:
        return self._process.wait(timeout=timeout)

    def close(self) -> None:
        if self._process.stdout is not None:
            self._process.stdout.close()
        if self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()


class LocalExecutor(Executor):
    """Runs commands as child processes of this host."""

    def __init__(self) -> None:
        self._connected = False
        self._children: Dict[int, subprocess.Popen] = {}
        self._monitors: Dict[int, psutil.Process] = {}
        self._log = get_logger(__name__)

    def connect(self) -> None:
        self._connected = True
        self._log.debug("Local executor ready")

    def close(self) -> None:
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def run_command(self, command: Command, cwd: Optional[str] = None,
                    timeout: Optional[float] = None, check: bool = False) -> CommandResult:
        shell = isinstance(command, str)
        try:
            completed = subprocess.run(
                command if shell else list(command),
                cwd=cwd,
                shell=shell,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(command_to_string(command), TIMEOUT_EXIT_CODE,
                               f"Timed out after {timeout}s") from exc
        except OSError as exc:
            raise CommandError(command_to_string(command), NOT_FOUND_EXIT_CODE, str(exc)) from exc

        result = CommandResult(completed.returncode, completed.stdout or "", completed.stderr or "")
        if check:
            self.check_result(command, result)
        return result

    def stream_output(self, command: Command, cwd: Optional[str] = None) -> OutputStream:
        shell = isinstance(command, str)
        try:
            process = subprocess.Popen(
                command if shell else list(command),
                cwd=cwd,
                shell=shell,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise CommandError(command_to_string(command), NOT_FOUND_EXIT_CODE, str(exc)) from exc
        self._log.debug("Streaming '%s' (PID %s)", command_to_string(command), process.pid)
        return LocalOutputStream(process)

    def upload_file(self, local_path: str, remote_path: str) -> None:
        Path(remote_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, remote_path)

    def download_file(self, remote_path: str, local_path: str) -> None:
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(remote_path, local_path)

    def read_text(self, path: str) -> str:
        return Path(path).read_text(encoding="utf-8")

    def write_text(self, path: str, content: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def file_exists(self, path: str) -> bool:
        return Path(path).exists()

    def make_dirs(self, path: str) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def remove_file(self, path: str) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        return True

    def launch_process(self, command: Sequence[str], cwd: Optional[str] = None,
                       log_path: Optional[str] = None) -> int:
        log_handle = None
        if log_path:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            log_handle = open(log_path, "ab")
        kwargs = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
        else:
            kwargs["start_new_session"] = True
        try:
            process = subprocess.Popen(
                list(command),
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle or subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                **kwargs,
            )
        except OSError as exc:
            raise CommandError(command_to_string(command), NOT_FOUND_EXIT_CODE, str(exc)) from exc
        finally:
            if log_handle is not None:
                log_handle.close()
        self._children[process.pid] = process
        self._log.info("Launched '%s' with PID %s", command_to_string(command), process.pid)
        return process.pid

    def is_process_running(self, pid: Optional[int]) -> bool:
        if pid is None:
            return False
        child = self._children.get(pid)
        if child is not None and child.poll() is not None:
            self._children.pop(pid, None)
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @staticmethod
    def _signal(process: psutil.Process, force: bool) -> None:
        if force:
            process.kill()
        else:
            process.terminate()

    def kill_process(self, pid: int, force: bool = False, tree: bool = False) -> bool:
        try:
            process = psutil.Process(pid)
            descendants = process.children(recursive=True) if tree else []
            self._signal(process, force)
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as exc:
            self._log.warning("Not allowed to signal PID %s: %s", pid, exc)
            return False
        for descendant in descendants:
            try:
                self._signal(descendant, force)
            except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                self._log.debug("Could not signal PID %s (child of %s): %s", descendant.pid, pid, exc)
        child = self._children.get(pid)
        if child is not None:
            try:
                child.wait(timeout=0.5)
            except subprocess.TimeoutExpired:
                pass
        return True

    def _monitored(self, pid: int) -> psutil.Process:
        # cpu_percent measures since the previous call on the same object.
        process = self._monitors.get(pid)
        if process is None or not process.is_running():
            process = psutil.Process(pid)
            process.cpu_percent(interval=None)
            self._monitors[pid] = process
        return process

    def process_info(self, pid: int) -> Optional[ProcessInfo]:
        try:
            process = self._monitored(pid)
            with process.oneshot():
                return ProcessInfo(
                    pid=pid,
                    cpu=process.cpu_percent(interval=None),
                    memory=process.memory_percent(),
                    uptime=max(0.0, time.time() - process.create_time()),
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            self._monitors.pop(pid, None)
            return None

"""Executor interface shared by the local and SSH implementations."""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from typing import Iterator, Optional, Sequence, Union

from reforger_ctrl.common.errors import CommandError
from reforger_ctrl.core.models import CommandResult, ProcessInfo

Command = Union[str, Sequence[str]]


def command_to_string(command: Command) -> str:
    """Render a command for logging or for a remote shell."""
    if isinstance(command, str):
        return command
    return shlex.join(list(command))


class OutputStream(ABC):
    """Lazily read output lines of one running command.

    Each ``Executor.stream_output`` call starts a fresh process, so a stream is
    consumed once; call the executor again to restart.
    """

    pid: Optional[int] = None

    def __iter__(self) -> Iterator[str]:
        return self

    @abstractmethod
    def __next__(self) -> str:
        """Return the next output line without its trailing newline."""

    @abstractmethod
    def wait(self, timeout: Optional[float] = None) -> int:
        """Wait for the command to finish and return its exit code."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying process handles."""

    def __enter__(self) -> "OutputStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class Executor(ABC):
    """Run commands and move files on a managed host."""

    @abstractmethod
    def connect(self) -> None:
        """Open the transport; a no-op for the local host."""

    @abstractmethod
    def close(self) -> None:
        """Release the transport."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def run_command(self, command: Command, cwd: Optional[str] = None,
                    timeout: Optional[float] = None, check: bool = False) -> CommandResult:
        """Run a command to completion and buffer its output.

        Raises:
            ExecutorConnectionError: If the transport fails.
            CommandError: If ``check`` is set and the exit code is non-zero.
        """

    @abstractmethod
    def stream_output(self, command: Command, cwd: Optional[str] = None) -> OutputStream:
        """Start a command and return a lazy stream of its merged output lines."""

    @abstractmethod
    def upload_file(self, local_path: str, remote_path: str) -> None:
        ...

    @abstractmethod
    def download_file(self, remote_path: str, local_path: str) -> None:
        ...

    @abstractmethod
    def read_text(self, path: str) -> str:
        ...

    @abstractmethod
    def write_text(self, path: str, content: str) -> None:
        """Write a text file, creating parent directories."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def make_dirs(self, path: str) -> None:
        ...

    @abstractmethod
    def remove_file(self, path: str) -> bool:
        """Delete a file; return False when it did not exist."""

    @abstractmethod
    def launch_process(self, command: Sequence[str], cwd: Optional[str] = None,
                       log_path: Optional[str] = None) -> int:
        """Start a detached long-running process and return its PID."""

    @abstractmethod
    def is_process_running(self, pid: Optional[int]) -> bool:
        """Return True when the given PID belongs to a live process."""

    @abstractmethod
    def kill_process(self, pid: int, force: bool = False, tree: bool = False) -> bool:
        """Signal a process (SIGTERM, or SIGKILL when ``force``).

        With ``tree`` every descendant is signalled too; wrapper scripts such as
        ``steamcmd.sh`` leave the real worker as a child.
        """

    @abstractmethod
    def process_info(self, pid: int) -> Optional[ProcessInfo]:
        ...

    def check_result(self, command: Command, result: CommandResult) -> CommandResult:
        if not result.ok:
            raise CommandError(command_to_string(command), result.exit_code, result.stdout + result.stderr)
        return result

    def __enter__(self) -> "Executor":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

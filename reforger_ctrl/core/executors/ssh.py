"""Executor for a server on a remote host, driven over SSH.

``asyncssh`` provides the session, exec channels and SFTP. The executor keeps
its own event loop on a daemon thread so the rest of the control plane can
stay synchronous; every bridged call carries an explicit timeout.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import posixpath
import shlex
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

import asyncssh

from reforger_ctrl.common.errors import CommandError, ExecutorConnectionError
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.executors.base import Command, Executor, OutputStream, command_to_string
from reforger_ctrl.core.models import CommandResult, Platform, ProcessInfo, ServerConnection

TIMEOUT_EXIT_CODE = 124

TRANSPORT_ERRORS = (
    OSError,
    asyncssh.Error,
    asyncio.TimeoutError,
    concurrent.futures.TimeoutError,
)


class _EventLoopThread:
    """Private asyncio loop running on a daemon thread."""

    def __init__(self, name: str) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def run(self, coro: Awaitable[Any], timeout: Optional[float]) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)  # type: ignore[arg-type]
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def stop(self) -> None:
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=5)


class SSHOutputStream(OutputStream):
    """Line stream over a remote exec channel."""

    def __init__(self, loop: _EventLoopThread, process: "asyncssh.SSHClientProcess",
                 read_timeout: float, pid: Optional[int] = None) -> None:
        self._loop = loop
        self._process = process
        self._read_timeout = read_timeout
        self.pid = pid

    def __next__(self) -> str:
        try:
            line = self._loop.run(self._process.stdout.readline(), self._read_timeout)
        except TRANSPORT_ERRORS as exc:
            raise ExecutorConnectionError(f"Lost remote output stream: {exc}") from exc
        if not line:
            raise StopIteration
        return str(line).rstrip("\r\n")

    def wait(self, timeout: Optional[float] = None) -> int:
        try:
            completed = self._loop.run(self._process.wait(), timeout or self._read_timeout)
        except TRANSPORT_ERRORS as exc:
            raise ExecutorConnectionError(f"Lost remote process: {exc}") from exc
        if completed.exit_status is None:
            return -1
        return int(completed.exit_status)

    def close(self) -> None:
        self._process.close()


class SSHExecutor(Executor):
    """Runs commands on a remote host over a single pooled SSH session."""

    def __init__(self, connection: ServerConnection, connect_timeout: float = 15.0,
                 command_timeout: float = 120.0, retry_count: int = 3,
                 retry_delay: float = 1.0, max_retry_delay: float = 30.0,
                 known_hosts: Optional[str] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        if not connection.host or not connection.username:
            raise ValueError("Remote connections require host and username")
        self.connection = connection
        self.connect_timeout = max(1.0, connect_timeout)
        self.command_timeout = max(1.0, command_timeout)
        self.retry_count = max(0, retry_count)
        self.retry_delay = max(0.1, retry_delay)
        self.max_retry_delay = max(self.retry_delay, max_retry_delay)
        self.known_hosts = known_hosts
        self._sleep = sleep
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._loop: Optional[_EventLoopThread] = None
        self._lock = threading.RLock()
        self._log = get_logger(__name__)

    # -- transport -----------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def is_windows(self) -> bool:
        return self.connection.platform == Platform.WINDOWS

    def _event_loop(self) -> _EventLoopThread:
        if self._loop is None:
            self._loop = _EventLoopThread(f"ssh-{self.connection.id}")
        return self._loop

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.retry_delay * (2 ** attempt), self.max_retry_delay)

    def connect_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``asyncssh.connect``.

        Host keys are checked against ``~/.ssh/known_hosts`` unless a
        known-hosts file is configured; the value ``none`` turns checking off.
        """
        options: Dict[str, Any] = {
            "host": self.connection.host,
            "port": self.connection.port,
            "username": self.connection.username,
            "connect_timeout": self.connect_timeout,
        }
        if self.known_hosts:
            options["known_hosts"] = None if self.known_hosts.lower() == "none" else self.known_hosts
        if self.connection.private_key_path:
            options["client_keys"] = [self.connection.private_key_path]
        if self.connection.password:
            options["password"] = self.connection.password
        return options

    def _open_once(self) -> None:
        options = self.connect_options()
        self._conn = self._event_loop().run(asyncssh.connect(**options), self.connect_timeout + 5)
        self._log.info("SSH connected to %s@%s:%s", self.connection.username,
                       self.connection.host, self.connection.port)

    def connect(self) -> None:
        """Open the session, retrying with capped exponential backoff."""
        with self._lock:
            if self._conn is not None:
                return
            last_error: Optional[BaseException] = None
            for attempt in range(self.retry_count + 1):
                try:
                    self._open_once()
                    return
                except TRANSPORT_ERRORS as exc:
                    last_error = exc
                    self._invalidate()
                    if attempt < self.retry_count:
                        delay = self._backoff_delay(attempt)
                        self._log.warning("SSH connect to %s failed (%s); retrying in %.1fs",
                                          self.connection.host, exc, delay)
                        self._sleep(delay)
            raise ExecutorConnectionError(
                f"Could not connect to {self.connection.host}:{self.connection.port}: {last_error}"
            ) from last_error

    def _invalidate(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.close()
            except (OSError, asyncssh.Error) as exc:
                self._log.debug("Ignoring error while closing SSH session: %s", exc)

    def close(self) -> None:
        with self._lock:
            self._invalidate()
            if self._loop is not None:
                self._loop.stop()
                self._loop = None

    def _session(self) -> Tuple["asyncssh.SSHClientConnection", _EventLoopThread]:
        # Polling and lifecycle threads share the executor.
        with self._lock:
            self.connect()
            conn = self._conn
            if conn is None:
                raise ExecutorConnectionError(f"SSH session to {self.connection.host} is closed")
            return conn, self._event_loop()

    def _call(self, operation: Callable[["asyncssh.SSHClientConnection"], Awaitable[Any]],
              timeout: Optional[float] = None, description: str = "ssh operation") -> Any:
        """Run an operation on the session; a transport failure triggers one reconnect.

        Raises:
            FileNotFoundError: If an SFTP operation names a missing path
            CommandError: If the SFTP server rejects the operation
            ExecutorConnectionError: If the session cannot be (re)established
        """
        timeout = timeout or self.command_timeout
        last_error: Optional[BaseException] = None
        for _attempt in range(2):
            conn, loop = self._session()
            try:
                return loop.run(operation(conn), timeout)
            except asyncssh.SFTPNoSuchFile as exc:
                raise FileNotFoundError(f"{description}: {exc.reason}") from exc
            except asyncssh.SFTPError as exc:
                raise CommandError(description, exc.code, exc.reason) from exc
            except FileNotFoundError:
                raise
            except TRANSPORT_ERRORS as exc:
                last_error = exc
                self._log.warning("SSH operation on %s failed: %s", self.connection.host, exc)
                with self._lock:
                    if self._conn is conn:
                        self._invalidate()
        raise ExecutorConnectionError(
            f"SSH session to {self.connection.host} lost: {last_error}"
        ) from last_error

    # -- commands ------------------------------------------------------

    def _remote_command(self, command: Command, cwd: Optional[str]) -> str:
        rendered = command_to_string(command)
        if cwd:
            if self.is_windows:
                return f'cd /d "{cwd}" && {rendered}'
            return f"cd {shlex.quote(cwd)} && {rendered}"
        return rendered

    def stream_script(self, command: Command, cwd: Optional[str] = None) -> str:
        """Remote command line for ``stream_output``.

        On POSIX hosts the first output line is the shell PID, which ``exec``
        hands over to the command itself.
        """
        if self.is_windows:
            return self._remote_command(command, cwd)
        script = "echo $$; "
        if cwd:
            script += f"cd {shlex.quote(cwd)} && "
        script += f"exec {command_to_string(command)}"
        return f"sh -c {shlex.quote(script)}"

    def launch_script(self, command: Sequence[str], cwd: Optional[str] = None,
                      log_path: Optional[str] = None) -> str:
        """Remote command line for ``launch_process``; prints the server PID."""
        if self.is_windows:
            executable, *arguments = list(command)
            args = ",".join(f"'{arg}'" for arg in arguments) or "''"
            return (
                "powershell -NoProfile -Command "
                f"\"(Start-Process -FilePath '{executable}' -ArgumentList {args} "
                f"-WorkingDirectory '{cwd or '.'}' -PassThru).Id\""
            )
        target = shlex.quote(log_path) if log_path else "/dev/null"
        # Only nohup is backgrounded so $! is the server and no subshell holds the channel open.
        background = f"{{ nohup {shlex.join(list(command))} > {target} 2>&1 < /dev/null & echo $!; }}"
        if cwd:
            return f"cd {shlex.quote(cwd)} && {background}"
        return background

    def kill_script(self, pid: int, force: bool = False, tree: bool = False) -> str:
        if self.is_windows:
            flags = ["/T"] if tree else []
            if force:
                flags.append("/F")
            return " ".join(["taskkill", *flags, "/PID", str(pid)])
        signal = "KILL" if force else "TERM"
        if not tree:
            return f"kill -{signal} {pid}"
        return (
            f"all={pid}; p={pid}; "
            "while p=$(pgrep -d, -P \"$p\"); do all=\"$all,$p\"; done; "
            f"kill -{signal} $(echo \"$all\" | tr , ' ')"
        )

    def run_command(self, command: Command, cwd: Optional[str] = None,
                    timeout: Optional[float] = None, check: bool = False) -> CommandResult:
        remote = self._remote_command(command, cwd)
        limit = timeout or self.command_timeout

        async def _run(conn):
            try:
                completed = await asyncio.wait_for(conn.run(remote, check=False), limit)
            except asyncio.TimeoutError:
                return CommandResult(TIMEOUT_EXIT_CODE, "", f"Timed out after {limit}s")
            exit_code = completed.exit_status if completed.exit_status is not None else -1
            return CommandResult(exit_code, str(completed.stdout or ""), str(completed.stderr or ""))

        result = self._call(_run, limit + 5, description=remote)
        if check:
            self.check_result(command, result)
        return result

    def stream_output(self, command: Command, cwd: Optional[str] = None) -> OutputStream:
        remote = self.stream_script(command, cwd)

        async def _start(conn):
            return await conn.create_process(remote, stderr=asyncssh.STDOUT)

        process = self._call(_start, description=command_to_string(command))
        stream = SSHOutputStream(self._event_loop(), process, self.command_timeout)
        if not self.is_windows:
            first = next(stream, "")
            try:
                stream.pid = int(first.strip())
            except ValueError:
                self._log.warning("Could not read remote PID from '%s'", first)
        return stream

    # -- files ---------------------------------------------------------

    def upload_file(self, local_path: str, remote_path: str) -> None:
        async def _put(conn):
            async with conn.start_sftp_client() as sftp:
                await sftp.put(local_path, remote_path)
        self._call(_put, description=f"upload {remote_path}")

    def download_file(self, remote_path: str, local_path: str) -> None:
        async def _get(conn):
            async with conn.start_sftp_client() as sftp:
                await sftp.get(remote_path, local_path)
        self._call(_get, description=f"download {remote_path}")

    def read_text(self, path: str) -> str:
        async def _read(conn):
            async with conn.start_sftp_client() as sftp:
                async with sftp.open(path, "r", encoding="utf-8") as handle:
                    return await handle.read()
        return self._call(_read, description=f"read {path}")

    def write_text(self, path: str, content: str) -> None:
        parent = posixpath.dirname(path.replace("\\", "/"))

        async def _write(conn):
            async with conn.start_sftp_client() as sftp:
                if parent:
                    await sftp.makedirs(parent, exist_ok=True)
                async with sftp.open(path, "w", encoding="utf-8") as handle:
                    await handle.write(content)
        self._call(_write, description=f"write {path}")

    def file_exists(self, path: str) -> bool:
        async def _exists(conn):
            async with conn.start_sftp_client() as sftp:
                return await sftp.exists(path)
        return bool(self._call(_exists, description=f"stat {path}"))

    def make_dirs(self, path: str) -> None:
        async def _makedirs(conn):
            async with conn.start_sftp_client() as sftp:
                await sftp.makedirs(path, exist_ok=True)
        self._call(_makedirs, description=f"mkdir {path}")

    def remove_file(self, path: str) -> bool:
        async def _remove(conn):
            async with conn.start_sftp_client() as sftp:
                if not await sftp.exists(path):
                    return False
                await sftp.remove(path)
                return True
        return bool(self._call(_remove, description=f"remove {path}"))

    # -- processes -----------------------------------------------------

    def launch_process(self, command: Sequence[str], cwd: Optional[str] = None,
                       log_path: Optional[str] = None) -> int:
        result = self.run_command(self.launch_script(command, cwd, log_path), check=True)
        try:
            pid = int(result.stdout.strip().splitlines()[-1])
        except (IndexError, ValueError) as exc:
            raise CommandError(command_to_string(command), result.exit_code,
                               f"Could not read PID from output: {result.stdout!r}") from exc
        self._log.info("Launched '%s' on %s with PID %s", command_to_string(command),
                       self.connection.host, pid)
        return pid

    def is_process_running(self, pid: Optional[int]) -> bool:
        if pid is None:
            return False
        if self.is_windows:
            result = self.run_command(f'tasklist /FI "PID eq {pid}" /NH')
            return result.ok and str(pid) in result.stdout
        return self.run_command(["kill", "-0", str(pid)]).ok

    def kill_process(self, pid: int, force: bool = False, tree: bool = False) -> bool:
        return self.run_command(self.kill_script(pid, force, tree)).ok

    def process_info(self, pid: int) -> Optional[ProcessInfo]:
        if self.is_windows:
            return ProcessInfo(pid=pid) if self.is_process_running(pid) else None
        result = self.run_command(["ps", "-o", "%cpu=,%mem=,etimes=", "-p", str(pid)])
        if not result.ok:
            return None
        parts = result.stdout.split()
        if len(parts) < 3:
            return None
        try:
            return ProcessInfo(pid=pid, cpu=float(parts[0]), memory=float(parts[1]), uptime=float(parts[2]))
        except ValueError:
            return None

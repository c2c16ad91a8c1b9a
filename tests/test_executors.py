from __future__ import annotations

import os
import shutil
import subprocess
import sys
import time

import psutil
import pytest

from reforger_ctrl.common.config import ControlSettings
from reforger_ctrl.common.errors import CommandError, ExecutorConnectionError
from reforger_ctrl.core.executors import LocalExecutor, SSHExecutor, command_to_string, create_executor
from reforger_ctrl.core.models import ConnectionType, Platform, ServerConnection


def test_create_executor_matches_connection_type():
    local = ServerConnection(name="local", server_path="/srv")
    remote = ServerConnection(name="remote", server_path="/srv", type=ConnectionType.REMOTE,
                              host="10.0.0.5", username="steam")
    assert isinstance(create_executor(local, ControlSettings()), LocalExecutor)
    assert isinstance(create_executor(remote, ControlSettings()), SSHExecutor)


def test_command_to_string_quotes_arguments():
    assert command_to_string(["echo", "two words"]) == "echo 'two words'"
    assert command_to_string("ls -la") == "ls -la"


def test_local_run_command_captures_output_and_exit_code():
    executor = LocalExecutor()
    result = executor.run_command([sys.executable, "-c", "print('hello')"])
    assert result.ok
    assert result.stdout.strip() == "hello"

    failed = executor.run_command([sys.executable, "-c", "import sys; sys.exit(3)"])
    assert failed.exit_code == 3
    with pytest.raises(CommandError) as excinfo:
        executor.run_command([sys.executable, "-c", "import sys; sys.exit(3)"], check=True)
    assert excinfo.value.exit_code == 3


def test_local_stream_output_yields_lines_in_order():
    executor = LocalExecutor()
    script = "import sys\nfor i in range(3):\n    print('line', i, flush=True)\nsys.exit(2)"
    with executor.stream_output([sys.executable, "-c", script]) as stream:
        lines = list(stream)
        assert stream.wait(timeout=10) == 2
    assert lines == ["line 0", "line 1", "line 2"]


def test_local_file_operations(tmp_path):
    executor = LocalExecutor()
    target = str(tmp_path / "nested" / "server.json")
    executor.write_text(target, "{}")
    assert executor.file_exists(target)
    assert executor.read_text(target) == "{}"

    copy = str(tmp_path / "copy" / "server.json")
    executor.download_file(target, copy)
    assert executor.read_text(copy) == "{}"

    assert executor.remove_file(target) is True
    assert executor.remove_file(target) is False
    assert not executor.file_exists(target)


def test_local_launch_and_kill_process(tmp_path):
    executor = LocalExecutor()
    log_path = str(tmp_path / "console.log")
    pid = executor.launch_process([sys.executable, "-c", "import time; time.sleep(30)"], log_path=log_path)
    try:
        assert executor.is_process_running(pid)
        info = executor.process_info(pid)
        assert info is not None and info.pid == pid
        assert executor.kill_process(pid, force=True)
        deadline = time.monotonic() + 5
        while executor.is_process_running(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not executor.is_process_running(pid)
    finally:
        if executor.is_process_running(pid):
            executor.kill_process(pid, force=True)
    assert executor.is_process_running(None) is False


def _remote_connection() -> ServerConnection:
    return ServerConnection(name="remote", server_path="/srv/reforger", type=ConnectionType.REMOTE,
                            host="10.0.0.5", username="steam")


def test_ssh_connect_retries_with_capped_backoff(monkeypatch):
    delays = []
    attempts = []
    executor = SSHExecutor(_remote_connection(), retry_count=3, retry_delay=1.0, max_retry_delay=3.0,
                           sleep=delays.append)

    def refuse():
        attempts.append(1)
        raise OSError("connection refused")

    monkeypatch.setattr(executor, "_open_once", refuse)
    with pytest.raises(ExecutorConnectionError):
        executor.connect()
    assert len(attempts) == 4
    assert delays == [1.0, 2.0, 3.0]
    assert not executor.is_connected


def test_ssh_launch_process_reads_background_pid(monkeypatch):
    from reforger_ctrl.core.models import CommandResult

    executor = SSHExecutor(_remote_connection())
    seen = []

    def fake_run(command, cwd=None, timeout=None, check=False):
        seen.append((command, cwd))
        return CommandResult(0, "12345\n", "")

    monkeypatch.setattr(executor, "run_command", fake_run)
    pid = executor.launch_process(["/srv/reforger/ArmaReforgerServer", "-config", "/srv/reforger/server.json"],
                                  cwd="/srv/reforger", log_path="/srv/reforger/console.log")
    assert pid == 12345
    command, cwd = seen[0]
    assert command.startswith("cd /srv/reforger && { nohup /srv/reforger/ArmaReforgerServer -config /srv/reforger/server.json")
    assert "> /srv/reforger/console.log 2>&1 < /dev/null & echo $!; }" in command
    assert cwd is None


def test_ssh_launch_process_without_pid_raises(monkeypatch):
    from reforger_ctrl.core.models import CommandResult

    executor = SSHExecutor(_remote_connection())
    monkeypatch.setattr(executor, "run_command", lambda *args, **kwargs: CommandResult(0, "", ""))
    with pytest.raises(CommandError):
        executor.launch_process(["/srv/reforger/ArmaReforgerServer"])


def test_ssh_executor_requires_host_and_user():
    with pytest.raises(ValueError):
        SSHExecutor(ServerConnection(name="bad", server_path="/srv", type=ConnectionType.REMOTE))


posix_shell = pytest.mark.skipif(os.name == "nt" or shutil.which("sh") is None, reason="needs a POSIX shell")


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            return False
        time.sleep(0.05)
    return True


def _children(pid: int):
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []


def test_ssh_stream_script_reports_pid_before_output():
    executor = SSHExecutor(_remote_connection())
    script = executor.stream_script(["/opt/steamcmd/steamcmd.sh", "+quit"], cwd="/srv/my server")
    assert script == "sh -c 'echo $$; cd '\"'\"'/srv/my server'\"'\"' && exec /opt/steamcmd/steamcmd.sh +quit'"


@posix_shell
def test_ssh_stream_script_runs_in_a_shell(tmp_path):
    executor = SSHExecutor(_remote_connection())
    script = executor.stream_script(["pwd"], cwd=str(tmp_path))
    completed = subprocess.run(script, shell=True, capture_output=True, text=True, timeout=10)
    lines = completed.stdout.splitlines()
    assert lines[0].isdigit()
    assert os.path.samefile(lines[1], tmp_path)


def test_ssh_launch_script_quotes_paths():
    executor = SSHExecutor(_remote_connection())
    script = executor.launch_script(["/srv/my server/ArmaReforgerServer", "-maxFPS", "60"],
                                    cwd="/srv/my server", log_path="/srv/my server/console.log")
    assert script == (
        "cd '/srv/my server' && { nohup '/srv/my server/ArmaReforgerServer' -maxFPS 60 "
        "> '/srv/my server/console.log' 2>&1 < /dev/null & echo $!; }"
    )
    assert executor.launch_script(["sleep", "1"]).endswith("> /dev/null 2>&1 < /dev/null & echo $!; }")


@posix_shell
def test_ssh_launch_script_returns_at_once_with_the_server_pid(tmp_path):
    executor = SSHExecutor(_remote_connection())
    log_path = tmp_path / "console.log"
    script = executor.launch_script(["sleep", "30"], cwd=str(tmp_path), log_path=str(log_path))
    completed = subprocess.run(script, shell=True, capture_output=True, text=True, timeout=10)
    pid = int(completed.stdout.strip().splitlines()[-1])
    try:
        assert _wait_until(lambda: "sleep" in " ".join(psutil.Process(pid).cmdline()))
        assert log_path.exists()
    finally:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass


def test_ssh_kill_script_forms():
    executor = SSHExecutor(_remote_connection())
    assert executor.kill_script(42) == "kill -TERM 42"
    assert executor.kill_script(42, force=True) == "kill -KILL 42"
    tree = executor.kill_script(42, tree=True)
    assert tree.startswith("all=42; p=42; while p=$(pgrep -d, -P \"$p\")")
    assert tree.endswith("kill -TERM $(echo \"$all\" | tr , ' ')")

    windows = SSHExecutor(ServerConnection(name="win", server_path="C:\\reforger", type=ConnectionType.REMOTE,
                                           host="10.0.0.6", username="admin", platform=Platform.WINDOWS))
    assert windows.kill_script(42, force=True, tree=True) == "taskkill /T /F /PID 42"
    assert windows.kill_script(42) == "taskkill /PID 42"


@pytest.mark.skipif(os.name == "nt" or shutil.which("pgrep") is None, reason="needs pgrep")
def test_ssh_tree_kill_script_reaches_grandchildren():
    parent = subprocess.Popen(["sh", "-c", "sh -c 'sleep 30 & wait' & wait"])
    try:
        assert _wait_until(lambda: len(_children(parent.pid)) >= 2)
        descendants = [child.pid for child in _children(parent.pid)]
        script = SSHExecutor(_remote_connection()).kill_script(parent.pid, force=True, tree=True)
        subprocess.run(script, shell=True, timeout=10)
        parent.wait(timeout=5)
        assert all(_wait_until(lambda pid=pid: _gone(pid)) for pid in descendants)
    finally:
        if parent.poll() is None:
            parent.kill()
            parent.wait(timeout=5)


@posix_shell
def test_local_tree_kill_stops_children():
    executor = LocalExecutor()
    pid = executor.launch_process(["sh", "-c", "sleep 30 & wait"])
    try:
        assert _wait_until(lambda: len(_children(pid)) >= 1)
        child = _children(pid)[0].pid
        assert executor.kill_process(pid, force=True, tree=True)
        assert _wait_until(lambda: _gone(child))
        assert _wait_until(lambda: not executor.is_process_running(pid))
    finally:
        if executor.is_process_running(pid):
            executor.kill_process(pid, force=True, tree=True)


def test_local_process_info_measures_cpu_between_polls():
    executor = LocalExecutor()
    pid = executor.launch_process([sys.executable, "-c", "while True: pass"])
    try:
        assert executor.process_info(pid) is not None
        monitor = executor._monitors[pid]
        time.sleep(0.5)
        info = executor.process_info(pid)
        assert info.cpu > 0.0
        assert executor._monitors[pid] is monitor
    finally:
        executor.kill_process(pid, force=True)
    assert _wait_until(lambda: executor.process_info(pid) is None)
    assert pid not in executor._monitors


def test_ssh_connect_options_check_host_keys_by_default():
    options = SSHExecutor(_remote_connection()).connect_options()
    assert "known_hosts" not in options
    assert (options["host"], options["port"], options["username"]) == ("10.0.0.5", 22, "steam")

    custom = SSHExecutor(_remote_connection(), known_hosts="/etc/ssh/ssh_known_hosts").connect_options()
    assert custom["known_hosts"] == "/etc/ssh/ssh_known_hosts"
    assert SSHExecutor(_remote_connection(), known_hosts="none").connect_options()["known_hosts"] is None


def test_create_executor_passes_known_hosts():
    executor = create_executor(_remote_connection(), ControlSettings(ssh_known_hosts="/home/steam/known_hosts"))
    assert executor.known_hosts == "/home/steam/known_hosts"


def test_known_hosts_setting_comes_from_environment():
    assert ControlSettings.from_env({}).ssh_known_hosts is None
    assert ControlSettings.from_env({"REFORGER_SSH_KNOWN_HOSTS": "none"}).ssh_known_hosts == "none"


class FailingLoop:
    def __init__(self, error: BaseException) -> None:
        self.error = error

    def run(self, coro, timeout):
        coro.close()
        raise self.error


def test_ssh_sftp_errors_become_file_and_command_errors(monkeypatch):
    import asyncssh

    executor = SSHExecutor(_remote_connection())
    monkeypatch.setattr(executor, "_session",
                        lambda: (object(), FailingLoop(asyncssh.SFTPNoSuchFile("No such file"))))
    with pytest.raises(FileNotFoundError) as missing:
        executor.read_text("/srv/reforger/server.json")
    assert "/srv/reforger/server.json" in str(missing.value)

    monkeypatch.setattr(executor, "_session",
                        lambda: (object(), FailingLoop(asyncssh.SFTPPermissionDenied("Permission denied"))))
    with pytest.raises(CommandError) as denied:
        executor.write_text("/srv/reforger/server.json", "{}")
    assert denied.value.command == "write /srv/reforger/server.json"
    assert denied.value.output == "Permission denied"


def test_ssh_session_that_never_opens_raises_connection_error(monkeypatch):
    executor = SSHExecutor(_remote_connection())
    monkeypatch.setattr(executor, "connect", lambda: None)
    with pytest.raises(ExecutorConnectionError):
        executor.run_command("true")

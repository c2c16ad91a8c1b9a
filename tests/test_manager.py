from __future__ import annotations

import dataclasses
import json
import socket
import threading

import pytest

from conftest import FakeStream
from reforger_ctrl.common.config import ControlSettings
from reforger_ctrl.common.errors import (
    ExecutorConnectionError,
    InstallFailedError,
    InvalidStateTransitionError,
    OperationInProgressError,
    RconUnavailableError,
)
from reforger_ctrl.core.manager import GameServerManager
from reforger_ctrl.core.models import (
    CommandResult,
    InstallStatus,
    ServerConfig,
    ServerConnection,
    ServerState,
    WorkshopMod,
)
from reforger_ctrl.core.mods import ModDatabase, plan_mod_sync
from reforger_ctrl.core.query import QueryResult, Unreachable
from reforger_ctrl.core.rcon import RconClient
from reforger_ctrl.core.steamcmd import CONNECTION_LOST_REASON
from reforger_ctrl.core.workshop import StaticWorkshopCatalog

SERVER_PATH = "/srv/reforger"
PID_PATH = f"{SERVER_PATH}/.reforger-server.pid"


def query_result(players=3, max_players=32, map_name="Everon") -> QueryResult:
    return QueryResult(
        name="Everon Nights", map=map_name, folder="ArmaReforger", game="Conflict - Everon", app_id=0,
        players=players, max_players=max_players, bots=0, server_type="d", environment="l",
        visibility="public", vac=False, version="1.2.0.76", ping=12.0,
    )


class FakeQuery:
    """Hands out queued answers, then keeps timing out."""

    def __init__(self) -> None:
        self.answers = []

    def info(self):
        if not self.answers:
            return Unreachable("timeout")
        answer = self.answers.pop(0)
        return answer() if callable(answer) else answer

    def players(self):
        return []


class FakeRcon:
    def __init__(self, executor, fail_shutdown=False) -> None:
        self.executor = executor
        self.fail_shutdown = fail_shutdown
        self.sent = []
        self.closed = False

    def execute(self, command):
        self.sent.append(command)
        return "ok"

    def shutdown(self):
        self.sent.append("#shutdown")
        if self.fail_shutdown:
            raise RconUnavailableError("RCON down")
        self.executor.running.clear()
        return ""

    def broadcast(self, message):
        return self.execute(f"say -1 {message}")

    def server_settings(self):
        return {}

    def close(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path) -> ControlSettings:
    return ControlSettings(
        startup_timeout=10.0,
        startup_check_interval=1.0,
        shutdown_grace_period=3.0,
        max_missed_polls=3,
        auto_restart_on_drift=False,
        mod_database_dir=str(tmp_path / "mods"),
    )


@pytest.fixture
def query() -> FakeQuery:
    return FakeQuery()


@pytest.fixture
def make_manager(fake_executor, fake_clock, settings, query, tmp_path):
    def factory(config=None, rcon=None) -> GameServerManager:
        connection = ServerConnection(name="test", server_path=SERVER_PATH, steamcmd_path="/opt/steamcmd")
        fake_executor.files["/opt/steamcmd/steamcmd.sh"] = ""
        return GameServerManager(
            connection,
            config=config or ServerConfig(name="Everon Nights"),
            settings=settings,
            executor=fake_executor,
            mod_database=ModDatabase(tmp_path / "mods.json"),
            query_factory=lambda *_args: query,
            rcon_factory=lambda *_args: rcon,
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )
    return factory


def start_online(manager, query) -> None:
    query.answers.append(query_result())
    assert manager.start() == ServerState.ONLINE


def test_start_confirms_through_query(make_manager, fake_executor, query):
    manager = make_manager()
    query.answers.extend([Unreachable("timeout"), query_result()])

    assert manager.start() == ServerState.ONLINE
    status = manager.get_status()
    assert status.is_online
    assert (status.players, status.max_players, status.map) == (3, 32, "Everon")
    assert status.mission == "Conflict - Everon"

    command = fake_executor.launched[0]
    assert command[0] == f"{SERVER_PATH}/ArmaReforgerServer"
    assert command[1:3] == ["-config", f"{SERVER_PATH}/server.json"]
    assert fake_executor.files[PID_PATH] == f"{manager.pid}\n"
    assert json.loads(fake_executor.files[f"{SERVER_PATH}/server.json"])["game"]["name"] == "Everon Nights"


def test_start_times_out_into_error(make_manager, fake_clock):
    manager = make_manager()
    assert manager.start() == ServerState.ERROR
    assert "did not answer" in manager.get_status().last_error
    assert fake_clock.now >= 10.0


def test_start_detects_process_exit(make_manager, fake_executor, query):
    manager = make_manager()

    def crash():
        fake_executor.running.clear()
        return Unreachable("timeout")

    query.answers.append(crash)
    assert manager.start() == ServerState.ERROR
    assert manager.get_status().last_error == "Server process exited during startup"


def test_start_without_query_confirms_over_rcon(make_manager, fake_executor):
    rcon = FakeRcon(fake_executor)
    manager = make_manager(ServerConfig(a2s_enabled=False, rcon_enabled=True, rcon_password="secret"), rcon)
    assert manager.start() == ServerState.ONLINE
    assert rcon.sent == ["#status"]


def test_start_is_rejected_while_online(make_manager, query):
    manager = make_manager()
    start_online(manager, query)
    with pytest.raises(InvalidStateTransitionError):
        manager.start()


def test_stop_kills_after_grace_period(make_manager, fake_executor, query):
    manager = make_manager()
    start_online(manager, query)
    pid = manager.pid
    fake_executor.ignore_sigterm = True

    assert manager.stop() == ServerState.OFFLINE
    assert fake_executor.kills == [(pid, False), (pid, True)]
    assert fake_executor.tree_kills == [pid, pid]
    assert PID_PATH not in fake_executor.files
    assert manager.pid is None


def test_stop_prefers_rcon_shutdown(make_manager, fake_executor, query):
    rcon = FakeRcon(fake_executor)
    manager = make_manager(ServerConfig(rcon_enabled=True, rcon_password="secret"), rcon)
    start_online(manager, query)

    assert manager.stop() == ServerState.OFFLINE
    assert "#shutdown" in rcon.sent
    assert fake_executor.kills == []
    assert rcon.closed


def test_failed_rcon_shutdown_falls_back_to_sigterm(make_manager, fake_executor, query):
    rcon = FakeRcon(fake_executor, fail_shutdown=True)
    manager = make_manager(ServerConfig(rcon_enabled=True, rcon_password="secret"), rcon)
    start_online(manager, query)
    pid = manager.pid

    assert manager.stop() == ServerState.OFFLINE
    assert fake_executor.kills == [(pid, False)]


def test_missed_poll_keeps_last_status(make_manager, fake_executor, query):
    manager = make_manager()
    start_online(manager, query)

    status = manager.poll_once()
    assert status.status == ServerState.ONLINE
    assert status.players == 3

    query.answers.append(query_result(players=7))
    status = manager.poll_once()
    assert status.players == 7
    assert (status.cpu, status.memory, status.uptime) == (12.5, 3.0, 60.0)


def test_repeated_misses_with_dead_process_move_to_error(make_manager, fake_executor, query):
    manager = make_manager()
    start_online(manager, query)
    fake_executor.running.clear()

    manager.poll_once()
    manager.poll_once()
    assert manager.state == ServerState.ONLINE
    manager.poll_once()
    assert manager.state == ServerState.ERROR
    assert PID_PATH not in fake_executor.files
    assert manager.get_status().players == 0


def test_install_updates_files_and_restores_state(make_manager, fake_executor, tmp_path):
    manager = make_manager()
    manager.mod_database.apply_plan(plan_mod_sync(["5965550F24A0C152"], []))
    fake_executor.streams.append(FakeStream(["Success! App '1874900' fully installed."]))

    stream = manager.install()
    assert manager.state == ServerState.UPDATING
    with pytest.raises(OperationInProgressError):
        manager.start()

    assert stream.wait().status == InstallStatus.COMPLETE
    assert manager.state == ServerState.OFFLINE
    assert manager.mod_database.pending_installs == []
    command = fake_executor.stream_commands[0]
    assert command[-4:] == ["+workshop_download_item", "1874880", "5965550F24A0C152", "+quit"]


def test_failed_install_releases_the_lock(make_manager, fake_executor, query):
    manager = make_manager()
    fake_executor.streams.append(FakeStream(["ERROR! Failed to install app '1874900'"], exit_code=8))

    with pytest.raises(InstallFailedError):
        manager.install().wait()
    assert manager.state == ServerState.OFFLINE
    assert "code 8" in manager.get_status().last_error
    start_online(manager, query)


def test_update_config_flags_restart_only_while_running(make_manager, query):
    manager = make_manager()
    assert manager.update_config(ServerConfig(name="Offline Change")) is False
    assert manager.get_status().restart_pending is False

    start_online(manager, query)
    assert manager.update_config(ServerConfig(name="Offline Change")) is False
    assert manager.update_config(ServerConfig(name="Live Change", max_players=48)) is True
    assert manager.get_status().restart_pending is True


def test_recover_adopts_running_process(make_manager, fake_executor):
    fake_executor.files[PID_PATH] = "555\n"
    fake_executor.running.add(555)
    manager = make_manager()

    assert manager.recover() == ServerState.ONLINE
    assert manager.pid == 555
    assert manager.stop() == ServerState.OFFLINE
    assert fake_executor.kills == [(555, False)]


def test_recover_ignores_stale_pid_file(make_manager, fake_executor):
    fake_executor.files[PID_PATH] = "555\n"
    manager = make_manager()
    assert manager.recover() == ServerState.OFFLINE


def test_rcon_operations_need_rcon_enabled(make_manager):
    manager = make_manager()
    with pytest.raises(RconUnavailableError):
        manager.broadcast("hello")


def test_tail_logs_parses_console_output(make_manager, fake_executor):
    manager = make_manager()
    assert manager.tail_logs() == []

    fake_executor.files[manager.log_path] = ""
    fake_executor.run_results["tail -n 20"] = CommandResult(0, "[2024-05-01 18:17:35] [ERROR] boom\n")
    entries = manager.tail_logs(20)
    assert [(e.level, e.message) for e in entries] == [("error", "boom")]


def test_log_browsing_lists_runs_and_reads_files(make_manager, fake_executor):
    manager = make_manager()
    assert manager.list_log_dirs() == []

    root = f"{SERVER_PATH}/profile/logs"
    assert manager.logs_root == root
    fake_executor.dirs.append(root)
    fake_executor.run_results[f"cd {root}"] = CommandResult(
        0, "logs_2024-05-02_10-00-00/\nlogs_2024-05-01_18-17-35\nnotes.txt\n"
    )
    assert manager.list_log_dirs() == ["logs_2024-05-02_10-00-00", "logs_2024-05-01_18-17-35"]

    run_dir = f"{root}/logs_2024-05-01_18-17-35"
    assert manager.list_log_files("logs_2024-05-01_18-17-35") == []
    fake_executor.dirs.append(run_dir)
    fake_executor.run_results[f"ls -1 {run_dir}"] = CommandResult(0, "console.log\nscript.log\ncrash.dmp\n")
    assert manager.list_log_files("logs_2024-05-01_18-17-35") == ["console.log", "script.log"]

    fake_executor.files[f"{run_dir}/console.log"] = ""
    fake_executor.run_results[f"tail -n 200 {run_dir}/console.log"] = CommandResult(
        0, "[2024-05-01 18:17:35] [WARNING] low fps\n"
    )
    entries = manager.read_log_file("logs_2024-05-01_18-17-35", "console.log", 200)
    assert [(e.level, e.message) for e in entries] == [("warning", "low fps")]


def test_log_browsing_rejects_names_outside_the_logs_directory(make_manager, fake_executor):
    manager = make_manager()
    with pytest.raises(ValueError):
        manager.read_log_file("..", "server.json")
    with pytest.raises(ValueError):
        manager.list_log_files("../..")
    assert fake_executor.commands == []


class DriftingRcon(FakeRcon):
    def server_settings(self):
        return {"maxPlayers": "10"}


def test_drift_sets_restart_pending_and_schedules_one_restart(make_manager, fake_executor, monkeypatch):
    config = ServerConfig(a2s_enabled=False, rcon_enabled=True, rcon_password="secret", max_players=32)
    manager = make_manager(config, DriftingRcon(fake_executor))
    manager.settings = dataclasses.replace(manager.settings, auto_restart_on_drift=True)
    assert manager.start() == ServerState.ONLINE

    restarts = []
    monkeypatch.setattr(manager, "restart", lambda: restarts.append(manager.state))

    assert manager.poll_once().restart_pending is True
    manager._restart_thread.join(timeout=5)
    assert manager.poll_once().restart_pending is True
    manager._restart_thread.join(timeout=5)
    assert restarts == [ServerState.ONLINE]


def test_drift_without_auto_restart_only_flags(make_manager, fake_executor):
    config = ServerConfig(a2s_enabled=False, rcon_enabled=True, rcon_password="secret", max_players=32)
    manager = make_manager(config, DriftingRcon(fake_executor))
    assert manager.start() == ServerState.ONLINE

    assert manager.poll_once().restart_pending is True
    assert manager._restart_thread is None
    assert manager.state == ServerState.ONLINE


def test_connection_loss_during_start_moves_to_error(make_manager, fake_executor, monkeypatch):
    manager = make_manager()

    def unreachable(*_args, **_kwargs):
        raise ExecutorConnectionError("connection reset")

    monkeypatch.setattr(fake_executor, "launch_process", unreachable)
    with pytest.raises(ExecutorConnectionError):
        manager.start()
    assert manager.state == ServerState.ERROR
    assert "Lost connection" in manager.get_status().last_error


def test_connection_loss_during_poll_moves_to_error(make_manager, fake_executor, query, monkeypatch):
    manager = make_manager()
    start_online(manager, query)

    def unreachable(_pid):
        raise ExecutorConnectionError("connection reset")

    monkeypatch.setattr(fake_executor, "is_process_running", unreachable)
    with pytest.raises(ExecutorConnectionError):
        manager.poll_once()
    assert manager.state == ServerState.ERROR


def test_connection_loss_during_install_moves_to_error(make_manager, fake_executor, query):
    manager = make_manager()
    fake_executor.streams.append(FakeStream(
        [" Update state (0x61) downloading, progress: 10.00 (1000 / 10000)"] * 3, fail_after=1
    ))

    updates = list(manager.install())
    assert updates[-1].status == InstallStatus.ERROR
    assert updates[-1].reason == CONNECTION_LOST_REASON
    assert manager.state == ServerState.ERROR
    assert manager.mod_database.pending_installs == []


class SilentSocket:
    """Socket whose peer never answers."""

    def settimeout(self, value):
        pass

    def connect(self, address):
        raise socket.timeout("timed out")

    def close(self):
        pass


def test_stop_falls_back_to_sigterm_when_rcon_times_out(make_manager, fake_executor, query):
    rcon = RconClient(password="secret", socket_factory=SilentSocket, sleep=lambda _seconds: None)
    manager = make_manager(ServerConfig(rcon_enabled=True, rcon_password="secret"), rcon)
    start_online(manager, query)
    pid = manager.pid

    assert manager.stop() == ServerState.OFFLINE
    assert fake_executor.kills == [(pid, False)]
    assert fake_executor.tree_kills == [pid]


def test_set_mod_list_pulls_in_dependencies_first(make_manager):
    manager = make_manager()
    manager.catalog = StaticWorkshopCatalog([
        WorkshopMod(workshop_id="A", name="Alpha", dependencies=["B"]),
        WorkshopMod(workshop_id="B", name="Bravo"),
    ])

    plan = manager.set_mod_list(["A"])
    assert plan.load_order == ["B", "A"]
    assert [mod.mod_id for mod in manager.mod_database.get_enabled_mods()] == ["B", "A"]
    assert "B" in manager.mod_database.pending_installs


def test_poll_loop_survives_unexpected_errors(make_manager, query, monkeypatch):
    manager = make_manager()
    start_online(manager, query)
    manager.settings = dataclasses.replace(manager.settings, poll_interval=0.01)
    calls = []
    recovered = threading.Event()

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("unexpected")
        recovered.set()
        return manager.get_status()

    monkeypatch.setattr(manager, "poll_once", flaky)
    manager.start_polling()
    try:
        assert recovered.wait(timeout=5)
    finally:
        manager.stop_polling()
    assert len(calls) >= 2

"""Lifecycle orchestration for one managed dedicated server."""

from __future__ import annotations

import dataclasses
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Sequence

from reforger_ctrl.common.config import ControlSettings
from reforger_ctrl.common.constants import (
    PROFILE_DIR,
    SERVER_APP_ID,
    SERVER_CONFIG_FILE,
    SERVER_LOG_FILE,
    SERVER_PID_FILE,
)
from reforger_ctrl.common.errors import (
    CommandError,
    ExecutorConnectionError,
    InvalidStateTransitionError,
    OperationInProgressError,
    RconPermissionError,
    RconUnavailableError,
    ReforgerCtrlError,
)
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.executors import Executor, create_executor
from reforger_ctrl.core.lifecycle import LifecycleAction, StateMachine
from reforger_ctrl.core.models import (
    InstallProgress,
    InstallStatus,
    Platform,
    Player,
    ServerConfig,
    ServerConnection,
    ServerState,
    ServerStatus,
)
from reforger_ctrl.core.mods import ModDatabase, ModSyncPlan, plan_mod_sync
from reforger_ctrl.core.query import A2SQueryClient, QueryResult
from reforger_ctrl.core.rcon import RconClient
from reforger_ctrl.core.server_config import detect_drift, render_server_config, requires_restart, validate_config
from reforger_ctrl.core.server_logs import (
    LOG_DIR_PREFIX,
    LOG_FILE_SUFFIX,
    LogEntry,
    check_log_name,
    list_dirs_command,
    list_files_command,
    parse_listing,
    parse_log_lines,
    tail_command,
)
from reforger_ctrl.core.steamcmd import CONNECTION_LOST_REASON, InstallStream, SteamCMDService
from reforger_ctrl.core.workshop import WorkshopCatalog

RUNNING_STATES = (ServerState.STARTING, ServerState.ONLINE)


def default_query_factory(connection: ServerConnection, config: ServerConfig,
                          settings: ControlSettings) -> A2SQueryClient:
    return A2SQueryClient(connection.query_host(), config.steam_query_port, timeout=settings.query_timeout)


def default_rcon_factory(connection: ServerConnection, config: ServerConfig,
                         settings: ControlSettings) -> RconClient:
    return RconClient(
        host=connection.query_host(),
        port=config.rcon_port,
        password=config.rcon_password,
        permission=config.rcon_permission,
        connect_timeout=settings.rcon_connect_timeout,
        read_timeout=settings.rcon_read_timeout,
    )


class _InstallTracker:
    """Relay install updates and settle the lifecycle exactly once."""

    def __init__(self, manager: "GameServerManager", stream: InstallStream, mod_ids: List[str]) -> None:
        self._manager = manager
        self._stream = stream
        self._mod_ids = mod_ids
        self._done = False

    def __iter__(self) -> "_InstallTracker":
        return self

    def __next__(self) -> InstallProgress:
        if self._done:
            raise StopIteration
        try:
            update = next(self._stream)
        except StopIteration:
            self._finish(None)
            raise
        except BaseException:
            self._finish(None)
            raise
        if update.is_terminal:
            self._finish(update)
        return update

    def close(self) -> None:
        self._stream.close()
        self._finish(None)

    def _finish(self, last: Optional[InstallProgress]) -> None:
        if self._done:
            return
        self._done = True
        self._manager._install_finished(last, self._mod_ids)


class GameServerManager:
    """Owns the executor, protocol clients, state machine and status cache of one server."""

    def __init__(self, connection: ServerConnection, config: Optional[ServerConfig] = None,
                 settings: Optional[ControlSettings] = None, executor: Optional[Executor] = None,
                 steamcmd: Optional[SteamCMDService] = None, mod_database: Optional[ModDatabase] = None,
                 catalog: Optional[WorkshopCatalog] = None,
                 query_factory: Callable[..., A2SQueryClient] = default_query_factory,
                 rcon_factory: Callable[..., RconClient] = default_rcon_factory,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.connection = connection
        self.settings = settings or ControlSettings.from_env()
        self.config = config or ServerConfig()
        self.executor = executor or create_executor(connection, self.settings)
        self.steamcmd = steamcmd or SteamCMDService(
            self.executor, connection, log_tail_lines=self.settings.install_log_tail_lines
        )
        self.mod_database = mod_database or ModDatabase(self.settings.mod_database_path(connection.id))
        self.catalog = catalog
        self._query_factory = query_factory
        self._rcon_factory = rcon_factory
        self._clock = clock
        self._sleep = sleep
        self._log = get_logger(f"{__name__}.{connection.name}")

        self._machine = StateMachine(ServerState.OFFLINE)
        self._status = ServerStatus()
        self._status_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._query = self._query_factory(connection, self.config, self.settings)
        self._rcon: Optional[RconClient] = None
        self._pid: Optional[int] = None
        self._missed_polls = 0
        self._poll_stop = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None
        self._restart_thread: Optional[threading.Thread] = None

    # -- paths -----------------------------------------------------------

    @property
    def config_path(self) -> str:
        return self.connection.server_file(SERVER_CONFIG_FILE)

    @property
    def pid_path(self) -> str:
        return self.connection.server_file(SERVER_PID_FILE)

    @property
    def log_path(self) -> str:
        return self.connection.server_file(SERVER_LOG_FILE)

    @property
    def profile_path(self) -> str:
        return self.connection.server_file(PROFILE_DIR)

    # -- state -----------------------------------------------------------

    @property
    def state(self) -> ServerState:
        return self._machine.state

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    def _transition(self, action: LifecycleAction) -> ServerState:
        previous = self._machine.state
        state = self._machine.apply(action)
        self.connection.status = state.value
        with self._status_lock:
            self._status.status = state
            self._status.is_online = state == ServerState.ONLINE
            if state in (ServerState.OFFLINE, ServerState.ERROR):
                self._status.players = 0
        if state != previous:
            self._log.info("%s -> %s (%s)", previous.value, state.value, action.value)
        return state

    def _fail(self, reason: str) -> None:
        with self._status_lock:
            self._status.last_error = reason
        self._transition(LifecycleAction.FAIL)
        self._log.error("Server entered error state: %s", reason)

    @contextmanager
    def _lifecycle(self, action: str) -> Iterator[None]:
        if not self._lifecycle_lock.acquire(blocking=False):
            raise OperationInProgressError(self.state.value, action)
        try:
            yield
        finally:
            self._lifecycle_lock.release()

    @contextmanager
    def _connection_guard(self) -> Iterator[None]:
        """Move to ``error`` when the executor transport is gone for good."""
        try:
            yield
        except ExecutorConnectionError as exc:
            self._fail(f"Lost connection to {self.connection.name}: {exc}")
            raise

    def _ensure_connected(self) -> None:
        if not self.executor.is_connected:
            self.executor.connect()

    def _require(self, action: LifecycleAction, label: str) -> None:
        if not self._machine.can_apply(action):
            raise InvalidStateTransitionError(self.state.value, label)

    # -- recovery --------------------------------------------------------

    def _read_pid_file(self) -> Optional[int]:
        if not self.executor.file_exists(self.pid_path):
            return None
        text = self.executor.read_text(self.pid_path).strip()
        return int(text) if text.isdigit() else None

    def recover(self) -> ServerState:
        """Adopt a server process left running by an earlier controller."""
        if self.state != ServerState.OFFLINE:
            return self.state
        try:
            self._ensure_connected()
            pid = self._read_pid_file()
            if pid is not None and self.executor.is_process_running(pid):
                self._pid = pid
                self._machine = StateMachine(ServerState.ONLINE)
                self.connection.status = ServerState.ONLINE.value
                with self._status_lock:
                    self._status.status = ServerState.ONLINE
                    self._status.is_online = True
                self._log.info("Adopted running server process (PID %s)", pid)
        except ExecutorConnectionError as exc:
            self._log.warning("Could not inspect %s: %s", self.connection.name, exc)
            with self._status_lock:
                self._status.last_error = str(exc)
        return self.state

    # -- install ---------------------------------------------------------

    def install(self, mod_ids: Optional[Sequence[str]] = None) -> InstallStream:
        """
        Install or update the server and mods; consume the returned stream.

        Queued mod installs from earlier syncs are included. The previous state
        is restored once the stream ends.

        Raises:
            InvalidStateTransitionError: If the server cannot be updated now
            OperationInProgressError: If another lifecycle operation is running
        """
        if not self._lifecycle_lock.acquire(blocking=False):
            raise OperationInProgressError(self.state.value, "install")
        try:
            self._require(LifecycleAction.UPDATE, "install")
            with self._connection_guard():
                self._ensure_connected()
            ids = list(dict.fromkeys([str(m) for m in (mod_ids or [])] + self.mod_database.pending_installs))
            self._transition(LifecycleAction.UPDATE)
        except BaseException:
            self._lifecycle_lock.release()
            raise

        self._log.info("Installing server files with %d mod(s)", len(ids))
        inner = self.steamcmd.install_or_update(SERVER_APP_ID, ids, validate=True)
        return InstallStream(_InstallTracker(self, inner, ids), inner.cancel_event)

    def _install_finished(self, last: Optional[InstallProgress], mod_ids: List[str]) -> None:
        try:
            if last is not None and last.status == InstallStatus.COMPLETE:
                self.mod_database.mark_installed(mod_ids)
                self._transition(LifecycleAction.UPDATE_DONE)
                self._log.info("Install complete")
            elif last is not None and last.reason == CONNECTION_LOST_REASON:
                self._fail(last.message)
            else:
                self._transition(LifecycleAction.UPDATE_DONE)
                message = last.message if last is not None else "Install stream closed before completion"
                with self._status_lock:
                    self._status.last_error = message
                self._log.warning("Install did not complete: %s", message)
        finally:
            self._lifecycle_lock.release()

    # -- start / stop ----------------------------------------------------

    def sync_mods(self) -> ModSyncPlan:
        """Re-plan the enabled mods (dependencies, load order) before launch."""
        desired = [mod.mod_id for mod in self.mod_database.get_enabled_mods()]
        plan = plan_mod_sync(desired, self.mod_database.get_installed_mods(), self.catalog)
        self.mod_database.apply_plan(plan)
        if plan.to_install:
            self._log.warning("Mods not installed yet, queued for next install: %s", ", ".join(plan.to_install))
        return plan

    def write_config(self) -> None:
        self.executor.make_dirs(self.profile_path)
        self.executor.write_text(
            self.config_path, render_server_config(self.config, self.mod_database.get_enabled_mods())
        )
        self._log.debug("Wrote %s", self.config_path)

    def launch_command(self) -> List[str]:
        return [
            self.steamcmd.server_executable,
            "-config", self.config_path,
            "-profile", self.profile_path,
            "-logStats", "10000",
        ]

    def _server_answers(self) -> bool:
        """One liveness answer from the server's own protocols."""
        if self.config.a2s_enabled:
            result = self._query.info()
            if isinstance(result, QueryResult):
                self._apply_query(result)
                return True
            return False
        if self.config.rcon_active:
            try:
                self._rcon_client().execute("#status")
                return True
            except (RconUnavailableError, RconPermissionError):
                return False
        return True

    def _await_confirmation(self) -> bool:
        deadline = self._clock() + self.settings.startup_timeout
        while True:
            if not self.executor.is_process_running(self._pid):
                self._fail("Server process exited during startup")
                return False
            if self._server_answers():
                self._missed_polls = 0
                self._transition(LifecycleAction.CONFIRM)
                return True
            if self._clock() >= deadline:
                self._fail(f"Server did not answer within {self.settings.startup_timeout:.0f}s")
                return False
            self._sleep(self.settings.startup_check_interval)

    def _start_locked(self) -> ServerState:
        self._require(LifecycleAction.START, "start")
        with self._connection_guard():
            self._ensure_connected()
            self.sync_mods()
            self._transition(LifecycleAction.START)
            try:
                self.write_config()
                self._pid = self.executor.launch_process(
                    self.launch_command(), cwd=self.connection.server_path, log_path=self.log_path
                )
                self.executor.write_text(self.pid_path, f"{self._pid}\n")
            except (CommandError, OSError) as exc:
                self._fail(f"Failed to launch server: {exc}")
                raise
            with self._status_lock:
                self._status.restart_pending = False
                self._status.last_error = None
            self._log.info("Server launched with PID %s, waiting for it to answer", self._pid)
            self._await_confirmation()
        return self.state

    def start(self) -> ServerState:
        """
        Launch the server and wait until it is confirmed online.

        Returns the resulting state: ``online``, or ``error`` when the process
        died or never answered within the startup window.

        Raises:
            DependencyCycleError: If the mod load order cannot be resolved
            InvalidStateTransitionError: If the server cannot be started now
        """
        with self._lifecycle("start"):
            return self._start_locked()

    def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = self._clock() + max(timeout, 0.0)
        while self.executor.is_process_running(pid):
            if self._clock() >= deadline:
                return False
            self._sleep(min(1.0, max(timeout, 0.1)))
        return True

    def _stop_locked(self) -> ServerState:
        self._require(LifecycleAction.STOP, "stop")
        with self._connection_guard():
            self._ensure_connected()
            self._transition(LifecycleAction.STOP)
            pid = self._pid if self._pid is not None else self._read_pid_file()
            if pid is not None and self.executor.is_process_running(pid):
                self._request_shutdown(pid)
                if not self._wait_for_exit(pid, self.settings.shutdown_grace_period):
                    self._log.warning(
                        "Server did not stop within %ss; killing PID %s",
                        self.settings.shutdown_grace_period, pid,
                    )
                    self.executor.kill_process(pid, force=True, tree=True)
                    self._wait_for_exit(pid, 5.0)
            self.executor.remove_file(self.pid_path)
            self._pid = None
            self._missed_polls = 0
            self._close_rcon()
            self._transition(LifecycleAction.STOPPED)
        return self.state

    def _request_shutdown(self, pid: int) -> None:
        if self.config.rcon_active:
            try:
                self._rcon_client().shutdown()
                self._log.info("Shutdown requested over RCON")
                return
            except (RconUnavailableError, RconPermissionError) as exc:
                self._log.warning("RCON shutdown failed (%s); sending SIGTERM to PID %s", exc, pid)
        else:
            self._log.info("Sending SIGTERM to server process PID %s", pid)
        self.executor.kill_process(pid, force=False, tree=True)

    def stop(self) -> ServerState:
        """Stop gracefully, falling back to a forced kill after the grace period."""
        with self._lifecycle("stop"):
            return self._stop_locked()

    def restart(self) -> ServerState:
        with self._lifecycle("restart"):
            if self.state in RUNNING_STATES or self.state == ServerState.ERROR:
                self._stop_locked()
            return self._start_locked()

    # -- configuration ---------------------------------------------------

    def update_config(self, config: ServerConfig) -> bool:
        """
        Store and write a new desired config.

        Returns True when the running server needs a restart to pick it up;
        ``restart_pending`` is set in that case.
        """
        validate_config(config)
        old = self.config
        self.config = config
        self._query = self._query_factory(self.connection, config, self.settings)
        self._close_rcon()

        if self.state != ServerState.UPDATING:
            with self._connection_guard():
                self._ensure_connected()
                self.write_config()

        needs_restart = requires_restart(old, config) and self.state in RUNNING_STATES
        if needs_restart:
            with self._status_lock:
                self._status.restart_pending = True
            self._log.info("Config changed; restart pending")
        return needs_restart

    def set_mod_list(self, mod_ids: Sequence[str]) -> ModSyncPlan:
        """
        Replace the desired mod list.

        Raises:
            DependencyCycleError: If the mods have a dependency cycle (nothing is changed)
        """
        before = [mod.mod_id for mod in self.mod_database.get_enabled_mods()]
        plan = plan_mod_sync(mod_ids, self.mod_database.get_installed_mods(), self.catalog)
        self.mod_database.apply_plan(plan)
        if plan.load_order != before and self.state in RUNNING_STATES:
            with self._status_lock:
                self._status.restart_pending = True
        self._log.info(
            "Mod list set: %s (queued installs: %s)",
            ", ".join(plan.load_order) or "none", ", ".join(plan.to_install) or "none",
        )
        return plan

    # -- queries ---------------------------------------------------------

    def get_status(self) -> ServerStatus:
        with self._status_lock:
            return dataclasses.replace(self._status)

    def _rcon_client(self) -> RconClient:
        if not self.config.rcon_active:
            raise RconUnavailableError(f"RCON is not enabled for {self.connection.name}")
        if self._rcon is None:
            self._rcon = self._rcon_factory(self.connection, self.config, self.settings)
        return self._rcon

    def _close_rcon(self) -> None:
        if self._rcon is not None:
            self._rcon.close()
            self._rcon = None

    def list_players(self) -> List[Player]:
        """Roster over RCON when enabled, otherwise from the A2S player query."""
        if self.config.rcon_active:
            try:
                return self._rcon_client().list_players()
            except RconUnavailableError as exc:
                self._log.warning("RCON player list failed, using A2S: %s", exc)
        result = self._query.players()
        return result if isinstance(result, list) else []

    def send_rcon_command(self, command: str) -> str:
        return self._rcon_client().execute(command)

    def broadcast(self, message: str) -> str:
        return self._rcon_client().broadcast(message)

    def kick(self, identifier: str, reason: str = "") -> str:
        return self._rcon_client().kick(identifier, reason)

    def ban(self, identifier: str, reason: str = "", duration: int = 0) -> str:
        return self._rcon_client().ban(identifier, reason, duration)

    def tail_logs(self, lines: int = 100) -> List[LogEntry]:
        """Last lines of the server console log."""
        with self._connection_guard():
            self._ensure_connected()
            if not self.executor.file_exists(self.log_path):
                return []
            result = self.executor.run_command(
                tail_command(self.log_path, lines, self.connection.platform == Platform.WINDOWS)
            )
        return parse_log_lines(result.stdout) if result.ok else []

    @property
    def logs_root(self) -> str:
        return self.connection.server_file(PROFILE_DIR, "logs")

    def _list(self, directory: str, command: str, prefix: str = "", suffix: str = "") -> List[str]:
        with self._connection_guard():
            self._ensure_connected()
            if not self.executor.file_exists(directory):
                return []
            result = self.executor.run_command(command)
        return parse_listing(result.stdout, prefix, suffix) if result.ok else []

    def list_log_dirs(self) -> List[str]:
        """Per-run log directories written by the server, newest first."""
        windows = self.connection.platform == Platform.WINDOWS
        return self._list(self.logs_root, list_dirs_command(self.logs_root, windows), prefix=LOG_DIR_PREFIX)

    def list_log_files(self, log_dir: str) -> List[str]:
        path = self.connection.join_path(self.logs_root, check_log_name(log_dir))
        windows = self.connection.platform == Platform.WINDOWS
        return self._list(path, list_files_command(path, windows), suffix=LOG_FILE_SUFFIX)

    def read_log_file(self, log_dir: str, file_name: str, lines: int = 500) -> List[LogEntry]:
        """
        Last lines of one file from a run's log directory.

        Raises:
            ValueError: If a name would leave the logs directory
        """
        path = self.connection.join_path(self.logs_root, check_log_name(log_dir), check_log_name(file_name))
        with self._connection_guard():
            self._ensure_connected()
            if not self.executor.file_exists(path):
                return []
            result = self.executor.run_command(
                tail_command(path, lines, self.connection.platform == Platform.WINDOWS)
            )
        return parse_log_lines(result.stdout) if result.ok else []

    # -- polling ---------------------------------------------------------

    def _apply_query(self, result: QueryResult) -> None:
        mission = result.game or self.config.scenario_id.rsplit("/", 1)[-1].replace(".conf", "")
        with self._status_lock:
            self._status.players = result.players
            self._status.max_players = result.max_players
            self._status.map = result.map
            self._status.mission = mission
            self._status.version = result.version or self._status.version
            self._status.ping = result.ping
            self._status.last_updated = datetime.now()

    def poll_once(self) -> ServerStatus:
        """
        Refresh the status cache once; only acts while ``online``.

        A missed query leaves the cache as it was. After ``max_missed_polls``
        misses in a row with the process gone, the server moves to ``error``.
        """
        if self.state != ServerState.ONLINE:
            return self.get_status()

        with self._connection_guard():
            alive = self._pid is None or self.executor.is_process_running(self._pid)
            if self.config.a2s_enabled:
                result = self._query.info()
                answered = isinstance(result, QueryResult)
            else:
                result, answered = None, alive

            if not answered:
                self._missed_polls += 1
                self._log.debug("Poll missed (%d in a row)", self._missed_polls)
                if self._missed_polls >= self.settings.max_missed_polls and not alive:
                    self._fail(f"Server stopped answering and process {self._pid} is gone")
                    self.executor.remove_file(self.pid_path)
                    self._pid = None
                return self.get_status()

            self._missed_polls = 0
            if isinstance(result, QueryResult):
                self._apply_query(result)
            if self._pid is not None:
                info = self.executor.process_info(self._pid)
                if info is not None:
                    with self._status_lock:
                        self._status.cpu = info.cpu
                        self._status.memory = info.memory
                        self._status.uptime = info.uptime
                        self._status.last_updated = datetime.now()

        if self.config.rcon_active:
            self._check_drift()
        return self.get_status()

    def _check_drift(self) -> None:
        try:
            settings = self._rcon_client().server_settings()
        except (RconUnavailableError, RconPermissionError) as exc:
            self._log.debug("Skipping drift check: %s", exc)
            return
        drifted = detect_drift(self.config, settings)
        if not drifted:
            return
        with self._status_lock:
            already_pending = self._status.restart_pending
            self._status.restart_pending = True
        if already_pending:
            return
        self._log.warning("Live settings differ from desired config: %s", ", ".join(drifted))
        if self.settings.auto_restart_on_drift:
            self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self._restart_thread is not None and self._restart_thread.is_alive():
            return

        def _run() -> None:
            try:
                self.restart()
            except ReforgerCtrlError as exc:
                self._log.error("Scheduled restart failed: %s", exc)

        self._restart_thread = threading.Thread(
            target=_run, name=f"restart-{self.connection.id}", daemon=True
        )
        self._restart_thread.start()

    def _poll_loop(self) -> None:
        while not self._poll_stop.wait(self.settings.poll_interval):
            if self.state != ServerState.ONLINE:
                continue
            try:
                self.poll_once()
            except ReforgerCtrlError as exc:
                self._log.warning("Poll failed: %s", exc)
            except Exception:
                self._log.exception("Unexpected error while polling %s", self.connection.name)

    def start_polling(self) -> None:
        if self._poll_thread is not None and self._poll_thread.is_alive():
            return
        self._poll_stop.clear()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, name=f"poll-{self.connection.id}", daemon=True
        )
        self._poll_thread.start()

    def stop_polling(self) -> None:
        self._poll_stop.set()
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=self.settings.poll_interval + 1.0)
            self._poll_thread = None

    def close(self) -> None:
        """Stop background work and release transports; the server keeps running."""
        self.stop_polling()
        self._close_rcon()
        self.executor.close()

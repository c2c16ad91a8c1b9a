"""SteamCMD installation and server/mod update streaming.

SteamCMD does the actual downloading (and resumes partial downloads on its
own); this module only builds its command line, relays its output as
`InstallProgress` updates and reports how the run ended.
"""

from __future__ import annotations

import re
import threading
import time
from collections import deque
from typing import Deque, Iterable, Iterator, List, Optional, Sequence

from reforger_ctrl.common.constants import (
    SERVER_APP_ID,
    SERVER_BINARY_LINUX,
    SERVER_BINARY_WINDOWS,
    STEAMCMD_DOWNLOAD_URL_LINUX,
    STEAMCMD_DOWNLOAD_URL_WINDOWS,
    WORKSHOP_APP_ID,
)
from reforger_ctrl.common.errors import CommandError, ExecutorConnectionError, InstallFailedError
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.executors.base import Executor
from reforger_ctrl.core.models import InstallProgress, InstallStatus, Platform, ServerConnection

CANCELLED_REASON = "cancelled"
CONNECTION_LOST_REASON = "connection_lost"

UPDATE_STATE_RE = re.compile(
    r"Update state \(0x[0-9a-fA-F]+\) (?P<state>[a-z ]+?), progress: (?P<pct>[\d.]+)"
    r"(?: \((?P<done>\d+) / (?P<total>\d+)\))?"
)
WORKSHOP_ITEM_RE = re.compile(r"Downloading item (?P<item>[0-9A-Fa-f]+)")
WORKSHOP_DONE_RE = re.compile(r"Success\. Downloaded item (?P<item>[0-9A-Fa-f]+)")
APP_DONE_RE = re.compile(r"Success! App '?(?P<app>\d+)'? (?:fully installed|already up to date)")
PERCENT_RE = re.compile(r"(?P<pct>\d{1,3}(?:\.\d+)?)\s*%")
VALIDATING_RE = re.compile(r"\b(validating|verifying)\b", re.IGNORECASE)
DOWNLOADING_RE = re.compile(r"\bdownloading\b", re.IGNORECASE)
BUILD_ID_RE = re.compile(r'"buildid"\s+"(\d+)"')

_STATE_PHASES = {
    "downloading": InstallStatus.DOWNLOADING,
    "preallocating": InstallStatus.EXTRACTING,
    "committing": InstallStatus.EXTRACTING,
    "reconfiguring": InstallStatus.CONFIGURING,
    "verifying install": InstallStatus.CONFIGURING,
    "verifying update": InstallStatus.CONFIGURING,
    "validating": InstallStatus.CONFIGURING,
}


class SteamCmdProgressParser:
    """Turn SteamCMD output lines into progress updates.

    Progress never decreases inside a phase; a new phase starts again from the
    value it reports. Lines without a known marker produce nothing.
    """

    def __init__(self, item_count: int = 1, clock=time.monotonic) -> None:
        self.item_count = max(1, item_count)
        self.item_index = 0
        self._clock = clock
        self._phase: Optional[InstallStatus] = None
        self._last_progress = 0.0
        self._last_bytes: Optional[int] = None
        self._last_time: Optional[float] = None

    def _overall(self, item_percent: float) -> float:
        fraction = (self.item_index + min(max(item_percent, 0.0), 100.0) / 100.0) / self.item_count
        return round(min(fraction * 100.0, 99.0), 2)

    def _speed(self, done: Optional[int]) -> Optional[float]:
        now = self._clock()
        speed = None
        if done is not None and self._last_bytes is not None and self._last_time is not None:
            elapsed = now - self._last_time
            if elapsed > 0 and done >= self._last_bytes:
                speed = (done - self._last_bytes) / elapsed
        if done is not None:
            self._last_bytes = done
            self._last_time = now
        return speed

    def _emit(self, phase: InstallStatus, progress: float, message: str,
              done: Optional[int] = None, total: Optional[int] = None) -> Optional[InstallProgress]:
        if phase != self._phase:
            self._phase = phase
            self._last_progress = progress
            self._last_bytes = None
            self._last_time = None
        elif progress < self._last_progress:
            return None
        else:
            self._last_progress = progress
        return InstallProgress(
            status=phase,
            progress=progress,
            message=message,
            bytes_downloaded=done,
            bytes_total=total,
            speed=self._speed(done),
        )

    def feed(self, line: str) -> Optional[InstallProgress]:
        match = UPDATE_STATE_RE.search(line)
        if match:
            state = match.group("state").strip().lower()
            phase = _STATE_PHASES.get(state, InstallStatus.DOWNLOADING)
            pct = float(match.group("pct"))
            done = int(match.group("done")) if match.group("done") else None
            total = int(match.group("total")) if match.group("total") else None
            return self._emit(phase, self._overall(pct), f"{state.capitalize()}: {pct:.1f}%", done, total)

        if APP_DONE_RE.search(line):
            # Workshop items follow the app; no update of its own.
            self.item_index = min(self.item_index + 1, self.item_count - 1)
            return None

        match = WORKSHOP_DONE_RE.search(line)
        if match:
            progress = self._overall(100.0)
            self.item_index = min(self.item_index + 1, self.item_count - 1)
            return self._emit(InstallStatus.DOWNLOADING, progress,
                              f"Downloaded workshop item {match.group('item')}")

        match = WORKSHOP_ITEM_RE.search(line)
        if match:
            return self._emit(InstallStatus.DOWNLOADING, self._overall(0.0),
                              f"Downloading workshop item {match.group('item')}")

        if VALIDATING_RE.search(line):
            pct = PERCENT_RE.search(line)
            progress = self._overall(float(pct.group("pct"))) if pct else self._last_progress
            return self._emit(InstallStatus.CONFIGURING, progress, "Validating installation...")

        match = PERCENT_RE.search(line)
        if match and DOWNLOADING_RE.search(line):
            pct = float(match.group("pct"))
            return self._emit(InstallStatus.DOWNLOADING, self._overall(pct), f"Downloading: {pct:.1f}%")

        return None


class InstallStream:
    """Iterable of `InstallProgress` with cooperative cancellation.

    The stream ends after exactly one terminal update (`complete` or `error`).
    """

    def __init__(self, updates: Iterable[InstallProgress], cancel_event: Optional[threading.Event] = None) -> None:
        self._updates: Iterator[InstallProgress] = iter(updates)
        self._cancel_event = cancel_event or threading.Event()
        self.last: Optional[InstallProgress] = None

    def __iter__(self) -> "InstallStream":
        return self

    def __next__(self) -> InstallProgress:
        update = next(self._updates)
        self.last = update
        return update

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Ask the producer to stop; observed after its next read."""
        self._cancel_event.set()

    def close(self) -> None:
        close = getattr(self._updates, "close", None)
        if close is not None:
            close()

    def wait(self) -> InstallProgress:
        """Drain the stream; raise `InstallFailedError` if it ended in error."""
        for _update in self:
            pass
        if self.last is None:
            raise InstallFailedError("Install stream produced no updates")
        if self.last.status == InstallStatus.ERROR:
            raise InstallFailedError(self.last.message, self.last.log_tail, self.last.reason)
        return self.last


class SteamCMDService:
    """Drive SteamCMD through an executor to install the server and mods."""

    def __init__(self, executor: Executor, connection: ServerConnection,
                 steam_username: Optional[str] = None, steam_password: Optional[str] = None,
                 log_tail_lines: int = 20) -> None:
        self.executor = executor
        self.connection = connection
        self.steam_username = steam_username
        self.steam_password = steam_password
        self.log_tail_lines = max(1, log_tail_lines)
        self._log = get_logger(__name__)

    @property
    def is_windows(self) -> bool:
        return self.connection.platform == Platform.WINDOWS

    @property
    def steamcmd_executable(self) -> str:
        name = "steamcmd.exe" if self.is_windows else "steamcmd.sh"
        return self.connection.join_path(self.connection.steamcmd_dir(), name)

    @property
    def server_executable(self) -> str:
        name = SERVER_BINARY_WINDOWS if self.is_windows else SERVER_BINARY_LINUX
        return self.connection.server_file(name)

    def is_steamcmd_installed(self) -> bool:
        return self.executor.file_exists(self.steamcmd_executable)

    def is_installed(self) -> bool:
        return self.executor.file_exists(self.server_executable)

    def server_build_id(self, app_id: str = SERVER_APP_ID) -> Optional[str]:
        """Read the installed build id from the SteamCMD app manifest."""
        manifest = self.connection.server_file("steamapps", f"appmanifest_{app_id}.acf")
        if not self.executor.file_exists(manifest):
            return None
        match = BUILD_ID_RE.search(self.executor.read_text(manifest))
        return match.group(1) if match else None

    def build_command(self, app_id: str, mod_ids: Sequence[str] = (), validate: bool = True) -> List[str]:
        command = [self.steamcmd_executable, "+force_install_dir", self.connection.server_path]
        if self.steam_username and self.steam_password:
            command += ["+login", self.steam_username, self.steam_password]
        else:
            command += ["+login", "anonymous"]
        command += ["+app_update", str(app_id)]
        if validate:
            command.append("validate")
        for mod_id in mod_ids:
            command += ["+workshop_download_item", WORKSHOP_APP_ID, str(mod_id)]
        command.append("+quit")
        return command

    def _bootstrap_command(self) -> str:
        target = self.connection.steamcmd_dir()
        if self.is_windows:
            return (
                "powershell -NoProfile -ExecutionPolicy Bypass -Command \""
                "$ProgressPreference = 'SilentlyContinue'; "
                f"New-Item -ItemType Directory -Force -Path '{target}' | Out-Null; "
                f"Invoke-WebRequest -Uri '{STEAMCMD_DOWNLOAD_URL_WINDOWS}' -OutFile '{target}\\steamcmd.zip'; "
                f"Expand-Archive -Path '{target}\\steamcmd.zip' -DestinationPath '{target}' -Force; "
                f"Remove-Item '{target}\\steamcmd.zip' -Force\""
            )
        return (
            f"mkdir -p '{target}' && cd '{target}' && "
            f"curl -sqL '{STEAMCMD_DOWNLOAD_URL_LINUX}' | tar zxf - && chmod +x steamcmd.sh"
        )

    def _ensure_steamcmd(self) -> Iterator[InstallProgress]:
        if self.is_steamcmd_installed():
            return
        self._log.info("SteamCMD not found at %s, installing...", self.steamcmd_executable)
        yield InstallProgress(InstallStatus.DOWNLOADING, 0.0, "Downloading SteamCMD...")
        self.executor.run_command(self._bootstrap_command(), check=True)
        yield InstallProgress(InstallStatus.EXTRACTING, 0.0, "Initializing SteamCMD...")

    def install_or_update(self, app_id: str = SERVER_APP_ID, mod_ids: Sequence[str] = (),
                          validate: bool = True) -> InstallStream:
        """Install or update the server and the given workshop mods.

        Safe to call repeatedly; SteamCMD resumes partial downloads itself.
        """
        cancel_event = threading.Event()
        return InstallStream(self._run(app_id, list(mod_ids), validate, cancel_event), cancel_event)

    def _error(self, message: str, tail: Iterable[str], reason: Optional[str] = None) -> InstallProgress:
        return InstallProgress(InstallStatus.ERROR, 0.0, message, log_tail=list(tail), reason=reason)

    def _run(self, app_id: str, mod_ids: List[str], validate: bool,
             cancel_event: threading.Event) -> Iterator[InstallProgress]:
        tail: Deque[str] = deque(maxlen=self.log_tail_lines)
        if cancel_event.is_set():
            yield self._error("Installation cancelled", tail, CANCELLED_REASON)
            return

        try:
            yield from self._ensure_steamcmd()
            self.executor.make_dirs(self.connection.server_path)
            command = self.build_command(app_id, mod_ids, validate)
            self._log.info("Running SteamCMD for app %s with %d mod(s)", app_id, len(mod_ids))
            yield InstallProgress(InstallStatus.DOWNLOADING, 0.0, "Starting download...")
            stream = self.executor.stream_output(command, cwd=self.connection.steamcmd_dir())
        except CommandError as exc:
            tail.extend(exc.output.splitlines())
            self._log.error("SteamCMD setup failed: %s", exc)
            yield self._error(f"Installation failed: {exc}", tail)
            return
        except ExecutorConnectionError as exc:
            self._log.error("Lost connection while preparing install: %s", exc)
            yield self._error(f"Connection lost: {exc}", tail, CONNECTION_LOST_REASON)
            return

        parser = SteamCmdProgressParser(item_count=1 + len(mod_ids))
        try:
            for line in stream:
                if line.strip():
                    tail.append(line)
                if cancel_event.is_set():
                    self._log.info("Cancelling SteamCMD (PID %s)", stream.pid)
                    if stream.pid is not None:
                        self.executor.kill_process(stream.pid, force=True, tree=True)
                    yield self._error("Installation cancelled", tail, CANCELLED_REASON)
                    return
                update = parser.feed(line)
                if update is not None:
                    yield update
            if cancel_event.is_set():
                yield self._error("Installation cancelled", tail, CANCELLED_REASON)
                return
            exit_code = stream.wait()
        except ExecutorConnectionError as exc:
            self._log.error("Lost connection during install: %s", exc)
            yield self._error(f"Connection lost: {exc}", tail, CONNECTION_LOST_REASON)
            return
        finally:
            stream.close()

        if exit_code != 0:
            self._log.error("SteamCMD exited with code %s", exit_code)
            yield self._error(f"SteamCMD exited with code {exit_code}", tail)
            return

        self._log.info("SteamCMD finished for app %s", app_id)
        yield InstallProgress(InstallStatus.COMPLETE, 100.0, "Installation complete")

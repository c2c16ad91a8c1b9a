"""Records exchanged between the control subsystem and its callers."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath, PureWindowsPath
from typing import Any, Dict, List, Optional

from reforger_ctrl.common.constants import (
    DEFAULT_GAME_PORT,
    DEFAULT_QUERY_PORT,
    DEFAULT_RCON_PORT,
    DEFAULT_SSH_PORT,
    DEFAULT_STEAMCMD_PATH_LINUX,
    DEFAULT_STEAMCMD_PATH_WINDOWS,
)


class ConnectionType(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Platform(str, Enum):
    LINUX = "linux"
    WINDOWS = "windows"


class ServerState(str, Enum):
    OFFLINE = "offline"
    STARTING = "starting"
    ONLINE = "online"
    STOPPING = "stopping"
    UPDATING = "updating"
    ERROR = "error"


class InstallStatus(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    CONFIGURING = "configuring"
    COMPLETE = "complete"
    ERROR = "error"


class RconPermission(str, Enum):
    ADMIN = "admin"
    MONITOR = "monitor"


class TaskAction(str, Enum):
    RESTART = "restart"
    START = "start"
    STOP = "stop"
    BROADCAST = "broadcast"
    RCON = "rcon"
    UPDATE = "update"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class ServerConnection:
    """A managed target: the local host or a remote host reachable over SSH."""

    name: str
    server_path: str
    type: ConnectionType = ConnectionType.LOCAL
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    host: Optional[str] = None
    port: int = DEFAULT_SSH_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    steamcmd_path: Optional[str] = None
    platform: Platform = Platform.LINUX
    is_default: bool = False
    status: str = ServerState.OFFLINE.value

    @property
    def is_remote(self) -> bool:
        return self.type == ConnectionType.REMOTE

    def join_path(self, base: str, *parts: str) -> str:
        """Join paths using the target host's separator."""
        pure = PureWindowsPath if self.platform == Platform.WINDOWS else PurePosixPath
        return str(pure(base, *parts))

    def server_file(self, *parts: str) -> str:
        return self.join_path(self.server_path, *parts)

    def steamcmd_dir(self) -> str:
        if self.steamcmd_path:
            return self.steamcmd_path
        if self.platform == Platform.WINDOWS:
            return DEFAULT_STEAMCMD_PATH_WINDOWS
        return DEFAULT_STEAMCMD_PATH_LINUX

    def query_host(self) -> str:
        """Address the status/RCON clients talk to."""
        if self.is_remote and self.host:
            return self.host
        return "127.0.0.1"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["platform"] = self.platform.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConnection":
        return cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            name=data["name"],
            server_path=data["server_path"],
            type=ConnectionType(data.get("type", ConnectionType.LOCAL.value)),
            host=data.get("host"),
            port=int(data.get("port") or DEFAULT_SSH_PORT),
            username=data.get("username"),
            password=data.get("password"),
            private_key_path=data.get("private_key_path"),
            steamcmd_path=data.get("steamcmd_path"),
            platform=Platform(data.get("platform", Platform.LINUX.value)),
            is_default=bool(data.get("is_default", False)),
            status=data.get("status", ServerState.OFFLINE.value),
        )


@dataclass
class ServerConfig:
    """Desired configuration for one dedicated server instance."""

    # Identity
    name: str = "Arma Reforger Server"
    password: str = ""
    admin_password: str = ""
    admins: List[str] = field(default_factory=list)

    # Network
    bind_address: str = "0.0.0.0"
    bind_port: int = DEFAULT_GAME_PORT
    public_address: str = ""
    public_port: int = DEFAULT_GAME_PORT

    # A2S query
    a2s_enabled: bool = True
    steam_query_address: str = ""
    steam_query_port: int = DEFAULT_QUERY_PORT

    # RCON
    rcon_enabled: bool = False
    rcon_address: str = ""
    rcon_port: int = DEFAULT_RCON_PORT
    rcon_password: str = ""
    rcon_permission: RconPermission = RconPermission.MONITOR
    rcon_max_clients: Optional[int] = None
    rcon_blacklist: List[str] = field(default_factory=list)
    rcon_whitelist: List[str] = field(default_factory=list)

    # Game
    scenario_id: str = "{ECC61978EDCC2B5A}Missions/23_Campaign.conf"
    max_players: int = 64
    visible: bool = True
    cross_platform: bool = False
    supported_platforms: List[str] = field(default_factory=list)
    server_max_view_distance: int = 2500
    server_min_grass_distance: int = 50
    network_view_distance: int = 1000
    disable_third_person: bool = False
    fast_validation: bool = True
    battleye: bool = True
    von_disable_ui: bool = False
    von_disable_direct_speech_ui: bool = False
    mission_header: Dict[str, Any] = field(default_factory=dict)

    # Operating
    lobby_player_synchronise: bool = False
    ai_limit: int = -1
    player_save_time: int = 120

    @property
    def rcon_active(self) -> bool:
        return self.rcon_enabled and bool(self.rcon_password)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["rcon_permission"] = self.rcon_permission.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "rcon_permission" in values:
            values["rcon_permission"] = RconPermission(values["rcon_permission"])
        return cls(**values)


@dataclass
class InstallProgress:
    """One update in an install/update progress stream."""

    status: InstallStatus
    progress: float
    message: str
    bytes_downloaded: Optional[int] = None
    bytes_total: Optional[int] = None
    speed: Optional[float] = None
    log_tail: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (InstallStatus.COMPLETE, InstallStatus.ERROR)


@dataclass
class ServerStatus:
    """Latest polled snapshot of a managed server."""

    status: ServerState = ServerState.OFFLINE
    is_online: bool = False
    players: int = 0
    max_players: int = 0
    map: str = ""
    mission: str = ""
    version: str = ""
    uptime: float = 0.0
    cpu: float = 0.0
    memory: float = 0.0
    ping: float = 0.0
    last_updated: Optional[datetime] = None
    restart_pending: bool = False
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["last_updated"] = _format_datetime(self.last_updated)
        return data


@dataclass
class Mod:
    """A mod installed on a managed server."""

    mod_id: str
    name: str = "unknown"
    version: str = ""
    load_order: int = 0
    enabled: bool = False
    dependencies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Mod":
        return cls(
            mod_id=str(data["mod_id"]),
            name=data.get("name", "unknown"),
            version=data.get("version", "") or "",
            load_order=int(data.get("load_order", 0)),
            enabled=bool(data.get("enabled", False)),
            dependencies=[str(dep) for dep in data.get("dependencies", [])],
        )


@dataclass
class WorkshopMod:
    """Catalog metadata for a downloadable mod."""

    workshop_id: str
    name: str = "unknown"
    version: str = ""
    dependencies: List[str] = field(default_factory=list)
    author: str = ""
    size: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkshopMod":
        return cls(
            workshop_id=str(data.get("workshop_id") or data["modId"]),
            name=data.get("name", "unknown"),
            version=data.get("version", "") or "",
            dependencies=[str(dep) for dep in data.get("dependencies", [])],
            author=data.get("author", "") or "",
            size=int(data.get("size", 0) or 0),
        )


@dataclass
class Player:
    """Entry in a live player roster."""

    name: str
    steam_id: Optional[str] = None
    joined_at: datetime = field(default_factory=datetime.now)
    ping: int = 0
    score: Optional[int] = None
    team: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["joined_at"] = _format_datetime(self.joined_at)
        return data


@dataclass
class ScheduledTask:
    """Operator-defined, cron-driven maintenance action."""

    name: str
    action: TaskAction
    cron: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enabled: bool = True
    payload: str = ""
    connection_id: Optional[str] = None
    warnings: List[int] = field(default_factory=list)
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["last_run"] = _format_datetime(self.last_run)
        data["next_run"] = _format_datetime(self.next_run)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledTask":
        return cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            name=data["name"],
            action=TaskAction(data["action"]),
            cron=data["cron"],
            enabled=bool(data.get("enabled", True)),
            payload=data.get("payload", "") or "",
            connection_id=data.get("connection_id"),
            warnings=[int(value) for value in data.get("warnings", [])],
            last_run=_parse_datetime(data.get("last_run")),
            next_run=_parse_datetime(data.get("next_run")),
        )


@dataclass
class CommandResult:
    """Outcome of a command run through an executor."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ProcessInfo:
    pid: int
    cpu: float = 0.0
    memory: float = 0.0
    uptime: float = 0.0

"""Registry for CLI subcommands."""

from .config_command import ConfigCommand
from .connections_command import ConnectionsCommand
from .lifecycle_command import InstallCommand, RestartCommand, StartCommand, StopCommand
from .mods_command import ModsCommand
from .rcon_command import RconCommand
from .scheduler_command import SchedulerCommand
from .status_command import LogsCommand, PlayersCommand, StatusCommand

COMMANDS = (
    ConnectionsCommand,
    InstallCommand,
    StartCommand,
    StopCommand,
    RestartCommand,
    StatusCommand,
    PlayersCommand,
    LogsCommand,
    RconCommand,
    ModsCommand,
    ConfigCommand,
    SchedulerCommand,
)

__all__ = [
    "COMMANDS",
    "ConfigCommand",
    "ConnectionsCommand",
    "InstallCommand",
    "LogsCommand",
    "ModsCommand",
    "PlayersCommand",
    "RconCommand",
    "RestartCommand",
    "SchedulerCommand",
    "StartCommand",
    "StatusCommand",
    "StopCommand",
]

"""Uniform command execution and file transfer for local and remote hosts."""

from typing import Optional

from reforger_ctrl.common.config import ControlSettings
from reforger_ctrl.core.executors.base import Executor, OutputStream, command_to_string
from reforger_ctrl.core.executors.local import LocalExecutor
from reforger_ctrl.core.executors.ssh import SSHExecutor
from reforger_ctrl.core.models import ConnectionType, ServerConnection

_EXECUTOR_FACTORIES = {
    ConnectionType.LOCAL: lambda connection, settings: LocalExecutor(),
    ConnectionType.REMOTE: lambda connection, settings: SSHExecutor(
        connection,
        connect_timeout=settings.ssh_connect_timeout,
        command_timeout=settings.ssh_command_timeout,
        retry_count=settings.ssh_retry_count,
        retry_delay=settings.ssh_retry_delay,
        max_retry_delay=settings.ssh_max_retry_delay,
        known_hosts=settings.ssh_known_hosts,
    ),
}


def create_executor(connection: ServerConnection, settings: Optional[ControlSettings] = None) -> Executor:
    """Build the executor variant matching ``connection.type``."""
    settings = settings or ControlSettings.from_env()
    return _EXECUTOR_FACTORIES[connection.type](connection, settings)


__all__ = [
    "Executor",
    "OutputStream",
    "LocalExecutor",
    "SSHExecutor",
    "command_to_string",
    "create_executor",
]

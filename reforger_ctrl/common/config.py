"""Environment-backed settings for reforger-ctrl.

Every tunable of the control subsystem (timeouts, intervals, retry counts and
the locations of the local record files) resolves from the environment with a
typed default, so the same code runs embedded in a web process or from the CLI.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .constants import (
    DEFAULT_CONNECTIONS_PATH,
    DEFAULT_MOD_DATABASE_DIR,
    DEFAULT_SERVER_CONFIG_DIR,
    DEFAULT_TASKS_PATH,
    DEFAULT_WORKSHOP_CATALOG_PATH,
)


def env_bool(key: str, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    value = (environ if environ is not None else os.environ).get(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(key: str, default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    value = (environ if environ is not None else os.environ).get(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(key: str, default: float, environ: Optional[Mapping[str, str]] = None) -> float:
    value = (environ if environ is not None else os.environ).get(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class ControlSettings:
    """Typed control-plane settings sourced from the environment."""

    poll_interval: float = 10.0
    startup_timeout: float = 120.0
    startup_check_interval: float = 2.0
    shutdown_grace_period: float = 30.0
    max_missed_polls: int = 3
    auto_restart_on_drift: bool = True
    query_timeout: float = 1.5
    rcon_connect_timeout: float = 5.0
    rcon_read_timeout: float = 5.0
    ssh_connect_timeout: float = 15.0
    ssh_command_timeout: float = 120.0
    ssh_retry_count: int = 3
    ssh_retry_delay: float = 1.0
    ssh_max_retry_delay: float = 30.0
    ssh_known_hosts: Optional[str] = None
    install_log_tail_lines: int = 20
    scheduler_tick_interval: float = 30.0
    connections_path: str = DEFAULT_CONNECTIONS_PATH
    mod_database_dir: str = DEFAULT_MOD_DATABASE_DIR
    tasks_path: str = DEFAULT_TASKS_PATH
    server_config_dir: str = DEFAULT_SERVER_CONFIG_DIR
    workshop_catalog_path: str = DEFAULT_WORKSHOP_CATALOG_PATH

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ControlSettings":
        env = environ if environ is not None else os.environ
        return cls(
            poll_interval=env_float("REFORGER_POLL_INTERVAL", 10.0, env),
            startup_timeout=env_float("REFORGER_STARTUP_TIMEOUT", 120.0, env),
            startup_check_interval=env_float("REFORGER_STARTUP_CHECK_INTERVAL", 2.0, env),
            shutdown_grace_period=env_float("REFORGER_SHUTDOWN_GRACE_PERIOD", 30.0, env),
            max_missed_polls=env_int("REFORGER_MAX_MISSED_POLLS", 3, env),
            auto_restart_on_drift=env_bool("REFORGER_AUTO_RESTART_ON_DRIFT", True, env),
            query_timeout=env_float("REFORGER_QUERY_TIMEOUT", 1.5, env),
            rcon_connect_timeout=env_float("REFORGER_RCON_CONNECT_TIMEOUT", 5.0, env),
            rcon_read_timeout=env_float("REFORGER_RCON_READ_TIMEOUT", 5.0, env),
            ssh_connect_timeout=env_float("REFORGER_SSH_CONNECT_TIMEOUT", 15.0, env),
            ssh_command_timeout=env_float("REFORGER_SSH_COMMAND_TIMEOUT", 120.0, env),
            ssh_retry_count=env_int("REFORGER_SSH_RETRY_COUNT", 3, env),
            ssh_retry_delay=env_float("REFORGER_SSH_RETRY_DELAY", 1.0, env),
            ssh_max_retry_delay=env_float("REFORGER_SSH_MAX_RETRY_DELAY", 30.0, env),
            ssh_known_hosts=env.get("REFORGER_SSH_KNOWN_HOSTS") or None,
            install_log_tail_lines=env_int("REFORGER_INSTALL_LOG_TAIL", 20, env),
            scheduler_tick_interval=env_float("REFORGER_SCHEDULER_TICK", 30.0, env),
            connections_path=env.get("REFORGER_CONNECTIONS_PATH", DEFAULT_CONNECTIONS_PATH),
            mod_database_dir=env.get("REFORGER_MOD_DATABASE_DIR", DEFAULT_MOD_DATABASE_DIR),
            tasks_path=env.get("REFORGER_TASKS_PATH", DEFAULT_TASKS_PATH),
            server_config_dir=env.get("REFORGER_SERVER_CONFIG_DIR", DEFAULT_SERVER_CONFIG_DIR),
            workshop_catalog_path=env.get("REFORGER_WORKSHOP_CATALOG_PATH", DEFAULT_WORKSHOP_CATALOG_PATH),
        )

    def mod_database_path(self, connection_id: str) -> Path:
        return Path(self.mod_database_dir) / f"{connection_id}.json"

    def server_config_path(self, connection_id: str) -> Path:
        return Path(self.server_config_dir) / f"{connection_id}.json"

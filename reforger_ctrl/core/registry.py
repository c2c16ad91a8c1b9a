"""Per-connection managers, keyed by connection id."""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Sequence

from reforger_ctrl.common.config import ControlSettings
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.manager import GameServerManager
from reforger_ctrl.core.models import Player, ServerConfig, ServerConnection, ServerState, ServerStatus
from reforger_ctrl.core.mods import ModDatabase, ModSyncPlan
from reforger_ctrl.core.server_logs import LogEntry
from reforger_ctrl.core.steamcmd import InstallStream
from reforger_ctrl.core.stores import ConnectionStore, ServerConfigStore
from reforger_ctrl.core.workshop import StaticWorkshopCatalog, WorkshopCatalog

ManagerFactory = Callable[[ServerConnection, ServerConfig], GameServerManager]


class ServerManagerRegistry:
    """Entry point for callers: every operation takes a connection id.

    A ``None`` id addresses the default connection. Managers are created
    lazily and live until ``remove_connection`` or ``shutdown``.
    """

    def __init__(self, connections: ConnectionStore, configs: ServerConfigStore,
                 settings: Optional[ControlSettings] = None, catalog: Optional[WorkshopCatalog] = None,
                 manager_factory: Optional[ManagerFactory] = None, recover: bool = True) -> None:
        self.connections = connections
        self.configs = configs
        self.settings = settings or ControlSettings.from_env()
        self.catalog = catalog
        self._manager_factory = manager_factory or self._default_factory
        self._recover = recover
        self._managers: Dict[str, GameServerManager] = {}
        self._lock = threading.Lock()
        self._log = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Optional[ControlSettings] = None) -> "ServerManagerRegistry":
        settings = settings or ControlSettings.from_env()
        return cls(
            ConnectionStore(settings.connections_path),
            ServerConfigStore(settings.server_config_dir),
            settings=settings,
            catalog=StaticWorkshopCatalog.from_file(settings.workshop_catalog_path),
        )

    def _default_factory(self, connection: ServerConnection, config: ServerConfig) -> GameServerManager:
        return GameServerManager(
            connection,
            config=config,
            settings=self.settings,
            mod_database=ModDatabase(self.settings.mod_database_path(connection.id)),
            catalog=self.catalog,
        )

    def manager(self, connection_id: Optional[str] = None) -> GameServerManager:
        connection = self.connections.require(connection_id)
        with self._lock:
            manager = self._managers.get(connection.id)
            if manager is None:
                manager = self._manager_factory(connection, self.configs.load(connection.id))
                self._managers[connection.id] = manager
                if self._recover:
                    manager.recover()
            return manager

    # -- connections -----------------------------------------------------

    def list_connections(self) -> List[ServerConnection]:
        return self.connections.list()

    def add_connection(self, connection: ServerConnection,
                       config: Optional[ServerConfig] = None) -> ServerConnection:
        if not self.connections.list():
            connection.is_default = True
        saved = self.connections.save(connection)
        if config is not None:
            self.configs.save(saved.id, config)
        self._log.info("Registered connection '%s'", saved.name)
        return saved

    def remove_connection(self, connection_id: str) -> bool:
        connection = self.connections.require(connection_id)
        with self._lock:
            manager = self._managers.pop(connection.id, None)
        if manager is not None:
            manager.close()
        removed = self.connections.delete(connection.id)
        self.configs.delete(connection.id)
        if connection.is_default:
            fallback = self.connections.get_default()
            if fallback is not None:
                self.connections.set_default(fallback.id)
        return removed

    def set_default(self, connection_id: str) -> ServerConnection:
        return self.connections.set_default(self.connections.require(connection_id).id)

    def _persist_status(self, manager: GameServerManager) -> None:
        self.connections.save(manager.connection)

    # -- operations ------------------------------------------------------

    def install(self, connection_id: Optional[str] = None,
                mod_ids: Optional[Sequence[str]] = None) -> InstallStream:
        return self.manager(connection_id).install(mod_ids)

    def start(self, connection_id: Optional[str] = None) -> ServerState:
        manager = self.manager(connection_id)
        try:
            return manager.start()
        finally:
            self._persist_status(manager)

    def stop(self, connection_id: Optional[str] = None) -> ServerState:
        manager = self.manager(connection_id)
        try:
            return manager.stop()
        finally:
            self._persist_status(manager)

    def restart(self, connection_id: Optional[str] = None) -> ServerState:
        manager = self.manager(connection_id)
        try:
            return manager.restart()
        finally:
            self._persist_status(manager)

    def update_config(self, connection_id: Optional[str], config: ServerConfig) -> bool:
        manager = self.manager(connection_id)
        needs_restart = manager.update_config(config)
        self.configs.save(manager.connection.id, config)
        return needs_restart

    def get_config(self, connection_id: Optional[str] = None) -> ServerConfig:
        return self.manager(connection_id).config

    def get_status(self, connection_id: Optional[str] = None) -> ServerStatus:
        return self.manager(connection_id).get_status()

    def poll(self, connection_id: Optional[str] = None) -> ServerStatus:
        return self.manager(connection_id).poll_once()

    def list_players(self, connection_id: Optional[str] = None) -> List[Player]:
        return self.manager(connection_id).list_players()

    def send_rcon_command(self, connection_id: Optional[str], command: str) -> str:
        return self.manager(connection_id).send_rcon_command(command)

    def broadcast(self, connection_id: Optional[str], message: str) -> str:
        return self.manager(connection_id).broadcast(message)

    def kick(self, connection_id: Optional[str], identifier: str, reason: str = "") -> str:
        return self.manager(connection_id).kick(identifier, reason)

    def ban(self, connection_id: Optional[str], identifier: str, reason: str = "", duration: int = 0) -> str:
        return self.manager(connection_id).ban(identifier, reason, duration)

    def tail_logs(self, connection_id: Optional[str] = None, lines: int = 100) -> List[LogEntry]:
        return self.manager(connection_id).tail_logs(lines)

    def list_log_dirs(self, connection_id: Optional[str] = None) -> List[str]:
        return self.manager(connection_id).list_log_dirs()

    def list_log_files(self, connection_id: Optional[str], log_dir: str) -> List[str]:
        return self.manager(connection_id).list_log_files(log_dir)

    def read_log_file(self, connection_id: Optional[str], log_dir: str, file_name: str,
                      lines: int = 500) -> List[LogEntry]:
        return self.manager(connection_id).read_log_file(log_dir, file_name, lines)

    def set_mod_list(self, connection_id: Optional[str], mod_ids: Sequence[str]) -> ModSyncPlan:
        return self.manager(connection_id).set_mod_list(mod_ids)

    def start_polling(self) -> None:
        for connection in self.connections.list():
            self.manager(connection.id).start_polling()

    def shutdown(self) -> None:
        """Close every manager; managed servers keep running."""
        with self._lock:
            managers = list(self._managers.values())
            self._managers.clear()
        for manager in managers:
            manager.close()
            self.connections.save(manager.connection)
        self._log.debug("Registry shut down (%d managers)", len(managers))

"""
JSON-file stores for the records the control subsystem consumes.

Connections, scheduled tasks and desired server configs each live in their
own file so the CLI can run without an external persistence layer.
"""

import json
from collections.abc import Mapping
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from reforger_ctrl.common.errors import CorruptedDatabaseError, UnknownConnectionError
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.models import ScheduledTask, ServerConfig, ServerConnection

RecordT = TypeVar("RecordT")


def _read_json(path: Path) -> Any:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise CorruptedDatabaseError(
            f"{path} is corrupted and cannot be parsed: {e}. Please fix or delete this file manually."
        ) from e


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + '.tmp')
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
    tmp_path.replace(path)


class _JsonRecordStore(Generic[RecordT]):
    """A JSON array of records keyed by their ``id`` attribute."""

    def __init__(self, path, from_dict: Callable[[Dict[str, Any]], RecordT]):
        self.path = Path(path)
        self._from_dict = from_dict
        self._records: Dict[str, RecordT] = {}
        self._lock = RLock()
        self._log = get_logger(__name__)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            self._records = {}
            return
        data = _read_json(self.path)
        if not isinstance(data, list):
            raise CorruptedDatabaseError(f"{self.path} must contain a JSON array of objects.")
        records: Dict[str, RecordT] = {}
        for index, entry in enumerate(data):
            if not isinstance(entry, Mapping):
                raise CorruptedDatabaseError(f"{self.path} entry at index {index} must be a JSON object.")
            try:
                record = self._from_dict(dict(entry))
            except (TypeError, KeyError, ValueError) as e:
                raise CorruptedDatabaseError(f"{self.path} entry at index {index} is invalid: {e}.") from e
            records[record.id] = record
        self._records = records
        self._log.debug("Loaded %d records from %s", len(records), self.path)

    def _persist(self) -> None:
        _write_json(self.path, [record.to_dict() for record in self._records.values()])

    def list(self) -> List[RecordT]:
        with self._lock:
            return list(self._records.values())

    def get(self, record_id: str) -> Optional[RecordT]:
        with self._lock:
            return self._records.get(record_id)

    def save(self, record: RecordT) -> RecordT:
        with self._lock:
            self._records[record.id] = record
            self._persist()
            return record

    def delete(self, record_id: str) -> bool:
        with self._lock:
            if self._records.pop(record_id, None) is None:
                return False
            self._persist()
            return True


class ConnectionStore(_JsonRecordStore[ServerConnection]):
    """Registered connections; at most one carries ``is_default``."""

    def __init__(self, path):
        super().__init__(path, ServerConnection.from_dict)

    def _load(self) -> None:
        super()._load()
        defaults = [record for record in self._records.values() if record.is_default]
        # Files edited by hand may carry several defaults; the first one wins.
        for extra in defaults[1:]:
            extra.is_default = False

    def save(self, record: ServerConnection) -> ServerConnection:
        with self._lock:
            if record.is_default:
                for other in self._records.values():
                    if other.id != record.id:
                        other.is_default = False
            self._records[record.id] = record
            self._persist()
            self._log.info("Saved connection '%s' (%s)", record.name, record.id)
            return record

    def set_default(self, connection_id: str) -> ServerConnection:
        with self._lock:
            record = self.require(connection_id)
            record.is_default = True
            return self.save(record)

    def get_default(self) -> Optional[ServerConnection]:
        with self._lock:
            for record in self._records.values():
                if record.is_default:
                    return record
            return next(iter(self._records.values()), None)

    def require(self, connection_id: Optional[str]) -> ServerConnection:
        """
        Resolve a connection id (or name); ``None`` means the default.

        Raises:
            UnknownConnectionError: If nothing matches
        """
        with self._lock:
            if connection_id is None:
                record = self.get_default()
                if record is None:
                    raise UnknownConnectionError("No server connections are registered")
                return record
            record = self._records.get(connection_id)
            if record is None:
                record = next((r for r in self._records.values() if r.name == connection_id), None)
            if record is None:
                raise UnknownConnectionError(f"Unknown server connection: {connection_id}")
            return record


class TaskStore(_JsonRecordStore[ScheduledTask]):
    def __init__(self, path):
        super().__init__(path, ScheduledTask.from_dict)

    def for_connection(self, connection_id: str) -> List[ScheduledTask]:
        return [task for task in self.list() if task.connection_id == connection_id]


class ServerConfigStore:
    """Desired ``ServerConfig`` per connection, one JSON file each."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self._lock = RLock()

    def path_for(self, connection_id: str) -> Path:
        return self.directory / f"{connection_id}.json"

    def load(self, connection_id: str) -> ServerConfig:
        path = self.path_for(connection_id)
        if not path.exists():
            return ServerConfig()
        data = _read_json(path)
        if not isinstance(data, Mapping):
            raise CorruptedDatabaseError(f"{path} must contain a JSON object.")
        try:
            return ServerConfig.from_dict(dict(data))
        except (TypeError, ValueError) as e:
            raise CorruptedDatabaseError(f"{path} is invalid: {e}.") from e

    def save(self, connection_id: str, config: ServerConfig) -> None:
        with self._lock:
            _write_json(self.path_for(connection_id), config.to_dict())

    def delete(self, connection_id: str) -> bool:
        path = self.path_for(connection_id)
        if not path.exists():
            return False
        path.unlink()
        return True

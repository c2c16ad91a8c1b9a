"""Read-only workshop metadata lookups."""

import json
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol, Union

from reforger_ctrl.common.errors import CorruptedDatabaseError
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.models import WorkshopMod


class WorkshopCatalog(Protocol):
    """Anything able to resolve a workshop id to its metadata."""

    def get(self, workshop_id: str) -> Optional[WorkshopMod]:
        ...


class StaticWorkshopCatalog:
    """In-memory catalog, optionally loaded from a JSON file.

    The file holds either a list of mod objects or an object keyed by id.
    A missing file yields an empty catalog.
    """

    def __init__(self, mods: Iterable[WorkshopMod] = ()) -> None:
        self._mods: Dict[str, WorkshopMod] = {mod.workshop_id: mod for mod in mods}

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticWorkshopCatalog":
        path = Path(path)
        log = get_logger(__name__)
        if not path.exists():
            log.debug("No workshop catalog at %s", path)
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CorruptedDatabaseError(f"Workshop catalog {path} cannot be parsed: {exc}") from exc
        if isinstance(data, dict):
            entries = [dict(value, workshop_id=key) for key, value in data.items()]
        elif isinstance(data, list):
            entries = data
        else:
            raise CorruptedDatabaseError(f"Workshop catalog {path} must be a JSON list or object")
        try:
            mods = [WorkshopMod.from_dict(entry) for entry in entries]
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptedDatabaseError(f"Workshop catalog {path} has an invalid entry: {exc}") from exc
        log.debug("Loaded %d workshop entries from %s", len(mods), path)
        return cls(mods)

    def add(self, mod: WorkshopMod) -> None:
        self._mods[mod.workshop_id] = mod

    def get(self, workshop_id: str) -> Optional[WorkshopMod]:
        return self._mods.get(str(workshop_id))

    def __len__(self) -> int:
        return len(self._mods)

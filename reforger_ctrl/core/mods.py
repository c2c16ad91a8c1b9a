"""
Mod management for Reforger Control.

Handles:
* Resolving the load order from declared dependencies (cycles are rejected)
* Planning a sync of the installed mods against a desired mod list
* Persisting installed mod records to a per-connection JSON file
"""

import heapq
import json
from collections.abc import Mapping as MappingABC
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from reforger_ctrl.common.errors import CorruptedDatabaseError, DependencyCycleError
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.models import Mod
from reforger_ctrl.core.workshop import WorkshopCatalog


def _cycle_members(remaining: Set[str], dependencies: Mapping[str, Sequence[str]]) -> Set[str]:
    """Strip nodes that merely depend on a cycle, leaving the cycle itself."""
    members = set(remaining)
    while True:
        depended_on = {dep for mod_id in members for dep in dependencies.get(mod_id, ()) if dep in members}
        pruned = members & depended_on
        if pruned == members:
            return members
        members = pruned


def resolve_load_order(mod_ids: Sequence[str], dependencies: Mapping[str, Sequence[str]]) -> List[str]:
    """
    Order mods so each one comes after all of its dependencies.

    Kahn's algorithm; among mods that are ready at the same time the requested
    order wins. Dependencies outside ``mod_ids`` are ignored.

    Raises:
        DependencyCycleError: If the dependencies contain a cycle
    """
    ordered_ids = list(dict.fromkeys(str(mod_id) for mod_id in mod_ids))
    position = {mod_id: index for index, mod_id in enumerate(ordered_ids)}
    dependents: Dict[str, List[str]] = {mod_id: [] for mod_id in ordered_ids}
    in_degree = {mod_id: 0 for mod_id in ordered_ids}

    for mod_id in ordered_ids:
        for dep in dict.fromkeys(str(d) for d in dependencies.get(mod_id, ())):
            if dep in position:
                dependents[dep].append(mod_id)
                in_degree[mod_id] += 1

    ready = [(position[mod_id], mod_id) for mod_id in ordered_ids if in_degree[mod_id] == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        _, mod_id = heapq.heappop(ready)
        order.append(mod_id)
        for dependent in dependents[mod_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(order) != len(ordered_ids):
        remaining = set(ordered_ids) - set(order)
        raise DependencyCycleError(_cycle_members(remaining, dependencies))
    return order


@dataclass
class ModSyncPlan:
    """Outcome of comparing a desired mod list with what is installed."""

    load_order: List[str] = field(default_factory=list)
    to_install: List[str] = field(default_factory=list)
    to_disable: List[str] = field(default_factory=list)
    added_dependencies: List[str] = field(default_factory=list)
    mods: Dict[str, Mod] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "load_order": list(self.load_order),
            "to_install": list(self.to_install),
            "to_disable": list(self.to_disable),
            "added_dependencies": list(self.added_dependencies),
        }


def plan_mod_sync(desired_ids: Sequence[str], installed: Iterable[Mod],
                  catalog: Optional[WorkshopCatalog] = None) -> ModSyncPlan:
    """
    Plan the mod changes needed before the next start.

    Missing dependencies are pulled in from the catalog, mods not installed yet
    are queued for install and installed mods that are no longer wanted are
    disabled (never deleted).

    Raises:
        DependencyCycleError: If the expanded list has a dependency cycle
    """
    installed_by_id = {mod.mod_id: mod for mod in installed}
    requested = list(dict.fromkeys(str(mod_id) for mod_id in desired_ids))

    dependencies: Dict[str, List[str]] = {}
    metadata: Dict[str, Mod] = {}
    expanded: List[str] = []
    seen: Set[str] = set()
    queue = list(requested)
    while queue:
        mod_id = queue.pop(0)
        if mod_id in seen:
            continue
        seen.add(mod_id)
        expanded.append(mod_id)

        entry = catalog.get(mod_id) if catalog is not None else None
        record = installed_by_id.get(mod_id)
        if entry is not None:
            deps = [str(dep) for dep in entry.dependencies]
            metadata[mod_id] = Mod(mod_id=mod_id, name=entry.name, version=entry.version, dependencies=deps)
        elif record is not None:
            deps = list(record.dependencies)
            metadata[mod_id] = Mod(mod_id=mod_id, name=record.name, version=record.version, dependencies=deps)
        else:
            deps = []
            metadata[mod_id] = Mod(mod_id=mod_id)
        dependencies[mod_id] = deps
        queue.extend(dep for dep in deps if dep not in seen)

    load_order = resolve_load_order(expanded, dependencies)
    for index, mod_id in enumerate(load_order):
        metadata[mod_id].load_order = index
        metadata[mod_id].enabled = True

    wanted = set(load_order)
    return ModSyncPlan(
        load_order=load_order,
        to_install=[mod_id for mod_id in load_order if mod_id not in installed_by_id],
        to_disable=[mod.mod_id for mod in installed_by_id.values() if mod.mod_id not in wanted and mod.enabled],
        added_dependencies=[mod_id for mod_id in expanded if mod_id not in set(requested)],
        mods={mod_id: metadata[mod_id] for mod_id in load_order},
    )


class ModDatabase:
    """Installed mods of one managed server, persisted as JSON.

    The file holds ``{"mods": [...], "pending_installs": [...]}``; a bare list
    of mod objects is accepted as well.
    """

    def __init__(self, database_path):
        """
        Initialize the mod database.

        Args:
            database_path: Path to the mod database JSON file
        """
        self.database_path = Path(database_path)
        self.mods: List[Mod] = []
        self.pending_installs: List[str] = []
        self._lock = RLock()
        self._log = get_logger(__name__)
        self._load_database()

    def _load_database(self) -> None:
        if not self.database_path.exists():
            self.mods = []
            self.pending_installs = []
            return
        try:
            with open(self.database_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CorruptedDatabaseError(
                f"{self.database_path} is corrupted and cannot be parsed: {e}. Please delete this file manually."
            ) from e

        if isinstance(data, list):
            entries, pending = data, []
        elif isinstance(data, MappingABC):
            entries, pending = data.get('mods', []), data.get('pending_installs', [])
        else:
            raise CorruptedDatabaseError(f"{self.database_path} must contain a JSON object or array.")

        mods: List[Mod] = []
        for index, mod_data in enumerate(entries):
            if not isinstance(mod_data, MappingABC):
                raise CorruptedDatabaseError(
                    f"{self.database_path} entry at index {index} must be a JSON object."
                )
            try:
                mods.append(Mod.from_dict(dict(mod_data)))
            except (TypeError, KeyError, ValueError) as e:
                raise CorruptedDatabaseError(
                    f"{self.database_path} entry at index {index} is invalid: {e}."
                ) from e
        self.mods = mods
        self.pending_installs = [str(mod_id) for mod_id in pending]
        self._log.debug("Loaded %d mods", len(self.mods))

    def _write_database(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            'mods': [mod.to_dict() for mod in self.mods],
            'pending_installs': list(self.pending_installs),
        }
        with open(self.database_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        self._log.debug("Persisted %d mods", len(self.mods))

    def get_mod(self, mod_id: str) -> Optional[Mod]:
        for mod in self.mods:
            if mod.mod_id == mod_id:
                return mod
        return None

    def get_all_mods(self) -> List[Mod]:
        return sorted(self.mods, key=lambda mod: mod.load_order)

    def get_enabled_mods(self) -> List[Mod]:
        """Enabled mods in load order."""
        return [mod for mod in self.get_all_mods() if mod.enabled]

    def get_installed_mods(self) -> List[Mod]:
        pending = set(self.pending_installs)
        return [mod for mod in self.mods if mod.mod_id not in pending]

    def enable_mod(self, mod_id: str) -> bool:
        with self._lock:
            mod = self.get_mod(mod_id)
            if mod is None:
                return False
            if not mod.enabled:
                mod.enabled = True
                self._write_database()
                self._log.info("Enabled mod %s", mod_id)
            return True

    def disable_mod(self, mod_id: str) -> bool:
        """
        Disable a mod by ID.

        Returns:
            True if mod was found and disabled, False otherwise
        """
        with self._lock:
            mod = self.get_mod(mod_id)
            if mod is None:
                return False
            if mod.enabled:
                mod.enabled = False
                self._write_database()
                self._log.info("Disabled mod %s", mod_id)
            else:
                self._log.debug("Mod %s already disabled", mod_id)
            return True

    def remove_mod(self, mod_id: str) -> bool:
        with self._lock:
            before = len(self.mods)
            self.mods = [m for m in self.mods if m.mod_id != mod_id]
            self.pending_installs = [p for p in self.pending_installs if p != mod_id]
            if len(self.mods) != before:
                self._write_database()
                self._log.info("Removed mod %s", mod_id)
                return True
            return False

    def apply_plan(self, plan: ModSyncPlan) -> None:
        """Record a sync plan: wanted mods enabled in order, the rest disabled."""
        with self._lock:
            by_id = {mod.mod_id: mod for mod in self.mods}
            for mod_id in plan.load_order:
                planned = plan.mods[mod_id]
                existing = by_id.get(mod_id)
                if existing is None:
                    by_id[mod_id] = Mod.from_dict(planned.to_dict())
                    continue
                existing.enabled = True
                existing.load_order = planned.load_order
                existing.dependencies = list(planned.dependencies)
                if planned.name != "unknown":
                    existing.name = planned.name
                if planned.version:
                    existing.version = planned.version
            offset = len(plan.load_order)
            for index, mod_id in enumerate(plan.to_disable):
                mod = by_id.get(mod_id)
                if mod is None:
                    continue
                mod.enabled = False
                mod.load_order = offset + index
            self.mods = list(by_id.values())
            wanted = set(plan.load_order)
            still_pending = [p for p in self.pending_installs if p in wanted]
            self.pending_installs = list(dict.fromkeys(still_pending + plan.to_install))
            self._write_database()
            self._log.info(
                "Applied mod plan: %d in load order, %d queued for install, %d disabled",
                len(plan.load_order), len(plan.to_install), len(plan.to_disable),
            )

    def mark_installed(self, mod_ids: Iterable[str]) -> None:
        with self._lock:
            done = {str(mod_id) for mod_id in mod_ids}
            if not done & set(self.pending_installs):
                return
            self.pending_installs = [p for p in self.pending_installs if p not in done]
            self._write_database()

from __future__ import annotations

import json

import pytest

from reforger_ctrl.common.errors import CorruptedDatabaseError, DependencyCycleError
from reforger_ctrl.core.models import Mod, WorkshopMod
from reforger_ctrl.core.mods import ModDatabase, plan_mod_sync, resolve_load_order
from reforger_ctrl.core.workshop import StaticWorkshopCatalog


def catalog(**deps) -> StaticWorkshopCatalog:
    return StaticWorkshopCatalog(
        WorkshopMod(workshop_id=mod_id, name=f"Mod {mod_id}", version="1.0", dependencies=list(requires))
        for mod_id, requires in deps.items()
    )


def test_load_order_puts_dependencies_first_and_keeps_request_order():
    order = resolve_load_order(["A", "X", "B"], {"A": ["B"], "X": []})
    assert order == ["X", "B", "A"]
    assert resolve_load_order(["C", "D"], {}) == ["C", "D"]


def test_cycle_is_rejected_with_its_members():
    with pytest.raises(DependencyCycleError) as excinfo:
        resolve_load_order(["A", "B", "C", "D"], {"A": ["B"], "B": ["C"], "C": ["A"], "D": ["A"]})
    assert excinfo.value.members == ["A", "B", "C"]


def test_plan_pulls_in_missing_dependencies():
    plan = plan_mod_sync(["A"], [], catalog(A=["B"], B=[]))
    assert plan.load_order == ["B", "A"]
    assert plan.to_install == ["B", "A"]
    assert plan.added_dependencies == ["B"]
    assert plan.mods["A"].enabled
    assert plan.mods["A"].load_order == 1
    assert plan.mods["B"].name == "Mod B"


def test_plan_disables_unwanted_mods_instead_of_removing_them():
    installed = [Mod(mod_id="OLD", enabled=True), Mod(mod_id="A", name="A", enabled=False)]
    plan = plan_mod_sync(["A"], installed)
    assert plan.to_disable == ["OLD"]
    assert plan.to_install == []
    assert plan.load_order == ["A"]


def test_database_reads_legacy_list_and_applies_plan(tmp_path):
    path = tmp_path / "mods.json"
    path.write_text(json.dumps([{"mod_id": "X", "name": "Legacy", "enabled": True}]), encoding="utf-8")
    database = ModDatabase(path)
    assert [m.mod_id for m in database.get_enabled_mods()] == ["X"]

    plan = plan_mod_sync(["A"], database.get_all_mods(), catalog(A=["B"], B=[]))
    database.apply_plan(plan)

    reloaded = ModDatabase(path)
    assert [m.mod_id for m in reloaded.get_enabled_mods()] == ["B", "A"]
    assert reloaded.get_mod("X").enabled is False
    assert reloaded.pending_installs == ["B", "A"]
    assert reloaded.get_installed_mods() == [reloaded.get_mod("X")]

    reloaded.mark_installed(["B", "A"])
    assert ModDatabase(path).pending_installs == []


def test_database_toggle_and_remove(tmp_path):
    database = ModDatabase(tmp_path / "mods.json")
    database.apply_plan(plan_mod_sync(["A"], []))

    assert database.disable_mod("A") is True
    assert database.get_enabled_mods() == []
    assert database.enable_mod("A") is True
    assert database.enable_mod("missing") is False
    assert database.remove_mod("A") is True
    assert database.remove_mod("A") is False
    assert ModDatabase(tmp_path / "mods.json").get_all_mods() == []


def test_corrupted_database_is_reported(tmp_path):
    path = tmp_path / "mods.json"
    path.write_text("not json", encoding="utf-8")
    with pytest.raises(CorruptedDatabaseError):
        ModDatabase(path)

    path.write_text(json.dumps({"mods": ["A"]}), encoding="utf-8")
    with pytest.raises(CorruptedDatabaseError):
        ModDatabase(path)


def test_workshop_catalog_file_formats(tmp_path):
    keyed = tmp_path / "keyed.json"
    keyed.write_text(json.dumps({"A": {"name": "Alpha", "dependencies": ["B"]}}), encoding="utf-8")
    entry = StaticWorkshopCatalog.from_file(keyed).get("A")
    assert entry.name == "Alpha"
    assert entry.dependencies == ["B"]

    listed = tmp_path / "listed.json"
    listed.write_text(json.dumps([{"modId": "C", "name": "Charlie"}]), encoding="utf-8")
    assert StaticWorkshopCatalog.from_file(listed).get("C").name == "Charlie"

    assert len(StaticWorkshopCatalog.from_file(tmp_path / "missing.json")) == 0

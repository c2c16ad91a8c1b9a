from __future__ import annotations

from datetime import datetime

import pytest

from reforger_ctrl.common.errors import InvalidStateTransitionError
from reforger_ctrl.core.lifecycle import LifecycleAction, StateMachine
from reforger_ctrl.core.models import ServerState
from reforger_ctrl.core.server_logs import (
    LOG_DIR_PREFIX,
    check_log_name,
    list_dirs_command,
    list_files_command,
    parse_listing,
    parse_log_line,
    parse_log_lines,
    tail_command,
)


def test_normal_start_stop_cycle():
    machine = StateMachine()
    assert machine.apply(LifecycleAction.START) == ServerState.STARTING
    assert machine.apply(LifecycleAction.CONFIRM) == ServerState.ONLINE
    assert machine.apply(LifecycleAction.STOP) == ServerState.STOPPING
    assert machine.apply(LifecycleAction.STOPPED) == ServerState.OFFLINE


def test_illegal_action_leaves_state_unchanged():
    machine = StateMachine()
    with pytest.raises(InvalidStateTransitionError) as excinfo:
        machine.apply(LifecycleAction.STOP)
    assert excinfo.value.state == "offline"
    assert machine.state == ServerState.OFFLINE
    assert not machine.can_apply(LifecycleAction.CONFIRM)


def test_failure_is_accepted_from_any_state_and_allows_restart():
    machine = StateMachine(ServerState.STOPPING)
    assert machine.apply(LifecycleAction.FAIL) == ServerState.ERROR
    assert machine.can_apply(LifecycleAction.START)
    assert machine.apply(LifecycleAction.RESET) == ServerState.OFFLINE


def test_update_returns_to_prior_state():
    machine = StateMachine(ServerState.ONLINE)
    machine.apply(LifecycleAction.UPDATE)
    assert machine.state == ServerState.UPDATING
    assert machine.prior_state == ServerState.ONLINE
    assert not machine.can_apply(LifecycleAction.START)
    assert machine.apply(LifecycleAction.UPDATE_DONE) == ServerState.ONLINE
    assert machine.prior_state is None

    with pytest.raises(InvalidStateTransitionError):
        machine.apply(LifecycleAction.UPDATE_DONE)


def test_engine_log_lines_get_levels_from_markers():
    now = datetime(2024, 5, 1, 18, 0, 0)
    error = parse_log_line("18:17:35.327  BACKEND   (E): JSON is invalid!", now=now)
    assert error.level == "error"
    assert error.category == "BACKEND"
    assert error.message == "[BACKEND] JSON is invalid!"
    assert error.timestamp == now

    assert parse_log_line("18:17:36.001 DEFAULT      : Loading world", now=now).level == "debug"
    assert parse_log_line("random text", now=now).level == "info"


def test_dated_log_lines_keep_their_timestamp():
    entries = parse_log_lines("[2024-05-01 18:17:35] [WARNING] Low FPS\n\n")
    assert len(entries) == 1
    assert entries[0].level == "warning"
    assert entries[0].timestamp == datetime(2024, 5, 1, 18, 17, 35)


def test_tail_command_per_platform():
    assert tail_command("/srv/reforger/console.log", 50) == "tail -n 50 /srv/reforger/console.log"
    assert tail_command("/srv/my server/console.log", 0) == "tail -n 1 '/srv/my server/console.log'"
    assert "-Tail 10" in tail_command("C:\\reforger\\console.log", 10, windows=True)


def test_log_names_must_stay_inside_the_logs_directory():
    assert check_log_name("logs_2024-05-01_18-17-35") == "logs_2024-05-01_18-17-35"
    for bad in ("", "..", "../etc", "logs/console.log", "logs\\console.log"):
        with pytest.raises(ValueError):
            check_log_name(bad)


def test_log_listing_commands_and_parsing():
    assert list_dirs_command("/srv/reforger/profile/logs") == "cd /srv/reforger/profile/logs && ls -1td logs_*"
    assert list_files_command("/srv/my server/logs_1") == "ls -1 '/srv/my server/logs_1'"
    assert "-Directory" in list_dirs_command("C:\\reforger\\profile\\logs", windows=True)

    listing = "logs_2024-05-02_10-00-00\nlogs_2024-05-01_18-17-35/\nbackup\n\n"
    assert parse_listing(listing, prefix=LOG_DIR_PREFIX) == ["logs_2024-05-02_10-00-00", "logs_2024-05-01_18-17-35"]
    assert parse_listing("console.log\nerror.log\ncrash.dmp\n", suffix=".log") == ["console.log", "error.log"]

from __future__ import annotations

import logging

import pytest

from reforger_ctrl.common.logging_config import configure_logging, get_logger


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    ssh_level = logging.getLogger("asyncssh").level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("asyncssh").setLevel(ssh_level)


def test_levels_come_from_environment(monkeypatch, restore_logging):
    monkeypatch.setenv("REFORGER_LOG_LEVEL", "debug")
    monkeypatch.setenv("REFORGER_SSH_LOG_LEVEL", "error")
    configure_logging(force=True)
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("asyncssh").level == logging.ERROR


def test_explicit_level_wins_and_unknown_names_fall_back(monkeypatch, restore_logging):
    monkeypatch.setenv("REFORGER_LOG_LEVEL", "debug")
    configure_logging("warning", force=True)
    assert logging.getLogger().level == logging.WARNING

    configure_logging("chatty", force=True)
    assert logging.getLogger().level == logging.INFO
    assert logging.getLogger("asyncssh").level == logging.WARNING


def test_get_logger_defaults_to_package_logger():
    assert get_logger().name == "reforger_ctrl"
    assert get_logger("reforger_ctrl.core").name == "reforger_ctrl.core"

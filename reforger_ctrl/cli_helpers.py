"""Shared CLI helpers for reforger-ctrl commands."""

import json
import sys
from contextlib import contextmanager
from dataclasses import fields
from typing import Any, Iterator, Optional

from reforger_ctrl.common.config import ControlSettings
from reforger_ctrl.common.constants import ExitCodes
from reforger_ctrl.common.errors import (
    CommandError,
    ConfigValidationError,
    CorruptedDatabaseError,
    DependencyCycleError,
    ExecutorConnectionError,
    InstallFailedError,
    InvalidStateTransitionError,
    RconAuthenticationError,
    RconConnectionError,
    RconPacketError,
    RconPermissionError,
    RconTimeoutError,
    RconUnavailableError,
    UnknownConnectionError,
)
from reforger_ctrl.core.models import RconPermission, ServerConfig
from reforger_ctrl.core.registry import ServerManagerRegistry


def exit_with_error(message: str, exit_code: int) -> None:
    """Print an error message and exit with the specified code."""
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(exit_code)


def map_exception_to_exit_code(exc: BaseException) -> Optional[int]:
    """Translate known exceptions to reforger-ctrl exit codes."""
    if isinstance(exc, RconUnavailableError) and isinstance(exc.__cause__, RconAuthenticationError):
        return ExitCodes.RCON_PASSWORD_WRONG
    if isinstance(exc, RconAuthenticationError):
        return ExitCodes.RCON_PASSWORD_WRONG
    if isinstance(exc, (RconConnectionError, RconUnavailableError)):
        return ExitCodes.RCON_CONNECTION_FAILED
    if isinstance(exc, RconTimeoutError):
        return ExitCodes.RCON_TIMEOUT
    if isinstance(exc, RconPacketError):
        return ExitCodes.RCON_PACKET_ERROR
    if isinstance(exc, RconPermissionError):
        return ExitCodes.RCON_COMMAND_EXECUTION_FAILED
    if isinstance(exc, CorruptedDatabaseError):
        return ExitCodes.CORRUPTED_DATABASE
    if isinstance(exc, UnknownConnectionError):
        return ExitCodes.UNKNOWN_CONNECTION
    if isinstance(exc, InvalidStateTransitionError):
        return ExitCodes.INVALID_STATE
    if isinstance(exc, ExecutorConnectionError):
        return ExitCodes.HOST_CONNECTION_FAILED
    if isinstance(exc, CommandError):
        return ExitCodes.COMMAND_FAILED
    if isinstance(exc, InstallFailedError):
        return ExitCodes.INSTALL_FAILED
    if isinstance(exc, DependencyCycleError):
        return ExitCodes.DEPENDENCY_CYCLE
    if isinstance(exc, (ConfigValidationError, ValueError)):
        return ExitCodes.INVALID_CONFIG
    return None


def fail(exc: BaseException, default_code: int = ExitCodes.COMMAND_FAILED, prefix: str = "") -> None:
    code = map_exception_to_exit_code(exc)
    exit_with_error(f"{prefix}{exc}", default_code if code is None else code)


def add_connection_argument(parser) -> None:
    parser.add_argument('-c', '--connection', dest='connection', default=None,
                        help='Connection id or name (defaults to the default connection)')


def add_json_argument(parser) -> None:
    parser.add_argument('--json', dest='as_json', action='store_true', help='Print machine readable JSON')


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def get_settings(args) -> ControlSettings:
    settings = getattr(args, 'settings', None)
    if not isinstance(settings, ControlSettings):
        settings = ControlSettings.from_env()
    return settings


@contextmanager
def open_registry(args) -> Iterator[ServerManagerRegistry]:
    """Registry for one CLI invocation; ``args.registry`` wins when present."""
    registry = getattr(args, 'registry', None)
    if isinstance(registry, ServerManagerRegistry):
        yield registry
        return
    registry = ServerManagerRegistry.from_settings(get_settings(args))
    try:
        yield registry
    finally:
        registry.shutdown()


def coerce_config_value(config: ServerConfig, key: str, raw: str) -> Any:
    """Convert a ``key=value`` string to the type of the matching config field."""
    known = {f.name for f in fields(ServerConfig)}
    if key not in known:
        raise ValueError(f"Unknown config field '{key}'")
    current = getattr(config, key)
    if isinstance(current, RconPermission):
        return RconPermission(raw.strip().lower())
    if isinstance(current, bool):
        value = raw.strip().lower()
        if value in {"1", "true", "yes", "on"}:
            return True
        if value in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"'{key}' expects a boolean, got '{raw}'")
    if isinstance(current, int) or (current is None and raw.strip().lstrip('-').isdigit()):
        try:
            return int(raw)
        except ValueError as exc:
            raise ValueError(f"'{key}' expects an integer, got '{raw}'") from exc
    if isinstance(current, list):
        return [part.strip() for part in raw.split(',') if part.strip()]
    if isinstance(current, dict):
        value = json.loads(raw) if raw.strip() else {}
        if not isinstance(value, dict):
            raise ValueError(f"'{key}' expects a JSON object")
        return value
    if current is None and raw.strip().lower() in {"", "none", "null"}:
        return None
    return raw

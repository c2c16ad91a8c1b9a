"""
Custom exception classes for Reforger Control.
"""

from typing import Iterable, List, Optional, Sequence


class ReforgerCtrlError(Exception):
    """Base exception class for Reforger Control errors."""
    pass


class ExecutorConnectionError(ReforgerCtrlError):
    """Raised when the transport to a managed host is lost or unreachable."""
    pass


class CommandError(ReforgerCtrlError):
    """Raised when a command on the managed host exits with a non-zero code."""

    def __init__(self, command: str, exit_code: int, output: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Command '{command}' exited with code {exit_code}")


class RconAuthenticationError(ReforgerCtrlError):
    """Raised when RCON authentication fails."""
    pass


class RconConnectionError(ReforgerCtrlError):
    """Raised when RCON connection fails."""
    pass


class RconPacketError(ReforgerCtrlError):
    """Raised when RCON packet is malformed or invalid."""
    pass


class RconTimeoutError(ReforgerCtrlError):
    """Raised when RCON operation times out."""
    pass


class RconUnavailableError(ReforgerCtrlError):
    """Raised when the RCON session could not be (re)established after one retry."""
    pass


class RconPermissionError(ReforgerCtrlError):
    """Raised when a command exceeds the configured RCON permission level."""
    pass


class InstallFailedError(ReforgerCtrlError):
    """Raised when SteamCMD exits non-zero; carries the tail of its output."""

    def __init__(self, message: str, log_tail: Optional[Sequence[str]] = None, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.log_tail: List[str] = list(log_tail or [])
        self.reason = reason


class DependencyCycleError(ReforgerCtrlError):
    """Raised when mod dependencies contain a cycle."""

    def __init__(self, members: Iterable[str]) -> None:
        self.members = sorted(members)
        super().__init__(f"Dependency cycle between mods: {', '.join(self.members)}")


class InvalidStateTransitionError(ReforgerCtrlError):
    """Raised when a lifecycle action is not allowed in the current state."""

    def __init__(self, state: str, action: str) -> None:
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} while server is {state}")


class OperationInProgressError(InvalidStateTransitionError):
    """Raised when another lifecycle operation already holds the instance lock."""

    def __init__(self, state: str, action: str) -> None:
        self.state = state
        self.action = action
        ReforgerCtrlError.__init__(
            self, f"Cannot {action}: another lifecycle operation is in progress ({state})"
        )


class UnknownConnectionError(ReforgerCtrlError):
    """Raised when a connection id is not registered."""
    pass


class CorruptedDatabaseError(ReforgerCtrlError):
    """Raised when one of the JSON record files is corrupted."""
    pass


class ConfigValidationError(ReforgerCtrlError):
    """Configuration validation error."""
    pass

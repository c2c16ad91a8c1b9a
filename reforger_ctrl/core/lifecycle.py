"""Lifecycle state machine of a managed server."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, Optional, Tuple

from reforger_ctrl.common.errors import InvalidStateTransitionError
from reforger_ctrl.core.models import ServerState


class LifecycleAction(str, Enum):
    START = "start"
    CONFIRM = "confirm"
    FAIL = "fail"
    STOP = "stop"
    STOPPED = "stopped"
    UPDATE = "update"
    UPDATE_DONE = "update_done"
    RESET = "reset"


S = ServerState
A = LifecycleAction

TRANSITIONS: Dict[Tuple[ServerState, LifecycleAction], ServerState] = {
    (S.OFFLINE, A.START): S.STARTING,
    (S.ERROR, A.START): S.STARTING,
    (S.STARTING, A.CONFIRM): S.ONLINE,
    (S.ONLINE, A.STOP): S.STOPPING,
    (S.STARTING, A.STOP): S.STOPPING,
    (S.ERROR, A.STOP): S.STOPPING,
    (S.STOPPING, A.STOPPED): S.OFFLINE,
    (S.ERROR, A.STOPPED): S.OFFLINE,
    (S.ERROR, A.RESET): S.OFFLINE,
    (S.ONLINE, A.UPDATE): S.UPDATING,
    (S.OFFLINE, A.UPDATE): S.UPDATING,
    (S.ERROR, A.UPDATE): S.UPDATING,
}
# Unrecoverable failures are accepted from every state.
TRANSITIONS.update({(state, A.FAIL): S.ERROR for state in ServerState})

del S, A


class StateMachine:
    """Explicit state plus transition table; illegal actions change nothing."""

    def __init__(self, initial: ServerState = ServerState.OFFLINE) -> None:
        self._state = ServerState(initial)
        self._prior: Optional[ServerState] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def prior_state(self) -> Optional[ServerState]:
        """State remembered when ``update`` was applied."""
        return self._prior

    def can_apply(self, action: LifecycleAction) -> bool:
        if action == LifecycleAction.UPDATE_DONE:
            return self._state == ServerState.UPDATING
        return (self._state, LifecycleAction(action)) in TRANSITIONS

    def apply(self, action: LifecycleAction) -> ServerState:
        """
        Apply ``action`` and return the new state.

        Raises:
            InvalidStateTransitionError: If the action is not allowed in the current state
        """
        action = LifecycleAction(action)
        with self._lock:
            if action == LifecycleAction.UPDATE_DONE:
                if self._state != ServerState.UPDATING:
                    raise InvalidStateTransitionError(self._state.value, action.value)
                self._state = self._prior or ServerState.OFFLINE
                self._prior = None
                return self._state

            target = TRANSITIONS.get((self._state, action))
            if target is None:
                raise InvalidStateTransitionError(self._state.value, action.value)
            if action == LifecycleAction.UPDATE:
                self._prior = self._state
            self._state = target
            return self._state

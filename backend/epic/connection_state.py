"""
Epic connection status transitions

Every write to ``epic_connections.status`` goes through ``transition()`` so
the legal moves and the work attached to them live in one table.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from exceptions import InvalidTransitionError

class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"
    TOKEN_EXPIRED = "token_expired"

class ConnectionEvent(str, Enum):
    TOKEN_STORED = "token_stored"
    TOKEN_EXPIRED = "token_expired"    # local expiry check
    TOKEN_REJECTED = "token_rejected"  # 401 from Epic
    CONNECT_FAILED = "connect_failed"
    DISCONNECT = "disconnect"

class SideEffect(str, Enum):
    PERSIST_TOKEN = "persist_token"
    STAMP_LAST_CONNECTED = "stamp_last_connected"
    CLEAR_LAST_ERROR = "clear_last_error"
    RECORD_LAST_ERROR = "record_last_error"
    WIPE_TOKENS = "wipe_tokens"
    AUDIT_CONNECTED = "audit_connected"
    AUDIT_TOKEN_EXPIRED = "audit_token_expired"
    AUDIT_DISCONNECTED = "audit_disconnected"

@dataclass(frozen=True)
class Transition:
    status: ConnectionStatus
    side_effects: Tuple[SideEffect, ...] = ()

    def has(self, effect: SideEffect) -> bool:
        return effect in self.side_effects

_S = ConnectionStatus
_E = ConnectionEvent

_TOKEN_STORED_EFFECTS = (
    SideEffect.PERSIST_TOKEN,
    SideEffect.STAMP_LAST_CONNECTED,
    SideEffect.CLEAR_LAST_ERROR,
    SideEffect.AUDIT_CONNECTED,
)
_DISCONNECT_EFFECTS = (
    SideEffect.WIPE_TOKENS,
    SideEffect.CLEAR_LAST_ERROR,
    SideEffect.AUDIT_DISCONNECTED,
)

def _build_transitions() -> Dict[Tuple[ConnectionStatus, ConnectionEvent], Transition]:
    table = {}
    for status in ConnectionStatus:
        table[(status, _E.TOKEN_STORED)] = Transition(_S.CONNECTED, _TOKEN_STORED_EFFECTS)
        table[(status, _E.CONNECT_FAILED)] = Transition(_S.ERROR, (SideEffect.RECORD_LAST_ERROR,))
        table[(status, _E.DISCONNECT)] = Transition(_S.DISCONNECTED, _DISCONNECT_EFFECTS)

        # A disconnected facility has no token that could expire or be rejected
        if status is _S.DISCONNECTED:
            continue
        # Audit only on entry into token_expired
        effects = () if status is _S.TOKEN_EXPIRED else (SideEffect.AUDIT_TOKEN_EXPIRED,)
        table[(status, _E.TOKEN_EXPIRED)] = Transition(_S.TOKEN_EXPIRED, effects)
        table[(status, _E.TOKEN_REJECTED)] = Transition(_S.TOKEN_EXPIRED, effects)
    return table

_TRANSITIONS = _build_transitions()

def transition(current, event) -> Transition:
    """Next status and side effects for ``event`` in ``current``.

    Accepts enum members or their string values. Raises
    ``InvalidTransitionError`` for pairs outside the table.
    """
    try:
        current = ConnectionStatus(current)
        event = ConnectionEvent(event)
    except ValueError as e:
        raise InvalidTransitionError(str(e), error_code="UNKNOWN_STATE") from e

    result = _TRANSITIONS.get((current, event))
    if result is None:
        raise InvalidTransitionError(
            f"Cannot apply '{event.value}' to a connection in status '{current.value}'",
            details={"status": current.value, "event": event.value}
        )
    return result

def is_allowed(current, event) -> bool:
    try:
        transition(current, event)
        return True
    except InvalidTransitionError:
        return False

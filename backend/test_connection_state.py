import pytest

from epic.connection_state import (
    ConnectionEvent,
    ConnectionStatus,
    SideEffect,
    is_allowed,
    transition,
)
from exceptions import InvalidTransitionError

class TestConnectionTransitions:
    """Connection status table"""

    @pytest.mark.parametrize("status", list(ConnectionStatus))
    def test_token_stored_always_connects(self, status):
        step = transition(status, ConnectionEvent.TOKEN_STORED)
        assert step.status == ConnectionStatus.CONNECTED
        assert step.has(SideEffect.PERSIST_TOKEN)
        assert step.has(SideEffect.STAMP_LAST_CONNECTED)
        assert step.has(SideEffect.CLEAR_LAST_ERROR)
        assert step.has(SideEffect.AUDIT_CONNECTED)

    @pytest.mark.parametrize("status", list(ConnectionStatus))
    def test_disconnect_wipes_tokens(self, status):
        step = transition(status, ConnectionEvent.DISCONNECT)
        assert step.status == ConnectionStatus.DISCONNECTED
        assert step.has(SideEffect.WIPE_TOKENS)
        assert step.has(SideEffect.AUDIT_DISCONNECTED)

    @pytest.mark.parametrize("status", list(ConnectionStatus))
    def test_connect_failed_records_error(self, status):
        step = transition(status, ConnectionEvent.CONNECT_FAILED)
        assert step.status == ConnectionStatus.ERROR
        assert step.side_effects == (SideEffect.RECORD_LAST_ERROR,)

    @pytest.mark.parametrize("event", [ConnectionEvent.TOKEN_EXPIRED, ConnectionEvent.TOKEN_REJECTED])
    @pytest.mark.parametrize("status", [ConnectionStatus.CONNECTED, ConnectionStatus.ERROR])
    def test_expiry_audited_on_entry(self, status, event):
        step = transition(status, event)
        assert step.status == ConnectionStatus.TOKEN_EXPIRED
        assert step.has(SideEffect.AUDIT_TOKEN_EXPIRED)

    @pytest.mark.parametrize("event", [ConnectionEvent.TOKEN_EXPIRED, ConnectionEvent.TOKEN_REJECTED])
    def test_expiry_not_re_audited(self, event):
        step = transition(ConnectionStatus.TOKEN_EXPIRED, event)
        assert step.status == ConnectionStatus.TOKEN_EXPIRED
        assert step.side_effects == ()

    @pytest.mark.parametrize("event", [ConnectionEvent.TOKEN_EXPIRED, ConnectionEvent.TOKEN_REJECTED])
    def test_disconnected_cannot_expire(self, event):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(ConnectionStatus.DISCONNECTED, event)
        assert exc_info.value.details == {"status": "disconnected", "event": event.value}
        assert not is_allowed(ConnectionStatus.DISCONNECTED, event)

    def test_accepts_string_values(self):
        step = transition("token_expired", "token_stored")
        assert step.status == ConnectionStatus.CONNECTED
        assert is_allowed("connected", "token_rejected")

    def test_unknown_status_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition("paused", ConnectionEvent.DISCONNECT)
        assert exc_info.value.error_code == "UNKNOWN_STATE"

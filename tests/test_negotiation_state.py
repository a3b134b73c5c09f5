from __future__ import annotations

import pytest

from models.errors import NegotiationProtocolError
from models.negotiation import Effect, NegotiationEvent as E, NegotiationState as S, transition
from models.session import Role

I = Role.INITIATOR
J = Role.JOINER


@pytest.mark.parametrize(
    "state, event, role, expected, effects",
    [
        (S.IDLE, E.CALL, I, S.AWAITING_REMOTE_ANSWER, (Effect.SEND_OFFER,)),
        (S.IDLE, E.JOIN, J, S.AWAITING_REMOTE_OFFER, (Effect.SEND_PING,)),
        (S.IDLE, E.OFFER_RECEIVED, J, S.ICE_EXCHANGE, (Effect.ANSWER_OFFER,)),
        (S.AWAITING_REMOTE_OFFER, E.OFFER_RECEIVED, J, S.ICE_EXCHANGE, (Effect.ANSWER_OFFER,)),
        (S.AWAITING_REMOTE_ANSWER, E.ANSWER_RECEIVED, I, S.ICE_EXCHANGE, (Effect.APPLY_ANSWER,)),
        (S.ICE_EXCHANGE, E.TRANSPORT_CONNECTED, I, S.CONNECTED, ()),
        (S.CONNECTED, E.TRANSPORT_CONNECTED, J, S.CONNECTED, ()),
        (S.AWAITING_REMOTE_ANSWER, E.CANDIDATE_RECEIVED, I, S.AWAITING_REMOTE_ANSWER, (Effect.BUFFER_CANDIDATE,)),
        (S.AWAITING_REMOTE_OFFER, E.CANDIDATE_RECEIVED, J, S.AWAITING_REMOTE_OFFER, (Effect.BUFFER_CANDIDATE,)),
        (S.ICE_EXCHANGE, E.CANDIDATE_RECEIVED, J, S.ICE_EXCHANGE, (Effect.APPLY_CANDIDATE,)),
        (S.CONNECTED, E.CANDIDATE_RECEIVED, I, S.CONNECTED, (Effect.APPLY_CANDIDATE,)),
        (S.ICE_EXCHANGE, E.TRANSPORT_FAILED, I, S.DISCONNECTED, ()),
        (S.CONNECTED, E.TRANSPORT_FAILED, J, S.DISCONNECTED, ()),
        (S.AWAITING_REMOTE_ANSWER, E.PING_RECEIVED, I, S.AWAITING_REMOTE_ANSWER, (Effect.RESEND_OFFER,)),
        (S.IDLE, E.PING_RECEIVED, I, S.IDLE, ()),
        (S.AWAITING_REMOTE_ANSWER, E.TIMEOUT, I, S.DISCONNECTED, ()),
        (S.CONNECTED, E.TIMEOUT, I, S.CONNECTED, ()),
        (S.ICE_EXCHANGE, E.REMOTE_HANGUP, J, S.DISCONNECTED, ()),
        (S.ICE_EXCHANGE, E.NEGOTIATION_ERROR, J, S.FAILED, ()),
        (S.DISCONNECTED, E.TRANSPORT_FAILED, I, S.DISCONNECTED, ()),
        (S.FAILED, E.TEARDOWN, I, S.DISCONNECTED, ()),
    ],
)
def test_transition_table(state, event, role, expected, effects) -> None:
    result = transition(state, event, role)
    assert result.state == expected
    assert result.effects == effects


@pytest.mark.parametrize("state", list(S))
def test_teardown_always_ends_disconnected(state) -> None:
    assert transition(state, E.TEARDOWN, I).state == S.DISCONNECTED


@pytest.mark.parametrize(
    "state, event, role",
    [
        (S.IDLE, E.CALL, J),
        (S.AWAITING_REMOTE_ANSWER, E.CALL, I),
        (S.IDLE, E.ANSWER_RECEIVED, I),
        (S.CONNECTED, E.ANSWER_RECEIVED, I),
        (S.ICE_EXCHANGE, E.OFFER_RECEIVED, J),
        (S.IDLE, E.OFFER_RECEIVED, I),
        (S.IDLE, E.JOIN, I),
        (S.DISCONNECTED, E.OFFER_RECEIVED, J),
        (S.AWAITING_REMOTE_ANSWER, E.TRANSPORT_CONNECTED, I),
    ],
)
def test_invalid_transitions_raise(state, event, role) -> None:
    with pytest.raises(NegotiationProtocolError) as excinfo:
        transition(state, event, role)
    assert excinfo.value.state == state
    assert excinfo.value.event == event


def test_terminal_states_flagged() -> None:
    assert S.DISCONNECTED.is_terminal
    assert S.FAILED.is_terminal
    assert not S.CONNECTED.is_terminal

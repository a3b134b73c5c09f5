# models/negotiation.py
"""Negotiation state machine.

The transition function is pure: it maps the current state, an incoming
event and the local role to the next state plus the list of side effects the
caller must carry out. It never touches sockets, timers or media.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from models.errors import NegotiationProtocolError
from models.session import Role


class NegotiationState(str, Enum):
    IDLE = "idle"
    AWAITING_REMOTE_OFFER = "awaiting_remote_offer"
    AWAITING_REMOTE_ANSWER = "awaiting_remote_answer"
    ICE_EXCHANGE = "ice_exchange"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NegotiationState.DISCONNECTED, NegotiationState.FAILED)


class NegotiationEvent(str, Enum):
    CALL = "call"
    JOIN = "join"
    OFFER_RECEIVED = "offer_received"
    ANSWER_RECEIVED = "answer_received"
    CANDIDATE_RECEIVED = "candidate_received"
    PING_RECEIVED = "ping_received"
    TRANSPORT_CONNECTED = "transport_connected"
    TRANSPORT_FAILED = "transport_failed"
    REMOTE_HANGUP = "remote_hangup"
    NEGOTIATION_ERROR = "negotiation_error"
    TIMEOUT = "timeout"
    TEARDOWN = "teardown"


class Effect(str, Enum):
    SEND_OFFER = "send_offer"
    SEND_PING = "send_ping"
    ANSWER_OFFER = "answer_offer"
    APPLY_ANSWER = "apply_answer"
    BUFFER_CANDIDATE = "buffer_candidate"
    APPLY_CANDIDATE = "apply_candidate"
    RESEND_OFFER = "resend_offer"


@dataclass(frozen=True)
class Transition:
    state: NegotiationState
    effects: Tuple[Effect, ...] = ()

    def changed_from(self, previous: NegotiationState) -> bool:
        return self.state != previous


S = NegotiationState
E = NegotiationEvent

_PRE_DESCRIPTION = (S.IDLE, S.AWAITING_REMOTE_OFFER, S.AWAITING_REMOTE_ANSWER)
_NEGOTIATED = (S.ICE_EXCHANGE, S.CONNECTED)


def _reject(state: NegotiationState, event: NegotiationEvent, reason: str):
    raise NegotiationProtocolError(
        f"{event.value} not allowed in state {state.value}: {reason}",
        state=state,
        event=event,
    )


def transition(state: NegotiationState, event: NegotiationEvent, role: Role) -> Transition:
    """Returns the next state and side effects, or raises NegotiationProtocolError."""
    if event == E.TEARDOWN:
        return Transition(S.DISCONNECTED)

    if state.is_terminal:
        # Late transport and hangup signals after the session ended are absorbed.
        if event in (E.TRANSPORT_FAILED, E.TRANSPORT_CONNECTED, E.REMOTE_HANGUP,
                     E.TIMEOUT, E.PING_RECEIVED, E.NEGOTIATION_ERROR):
            return Transition(state)
        _reject(state, event, "session already ended")

    if event == E.CALL:
        if role != Role.INITIATOR:
            _reject(state, event, "only the initiator creates an offer")
        if state != S.IDLE:
            _reject(state, event, "offer already created")
        return Transition(S.AWAITING_REMOTE_ANSWER, (Effect.SEND_OFFER,))

    if event == E.JOIN:
        if role != Role.JOINER:
            _reject(state, event, "only the joiner announces itself")
        if state != S.IDLE:
            _reject(state, event, "already joined")
        return Transition(S.AWAITING_REMOTE_OFFER, (Effect.SEND_PING,))

    if event == E.OFFER_RECEIVED:
        if role != Role.JOINER:
            _reject(state, event, "initiator does not accept offers")
        if state not in (S.IDLE, S.AWAITING_REMOTE_OFFER):
            _reject(state, event, "duplicate offer for a negotiating session")
        return Transition(S.ICE_EXCHANGE, (Effect.ANSWER_OFFER,))

    if event == E.ANSWER_RECEIVED:
        if state != S.AWAITING_REMOTE_ANSWER:
            _reject(state, event, "unexpected answer")
        return Transition(S.ICE_EXCHANGE, (Effect.APPLY_ANSWER,))

    if event == E.CANDIDATE_RECEIVED:
        if state in _PRE_DESCRIPTION:
            return Transition(state, (Effect.BUFFER_CANDIDATE,))
        return Transition(state, (Effect.APPLY_CANDIDATE,))

    if event == E.PING_RECEIVED:
        if state == S.AWAITING_REMOTE_ANSWER:
            return Transition(state, (Effect.RESEND_OFFER,))
        return Transition(state)

    if event == E.TRANSPORT_CONNECTED:
        if state in _NEGOTIATED:
            return Transition(S.CONNECTED)
        _reject(state, event, "transport connected before negotiation")

    if event == E.TRANSPORT_FAILED:
        if state in _NEGOTIATED:
            return Transition(S.DISCONNECTED)
        return Transition(state)

    if event == E.TIMEOUT:
        if state == S.CONNECTED:
            return Transition(state)
        return Transition(S.DISCONNECTED)

    if event == E.REMOTE_HANGUP:
        return Transition(S.DISCONNECTED)

    if event == E.NEGOTIATION_ERROR:
        return Transition(S.FAILED)

    _reject(state, event, "unknown event")

"""Call negotiation state machine.

`transition(state, event)` is a pure function returning the next state and
the effects the session must perform, in order. The session owns every side
effect; nothing here touches media, peers, or the network.

    idle -> requesting_media -> offer_sent ----------\\
    idle -> answering -> answered -------------------> connected -> ended
    (any live state) -> failed
"""

from enum import Enum

from roomcall.errors import NegotiationError


class CallState(str, Enum):
    IDLE = "idle"
    REQUESTING_MEDIA = "requesting_media"
    OFFER_SENT = "offer_sent"
    ANSWERING = "answering"
    ANSWERED = "answered"
    CONNECTED = "connected"
    ENDED = "ended"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (CallState.ENDED, CallState.FAILED)


class CallEvent(str, Enum):
    START = "start"                        # caller begins
    OFFER_CREATED = "offer_created"        # local offer set
    ACCEPT_OFFER = "accept_offer"          # callee begins answering
    ANSWER_CREATED = "answer_created"      # remote offer + local answer set
    REMOTE_ANSWER = "remote_answer"        # caller applied the answer
    RENEGOTIATE = "renegotiate"            # new local offer while connected
    TRANSPORT_CONNECTED = "transport_connected"
    TRANSPORT_FAILED = "transport_failed"  # restart still allowed
    RESTART_EXHAUSTED = "restart_exhausted"
    HANGUP = "hangup"                      # local end
    REMOTE_END = "remote_end"              # end signal or peer left
    ERROR = "error"


class Effect(str, Enum):
    RELEASE_MEDIA = "release_media"
    CLOSE_PEER = "close_peer"
    SEND_END = "send_end"
    FLUSH_CANDIDATES = "flush_candidates"
    RESTART_ICE = "restart_ice"


S, E, X = CallState, CallEvent, Effect

_TEARDOWN = (X.RELEASE_MEDIA, X.CLOSE_PEER)
_LIVE = (S.IDLE, S.REQUESTING_MEDIA, S.OFFER_SENT, S.ANSWERING, S.ANSWERED, S.CONNECTED)
_NEGOTIATED = (S.OFFER_SENT, S.ANSWERED, S.CONNECTED)

_TABLE: dict[tuple[CallState, CallEvent], tuple[CallState, tuple[Effect, ...]]] = {
    (S.IDLE, E.START): (S.REQUESTING_MEDIA, ()),
    (S.REQUESTING_MEDIA, E.OFFER_CREATED): (S.OFFER_SENT, ()),
    (S.IDLE, E.ACCEPT_OFFER): (S.ANSWERING, ()),
    (S.ANSWERING, E.ANSWER_CREATED): (S.ANSWERED, (X.FLUSH_CANDIDATES,)),
    (S.OFFER_SENT, E.REMOTE_ANSWER): (S.OFFER_SENT, (X.FLUSH_CANDIDATES,)),
    # Renegotiation keeps the call connected on both sides.
    (S.CONNECTED, E.RENEGOTIATE): (S.CONNECTED, ()),
    (S.CONNECTED, E.REMOTE_ANSWER): (S.CONNECTED, (X.FLUSH_CANDIDATES,)),
    (S.CONNECTED, E.ANSWER_CREATED): (S.CONNECTED, (X.FLUSH_CANDIDATES,)),
    # Restart offer from the caller before media ever connected.
    (S.ANSWERED, E.ANSWER_CREATED): (S.ANSWERED, (X.FLUSH_CANDIDATES,)),
    (S.OFFER_SENT, E.TRANSPORT_CONNECTED): (S.CONNECTED, ()),
    (S.ANSWERED, E.TRANSPORT_CONNECTED): (S.CONNECTED, ()),
    (S.CONNECTED, E.TRANSPORT_CONNECTED): (S.CONNECTED, ()),
}

for _state in _NEGOTIATED:
    _TABLE[(_state, E.TRANSPORT_FAILED)] = (_state, (X.RESTART_ICE,))
    _TABLE[(_state, E.RESTART_EXHAUSTED)] = (S.FAILED, _TEARDOWN + (X.SEND_END,))

for _state in _LIVE:
    _TABLE[(_state, E.HANGUP)] = (S.ENDED, _TEARDOWN + (X.SEND_END,))
    _TABLE[(_state, E.REMOTE_END)] = (S.ENDED, _TEARDOWN)
    _TABLE[(_state, E.ERROR)] = (S.FAILED, _TEARDOWN + (X.SEND_END,))

# Ending an already finished call is a no-op.
for _state in (S.ENDED, S.FAILED):
    for _event in (E.HANGUP, E.REMOTE_END, E.ERROR, E.TRANSPORT_FAILED,
                   E.RESTART_EXHAUSTED, E.TRANSPORT_CONNECTED):
        _TABLE[(_state, _event)] = (_state, ())


def transition(state: CallState, event: CallEvent) -> tuple[CallState, tuple[Effect, ...]]:
    """Next state and effects for `event` in `state`.

    Raises:
        NegotiationError: the event is not valid in this state.
    """
    try:
        return _TABLE[(state, event)]
    except KeyError:
        raise NegotiationError(
            f"Cannot handle {event.value} while {state.value}"
        ) from None


def allowed_events(state: CallState) -> set[CallEvent]:
    return {event for (s, event) in _TABLE if s is state}

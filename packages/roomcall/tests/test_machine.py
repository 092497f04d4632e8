"""Tests for roomcall.machine: pure call state transitions."""

import pytest

from roomcall.errors import NegotiationError
from roomcall.machine import CallEvent, CallState, Effect, allowed_events, transition

S, E, X = CallState, CallEvent, Effect


def run(state, *events):
    for event in events:
        state, _ = transition(state, event)
    return state


class TestTransitions:
    def test_caller_path(self):
        assert run(S.IDLE, E.START, E.OFFER_CREATED, E.REMOTE_ANSWER, E.TRANSPORT_CONNECTED) is S.CONNECTED

    def test_callee_path(self):
        assert run(S.IDLE, E.ACCEPT_OFFER, E.ANSWER_CREATED, E.TRANSPORT_CONNECTED) is S.CONNECTED

    def test_answer_flushes_candidates(self):
        assert transition(S.ANSWERING, E.ANSWER_CREATED) == (S.ANSWERED, (X.FLUSH_CANDIDATES,))
        assert transition(S.OFFER_SENT, E.REMOTE_ANSWER) == (S.OFFER_SENT, (X.FLUSH_CANDIDATES,))

    def test_renegotiation_stays_connected(self):
        assert run(S.CONNECTED, E.RENEGOTIATE, E.REMOTE_ANSWER) is S.CONNECTED
        assert run(S.CONNECTED, E.ANSWER_CREATED) is S.CONNECTED

    def test_hangup_tears_down_then_signals(self):
        assert transition(S.CONNECTED, E.HANGUP) == (
            S.ENDED, (X.RELEASE_MEDIA, X.CLOSE_PEER, X.SEND_END))

    def test_remote_end_does_not_signal(self):
        state, effects = transition(S.CONNECTED, E.REMOTE_END)
        assert state is S.ENDED
        assert X.SEND_END not in effects
        assert X.RELEASE_MEDIA in effects

    def test_transport_failure_restarts_once_then_fails(self):
        assert transition(S.CONNECTED, E.TRANSPORT_FAILED) == (S.CONNECTED, (X.RESTART_ICE,))
        state, effects = transition(S.CONNECTED, E.RESTART_EXHAUSTED)
        assert state is S.FAILED
        assert effects[:2] == (X.RELEASE_MEDIA, X.CLOSE_PEER)

    @pytest.mark.parametrize("state", [S.IDLE, S.REQUESTING_MEDIA, S.OFFER_SENT,
                                       S.ANSWERING, S.ANSWERED, S.CONNECTED])
    def test_error_fails_any_live_state(self, state):
        next_state, effects = transition(state, E.ERROR)
        assert next_state is S.FAILED
        assert X.RELEASE_MEDIA in effects

    @pytest.mark.parametrize("state", [S.ENDED, S.FAILED])
    def test_terminal_states_absorb_endings(self, state):
        for event in (E.HANGUP, E.REMOTE_END, E.ERROR):
            assert transition(state, event) == (state, ())

    def test_invalid_event_raises(self):
        with pytest.raises(NegotiationError):
            transition(S.IDLE, E.REMOTE_ANSWER)
        with pytest.raises(NegotiationError):
            transition(S.ENDED, E.START)

    def test_connected_needs_negotiation(self):
        assert E.TRANSPORT_CONNECTED not in allowed_events(S.IDLE)
        assert E.TRANSPORT_CONNECTED not in allowed_events(S.REQUESTING_MEDIA)
        assert E.TRANSPORT_CONNECTED not in allowed_events(S.ANSWERING)

    def test_terminal_flag(self):
        assert S.ENDED.terminal and S.FAILED.terminal
        assert not S.CONNECTED.terminal

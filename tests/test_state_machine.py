"""Tests for the session lifecycle state machine."""

import pytest

from voicebridge.core.state_machine import SessionState, SessionStateMachine


class TestSessionStateMachine:
    """Legal and illegal transitions."""

    def test_starts_created(self):
        sm = SessionStateMachine("s1")
        assert sm.state == SessionState.CREATED
        assert sm.is_live
        assert not sm.is_closed

    def test_full_lifecycle(self):
        seen = []
        sm = SessionStateMachine("s1", on_transition=lambda prev, new, reason: seen.append((prev, new)))
        for target in (SessionState.HANDSHAKING, SessionState.ACTIVE, SessionState.CLOSING, SessionState.CLOSED):
            sm.transition(target)
        assert sm.is_closed
        assert [new for _, new in seen] == [
            SessionState.HANDSHAKING,
            SessionState.ACTIVE,
            SessionState.CLOSING,
            SessionState.CLOSED,
        ]
        assert [h["to"] for h in sm.history] == ["handshaking", "active", "closing", "closed"]

    def test_closing_is_not_live(self):
        sm = SessionStateMachine("s1")
        sm.transition(SessionState.CLOSING)
        assert not sm.is_live
        assert not sm.is_closed

    def test_same_state_is_noop(self):
        sm = SessionStateMachine("s1")
        sm.transition(SessionState.CREATED)
        assert sm.history == []

    @pytest.mark.parametrize(
        "path",
        [
            (SessionState.ACTIVE,),
            (SessionState.HANDSHAKING, SessionState.CREATED),
            (SessionState.CLOSING, SessionState.ACTIVE),
            (SessionState.CLOSED, SessionState.HANDSHAKING),
        ],
    )
    def test_illegal_transition_raises(self, path):
        sm = SessionStateMachine("s1")
        *legal, illegal = path
        for target in legal:
            sm.transition(target)
        assert not sm.can_transition(illegal)
        with pytest.raises(ValueError):
            sm.transition(illegal)

    def test_force_close_from_any_state(self):
        sm = SessionStateMachine("s1")
        sm.transition(SessionState.HANDSHAKING)
        sm.force_close("fatal")
        assert sm.is_closed
        assert sm.history[-1]["reason"] == "fatal"
        sm.force_close("again")
        assert len(sm.history) == 2

    def test_callback_errors_do_not_block_transition(self):
        def boom(prev, new, reason):
            raise RuntimeError("listener failed")

        sm = SessionStateMachine("s1", on_transition=boom)
        sm.transition(SessionState.HANDSHAKING)
        assert sm.state == SessionState.HANDSHAKING

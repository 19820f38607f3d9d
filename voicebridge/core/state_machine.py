"""
VoiceBridge - Session State Machine

Lifecycle of one stream session:

    CREATED → HANDSHAKING → ACTIVE → CLOSING → CLOSED

Any live state may also jump to CLOSING (graceful close) or straight to
CLOSED (forced close after a fault). CLOSED is terminal; a closed session
id can only come back as a brand new session.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

logger = logging.getLogger("voicebridge.state")


class SessionState(str, Enum):
    CREATED = "created"          # Registered, stream not opened
    HANDSHAKING = "handshaking"  # Stream open, setup frames in flight
    ACTIVE = "active"            # Audio content-start sent, audio may flow
    CLOSING = "closing"          # Teardown frames in flight
    CLOSED = "closed"            # Stream ended, removed from registry


_LIVE = frozenset({SessionState.CREATED, SessionState.HANDSHAKING, SessionState.ACTIVE})

_ALLOWED: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.CREATED:     frozenset({SessionState.HANDSHAKING, SessionState.CLOSING, SessionState.CLOSED}),
    SessionState.HANDSHAKING: frozenset({SessionState.ACTIVE, SessionState.CLOSING, SessionState.CLOSED}),
    SessionState.ACTIVE:      frozenset({SessionState.CLOSING, SessionState.CLOSED}),
    SessionState.CLOSING:     frozenset({SessionState.CLOSED}),
    SessionState.CLOSED:      frozenset(),
}

TransitionListener = Callable[[SessionState, SessionState, str], None]


class SessionStateMachine:
    """
    Holds the current state of one session and rejects illegal moves.

        sm = SessionStateMachine("s1")
        sm.transition(SessionState.HANDSHAKING, "initiate")
        sm.transition(SessionState.ACTIVE, "handshake_sent")
        sm.transition(SessionState.CREATED)   # ValueError
        sm.force_close("stream fault")        # always allowed
    """

    def __init__(self, session_id: str, on_transition: Optional[TransitionListener] = None) -> None:
        self._session_id = session_id
        self._current = SessionState.CREATED
        self._listener = on_transition
        self._log: List[Dict[str, Any]] = []
        self._since = time.time()

    @property
    def state(self) -> SessionState:
        return self._current

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._log)

    @property
    def is_live(self) -> bool:
        """CREATED, HANDSHAKING or ACTIVE."""
        return self._current in _LIVE

    @property
    def is_closed(self) -> bool:
        return self._current is SessionState.CLOSED

    def can_transition(self, target: SessionState) -> bool:
        return target is self._current or target in _ALLOWED[self._current]

    def transition(self, target: SessionState, reason: str = "") -> None:
        """Move to `target`. Same-state moves are ignored; illegal ones raise ValueError."""
        if target is self._current:
            return
        if target not in _ALLOWED[self._current]:
            raise ValueError(
                f"[{self._session_id}] cannot go from {self._current.value} to {target.value}"
                + (f" ({reason})" if reason else "")
            )
        self._enter(target, reason)

    def force_close(self, reason: str = "") -> None:
        if not self.is_closed:
            self._enter(SessionState.CLOSED, reason or "forced")

    def _enter(self, target: SessionState, reason: str) -> None:
        prev, now = self._current, time.time()
        self._log.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._since) * 1000, 1),
        })
        self._current, self._since = target, now

        logger.info(f"[{self._session_id}] STATE: {prev.value} → {target.value}" + (f" ({reason})" if reason else ""))

        if self._listener is None:
            return
        try:
            self._listener(prev, target, reason)
        except Exception as e:
            logger.error(f"[{self._session_id}] State listener failed: {e}")

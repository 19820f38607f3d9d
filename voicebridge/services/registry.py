"""
VoiceBridge - Session Registry

Maps session_id → StreamSession. One lock guards the map; every operation
is short, non-blocking and performs no I/O while holding it.
Injected into the client; tests build a fresh registry each time.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from ..core.errors import DuplicateSession

logger = logging.getLogger("voicebridge.registry")

T = TypeVar("T")


class SessionRegistry(Generic[T]):
    """Maps session_id → session. Thread-safe."""

    def __init__(self) -> None:
        self._sessions: Dict[str, T] = {}
        self._lock = threading.Lock()

    def create(self, factory: Callable[[str], T], session_id: Optional[str] = None) -> T:
        """
        Build and insert a session. `factory(session_id)` must not do I/O;
        it runs under the lock so readers never see a half-built entry.
        Raises DuplicateSession if the id is already registered.
        """
        sid = session_id or str(uuid.uuid4())
        with self._lock:
            if sid in self._sessions:
                raise DuplicateSession(f"Stream session with ID {sid} already exists", sid)
            session = factory(sid)
            self._sessions[sid] = session
            total = len(self._sessions)
        logger.info(f"SessionRegistry: created {sid} (total: {total})")
        return session

    def get(self, session_id: str) -> Optional[T]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[T]:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            total = len(self._sessions)
        if session is not None:
            logger.info(f"SessionRegistry: removed {session_id} (total: {total})")
        return session

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def is_active(self, session_id: str) -> bool:
        """Registered and, when the session exposes it, still active."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return False
        return bool(getattr(session, "is_active", True))

    @property
    def all_sessions(self) -> Dict[str, T]:
        with self._lock:
            return dict(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

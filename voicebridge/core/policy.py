"""
VoiceBridge - Error & Recovery Policy

All fault-handling decisions live here; the client never decides on its own
whether a failure is fatal. It supplies the exception, this module answers:
  • What kind of fault is it?
  • Does it mean the connection is dead (stop draining the queue)?
  • What does the `error` event delivered to the session's handlers look like?
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional

from .errors import (
    FatalModelError,
    ToolExecutionError,
    TransientStreamFault,
    VoiceBridgeError,
)

logger = logging.getLogger("voicebridge.policy")


class FaultKind(str, Enum):
    TRANSIENT = "transient"  # connection lost / remote rejection; caller may recreate
    FATAL = "fatal"          # explicit model error; forced teardown
    LOCAL = "local"          # validation error; raised to caller, session untouched
    TOOL = "tool"            # tool callout failed; session survives


# Markers in remote exception class names (SDK exceptions are not importable here)
_FATAL_NAME_MARKERS = ("ModelStreamError", "InternalServer")
_TRANSIENT_NAME_MARKERS = (
    "Validation", "Throttling", "ServiceUnavailable", "ModelTimeout", "StreamClosed",
)

_DEAD_CONNECTION_TYPES = (
    TransientStreamFault,
    FatalModelError,
    ConnectionError,
    EOFError,
    TimeoutError,
    asyncio.TimeoutError,
)

_REMEDIATION: Dict[FaultKind, str] = {
    FaultKind.TRANSIENT: "Recreate the session and resend the last input.",
    FaultKind.FATAL: "The model rejected the stream. Recreate the session; check inference and audio configuration.",
    FaultKind.LOCAL: "Fix the request and retry.",
    FaultKind.TOOL: "The tool result was not sent; the conversation continues.",
}


class ErrorPolicy:
    """
    Stateless classifier shared by every session of a client.
    """

    def classify(self, exc: BaseException) -> FaultKind:
        if isinstance(exc, FatalModelError):
            return FaultKind.FATAL
        if isinstance(exc, ToolExecutionError):
            return FaultKind.TOOL
        if isinstance(exc, TransientStreamFault):
            return FaultKind.TRANSIENT
        if isinstance(exc, VoiceBridgeError):
            return FaultKind.LOCAL

        name = type(exc).__name__
        if any(marker in name for marker in _FATAL_NAME_MARKERS):
            return FaultKind.FATAL
        # Connection errors, timeouts, remote validation and anything unknown
        # from the stream are treated as transient.
        return FaultKind.TRANSIENT

    def is_dead_connection(self, exc: BaseException) -> bool:
        """True when a send failure means no later frame can be delivered."""
        if isinstance(exc, _DEAD_CONNECTION_TYPES):
            return True
        name = type(exc).__name__
        if any(marker in name for marker in _FATAL_NAME_MARKERS + _TRANSIENT_NAME_MARKERS):
            return True
        return "closed" in str(exc).lower()

    def error_event(
        self,
        exc: BaseException,
        session_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the payload of the `error` event for `exc`."""
        kind = self.classify(exc)
        if isinstance(exc, VoiceBridgeError):
            payload = exc.to_dict()
        else:
            payload = {
                "source": "bidirectionalStream",
                "error": type(exc).__name__,
                "message": str(exc),
            }
        if source:
            payload["source"] = source
        if session_id and "sessionId" not in payload:
            payload["sessionId"] = session_id
        payload["kind"] = kind.value
        payload.setdefault("remediation", _REMEDIATION[kind])
        return payload

    def is_session_gone(self, payload: Dict[str, Any]) -> bool:
        """
        True when an `error` event means the session no longer exists.

        Callers use this to decide whether to recreate the session and resend
        their most recent input.
        """
        return payload.get("kind") in (FaultKind.TRANSIENT.value, FaultKind.FATAL.value) or payload.get(
            "error"
        ) in ("SessionNotFound",)

"""
VoiceBridge - Error Taxonomy

Local validation errors are raised synchronously to the caller.
Stream faults (transient / fatal) and tool failures are never raised into an
unrelated caller; the client converts them into `error` events delivered to
the session's own handlers via `to_dict()`.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VoiceBridgeError(Exception):
    """Base class for every error raised by the session engine."""

    source: str = "voiceBridge"

    def __init__(self, message: str = "", session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "source": self.source,
            "error": type(self).__name__,
            "message": self.message,
        }
        if self.session_id:
            d["sessionId"] = self.session_id
        return d


# ---------------------------------------------------------------------------
# Local validation errors (raised synchronously)
# ---------------------------------------------------------------------------

class DuplicateSession(VoiceBridgeError):
    source = "registry"


class SessionNotFound(VoiceBridgeError):
    source = "registry"


class SessionNotReady(VoiceBridgeError):
    """Audio was submitted before the audio content-start was transmitted."""
    source = "session"


class EmptyAudioChunk(VoiceBridgeError):
    source = "audioInput"


class InvalidAudioData(VoiceBridgeError):
    """Client-supplied audio could not be base64-decoded."""
    source = "audioInput"


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

class MalformedFrame(VoiceBridgeError):
    """Frame is not valid JSON or lacks the single-key `event` envelope."""
    source = "codec"


# ---------------------------------------------------------------------------
# Stream faults (delivered as `error` events)
# ---------------------------------------------------------------------------

class TransientStreamFault(VoiceBridgeError):
    """Connection dropped or the remote side rejected a frame.

    The caller may recreate the session; the engine does not retry.
    """
    source = "bidirectionalStream"


class FatalModelError(VoiceBridgeError):
    """The model sent an explicit error frame. The session is torn down."""

    source = "modelStream"

    def __init__(
        self,
        message: str = "",
        session_id: Optional[str] = None,
        remediation: str = "Recreate the session and resend the last input.",
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, session_id)
        self.remediation = remediation
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["remediation"] = self.remediation
        if self.detail:
            d["detail"] = self.detail
        return d


class ToolExecutionError(VoiceBridgeError):
    """A tool callout failed. Surfaced as an `error` event; session survives."""

    source = "toolUse"

    def __init__(
        self,
        message: str = "",
        session_id: Optional[str] = None,
        tool_name: Optional[str] = None,
        tool_use_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, session_id)
        self.tool_name = tool_name
        self.tool_use_id = tool_use_id

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["toolName"] = self.tool_name
        d["toolUseId"] = self.tool_use_id
        return d

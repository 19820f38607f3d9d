"""
VoiceBridge - Data Models

Event type enumeration, the tool-use cache and per-session telemetry.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    """
    Closed set of event types the engine knows about.

    Anything else decodes to UNKNOWN and is only seen by the "any" handler.
    """
    # Outbound
    SESSION_START = "sessionStart"
    PROMPT_START = "promptStart"
    TEXT_INPUT = "textInput"
    AUDIO_INPUT = "audioInput"
    PROMPT_END = "promptEnd"
    SESSION_END = "sessionEnd"
    # Both directions
    CONTENT_START = "contentStart"
    CONTENT_END = "contentEnd"
    TOOL_RESULT = "toolResult"
    # Inbound
    TEXT_OUTPUT = "textOutput"
    AUDIO_OUTPUT = "audioOutput"
    TOOL_USE = "toolUse"
    COMPLETION_START = "completionStart"
    COMPLETION_END = "completionEnd"
    USAGE = "usageEvent"
    # Local / error signals
    ERROR = "error"
    MODEL_STREAM_ERROR = "modelStreamErrorException"
    INTERNAL_SERVER_ERROR = "internalServerException"
    ANY = "any"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: str) -> "EventType":
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


# Inbound frames that signal a fatal model-side failure
ERROR_EVENT_TYPES = frozenset({
    EventType.ERROR,
    EventType.MODEL_STREAM_ERROR,
    EventType.INTERNAL_SERVER_ERROR,
})


class ContentType(str, Enum):
    TEXT = "TEXT"
    AUDIO = "AUDIO"
    TOOL = "TOOL"


class Role(str, Enum):
    SYSTEM = "SYSTEM"
    USER = "USER"
    ASSISTANT = "ASSISTANT"
    TOOL = "TOOL"


# ---------------------------------------------------------------------------
# Tool use cache
# ---------------------------------------------------------------------------

@dataclass
class ToolUse:
    """Last toolUse received; correlated with the following TOOL contentEnd."""
    tool_use_id: str = ""
    tool_name: str = ""
    content: Any = None
    received_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Session telemetry
# ---------------------------------------------------------------------------

@dataclass
class SessionTelemetry:
    """Per-session counters. Never crashes the session."""
    session_id: str = ""
    state: str = "created"
    frames_enqueued: int = 0
    frames_sent: int = 0
    frames_received: int = 0
    send_failures: int = 0
    audio_chunks: int = 0
    tool_calls: int = 0
    errors: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

"""
VoiceBridge - Event Frame Codec

Every frame on the duplex stream, in both directions, is a UTF-8 JSON object
of the shape `{"event": {"<eventType>": {...payload...}}}`.
"""

from __future__ import annotations

import json
from typing import Any, Tuple, Union

from .errors import MalformedFrame


def encode(event_type: str, payload: Any) -> str:
    """Wrap `payload` under `{event: {event_type: payload}}` and serialise it."""
    if not event_type:
        raise ValueError("event_type is required")
    return json.dumps({"event": {event_type: payload}}, ensure_ascii=False, separators=(",", ":"))


def decode(raw: Union[str, bytes, bytearray]) -> Tuple[str, Any]:
    """
    Parse a frame and return `(event_type, payload)`.

    Raises MalformedFrame for invalid UTF-8 / JSON, a missing `event` key, or
    an `event` value that is not a non-empty object. Only the first key under
    `event` is read.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrame(f"Frame is not valid UTF-8: {e}") from e

    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedFrame(f"Frame is not valid JSON: {e}") from e

    if not isinstance(message, dict) or "event" not in message:
        raise MalformedFrame("Frame has no 'event' envelope")

    event = message["event"]
    if not isinstance(event, dict) or not event:
        raise MalformedFrame("'event' must hold an event type")

    event_type = next(iter(event))
    return event_type, event[event_type]

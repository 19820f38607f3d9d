"""
VoiceBridge - Structured Latency Tracer

Wall-clock milestones of one session, each recorded at most once:
  stream_requested → stream_opened → handshake_sent → first_audio_in → first_output
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("voicebridge.latency")

_MILESTONES = ("stream_requested", "stream_opened", "handshake_sent", "first_audio_in", "first_output")

# name → (start milestone, end milestone)
_SPANS: Dict[str, Tuple[str, str]] = {
    "connect_ms": ("stream_requested", "stream_opened"),
    "handshake_ms": ("stream_opened", "handshake_sent"),
    "audio_to_first_output_ms": ("first_audio_in", "first_output"),
    "open_to_first_output_ms": ("stream_opened", "first_output"),
}


@dataclass
class LatencyTrace:
    session_id: str = ""
    stream_requested: float = 0.0
    stream_opened: float = 0.0
    handshake_sent: float = 0.0
    first_audio_in: float = 0.0
    first_output: float = 0.0

    def deltas(self) -> Dict[str, Optional[float]]:
        """Milliseconds between milestone pairs; None until both are recorded."""
        out: Dict[str, Optional[float]] = {}
        for span, (start, end) in _SPANS.items():
            t0, t1 = getattr(self, start), getattr(self, end)
            out[span] = round((t1 - t0) * 1000, 1) if t0 and t1 else None
        return out

    def to_dict(self) -> Dict[str, Any]:
        marks = {m: getattr(self, m) for m in _MILESTONES if getattr(self, m)}
        return {"session_id": self.session_id, **marks, "deltas": self.deltas()}


class LatencyTracer:
    """
        tracer = LatencyTracer("s1")
        tracer.mark("stream_requested")
        tracer.mark("stream_opened")
        tracer.summary()["deltas"]["connect_ms"]
    """

    def __init__(self, session_id: str) -> None:
        self._trace = LatencyTrace(session_id=session_id)

    @property
    def trace(self) -> LatencyTrace:
        return self._trace

    def mark(self, milestone: str) -> None:
        if milestone not in _MILESTONES:
            raise ValueError(f"Unknown latency milestone: {milestone}")
        if getattr(self._trace, milestone):
            return
        setattr(self._trace, milestone, time.time())
        known = {k: v for k, v in self._trace.deltas().items() if v is not None}
        logger.info(f"[{self._trace.session_id}] LATENCY {milestone}" + (f" {known}" if known else ""))

    def summary(self) -> Dict[str, Any]:
        return self._trace.to_dict()

"""
VoiceBridge - Stream Session

One StreamSession per conversation. It owns:
  • identifiers minted once at creation (prompt name, text/audio content ids)
  • the state machine and the handshake / teardown progress flags
  • the outbound queue and its dispatcher
  • the live duplex stream handle and the two long-lived tasks
  • the per-session event handlers

It is also the façade handed to the websocket layer: `on()`,
`stream_audio()`, `end_audio_content()`, `end_prompt()`, `close()` and
`force_close()` delegate to the owning BidirectionalStreamClient.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Union

from ..core import codec
from ..core.interfaces import DuplexStream
from ..core.latency import LatencyTracer
from ..core.models import EventType, SessionTelemetry, ToolUse
from ..core.state_machine import SessionState, SessionStateMachine
from .outbound import OutboundDispatcher, OutboundFrame, OutboundQueue

if TYPE_CHECKING:
    from .client import BidirectionalStreamClient

logger = logging.getLogger("voicebridge.session")

Handler = Callable[[Any], Any]

# Outbound frame markers
PROMPT_START = "prompt_start"
AUDIO_CONTENT_START = "audio_content_start"


class StreamSession:
    """State and façade for a single streaming conversation."""

    def __init__(self, session_id: str, client: "BidirectionalStreamClient") -> None:
        self.session_id = session_id
        self._client = client

        # Identifiers referenced by every event this session emits
        self.prompt_name = str(uuid.uuid4())
        self.text_content_id = str(uuid.uuid4())
        self.audio_content_id = str(uuid.uuid4())

        self.telemetry = SessionTelemetry(session_id=session_id)
        self.latency = LatencyTracer(session_id)
        self._state_machine = SessionStateMachine(session_id, on_transition=self._on_state_transition)

        self.outbound = OutboundQueue(session_id)
        self.dispatcher: Optional[OutboundDispatcher] = None
        self.stream: Optional[DuplexStream] = None

        # Handshake progress (set only by the dispatcher, after transmission)
        self._prompt_start_sent = False
        self._audio_content_start_sent = False
        # Teardown progress (set at enqueue so each frame goes out at most once)
        self.audio_content_end_sent = False
        self.prompt_end_sent = False
        self.session_end_sent = False

        self.initializing = False
        # Set once a stream fault has been reported; the session is then inactive
        self.faulted = False

        self.tool_use: Optional[ToolUse] = None
        self.last_activity_at = time.time()
        self.created_at = self.last_activity_at

        self._handlers: Dict[EventType, Handler] = {}
        self._dispatch_task: Optional[asyncio.Task] = None
        self._inbound_task: Optional[asyncio.Task] = None

    # ── State ────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state_machine.state

    @property
    def is_prompt_start_sent(self) -> bool:
        return self._prompt_start_sent

    @property
    def is_audio_content_start_sent(self) -> bool:
        return self._audio_content_start_sent

    @property
    def is_audio_content_end_sent(self) -> bool:
        return self.audio_content_end_sent

    @property
    def is_prompt_end_sent(self) -> bool:
        return self.prompt_end_sent

    @property
    def is_session_end_sent(self) -> bool:
        return self.session_end_sent

    @property
    def is_active(self) -> bool:
        """Live and not faulted: frames may still be enqueued by the caller."""
        return self._state_machine.is_live and not self.faulted

    @property
    def is_closed(self) -> bool:
        return self._state_machine.is_closed

    @property
    def accepts_sends(self) -> bool:
        """The dispatcher keeps draining while this holds (CLOSING included)."""
        return not self.faulted and not self._state_machine.is_closed

    @property
    def is_ready_for_audio(self) -> bool:
        return (
            self.state == SessionState.ACTIVE
            and not self.faulted
            and self._audio_content_start_sent
            and not self.audio_content_end_sent
        )

    def transition(self, target: SessionState, reason: str = "") -> None:
        self._state_machine.transition(target, reason)

    def mark_closed(self, reason: str = "") -> None:
        self._state_machine.force_close(reason)

    def _on_state_transition(self, prev: SessionState, new: SessionState, reason: str) -> None:
        self.telemetry.state = new.value

    def touch(self) -> None:
        self.last_activity_at = time.time()

    # ── Outbound ─────────────────────────────────────────────────────────

    def enqueue(self, event_type: Union[str, EventType], payload: Any, marker: Optional[str] = None) -> bool:
        """
        Serialize and queue one frame. Non-blocking.
        Returns False (logged, no exception) when the session no longer sends.
        """
        name = event_type.value if isinstance(event_type, EventType) else event_type
        if not self.accepts_sends:
            logger.debug(f"[{self.session_id}] Ignoring {name} enqueue; session is {self.state.value}")
            return False
        self.outbound.put(OutboundFrame(event_type=name, data=codec.encode(name, payload), marker=marker))
        self.telemetry.frames_enqueued += 1
        self.touch()
        return True

    def on_frame_sent(self, frame: OutboundFrame) -> None:
        """Called by the dispatcher after a successful send."""
        self.telemetry.frames_sent += 1
        self.touch()
        if frame.marker == PROMPT_START:
            self._prompt_start_sent = True
        elif frame.marker == AUDIO_CONTENT_START:
            self._audio_content_start_sent = True

    # ── Event handlers ───────────────────────────────────────────────────

    def on(self, event_type: Union[str, EventType], handler: Handler) -> "StreamSession":
        """
        Register the handler for an event type (one per type; replaces any
        previous one). `"any"` receives `{"type", "data"}` for every event.
        Raises ValueError for names outside EventType.
        """
        kind = event_type if isinstance(event_type, EventType) else EventType(event_type)
        self._handlers[kind] = handler
        return self

    async def handle_event(self, event_type: str, data: Any) -> None:
        """
        Deliver one event: the type-specific handler first (unrecognized types
        go to the UNKNOWN handler), then "any". Handler errors are logged and
        never propagate.
        """
        kind = EventType.parse(event_type)
        handler = self._handlers.get(kind)
        if handler is not None and kind != EventType.ANY:
            await self._invoke(handler, data, event_type)

        any_handler = self._handlers.get(EventType.ANY)
        if any_handler is not None:
            await self._invoke(any_handler, {"type": event_type, "data": data}, event_type)

    async def _invoke(self, handler: Handler, data: Any, event_type: str) -> None:
        try:
            cb = handler(data)
            if asyncio.iscoroutine(cb):
                await cb
        except Exception as e:
            logger.error(f"[{self.session_id}] Handler for {event_type} failed: {e}", exc_info=True)

    # ── Stream + tasks ───────────────────────────────────────────────────

    def attach_stream(self, stream: DuplexStream, dispatcher: OutboundDispatcher) -> None:
        self.stream = stream
        self.dispatcher = dispatcher

    def start_tasks(self, inbound_coro: Any) -> None:
        """Start the dispatch loop and the inbound reader."""
        if self.dispatcher is None:
            raise RuntimeError("start_tasks() before attach_stream()")
        self._dispatch_task = asyncio.create_task(
            self.dispatcher.run(), name=f"outbound-{self.session_id}"
        )
        self._inbound_task = asyncio.create_task(inbound_coro, name=f"inbound-{self.session_id}")

    async def shutdown(self) -> None:
        """Stop both tasks, then end and release the stream exactly once."""
        for task in (self._dispatch_task, self._inbound_task):
            await _cancel_task(task)
        self._dispatch_task = None
        self._inbound_task = None

        stream, self.stream = self.stream, None
        if stream is None:
            return
        try:
            await stream.end_input()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Error signalling end of input stream: {e}")
        try:
            await stream.close()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Error closing stream: {e}")

    # ── Façade (delegates to the client) ─────────────────────────────────

    def stream_audio(self, audio: bytes) -> None:
        self._client.stream_audio_chunk(self.session_id, audio)

    async def end_audio_content(self) -> None:
        await self._client.send_content_end(self.session_id)

    async def end_prompt(self) -> None:
        await self._client.send_prompt_end(self.session_id)

    async def close(self) -> None:
        await self._client.close_session(self.session_id)

    async def force_close(self) -> None:
        await self._client.force_close_session(self.session_id)

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "active": self.is_active,
            "prompt_name": self.prompt_name,
            "audio_content_id": self.audio_content_id,
            "pending_frames": self.outbound.pending,
            "last_activity_at": self.last_activity_at,
            "telemetry": self.telemetry.to_dict(),
            "latency": self.latency.summary(),
        }

    def __repr__(self) -> str:
        return f"StreamSession(id={self.session_id!r}, state={self.state.value})"


async def _cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel and await a task, unless it is the one running this code."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Task {task.get_name()} ended with error during shutdown: {e}")

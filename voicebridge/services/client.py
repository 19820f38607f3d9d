"""
VoiceBridge - Bidirectional Stream Client

================================================================================
SESSION LIFECYCLE OVER ONE DUPLEX MODEL STREAM
================================================================================

  1. create_stream_session(id?) registers a StreamSession (state CREATED).
  2. initiate_session(id) opens the duplex stream and transmits, strictly in
     order:
        sessionStart → promptStart → contentStart(TEXT, SYSTEM) → textInput
        → contentEnd → contentStart(AUDIO, USER)
     then moves the session to ACTIVE and starts its two tasks:
        • outbound-<id>: drains the outbound queue onto the stream
        • inbound-<id>:  decodes model output and dispatches it to handlers
  3. stream_audio_chunk() base64-wraps raw PCM as audioInput frames. It is
     rejected with SessionNotReady until the audio content-start is sent.
  4. close_session() sends contentEnd → promptEnd → sessionEnd (each best
     effort, each followed by a short pause), then unconditionally ends the
     stream, marks the session CLOSED and removes it from the registry.
     force_close_session() skips the frames.

Stream faults never raise into the caller: they become exactly one `error`
event per session, followed by a forced teardown so the caller can recreate
the session under the same id.
================================================================================
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional, Set

from ..core import events
from ..core.config import (
    AudioInputConfig,
    AudioOutputConfig,
    InferenceConfig,
    PromptConfig,
    StreamConfig,
    audio_input_cfg,
    audio_output_cfg,
    inference_cfg,
    prompt_cfg,
    stream_cfg,
)
from ..core.errors import EmptyAudioChunk, SessionNotFound, SessionNotReady, TransientStreamFault
from ..core.interfaces import StreamTransport
from ..core.models import EventType
from ..core.policy import ErrorPolicy, FaultKind
from ..core.state_machine import SessionState
from .inbound import InboundDispatcher
from .outbound import OutboundDispatcher
from .registry import SessionRegistry
from .session import AUDIO_CONTENT_START, PROMPT_START, StreamSession
from .tools import ToolRegistry, default_tools

logger = logging.getLogger("voicebridge.client")


class BidirectionalStreamClient:
    """
    Owns the sessions of one process (through an injected registry) and the
    transport used to open their duplex streams.

    Lifecycle:
        client = BidirectionalStreamClient(transport)
        session = client.create_stream_session()
        session.on("textOutput", handle_text)
        await client.initiate_session(session.session_id)
        session.stream_audio(pcm_bytes)
        await session.end_audio_content()
        await session.end_prompt()
        await session.close()
    """

    def __init__(
        self,
        transport: StreamTransport,
        registry: Optional[SessionRegistry[StreamSession]] = None,
        tools: Optional[ToolRegistry] = None,
        policy: Optional[ErrorPolicy] = None,
        stream_config: StreamConfig = stream_cfg,
        inference: InferenceConfig = inference_cfg,
        audio_input: AudioInputConfig = audio_input_cfg,
        audio_output: AudioOutputConfig = audio_output_cfg,
        prompt: PromptConfig = prompt_cfg,
    ) -> None:
        self._transport = transport
        self._registry: SessionRegistry[StreamSession] = registry if registry is not None else SessionRegistry()
        self._tools = tools if tools is not None else default_tools()
        self._policy = policy or ErrorPolicy()
        self._stream_cfg = stream_config
        self._inference = inference
        self._audio_input = audio_input
        self._audio_output = audio_output
        self._prompt = prompt

        # Session ids whose teardown is running (parallel to the registry)
        self._cleanup_in_progress: Set[str] = set()

    @property
    def registry(self) -> SessionRegistry[StreamSession]:
        return self._registry

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def policy(self) -> ErrorPolicy:
        return self._policy

    # ── Sessions ─────────────────────────────────────────────────────────

    def create_stream_session(self, session_id: Optional[str] = None) -> StreamSession:
        """Register a new session. Raises DuplicateSession if the id is taken."""
        return self._registry.create(lambda sid: StreamSession(sid, self), session_id)

    def get_session(self, session_id: str) -> Optional[StreamSession]:
        return self._registry.get(session_id)

    def _require(self, session_id: str) -> StreamSession:
        session = self._registry.get(session_id)
        if session is None:
            raise SessionNotFound(f"Stream session {session_id} not found", session_id)
        return session

    def is_session_active(self, session_id: str) -> bool:
        return self._registry.is_active(session_id)

    def list_active_sessions(self) -> List[str]:
        return [sid for sid, s in self._registry.all_sessions.items() if s.is_active]

    def get_last_activity(self, session_id: str) -> Optional[float]:
        session = self._registry.get(session_id)
        return session.last_activity_at if session else None

    def is_cleanup_in_progress(self, session_id: str) -> bool:
        return session_id in self._cleanup_in_progress

    # ── Handshake ────────────────────────────────────────────────────────

    async def initiate_session(self, session_id: str) -> None:
        """
        Open the duplex stream and transmit the handshake.
        Raises SessionNotFound; every later failure is delivered as an
        `error` event and tears the session down.
        """
        session = self._require(session_id)
        if session.initializing or session.state != SessionState.CREATED:
            logger.info(f"[{session_id}] initiate_session ignored; session is {session.state.value}")
            return

        session.initializing = True
        try:
            session.transition(SessionState.HANDSHAKING, reason="initiate")
            session.latency.mark("stream_requested")
            logger.info(f"[{session_id}] Opening bidirectional stream ({self._stream_cfg.model_id})...")

            stream = await asyncio.wait_for(
                self._transport.open(self._stream_cfg.model_id),
                timeout=self._stream_cfg.connect_timeout,
            )
            if session.state != SessionState.HANDSHAKING:
                # Closed while the stream was opening
                logger.info(f"[{session_id}] Session closed during connect; discarding stream")
                await stream.close()
                return

            dispatcher = OutboundDispatcher(
                session,
                self._policy,
                on_dead_connection=lambda exc: self._handle_stream_fault(session, exc, "bidirectionalStream"),
                poll_interval=self._stream_cfg.poll_interval,
            )
            session.attach_stream(stream, dispatcher)
            session.latency.mark("stream_opened")

            self._enqueue_handshake(session)
            sent = await dispatcher.flush()
            if session.state != SessionState.HANDSHAKING:
                logger.info(f"[{session_id}] Session closed during handshake")
                return
            if not (session.is_prompt_start_sent and session.is_audio_content_start_sent):
                raise TransientStreamFault("Handshake incomplete", session_id)

            session.transition(SessionState.ACTIVE, reason="handshake_sent")
            session.latency.mark("handshake_sent")

            inbound = InboundDispatcher(
                session,
                self._tools,
                self._policy,
                on_fault=lambda exc, source: self._handle_stream_fault(session, exc, source),
                tool_timeout=self._stream_cfg.tool_timeout,
            )
            session.start_tasks(inbound.run())
            logger.info(f"[{session_id}] Session active ({sent} handshake frames sent)")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{session_id}] Failed to initiate session: {e}")
            await self._handle_stream_fault(session, e, "initiateSession")
        finally:
            session.initializing = False

    def _enqueue_handshake(self, session: StreamSession) -> None:
        prompt = session.prompt_name
        session.enqueue(EventType.SESSION_START, events.session_start(self._inference))
        session.enqueue(
            EventType.PROMPT_START,
            events.prompt_start(prompt, self._audio_output, self._tools.specs()),
            marker=PROMPT_START,
        )
        session.enqueue(EventType.CONTENT_START, events.text_content_start(prompt, session.text_content_id))
        session.enqueue(
            EventType.TEXT_INPUT,
            events.text_input(prompt, session.text_content_id, self._prompt.system_prompt),
        )
        session.enqueue(EventType.CONTENT_END, events.content_end(prompt, session.text_content_id))
        session.enqueue(
            EventType.CONTENT_START,
            events.audio_content_start(prompt, session.audio_content_id, self._audio_input),
            marker=AUDIO_CONTENT_START,
        )

    # ── Audio ────────────────────────────────────────────────────────────

    def stream_audio_chunk(self, session_id: str, audio: bytes) -> None:
        """
        Queue one chunk of raw PCM as an audioInput frame. Never blocks.
        Raises EmptyAudioChunk, SessionNotFound or SessionNotReady.
        """
        if not audio:
            raise EmptyAudioChunk("Audio chunk is empty", session_id)
        session = self._require(session_id)
        if not session.is_ready_for_audio:
            raise SessionNotReady(
                f"Session {session_id} cannot accept audio (state={session.state.value}, "
                f"audio_content_start_sent={session.is_audio_content_start_sent})",
                session_id,
            )

        content = base64.b64encode(bytes(audio)).decode("ascii")
        if session.enqueue(
            EventType.AUDIO_INPUT,
            events.audio_input(session.prompt_name, session.audio_content_id, content),
        ):
            session.telemetry.audio_chunks += 1
            session.latency.mark("first_audio_in")

    # ── End-of-content steps ─────────────────────────────────────────────

    async def send_content_end(self, session_id: str) -> None:
        """End the audio content block (at most once)."""
        await self._end_audio_content(self._require(session_id))

    async def send_prompt_end(self, session_id: str) -> None:
        """End the prompt (at most once; only after promptStart was sent)."""
        await self._end_prompt(self._require(session_id))

    async def _end_audio_content(self, session: StreamSession) -> bool:
        if not session.is_audio_content_start_sent or session.audio_content_end_sent:
            return False
        session.audio_content_end_sent = True
        session.enqueue(EventType.CONTENT_END, events.content_end(session.prompt_name, session.audio_content_id))
        await asyncio.sleep(self._stream_cfg.content_end_pause)
        return True

    async def _end_prompt(self, session: StreamSession) -> bool:
        if not session.is_prompt_start_sent or session.prompt_end_sent:
            return False
        session.prompt_end_sent = True
        session.enqueue(EventType.PROMPT_END, events.prompt_end(session.prompt_name))
        await asyncio.sleep(self._stream_cfg.prompt_end_pause)
        return True

    async def _end_session(self, session: StreamSession) -> bool:
        if session.stream is None or session.session_end_sent:
            return False
        session.session_end_sent = True
        session.enqueue(EventType.SESSION_END, events.session_end())
        await asyncio.sleep(self._stream_cfg.session_end_pause)
        return True

    # ── Teardown ─────────────────────────────────────────────────────────

    async def close_session(self, session_id: str) -> None:
        """Graceful close. Idempotent; unknown ids are ignored."""
        session = self._registry.get(session_id)
        if session is None:
            logger.debug(f"[{session_id}] close_session: no such session")
            return
        await self._teardown(session, graceful=True, reason="close")

    async def force_close_session(self, session_id: str) -> None:
        """Immediate close: no teardown frames. Idempotent."""
        session = self._registry.get(session_id)
        if session is None:
            return
        await self._teardown(session, graceful=False, reason="force_close")

    async def close_all(self) -> None:
        for sid in self._registry.list_ids():
            await self.close_session(sid)

    async def _teardown(self, session: StreamSession, graceful: bool, reason: str) -> None:
        sid = session.session_id
        if sid in self._cleanup_in_progress or session.is_closed:
            logger.debug(f"[{sid}] Teardown already in progress or done")
            return

        self._cleanup_in_progress.add(sid)
        try:
            try:
                if graceful and not session.faulted and session.state != SessionState.CLOSING:
                    session.transition(SessionState.CLOSING, reason=reason)
                    for step in (self._end_audio_content, self._end_prompt, self._end_session):
                        try:
                            await step(session)
                        except Exception as e:
                            logger.warning(f"[{sid}] Teardown step {step.__name__} failed: {e}")
                    if session.dispatcher is not None and session.dispatcher.is_running:
                        await session.outbound.join(self._stream_cfg.drain_timeout)
            finally:
                # Runs even when the caller is cancelled mid-pause
                await session.shutdown()
        finally:
            session.mark_closed(reason)
            dropped = session.outbound.clear()
            if dropped:
                logger.info(f"[{sid}] Dropped {dropped} unsent frames at close")
            if self._registry.get(sid) is session:
                self._registry.remove(sid)
            self._cleanup_in_progress.discard(sid)
            logger.info(f"[{sid}] Session closed ({reason})")

    # ── Faults ───────────────────────────────────────────────────────────

    async def _handle_stream_fault(self, session: StreamSession, exc: BaseException, source: str) -> None:
        """
        Report a stream fault once as an `error` event, stop draining the
        queue and force the session closed.
        """
        sid = session.session_id
        if session.faulted or session.is_closed:
            logger.debug(f"[{sid}] Additional fault ignored: {exc}")
            return
        session.faulted = True
        dropped = session.outbound.clear()

        kind = self._policy.classify(exc)
        payload: Dict[str, Any] = self._policy.error_event(exc, sid, source)
        session.telemetry.errors += 1
        session.telemetry.last_error = payload.get("message")
        log = logger.critical if kind == FaultKind.FATAL else logger.error
        log(f"[{sid}] {kind.value} stream fault from {source}: {exc} ({dropped} queued frames dropped)")

        await session.handle_event(EventType.ERROR.value, payload)
        await self._teardown(session, graceful=False, reason=f"{kind.value}_fault")

"""
VoiceBridge - Inbound Event Dispatcher

Reads frames from the output side of a session's duplex stream, decodes
them and routes them to the session's handlers:

  • contentStart / textOutput / audioOutput / contentEnd / toolResult
      → forwarded verbatim to the matching handler
  • toolUse
      → forwarded AND cached on the session for the following TOOL contentEnd
  • contentEnd with type TOOL
      → tool-use completion: run the tool, enqueue
        contentStart(TOOL) → toolResult → contentEnd
  • error / modelStreamErrorException / internalServerException
      → fatal: handed to the client's fault handler
  • anything else → "any" handler only

A malformed frame or a failing handler never stops the reader.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict

from ..core import codec, events
from ..core.errors import FatalModelError, MalformedFrame, ToolExecutionError, TransientStreamFault
from ..core.interfaces import Frame
from ..core.models import ERROR_EVENT_TYPES, ContentType, EventType, ToolUse
from ..core.policy import ErrorPolicy
from .tools import ToolRegistry

logger = logging.getLogger("voicebridge.inbound")

FaultHandler = Callable[[BaseException, str], Awaitable[None]]


class InboundDispatcher:
    """One per session. Owns the receive side; only it mutates the tool-use cache."""

    def __init__(
        self,
        session: Any,
        tools: ToolRegistry,
        policy: ErrorPolicy,
        on_fault: FaultHandler,
        tool_timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._tools = tools
        self._policy = policy
        self._on_fault = on_fault
        self._tool_timeout = tool_timeout

    async def run(self) -> None:
        """Consume the stream's output side until it completes or the session closes."""
        session = self._session
        sid = session.session_id
        stream = session.stream
        if stream is None:
            return

        logger.info(f"[{sid}] Inbound reader started")
        frames = None
        try:
            frames = stream.receive()
            async for raw in frames:
                if session.is_closed or session.faulted:
                    break
                await self.handle_frame(raw)
                if session.is_closed or session.faulted:
                    break
            else:
                logger.info(f"[{sid}] Model output stream completed")
                if session.is_active:
                    await self._on_fault(
                        TransientStreamFault("Model stream ended unexpectedly", sid), "bidirectionalStream"
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if session.is_active:
                logger.error(f"[{sid}] Error reading model output stream: {e}")
                await self._on_fault(e, "bidirectionalStream")
        finally:
            await _close_frames(frames, sid)
            logger.info(f"[{sid}] Inbound reader stopped")

    async def handle_frame(self, raw: Frame) -> None:
        session = self._session
        sid = session.session_id

        try:
            event_type, data = codec.decode(raw)
        except MalformedFrame as e:
            e.session_id = sid
            logger.warning(f"[{sid}] Dropping malformed frame: {e}")
            session.telemetry.errors += 1
            await session.handle_event(EventType.ERROR.value, self._policy.error_event(e, sid))
            return

        session.touch()
        session.telemetry.frames_received += 1
        session.latency.mark("first_output")
        logger.debug(f"[{sid}] ← {event_type}")

        kind = EventType.parse(event_type)

        if kind in ERROR_EVENT_TYPES:
            message = data.get("message") if isinstance(data, dict) else None
            await self._on_fault(
                FatalModelError(message or str(data), sid, detail={"eventType": event_type, "payload": data}),
                "modelStream",
            )
            return

        if kind == EventType.TOOL_USE and isinstance(data, dict):
            session.tool_use = ToolUse(
                tool_use_id=data.get("toolUseId", ""),
                tool_name=data.get("toolName", ""),
                content=data.get("content"),
            )
            logger.info(f"[{sid}] Tool use requested: {session.tool_use.tool_name} ({session.tool_use.tool_use_id})")

        await session.handle_event(event_type, data)

        if (
            kind == EventType.CONTENT_END
            and isinstance(data, dict)
            and data.get("type") == ContentType.TOOL.value
        ):
            await self._complete_tool_use()

    # ── Tool use flow ────────────────────────────────────────────────────

    async def _complete_tool_use(self) -> None:
        session = self._session
        sid = session.session_id
        tool_use, session.tool_use = session.tool_use, None

        if tool_use is None:
            logger.warning(f"[{sid}] TOOL contentEnd without a preceding toolUse; ignoring")
            return

        session.telemetry.tool_calls += 1
        try:
            result = await asyncio.wait_for(
                self._tools.execute(tool_use.tool_name, tool_use.content),
                timeout=self._tool_timeout,
            )
        except ToolExecutionError as e:
            await self._tool_failed(e, tool_use)
            return
        except asyncio.TimeoutError:
            await self._tool_failed(
                ToolExecutionError(f"Tool {tool_use.tool_name} timed out after {self._tool_timeout}s"),
                tool_use,
            )
            return

        content = result if isinstance(result, str) else json.dumps(result)
        content_name = str(uuid.uuid4())
        prompt = session.prompt_name
        session.enqueue(EventType.CONTENT_START, events.tool_content_start(prompt, content_name, tool_use.tool_use_id))
        session.enqueue(EventType.TOOL_RESULT, events.tool_result(prompt, content_name, content))
        session.enqueue(EventType.CONTENT_END, events.content_end(prompt, content_name))
        logger.info(f"[{sid}] Tool result queued for {tool_use.tool_name} ({tool_use.tool_use_id})")

    async def _tool_failed(self, error: ToolExecutionError, tool_use: ToolUse) -> None:
        session = self._session
        error.session_id = session.session_id
        error.tool_name = error.tool_name or tool_use.tool_name
        error.tool_use_id = tool_use.tool_use_id
        logger.error(f"[{session.session_id}] {error.message}")
        session.telemetry.errors += 1
        session.telemetry.last_error = error.message
        payload: Dict[str, Any] = self._policy.error_event(error, session.session_id)
        await session.handle_event(EventType.ERROR.value, payload)


async def _close_frames(frames: Any, sid: str) -> None:
    """Finalize the receive iterator now rather than at garbage collection."""
    aclose = getattr(frames, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug(f"[{sid}] Error closing model output iterator: {e}")

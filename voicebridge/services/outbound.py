"""
VoiceBridge - Outbound Event Queue & Dispatch Loop

Each session owns one OutboundQueue (FIFO, unbounded, non-blocking put) and
one OutboundDispatcher. The dispatcher is the only code that writes to the
session's duplex stream:

  • During the handshake the client calls `flush()`, which transmits the
    queued setup frames in order and raises on the first failure.
  • Afterwards `run()` is the single-consumer loop. It waits on the queue with
    a bounded timeout so it can re-check session liveness, sends frames in
    enqueue order, logs and skips frames whose send fails, and halts on a
    dead connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from ..core.policy import ErrorPolicy

logger = logging.getLogger("voicebridge.outbound")


@dataclass
class OutboundFrame:
    """One serialized frame waiting for transmission."""
    event_type: str
    data: str
    # Names a handshake/teardown step the session tracks once this frame is sent
    marker: Optional[str] = None
    enqueued_at: float = field(default_factory=time.time)


class OutboundQueue:
    """FIFO of pending frames for one session."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._queue: asyncio.Queue[OutboundFrame] = asyncio.Queue()

    def put(self, frame: OutboundFrame) -> None:
        """Append a frame and wake the dispatcher. Never blocks."""
        self._queue.put_nowait(frame)

    async def get(self, timeout: float) -> Optional[OutboundFrame]:
        """Next frame, or None if nothing arrived within `timeout` seconds."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def get_nowait(self) -> Optional[OutboundFrame]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self, timeout: float) -> bool:
        """Wait until every queued frame has been processed. False on timeout."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"[{self._session_id}] Outbound queue not drained after {timeout}s "
                f"({self.pending} frames pending)"
            )
            return False

    def clear(self) -> int:
        """Drop every pending frame. Returns the number dropped."""
        dropped = 0
        while True:
            frame = self.get_nowait()
            if frame is None:
                break
            self._queue.task_done()
            dropped += 1
        return dropped

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def __len__(self) -> int:
        return self._queue.qsize()


class OutboundDispatcher:
    """
    Drains a session's OutboundQueue onto its duplex stream.

    `session` must expose: `session_id`, `stream`, `outbound`, `accepts_sends`,
    `on_frame_sent(frame)` and `telemetry`.
    """

    def __init__(
        self,
        session: Any,
        policy: ErrorPolicy,
        on_dead_connection: Callable[[BaseException], Awaitable[None]],
        poll_interval: float = 0.1,
    ) -> None:
        self._session = session
        self._policy = policy
        self._on_dead_connection = on_dead_connection
        self._poll_interval = poll_interval
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def _send(self, frame: OutboundFrame) -> None:
        stream = self._session.stream
        if stream is None:
            raise ConnectionError("Duplex stream is not open")
        logger.debug(f"[{self._session.session_id}] → {frame.event_type}: {frame.data[:200]}")
        await stream.send(frame.data)
        self._session.on_frame_sent(frame)

    async def flush(self) -> int:
        """
        Transmit every frame queued right now, in order.
        Used for the handshake; raises on the first failed send.
        """
        sent = 0
        while True:
            frame = self._session.outbound.get_nowait()
            if frame is None:
                return sent
            try:
                await self._send(frame)
                sent += 1
            finally:
                self._session.outbound.task_done()

    async def run(self) -> None:
        """Single-consumer dispatch loop. Exits once the session stops accepting sends."""
        sid = self._session.session_id
        queue = self._session.outbound
        self._running = True
        logger.info(f"[{sid}] Dispatch loop started")

        try:
            while self._session.accepts_sends:
                frame = await queue.get(self._poll_interval)
                if frame is None:
                    continue  # re-check liveness

                try:
                    if not self._session.accepts_sends:
                        logger.debug(f"[{sid}] Dropping {frame.event_type}; session no longer sending")
                        continue
                    await self._send(frame)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._session.telemetry.send_failures += 1
                    if self._policy.is_dead_connection(e):
                        logger.error(f"[{sid}] Connection lost while sending {frame.event_type}: {e}")
                        await self._on_dead_connection(e)
                        return
                    logger.warning(f"[{sid}] Failed to send {frame.event_type}, skipping: {e}")
                finally:
                    queue.task_done()
        finally:
            self._running = False
            logger.info(f"[{sid}] Dispatch loop stopped")

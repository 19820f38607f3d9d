"""Shared pytest fixtures: an in-memory duplex stream and a fast-timing client."""

import asyncio
import dataclasses
from typing import Any, Callable, List, Optional, Tuple

import pytest
import pytest_asyncio

from voicebridge.core import codec
from voicebridge.core.config import StreamConfig
from voicebridge.services.client import BidirectionalStreamClient
from voicebridge.services.registry import SessionRegistry

_END = object()


# =============================================================================
# Fake transport
# =============================================================================


class FakeStream:
    """Records every frame sent; frames pushed by the test are received."""

    def __init__(self) -> None:
        self.sent: List[str] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.fail_with: Optional[BaseException] = None
        self.input_ended = False
        self.close_calls = 0
        self.receiver_closed = False

    async def send(self, frame: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(frame)

    async def end_input(self) -> None:
        self.input_ended = True

    async def receive(self):
        try:
            while True:
                item = await self.inbox.get()
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.receiver_closed = True

    async def close(self) -> None:
        self.close_calls += 1
        self.inbox.put_nowait(_END)

    # ── Test helpers ──

    def push(self, event_type: str, payload: Any) -> None:
        self.inbox.put_nowait(codec.encode(event_type, payload))

    def push_raw(self, raw: Any) -> None:
        self.inbox.put_nowait(raw)

    def end(self) -> None:
        self.inbox.put_nowait(_END)

    @property
    def events(self) -> List[Tuple[str, Any]]:
        return [codec.decode(f) for f in self.sent]

    @property
    def event_types(self) -> List[str]:
        return [t for t, _ in self.events]


class FakeTransport:
    """Opens FakeStreams and keeps them for inspection."""

    def __init__(self) -> None:
        self.streams: List[FakeStream] = []
        self.opened_models: List[str] = []
        self.fail_with: Optional[BaseException] = None

    async def open(self, model_id: str) -> FakeStream:
        self.opened_models.append(model_id)
        if self.fail_with is not None:
            raise self.fail_with
        stream = FakeStream()
        self.streams.append(stream)
        return stream

    @property
    def last(self) -> FakeStream:
        return self.streams[-1]


FAST_STREAM_CONFIG = StreamConfig(
    model_id="test-model",
    connect_timeout=1.0,
    poll_interval=0.01,
    content_end_pause=0.0,
    prompt_end_pause=0.0,
    session_end_pause=0.0,
    drain_timeout=1.0,
    tool_timeout=1.0,
)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` until true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.01)


def payloads_of(stream: FakeStream, event_type: str) -> List[Any]:
    return [p for t, p in stream.events if t == event_type]


def build_client(transport, registry=None, **timing) -> BidirectionalStreamClient:
    """Client on FAST_STREAM_CONFIG with selected timings overridden."""
    return BidirectionalStreamClient(
        transport, registry=registry, stream_config=dataclasses.replace(FAST_STREAM_CONFIG, **timing)
    )


# =============================================================================
# Client fixtures
# =============================================================================


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def registry() -> SessionRegistry:
    """A fresh registry per test."""
    return SessionRegistry()


@pytest_asyncio.fixture
async def client(transport, registry):
    """Client with zero pauses and a fast dispatch poll."""
    c = BidirectionalStreamClient(transport, registry=registry, stream_config=FAST_STREAM_CONFIG)
    yield c
    await c.close_all()


@pytest_asyncio.fixture
async def active_session(client, transport):
    """A session whose handshake has been transmitted."""
    session = client.create_stream_session("s1")
    await client.initiate_session("s1")
    assert session.is_ready_for_audio
    return session

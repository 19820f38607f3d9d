"""
VoiceBridge - Transport Interfaces

Protocol definitions for the duplex-stream transport that carries frames to
and from the speech-to-speech model. The session engine only ever talks to
the model through these protocols; a concrete binding (e.g. a Bedrock
bidirectional-stream client) lives outside this package.
"""

from __future__ import annotations

from typing import AsyncIterator, Protocol, Union, runtime_checkable


Frame = Union[str, bytes]


@runtime_checkable
class DuplexStream(Protocol):
    """One open model-invocation stream. Owned by exactly one session."""

    async def send(self, frame: str) -> None:
        """Signal one JSON text frame on the input side."""
        ...

    async def end_input(self) -> None:
        """Signal end-of-stream on the input side."""
        ...

    def receive(self) -> AsyncIterator[Frame]:
        """
        Iterate decoded frames from the output side.
        Completes when the remote side ends the stream; raises on faults.
        """
        ...

    async def close(self) -> None:
        """Release the underlying connection. Safe to call more than once."""
        ...


@runtime_checkable
class StreamTransport(Protocol):
    """Factory for duplex streams (the RPC client)."""

    async def open(self, model_id: str) -> DuplexStream:
        """Open a bidirectional model-invocation stream."""
        ...

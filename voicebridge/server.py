"""
VoiceBridge — FastAPI Server

================================================================================
Architecture:
  • One BidirectionalStreamClient per app, built by an injectable factory
  • One StreamSession per WebSocket, created and initiated on connect
  • Browser audio arrives as base64 PCM and is streamed as audioInput frames
  • Every model event of the session is relayed back to the browser
  • A session torn down by a stream fault is recreated once on the next chunk
================================================================================

Endpoints:
  WS  /ws/audio             — bidirectional audio relay
  GET /health               — server health
  GET /sessions             — list active sessions with telemetry
  GET /session/{session_id} — single session detail

Client → Server messages:
  { type: "audio_input", audio_data: "<base64|data-url>" } → stream one chunk
  { type: "audio_start" }                                   → ensure a live session
  { type: "stop_audio" }                                    → end audio content
  { type: "prompt_end" }                                    → end the prompt
  { type: "ping" }                                          → keepalive

Server → Client messages:
  { type: "confirm_subscription", data: {...} } → session created + initiated
  { type: "audio_ready", data: {...} }          → ack for audio_start
  { type: "<modelEvent>", data: {...} }         → textOutput, audioOutput, ...
  { type: "error", data: {...} }                → stream fault or bad input
  { type: "pong" }                              → keepalive ack
"""

from __future__ import annotations

import base64
import binascii
import importlib
import json
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import server_cfg
from .core.errors import InvalidAudioData, SessionNotFound, SessionNotReady, VoiceBridgeError
from .core.models import EventType
from .services.client import BidirectionalStreamClient
from .services.session import StreamSession

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("voicebridge")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

# Model events forwarded to the browser
RELAYED_EVENTS = (
    EventType.CONTENT_START,
    EventType.TEXT_OUTPUT,
    EventType.AUDIO_OUTPUT,
    EventType.CONTENT_END,
    EventType.TOOL_USE,
    EventType.TOOL_RESULT,
    EventType.COMPLETION_START,
    EventType.COMPLETION_END,
    EventType.USAGE,
    EventType.ERROR,
)

ClientFactory = Callable[[], BidirectionalStreamClient]


def _default_client_factory() -> BidirectionalStreamClient:
    """Build a client from VOICEBRIDGE_TRANSPORT ("package.module:factory")."""
    if not server_cfg.transport:
        raise RuntimeError("VOICEBRIDGE_TRANSPORT is not set; no model transport available")
    module_name, _, attr = server_cfg.transport.partition(":")
    factory = getattr(importlib.import_module(module_name), attr or "create_transport")
    return BidirectionalStreamClient(factory())


def decode_audio_data(audio_data: Any) -> bytes:
    """Base64 payload from the browser, with or without a data-URL prefix."""
    if not isinstance(audio_data, str) or not audio_data:
        raise InvalidAudioData("audio_data must be a non-empty base64 string")
    if audio_data.startswith("data:"):
        _, _, audio_data = audio_data.partition(",")
    try:
        return base64.b64decode(audio_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidAudioData(f"audio_data is not valid base64: {e}") from e


def create_app(client_factory: Optional[ClientFactory] = None) -> FastAPI:
    factory = client_factory or _default_client_factory
    state: Dict[str, Optional[BidirectionalStreamClient]] = {"client": None}

    def get_client() -> BidirectionalStreamClient:
        if state["client"] is None:
            state["client"] = factory()
        return state["client"]

    # ── Lifespan ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 VoiceBridge starting...")
        logger.info(f"   Transport configured: {bool(client_factory or server_cfg.transport)}")
        yield
        logger.info("🛑 Shutting down — closing all sessions...")
        if state["client"] is not None:
            await state["client"].close_all()
        logger.info("🛑 VoiceBridge stopped")

    app = FastAPI(
        title="VoiceBridge — Bidirectional Speech Streaming",
        version=VERSION,
        description=(
            "Relays browser microphone audio to a speech-to-speech model over one "
            "duplex stream per session and streams the model's events back."
        ),
        lifespan=lifespan,
    )
    app.state.get_client = get_client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(server_cfg.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # REST Endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        client = state["client"]
        return {
            "status": "ok",
            "version": VERSION,
            "active_sessions": len(client.list_active_sessions()) if client else 0,
        }

    @app.get("/sessions")
    async def list_sessions():
        client = state["client"]
        if client is None:
            return {}
        return {
            sid: {"active": s.is_active, "state": s.state.value, "telemetry": s.telemetry.to_dict()}
            for sid, s in client.registry.all_sessions.items()
        }

    @app.get("/session/{session_id}")
    async def session_detail(session_id: str):
        client = state["client"]
        session = client.get_session(session_id) if client else None
        if session is None:
            return JSONResponse(status_code=404, content={"error": "session not found"})
        return session.summary()

    # -----------------------------------------------------------------------
    # WebSocket: Per-Connection Audio Relay
    # -----------------------------------------------------------------------

    @app.websocket("/ws/audio")
    async def websocket_audio(ws: WebSocket):
        """One StreamSession per connection; closed when the socket goes away."""
        await ws.accept()

        session_id = uuid.uuid4().hex[:12]
        client = get_client()

        async def send(data: Dict[str, Any]) -> None:
            try:
                await ws.send_text(json.dumps(data))
            except Exception as e:
                logger.debug(f"[{session_id}] WebSocket send failed: {e}")

        # Set when an error event says the session was torn down
        gone = {"flag": False}

        def relay(event: EventType) -> Callable[[Any], Any]:
            async def _forward(data: Any) -> None:
                await send({"type": event.value, "data": data})
            return _forward

        async def on_error(data: Any) -> None:
            if isinstance(data, dict) and client.policy.is_session_gone(data):
                gone["flag"] = True
            await send({"type": EventType.ERROR.value, "data": data})

        async def open_session() -> StreamSession:
            gone["flag"] = False
            session = client.create_stream_session(session_id)
            for event in RELAYED_EVENTS:
                session.on(event, relay(event))
            session.on(EventType.ERROR, on_error)
            await client.initiate_session(session_id)
            return session

        async def ensure_session() -> bool:
            """Recreate the session if a fault removed it. True when live."""
            if gone["flag"] or client.get_session(session_id) is None:
                await client.force_close_session(session_id)
                # A fault teardown may still be releasing the old stream
                while client.get_session(session_id) is not None:
                    await asyncio.sleep(0.01)
                logger.info(f"[{session_id}] Session gone; recreating")
                await open_session()
            return client.is_session_active(session_id)

        async def stream_chunk(audio: bytes) -> None:
            try:
                client.stream_audio_chunk(session_id, audio)
                return
            except (SessionNotFound, SessionNotReady) as e:
                if not gone["flag"] and client.get_session(session_id) is not None:
                    raise
                logger.info(f"[{session_id}] {type(e).__name__} on audio chunk; retrying once")
            await ensure_session()
            client.stream_audio_chunk(session_id, audio)

        try:
            await open_session()
            await send({
                "type": "confirm_subscription",
                "data": {"session_id": session_id, "active": client.is_session_active(session_id)},
            })

            while True:
                raw = await ws.receive_text()

                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(message, dict):
                    continue

                msg_type = message.get("type", "")

                try:
                    # ── Audio chunk ──
                    if msg_type == "audio_input":
                        await stream_chunk(decode_audio_data(message.get("audio_data")))

                    # ── Start of user speech ──
                    elif msg_type == "audio_start":
                        active = await ensure_session()
                        await send({"type": "audio_ready", "data": {"session_id": session_id, "active": active}})

                    # ── End of user speech ──
                    elif msg_type == "stop_audio":
                        await client.send_content_end(session_id)

                    elif msg_type == "prompt_end":
                        await client.send_prompt_end(session_id)

                    # ── Keepalive ──
                    elif msg_type == "ping":
                        await send({"type": "pong"})

                except VoiceBridgeError as e:
                    logger.warning(f"[{session_id}] {msg_type} rejected: {e.message}")
                    await send({"type": "error", "data": e.to_dict()})

        except WebSocketDisconnect:
            logger.info(f"[{session_id}] WebSocket disconnected")
        except Exception as e:
            logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
        finally:
            await client.close_session(session_id)

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "voicebridge.server:create_app",
        factory=True,
        host=server_cfg.host,
        port=server_cfg.port,
        log_level="info",
    )

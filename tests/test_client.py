"""Tests for session creation, the handshake, audio streaming and teardown."""

import asyncio
import base64

import pytest

from conftest import build_client, payloads_of, wait_until
from voicebridge.core.errors import DuplicateSession, EmptyAudioChunk, SessionNotFound, SessionNotReady
from voicebridge.core.state_machine import SessionState

HANDSHAKE = ["sessionStart", "promptStart", "contentStart", "textInput", "contentEnd", "contentStart"]


class TestSessionCreation:
    """create_stream_session and introspection before the handshake."""

    @pytest.mark.asyncio
    async def test_create_registers_session(self, client):
        session = client.create_stream_session("a")
        assert session.state == SessionState.CREATED
        assert client.get_session("a") is session
        assert client.is_session_active("a")
        assert client.list_active_sessions() == ["a"]
        assert client.get_last_activity("a") == session.last_activity_at

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, client):
        client.create_stream_session("a")
        with pytest.raises(DuplicateSession):
            client.create_stream_session("a")

    @pytest.mark.asyncio
    async def test_identifiers_are_distinct(self, client):
        s = client.create_stream_session()
        assert len({s.prompt_name, s.text_content_id, s.audio_content_id}) == 3

    @pytest.mark.asyncio
    async def test_initiate_unknown_session(self, client):
        with pytest.raises(SessionNotFound):
            await client.initiate_session("missing")


class TestHandshake:
    """initiate_session transmits six frames in order."""

    @pytest.mark.asyncio
    async def test_handshake_order_and_identifiers(self, client, transport, active_session):
        stream = transport.last
        assert transport.opened_models == ["test-model"]
        assert stream.event_types == HANDSHAKE
        assert active_session.state == SessionState.ACTIVE
        assert active_session.is_prompt_start_sent
        assert active_session.is_audio_content_start_sent

        events = stream.events
        prompt = active_session.prompt_name
        for _, payload in events[1:]:
            assert payload["promptName"] == prompt

        _, text_start = events[2]
        assert text_start["type"] == "TEXT"
        assert text_start["role"] == "SYSTEM"
        assert text_start["contentName"] == active_session.text_content_id
        assert events[3][1]["contentName"] == active_session.text_content_id
        assert events[4][1]["contentName"] == active_session.text_content_id

        _, audio_start = events[5]
        assert audio_start["type"] == "AUDIO"
        assert audio_start["role"] == "USER"
        assert audio_start["contentName"] == active_session.audio_content_id
        assert audio_start["audioInputConfiguration"]["sampleRateHertz"] == 16000

    @pytest.mark.asyncio
    async def test_session_start_and_prompt_start_payloads(self, client, transport, active_session):
        _, session_start = transport.last.events[0]
        assert session_start == {"inferenceConfiguration": {"maxTokens": 1024, "topP": 0.9, "temperature": 0.7}}

        _, prompt_start = transport.last.events[1]
        assert prompt_start["audioOutputConfiguration"]["sampleRateHertz"] == 24000
        assert prompt_start["audioOutputConfiguration"]["voiceId"] == "matthew"
        tool_names = [t["toolSpec"]["name"] for t in prompt_start["toolConfiguration"]["tools"]]
        assert tool_names == ["getDateAndTimeTool"]

    @pytest.mark.asyncio
    async def test_second_initiate_is_noop(self, client, transport, active_session):
        await client.initiate_session("s1")
        assert len(transport.streams) == 1
        assert transport.last.event_types == HANDSHAKE

    @pytest.mark.asyncio
    async def test_connect_failure_becomes_error_event(self, client, transport):
        errors = []
        session = client.create_stream_session("s1")
        session.on("error", errors.append)
        transport.fail_with = ConnectionRefusedError("no route")

        await client.initiate_session("s1")

        assert len(errors) == 1
        assert errors[0]["source"] == "initiateSession"
        assert errors[0]["kind"] == "transient"
        assert session.is_closed
        assert client.get_session("s1") is None

    @pytest.mark.asyncio
    async def test_handshake_send_failure(self, client, transport):
        errors = []
        session = client.create_stream_session("s1")
        session.on("error", errors.append)

        real_open = transport.open

        async def open_broken(model_id):
            stream = await real_open(model_id)
            stream.fail_with = ConnectionResetError("reset during handshake")
            return stream

        transport.open = open_broken
        await client.initiate_session("s1")

        assert len(errors) == 1
        assert not session.is_audio_content_start_sent
        assert client.get_session("s1") is None
        # The same id can be reused once the faulted session is gone
        assert client.create_stream_session("s1") is not session


class TestAudio:
    """stream_audio_chunk validation and framing."""

    @pytest.mark.asyncio
    async def test_chunk_is_base64_encoded(self, client, transport, active_session):
        pcm = bytes(range(256)) + bytes(64)
        active_session.stream_audio(pcm)

        stream = transport.last
        await wait_until(lambda: "audioInput" in stream.event_types)
        (payload,) = payloads_of(stream, "audioInput")
        assert base64.b64decode(payload["content"]) == pcm
        assert len(pcm) == 320
        assert payload["contentName"] == active_session.audio_content_id
        assert payload["promptName"] == active_session.prompt_name
        assert payload["role"] == "USER"
        assert active_session.telemetry.audio_chunks == 1

    @pytest.mark.asyncio
    async def test_chunks_preserve_order(self, client, transport, active_session):
        chunks = [bytes([i]) * 32 for i in range(50)]
        for chunk in chunks:
            client.stream_audio_chunk("s1", chunk)

        stream = transport.last
        await wait_until(lambda: len(payloads_of(stream, "audioInput")) == 50)
        sent = [base64.b64decode(p["content"]) for p in payloads_of(stream, "audioInput")]
        assert sent == chunks

    @pytest.mark.asyncio
    async def test_audio_before_handshake_rejected(self, client, transport):
        client.create_stream_session("s1")
        with pytest.raises(SessionNotReady):
            client.stream_audio_chunk("s1", b"\x00\x01")
        assert transport.streams == []

    @pytest.mark.asyncio
    async def test_empty_chunk_rejected(self, client, active_session):
        with pytest.raises(EmptyAudioChunk):
            client.stream_audio_chunk("s1", b"")

    @pytest.mark.asyncio
    async def test_unknown_session(self, client):
        with pytest.raises(SessionNotFound):
            client.stream_audio_chunk("nope", b"\x00")

    @pytest.mark.asyncio
    async def test_audio_after_content_end_rejected(self, client, active_session):
        await active_session.end_audio_content()
        with pytest.raises(SessionNotReady):
            active_session.stream_audio(b"\x00\x01")


class TestEndOperations:
    """send_content_end and send_prompt_end are at-most-once."""

    @pytest.mark.asyncio
    async def test_content_end_once(self, client, transport, active_session):
        await client.send_content_end("s1")
        await client.send_content_end("s1")
        stream = transport.last
        await wait_until(lambda: stream.event_types.count("contentEnd") == 2)
        await asyncio.sleep(0.05)
        ends = payloads_of(stream, "contentEnd")
        # One for the system prompt, one for audio
        assert len(ends) == 2
        assert ends[1]["contentName"] == active_session.audio_content_id

    @pytest.mark.asyncio
    async def test_prompt_end_once(self, client, transport, active_session):
        await active_session.end_prompt()
        await active_session.end_prompt()
        stream = transport.last
        await wait_until(lambda: "promptEnd" in stream.event_types)
        await asyncio.sleep(0.05)
        assert stream.event_types.count("promptEnd") == 1

    @pytest.mark.asyncio
    async def test_unknown_session(self, client):
        with pytest.raises(SessionNotFound):
            await client.send_prompt_end("nope")


class TestClose:
    """Graceful and forced teardown."""

    @pytest.mark.asyncio
    async def test_graceful_close_sends_teardown_frames(self, client, transport, active_session):
        active_session.stream_audio(b"\x01\x02")
        await active_session.close()

        stream = transport.last
        assert stream.event_types[len(HANDSHAKE):] == ["audioInput", "contentEnd", "promptEnd", "sessionEnd"]
        assert stream.input_ended
        assert stream.close_calls == 1
        assert active_session.is_closed
        assert client.get_session("s1") is None
        assert not client.is_session_active("s1")
        assert not client.is_cleanup_in_progress("s1")

    @pytest.mark.asyncio
    async def test_close_after_explicit_ends_skips_them(self, client, transport, active_session):
        await client.send_content_end("s1")
        await client.send_prompt_end("s1")
        await client.close_session("s1")
        types = transport.last.event_types[len(HANDSHAKE):]
        assert types == ["contentEnd", "promptEnd", "sessionEnd"]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, client, transport, active_session):
        await client.close_session("s1")
        await client.close_session("s1")
        await client.close_session("never-existed")
        assert transport.last.event_types.count("sessionEnd") == 1
        assert transport.last.close_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_close(self, client, transport, active_session):
        await asyncio.gather(*(client.close_session("s1") for _ in range(5)))
        stream = transport.last
        assert stream.event_types.count("sessionEnd") == 1
        assert stream.close_calls == 1
        assert active_session.is_closed

    @pytest.mark.asyncio
    async def test_force_close_sends_nothing(self, client, transport, active_session):
        await active_session.force_close()
        stream = transport.last
        assert stream.event_types == HANDSHAKE
        assert stream.close_calls == 1
        assert client.get_session("s1") is None

    @pytest.mark.asyncio
    async def test_close_before_initiate(self, client, transport):
        session = client.create_stream_session("s1")
        await session.close()
        assert session.is_closed
        assert transport.streams == []
        assert client.get_session("s1") is None

    @pytest.mark.asyncio
    async def test_close_all(self, client, transport):
        for sid in ("a", "b"):
            client.create_stream_session(sid)
            await client.initiate_session(sid)
        await client.close_all()
        assert len(client.registry) == 0
        assert all(s.event_types[-1] == "sessionEnd" for s in transport.streams)

    @pytest.mark.asyncio
    async def test_recreate_after_close(self, client, transport, active_session):
        await active_session.close()
        again = client.create_stream_session("s1")
        await client.initiate_session("s1")
        assert again.is_ready_for_audio
        assert len(transport.streams) == 2

    @pytest.mark.asyncio
    async def test_cancelled_close_still_releases_stream(self, transport, registry):
        c = build_client(transport, registry, content_end_pause=0.5)
        try:
            session = c.create_stream_session("s1")
            await c.initiate_session("s1")
            inbound = session._inbound_task

            task = asyncio.create_task(session.close())
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            stream = transport.last
            assert stream.input_ended
            assert stream.close_calls == 1
            assert inbound.done()
            assert session.is_closed
            assert c.get_session("s1") is None
            assert not c.is_cleanup_in_progress("s1")
        finally:
            await c.close_all()

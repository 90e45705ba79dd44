"""
Tests for Model Stream Adapters — wire translation, error classification,
lifecycle guarantees, and a round trip against a local websocket server.
"""
import base64
import json

import pytest
from websockets.asyncio.server import serve

from config.settings import ModelConfig
from models.schemas import (
    AudioChunk, AudioDirection, AudioFrame, Interrupted, ModelSessionConfig,
    SpeakerRole, StreamClosed, StreamError, StreamErrorKind, ToolInvocationRequested,
    ToolSuccess, TranscriptDelta, TurnComplete,
)
from voice.model_stream import (
    InMemoryModelStream, ModelStreamError, RealtimeModelStream, classify_error,
    create_model_stream_factory, tool_result_payload,
)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


@pytest.fixture
def realtime() -> RealtimeModelStream:
    return RealtimeModelStream(ModelConfig(api_key="test-key"))


# ══════════════════════════════════════════════════════════════
#  WIRE TRANSLATION
# ══════════════════════════════════════════════════════════════

class TestTranslate:

    def test_audio_delta_tagged_with_response(self, realtime):
        realtime.translate({"type": "response.created", "response": {"id": "resp_1"}})
        events = realtime.translate({"type": "response.output_audio.delta", "delta": b64(b"\x01\x02")})
        assert events == [AudioChunk(data=b"\x01\x02", turn_id="resp_1")]

    def test_bad_audio_delta_is_recoverable(self, realtime):
        events = realtime.translate({"type": "response.output_audio.delta", "delta": "%%%"})
        assert events[0].kind is StreamErrorKind.DECODE
        assert events[0].recoverable

    def test_transcripts(self, realtime):
        delta = realtime.translate({"type": "response.output_audio_transcript.delta", "delta": "Hi"})
        done = realtime.translate({"type": "response.output_audio_transcript.done"})
        user = realtime.translate({
            "type": "conversation.item.input_audio_transcription.completed",
            "item_id": "item_1",
            "transcript": "book me in",
        })
        assert delta[0].text == "Hi" and not delta[0].final
        assert done[0].final
        assert user == [TranscriptDelta(text="book me in", role=SpeakerRole.USER, final=True, turn_id="item_1")]

    def test_function_call(self, realtime):
        realtime.translate({
            "type": "response.output_item.added",
            "item": {"type": "function_call", "call_id": "call_1", "name": "lookup_availability"},
        })
        events = realtime.translate({
            "type": "response.function_call_arguments.done",
            "call_id": "call_1",
            "arguments": '{"date": "2024-06-01"}',
        })
        assert events == [ToolInvocationRequested(
            invocation_id="call_1",
            tool_name="lookup_availability",
            arguments={"date": "2024-06-01"},
        )]

    def test_function_call_bad_arguments(self, realtime):
        events = realtime.translate({
            "type": "response.function_call_arguments.done",
            "call_id": "call_2", "name": "t", "arguments": "{nope",
        })
        assert events[0].arguments == {}
        events = realtime.translate({
            "type": "response.function_call_arguments.done",
            "call_id": "call_3", "name": "t", "arguments": "[1, 2]",
        })
        assert events[0].arguments == {"value": [1, 2]}

    def test_speech_start_interrupts_only_audible_response(self, realtime):
        realtime.translate({"type": "response.created", "response": {"id": "resp_1"}})
        assert realtime.translate({"type": "input_audio_buffer.speech_started"}) == []
        realtime.translate({"type": "response.output_audio.delta", "delta": b64(b"x")})
        assert realtime.translate({"type": "input_audio_buffer.speech_started"}) == [
            Interrupted(turn_id="resp_1")
        ]
        assert realtime.translate({"type": "input_audio_buffer.speech_started"}) == []

    def test_response_done(self, realtime):
        assert realtime.translate({"type": "response.done", "response": {"id": "resp_9"}}) == [
            TurnComplete(turn_id="resp_9")
        ]

    def test_speech_after_finished_reply_is_not_a_barge_in(self, realtime):
        realtime.translate({"type": "response.created", "response": {"id": "resp_1"}})
        realtime.translate({"type": "response.output_audio.delta", "delta": b64(b"x")})
        realtime.translate({"type": "response.done", "response": {"id": "resp_1"}})
        assert realtime.translate({"type": "input_audio_buffer.speech_started"}) == []

    def test_unknown_event_ignored(self, realtime):
        assert realtime.translate({"type": "rate_limits.updated"}) == []


class TestClassifyError:

    def test_rate_limit_is_recoverable(self):
        error = classify_error({"type": "rate_limit_error", "message": "slow"})
        assert error.kind is StreamErrorKind.RATE_LIMITED
        assert error.recoverable

    def test_invalid_request_is_recoverable(self):
        error = classify_error({"type": "invalid_request_error", "code": "unknown_parameter"})
        assert error.kind is StreamErrorKind.INVALID_REQUEST
        assert error.recoverable

    def test_fatal_codes(self):
        error = classify_error({"type": "invalid_request_error", "code": "session_expired"})
        assert error.kind is StreamErrorKind.REJECTED
        assert not error.recoverable

    def test_unclassified_is_server_error(self):
        error = classify_error({"message": "boom"})
        assert error.kind is StreamErrorKind.SERVER
        assert not error.recoverable

    def test_non_object_error_is_recoverable_decode(self):
        error = classify_error("boom")
        assert error.kind is StreamErrorKind.DECODE
        assert error.recoverable


class TestSessionUpdate:

    def test_session_update_carries_prompt_voice_and_tools(self, realtime):
        tools = [{"type": "function", "name": "lookup_availability", "description": "", "parameters": {}}]
        update = realtime.build_session_update(ModelSessionConfig(
            session_id="s1", prompt="Be brief.", voice="verse", tools=tools,
        ))
        session = update["session"]
        assert update["type"] == "session.update"
        assert session["instructions"] == "Be brief."
        assert session["audio"]["output"]["voice"] == "verse"
        assert session["audio"]["input"]["turn_detection"]["interrupt_response"] is True
        assert session["tools"] == tools

    def test_no_tools_key_without_tools(self, realtime):
        update = realtime.build_session_update(ModelSessionConfig(session_id="s1"))
        assert "tools" not in update["session"]

    def test_tool_result_payload(self):
        payload = json.loads(tool_result_payload("call_1", ToolSuccess(result={"ok": True})))
        assert payload == {"invocation_id": "call_1", "status": "success", "result": {"ok": True}}


# ══════════════════════════════════════════════════════════════
#  LIFECYCLE
# ══════════════════════════════════════════════════════════════

class TestInMemoryStream:

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        stream = InMemoryModelStream()
        await stream.open(ModelSessionConfig(session_id="s1"))
        await stream.close()
        await stream.close()
        assert stream.close_calls == 2
        assert stream.releases == 1
        assert stream.closed

    @pytest.mark.asyncio
    async def test_events_not_restartable(self):
        stream = InMemoryModelStream()
        await stream.open(ModelSessionConfig(session_id="s1"))
        stream.events()
        with pytest.raises(RuntimeError):
            stream.events()

    @pytest.mark.asyncio
    async def test_events_end_at_terminal_event(self):
        stream = InMemoryModelStream()
        await stream.open(ModelSessionConfig(session_id="s1"))
        stream.emit(TranscriptDelta(text="a"))
        stream.emit(StreamError.of(StreamErrorKind.DECODE, "junk"))
        stream.emit(StreamError.of(StreamErrorKind.SERVER, "down"))
        stream.emit(TranscriptDelta(text="never"))
        events = [e async for e in stream.events()]
        assert [type(e) for e in events] == [TranscriptDelta, StreamError, StreamError]

    @pytest.mark.asyncio
    async def test_send_after_close_raises(self):
        stream = InMemoryModelStream()
        await stream.open(ModelSessionConfig(session_id="s1"))
        await stream.close()
        with pytest.raises(ModelStreamError) as exc:
            await stream.send_audio(AudioFrame(
                sequence=0, direction=AudioDirection.CLIENT_TO_MODEL, payload=b"",
            ))
        assert exc.value.kind is StreamErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_close_ends_event_sequence(self):
        stream = InMemoryModelStream()
        await stream.open(ModelSessionConfig(session_id="s1"))
        await stream.close()
        assert [e async for e in stream.events()] == [StreamClosed()]


class TestRealtimeStream:

    def test_events_require_open_stream(self, realtime):
        with pytest.raises(ModelStreamError):
            realtime.events()

    @pytest.mark.asyncio
    async def test_close_before_open_is_safe(self, realtime):
        await realtime.close()
        await realtime.close()
        assert not realtime.is_open

    @pytest.mark.asyncio
    async def test_round_trip_against_local_server(self):
        received = []

        async def handler(ws):
            received.append(json.loads(await ws.recv()))
            await ws.send(json.dumps({"type": "session.created"}))
            await ws.send(json.dumps({"type": "session.updated"}))
            received.append(json.loads(await ws.recv()))
            await ws.send(json.dumps({"type": "response.created", "response": {"id": "resp_1"}}))
            await ws.send(json.dumps({"type": "response.output_audio.delta",
                                      "response_id": "resp_1", "delta": b64(b"hello")}))
            await ws.send("not json")
            await ws.send(json.dumps({"type": "response.done", "response": {"id": "resp_1"}}))
            await ws.close()

        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = RealtimeModelStream(ModelConfig(url=f"ws://127.0.0.1:{port}", api_key="k"))
            await stream.open(ModelSessionConfig(session_id="s1", prompt="hi", voice="alloy"))
            await stream.send_audio(AudioFrame(
                sequence=0, direction=AudioDirection.CLIENT_TO_MODEL, payload=b"\x00\x01",
            ))
            events = [e async for e in stream.events()]
            await stream.close()

        assert received[0]["type"] == "session.update"
        assert received[1] == {"type": "input_audio_buffer.append", "audio": b64(b"\x00\x01")}
        assert [type(e) for e in events] == [AudioChunk, StreamError, TurnComplete, StreamClosed]
        assert events[0].data == b"hello"
        assert events[1].recoverable

    @pytest.mark.asyncio
    async def test_non_object_messages_are_recoverable(self):
        async def handler(ws):
            await ws.recv()
            await ws.send(json.dumps([1, 2]))
            await ws.send(json.dumps({"type": "session.updated"}))
            await ws.send(json.dumps([1, 2]))
            await ws.send(json.dumps("x"))
            await ws.send(json.dumps({"type": "error", "error": "flaky"}))
            await ws.send(json.dumps({"type": "response.done", "response": {"id": "resp_1"}}))
            await ws.close()

        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = RealtimeModelStream(ModelConfig(url=f"ws://127.0.0.1:{port}", api_key="k"))
            await stream.open(ModelSessionConfig(session_id="s1"))
            events = [e async for e in stream.events()]
            await stream.close()

        assert [type(e) for e in events] == [StreamError, StreamError, StreamError, TurnComplete, StreamClosed]
        assert all(e.kind is StreamErrorKind.DECODE and e.recoverable for e in events[:3])

    @pytest.mark.asyncio
    async def test_refused_session_raises_rejected(self):
        async def handler(ws):
            await ws.recv()
            await ws.send(json.dumps({"type": "error", "error": {
                "type": "invalid_request_error", "code": "model_not_found", "message": "no such model",
            }}))
            await ws.wait_closed()

        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = RealtimeModelStream(ModelConfig(url=f"ws://127.0.0.1:{port}", api_key="k"))
            with pytest.raises(ModelStreamError) as exc:
                await stream.open(ModelSessionConfig(session_id="s1"))
            await stream.close()
        assert exc.value.kind is StreamErrorKind.REJECTED


class TestFactory:

    def test_memory_backend(self):
        factory = create_model_stream_factory(ModelConfig(backend="memory"))
        assert isinstance(factory(), InMemoryModelStream)
        assert factory() is not factory()

    def test_realtime_backend(self):
        factory = create_model_stream_factory(ModelConfig(backend="realtime", api_key="k"))
        assert isinstance(factory(), RealtimeModelStream)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_model_stream_factory(ModelConfig(backend="carrier-pigeon"))

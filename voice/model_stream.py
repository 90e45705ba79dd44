"""
Model Stream Adapter — duplex connection to a speech-to-speech model.

The adapter turns the model's push-style wire protocol into a lazy,
non-restartable sequence of typed ModelEvents, consumed by exactly one
session loop. Its last element is always StreamClosed or a fatal
StreamError.

Backends:
- RealtimeModelStream: OpenAI Realtime-style websocket
- InMemoryModelStream: scripted, in-process (development and tests)

Guarantees:
- events() yields in the order the model emitted them
- send_audio() calls reach the model in submission order
- close() is idempotent, safe from any state, and always releases the
  underlying connection
"""
from __future__ import annotations

import abc
import asyncio
import base64
import json
from collections import deque
from typing import Any, AsyncIterator, Callable, Optional

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidHandshake

from config.settings import ModelConfig
from models.schemas import (
    AudioChunk, AudioFrame, Interrupted, ModelEvent, ModelSessionConfig,
    SpeakerRole, StreamClosed, StreamError, StreamErrorKind,
    ToolFailure, ToolInvocationRequested, ToolSuccess, ToolTimedOut,
    TranscriptDelta, TurnComplete, is_terminal_event,
)

logger = structlog.get_logger()


class ModelStreamError(Exception):
    """Raised when the model stream cannot open or accept a send."""

    def __init__(self, kind: StreamErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


# ──────────────────────────────────────────────────────────────
#  Contract
# ──────────────────────────────────────────────────────────────

class ModelStreamAdapter(abc.ABC):
    """One model connection, owned by one session."""

    @abc.abstractmethod
    async def open(self, config: ModelSessionConfig) -> ModelStreamAdapter:
        """Connect and configure the session. Raises ModelStreamError."""

    @abc.abstractmethod
    async def send_audio(self, frame: AudioFrame) -> None:
        ...

    @abc.abstractmethod
    async def send_tool_result(
        self,
        invocation_id: str,
        outcome: ToolSuccess | ToolFailure | ToolTimedOut,
    ) -> None:
        ...

    @abc.abstractmethod
    def events(self) -> AsyncIterator[ModelEvent]:
        """Return the event sequence. May only be called once."""

    @abc.abstractmethod
    async def close(self) -> None:
        ...


def tool_result_payload(invocation_id: str, outcome: ToolSuccess | ToolFailure | ToolTimedOut) -> str:
    """Serialized tool output as the model receives it."""
    return json.dumps({"invocation_id": invocation_id, **outcome.model_dump(mode="json")})


# ──────────────────────────────────────────────────────────────
#  Realtime websocket backend
# ──────────────────────────────────────────────────────────────

_ERROR_KINDS = {
    "invalid_request_error": StreamErrorKind.INVALID_REQUEST,
    "rate_limit_exceeded": StreamErrorKind.RATE_LIMITED,
    "rate_limit_error": StreamErrorKind.RATE_LIMITED,
    "authentication_error": StreamErrorKind.REJECTED,
    "permission_error": StreamErrorKind.REJECTED,
    "server_error": StreamErrorKind.SERVER,
}

# Error codes that end the session regardless of the error type
_FATAL_ERROR_CODES = {"session_expired", "invalid_api_key", "model_not_found"}


def classify_error(error: dict[str, Any]) -> StreamError:
    """Map a wire-level error object to a StreamError."""
    if not isinstance(error, dict):
        return StreamError.of(StreamErrorKind.DECODE, f"malformed model error: {error!r}")
    error_type = str(error.get("type") or "")
    code = str(error.get("code") or "")
    message = str(error.get("message") or error_type or "model error")
    kind = _ERROR_KINDS.get(code) or _ERROR_KINDS.get(error_type) or StreamErrorKind.SERVER
    if code in _FATAL_ERROR_CODES:
        return StreamError(kind=StreamErrorKind.REJECTED, message=message, recoverable=False)
    return StreamError.of(kind, message)


class RealtimeModelStream(ModelStreamAdapter):
    """
    Speech-to-speech model over a Realtime-style websocket.

    Server-side VAD detects user speech; user speech while the current
    response has produced audio is reported as a barge-in (Interrupted).
    """

    def __init__(self, config: ModelConfig):
        self._config = config
        self._ws: Optional[ClientConnection] = None
        self._session_id = ""
        self._closed = False
        self._events_claimed = False
        self._backlog: deque[dict[str, Any]] = deque()

        # Translation state
        self._response_id: Optional[str] = None
        self._response_has_audio = False
        self._function_names: dict[str, str] = {}          # call_id → tool name

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    # ── Lifecycle ──────────────────────────────────────

    async def open(self, config: ModelSessionConfig) -> RealtimeModelStream:
        if self._closed:
            raise ModelStreamError(StreamErrorKind.PROTOCOL, "stream already closed")
        if self._ws is not None:
            raise ModelStreamError(StreamErrorKind.PROTOCOL, "stream already open")
        self._session_id = config.session_id

        try:
            self._ws = await self._connect()
        except InvalidHandshake as e:
            raise ModelStreamError(StreamErrorKind.REJECTED, f"model refused connection: {e}") from e
        except (OSError, asyncio.TimeoutError) as e:
            raise ModelStreamError(StreamErrorKind.CONNECTION, f"model unreachable: {e}") from e

        logger.info("model_stream_connected",
                    session_id=self._session_id,
                    model=self._config.model)
        await self._send_json(self.build_session_update(config))
        await self._await_session_ack()
        return self

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        retry=retry_if_exception_type((OSError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def _connect(self) -> ClientConnection:
        url = f"{self._config.url}?model={self._config.model}"
        return await connect(
            url,
            additional_headers={"Authorization": f"Bearer {self._config.api_key}"},
            open_timeout=self._config.open_timeout_s,
            close_timeout=self._config.close_timeout_s,
            max_size=None,
            ping_interval=20,
            ping_timeout=20,
        )

    def build_session_update(self, config: ModelSessionConfig) -> dict[str, Any]:
        session: dict[str, Any] = {
            "type": "realtime",
            "model": self._config.model,
            "instructions": config.prompt,
            "output_modalities": ["audio"],
            "audio": {
                "input": {
                    "format": {"type": self._config.audio_format, "rate": self._config.sample_rate},
                    "transcription": {"model": self._config.transcription_model},
                    "turn_detection": {
                        "type": "server_vad",
                        "create_response": True,
                        "interrupt_response": True,
                    },
                },
                "output": {
                    "format": {"type": self._config.audio_format, "rate": self._config.sample_rate},
                    "voice": config.voice,
                },
            },
        }
        if config.tools:
            session["tools"] = config.tools
            session["tool_choice"] = "auto"
        return {"type": "session.update", "session": session}

    async def _await_session_ack(self) -> None:
        """Wait for session.updated; an error before it means the session was refused."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.ack_timeout_s
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ModelStreamError(StreamErrorKind.CONNECTION, "model did not acknowledge session")
            try:
                raw = await asyncio.wait_for(self._ws.recv(), remaining)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosed as e:
                raise ModelStreamError(StreamErrorKind.CONNECTION, f"closed during setup: {e}") from e
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("model_stream_undecodable_setup_message", session_id=self._session_id)
                continue
            if not isinstance(payload, dict):
                logger.warning("model_stream_undecodable_setup_message", session_id=self._session_id)
                continue
            event_type = payload.get("type")
            if event_type == "session.updated":
                logger.info("model_session_configured", session_id=self._session_id)
                return
            if event_type == "error":
                error = classify_error(payload.get("error") or {})
                raise ModelStreamError(StreamErrorKind.REJECTED, error.message)
            if event_type != "session.created":
                self._backlog.append(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.warning("model_stream_close_failed", session_id=self._session_id, error=str(e))
        logger.info("model_stream_closed", session_id=self._session_id)

    # ── Outbound ───────────────────────────────────────

    async def _send_json(self, payload: dict[str, Any]) -> None:
        if self._ws is None or self._closed:
            raise ModelStreamError(StreamErrorKind.CONNECTION, "model stream is not open")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as e:
            raise ModelStreamError(StreamErrorKind.CONNECTION, f"model connection lost: {e}") from e

    async def send_audio(self, frame: AudioFrame) -> None:
        await self._send_json({
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(frame.payload).decode("ascii"),
        })

    async def send_tool_result(
        self,
        invocation_id: str,
        outcome: ToolSuccess | ToolFailure | ToolTimedOut,
    ) -> None:
        await self._send_json({
            "type": "conversation.item.create",
            "item": {
                "type": "function_call_output",
                "call_id": invocation_id,
                "output": tool_result_payload(invocation_id, outcome),
            },
        })
        await self._send_json({"type": "response.create"})

    # ── Inbound ────────────────────────────────────────

    def events(self) -> AsyncIterator[ModelEvent]:
        if self._events_claimed:
            raise RuntimeError("model event stream already consumed")
        if self._ws is None:
            raise ModelStreamError(StreamErrorKind.PROTOCOL, "stream not open")
        self._events_claimed = True
        return self._iterate_events()

    async def _iterate_events(self) -> AsyncIterator[ModelEvent]:
        while self._backlog:
            for event in self.translate(self._backlog.popleft()):
                yield event

        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosedOK:
                yield StreamClosed()
                return
            except ConnectionClosed as e:
                if self._closed:
                    yield StreamClosed()
                else:
                    yield StreamError.of(StreamErrorKind.CONNECTION, f"model connection lost: {e}")
                return

            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as e:
                yield StreamError.of(StreamErrorKind.DECODE, f"undecodable model message: {e}")
                continue
            if not isinstance(payload, dict):
                yield StreamError.of(StreamErrorKind.DECODE, f"model message is not an object: {type(payload).__name__}")
                continue

            for event in self.translate(payload):
                yield event
                if is_terminal_event(event):
                    return

    def translate(self, payload: dict[str, Any]) -> list[ModelEvent]:
        """Map one wire event to zero or more ModelEvents."""
        event_type = payload.get("type", "")

        if event_type == "response.created":
            self._response_id = (payload.get("response") or {}).get("id")
            self._response_has_audio = False
            return []

        if event_type in ("response.output_audio.delta", "response.audio.delta"):
            try:
                data = base64.b64decode(payload.get("delta", ""), validate=True)
            except (ValueError, TypeError) as e:
                return [StreamError.of(StreamErrorKind.DECODE, f"bad audio delta: {e}")]
            self._response_has_audio = True
            return [AudioChunk(data=data, turn_id=payload.get("response_id") or self._response_id)]

        if event_type in ("response.output_audio_transcript.delta", "response.audio_transcript.delta"):
            return [TranscriptDelta(
                text=payload.get("delta", ""),
                role=SpeakerRole.ASSISTANT,
                turn_id=payload.get("response_id") or self._response_id,
            )]

        if event_type in ("response.output_audio_transcript.done", "response.audio_transcript.done"):
            return [TranscriptDelta(
                text="",
                role=SpeakerRole.ASSISTANT,
                final=True,
                turn_id=payload.get("response_id") or self._response_id,
            )]

        if event_type == "conversation.item.input_audio_transcription.completed":
            return [TranscriptDelta(
                text=payload.get("transcript", ""),
                role=SpeakerRole.USER,
                final=True,
                turn_id=payload.get("item_id"),
            )]

        if event_type == "response.output_item.added":
            item = payload.get("item") or {}
            if item.get("type") == "function_call" and item.get("call_id"):
                self._function_names[item["call_id"]] = item.get("name", "")
            return []

        if event_type == "response.function_call_arguments.done":
            call_id = payload.get("call_id", "")
            name = payload.get("name") or self._function_names.pop(call_id, "")
            raw_args = payload.get("arguments") or "{}"
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError:
                logger.warning("tool_arguments_undecodable",
                               session_id=self._session_id,
                               invocation_id=call_id)
                arguments = {}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}
            return [ToolInvocationRequested(invocation_id=call_id, tool_name=name, arguments=arguments)]

        if event_type == "input_audio_buffer.speech_started":
            if self._response_has_audio:
                self._response_has_audio = False
                return [Interrupted(turn_id=self._response_id)]
            return []

        if event_type == "response.done":
            response = payload.get("response") or {}
            self._response_has_audio = False
            return [TurnComplete(turn_id=response.get("id") or self._response_id)]

        if event_type == "error":
            return [classify_error(payload.get("error") or {})]

        logger.debug("model_event_ignored", session_id=self._session_id, event_type=event_type)
        return []


# ──────────────────────────────────────────────────────────────
#  In-memory backend
# ──────────────────────────────────────────────────────────────

class InMemoryModelStream(ModelStreamAdapter):
    """
    Scripted model stream for development and tests.
    emit() injects events; sends are recorded instead of transmitted.
    """

    def __init__(self):
        self.config: Optional[ModelSessionConfig] = None
        self.sent_audio: list[AudioFrame] = []
        self.tool_results: list[tuple[str, ToolSuccess | ToolFailure | ToolTimedOut]] = []
        self.close_calls = 0
        self.releases = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._opened = False
        self._closed = False
        self._events_claimed = False

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self, config: ModelSessionConfig) -> InMemoryModelStream:
        if self._closed:
            raise ModelStreamError(StreamErrorKind.PROTOCOL, "stream already closed")
        self.config = config
        self._opened = True
        return self

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise ModelStreamError(StreamErrorKind.CONNECTION, "model stream is not open")

    async def send_audio(self, frame: AudioFrame) -> None:
        self._ensure_open()
        self.sent_audio.append(frame)

    async def send_tool_result(
        self,
        invocation_id: str,
        outcome: ToolSuccess | ToolFailure | ToolTimedOut,
    ) -> None:
        self._ensure_open()
        self.tool_results.append((invocation_id, outcome))

    def emit(self, event: ModelEvent) -> None:
        self._queue.put_nowait(event)

    def events(self) -> AsyncIterator[ModelEvent]:
        if self._events_claimed:
            raise RuntimeError("model event stream already consumed")
        self._events_claimed = True
        return self._iterate_events()

    async def _iterate_events(self) -> AsyncIterator[ModelEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if is_terminal_event(event):
                return

    async def close(self) -> None:
        self.close_calls += 1
        if self._closed:
            return
        self._closed = True
        self.releases += 1
        self._queue.put_nowait(StreamClosed())


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_model_stream_factory(config: ModelConfig) -> Callable[[], ModelStreamAdapter]:
    """Return a callable producing one fresh stream per session."""
    backend = (config.backend or "realtime").lower()
    if backend == "memory":
        logger.info("model_stream_backend", backend="memory")
        return InMemoryModelStream
    if backend == "realtime":
        if not config.api_key:
            logger.warning("model_stream_missing_api_key", backend="realtime")
        logger.info("model_stream_backend", backend="realtime", model=config.model)
        return lambda: RealtimeModelStream(config)
    raise ValueError(f"Unknown model stream backend: {config.backend}")

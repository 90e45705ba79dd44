"""
Session Orchestrator — owns one live voice conversation end to end.

Lifecycle:
    idle → starting → active ⇄ interrupted → closing → closed
    failed is reachable from every non-terminal state.

Concurrency model (all tasks on one event loop, per session):
  - Event loop (run): the only place session state changes. Consumes an
    inbox fed by the helper flows below.
  - Client reader: validates and buffers client audio, forwards it to the
    model in order, posts control messages (start/end/tool_config) to
    the inbox. Owns the mute flag.
  - Model reader: pumps model events into the inbox, in emission order.
  - Client writer: drains outbound audio frames to the client.
  - Tool tasks: one per invocation; outcomes come back through the inbox.
    Each invocation also has a deadline armed by the orchestrator, so a
    hung handler produces a TimedOut outcome instead of a hung session.

Teardown is guaranteed on every exit path: registry entry removed, helper
tasks cancelled, model stream closed within the close timeout, client
transport closed.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from channels.base import ClientProtocolError, ClientTransport, TransportClosed
from config.settings import SessionConfig
from models.schemas import (
    AudioChunk, AudioDirection, AudioFrame, AudioMessage, AudioOutMessage,
    EndMessage, ErrorCode, ErrorMessage, Interrupted, InterruptedMessage,
    ModelSessionConfig, MuteMessage, SessionEndedMessage, SessionStartedMessage,
    SessionState, SpeakerRole, StartMessage, StreamClosed, StreamError,
    ToolConfigMessage, ToolFailure, ToolErrorKind, ToolInvocation,
    ToolInvocationRequested, ToolSuccess, ToolTimedOut, TranscriptDelta,
    TranscriptMessage, TranscriptTurn, TurnComplete,
)
from voice.audio_buffer import (
    AudioFrameBuffer, BufferOverflowError, FrameSequenceError, SequenceTracker,
)
from voice.model_stream import ModelStreamAdapter, ModelStreamError
from voice.registry import SessionRegistry
from voice.tool_dispatcher import ToolDispatcher

logger = structlog.get_logger()


class SessionStateError(RuntimeError):
    """Raised on a transition the state machine does not allow."""


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.STARTING, SessionState.CLOSING, SessionState.FAILED}),
    SessionState.STARTING: frozenset({SessionState.ACTIVE, SessionState.CLOSING, SessionState.FAILED}),
    SessionState.ACTIVE: frozenset({SessionState.INTERRUPTED, SessionState.CLOSING, SessionState.FAILED}),
    SessionState.INTERRUPTED: frozenset({SessionState.ACTIVE, SessionState.CLOSING, SessionState.FAILED}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED, SessionState.FAILED}),
    SessionState.CLOSED: frozenset(),
    SessionState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})
_STREAMING_STATES = frozenset({SessionState.ACTIVE, SessionState.INTERRUPTED})


def new_session_id() -> str:
    return f"sess_{uuid.uuid4().hex[:16]}"


# ──────────────────────────────────────────────────────────────
#  Inbox items posted by helper flows
# ──────────────────────────────────────────────────────────────

@dataclass
class _StartRequested:
    message: StartMessage


@dataclass
class _ToolConfigRequested:
    tools: list[str]


@dataclass
class _ClientEnded:
    reason: str
    disconnected: bool = False


@dataclass
class _ClientFault:
    code: ErrorCode
    detail: str


@dataclass
class _ToolResolved:
    invocation_id: str
    outcome: ToolSuccess | ToolFailure | ToolTimedOut


@dataclass
class _TaskCrashed:
    name: str
    error: BaseException


# ──────────────────────────────────────────────────────────────
#  Session
# ──────────────────────────────────────────────────────────────

class Session:
    """Per-conversation state. Mutated only by its orchestrator's event loop."""

    def __init__(self, session_id: str, prompt: str, voice: str, model_stream: ModelStreamAdapter):
        self.id = session_id
        self.state = SessionState.IDLE
        self.prompt = prompt
        self.voice = voice
        self.model_stream = model_stream
        self.transcript: list[TranscriptTurn] = []
        self.pending_tools: dict[str, ToolInvocation] = {}
        self.enabled_tools: Optional[list[str]] = None     # None = every registered tool
        self.created_at = datetime.now(timezone.utc)

    def record_transcript(self, delta: TranscriptDelta) -> TranscriptTurn:
        last = self.transcript[-1] if self.transcript else None
        if (
            last is None
            or last.final
            or last.role != delta.role
            or (delta.turn_id and last.turn_id and delta.turn_id != last.turn_id)
        ):
            last = TranscriptTurn(role=delta.role, turn_id=delta.turn_id)
            self.transcript.append(last)
        last.text += delta.text
        if delta.final:
            last.final = True
        return last

    def finalize_turn(self, role: SpeakerRole = SpeakerRole.ASSISTANT) -> Optional[TranscriptTurn]:
        for turn in reversed(self.transcript):
            if turn.role == role:
                if not turn.final:
                    turn.final = True
                    return turn
                return None
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "state": self.state.value,
            "voice": self.voice,
            "created_at": self.created_at.isoformat(),
            "pending_tools": sorted(self.pending_tools),
            "transcript_turns": len(self.transcript),
        }


# ──────────────────────────────────────────────────────────────
#  Orchestrator
# ──────────────────────────────────────────────────────────────

class SessionOrchestrator:
    """
    Drives one session from the client's start message to teardown.

    Usage:
        orchestrator = SessionOrchestrator(transport, stream, dispatcher, registry, config)
        final_state = await orchestrator.run()
    """

    def __init__(
        self,
        transport: ClientTransport,
        model_stream: ModelStreamAdapter,
        dispatcher: ToolDispatcher,
        registry: SessionRegistry,
        config: SessionConfig,
        session_id: str = "",
    ):
        self.config = config
        self.session = Session(
            session_id=session_id or new_session_id(),
            prompt=config.prompt,
            voice=config.default_voice,
            model_stream=model_stream,
        )
        self._transport = transport
        self._model = model_stream
        self._dispatcher = dispatcher
        self._registry = registry

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._inbound = AudioFrameBuffer(AudioDirection.CLIENT_TO_MODEL, config.inbound_buffer_capacity)
        self._outbound = AudioFrameBuffer(AudioDirection.MODEL_TO_CLIENT, config.outbound_buffer_capacity)
        self._inbound_sequence = SequenceTracker()
        self._forward_lock = asyncio.Lock()
        self._outbound_ready = asyncio.Event()
        self._model_sequence = 0
        self._client_sequence = 0
        self._forwarded_sequence = 0                # client frames accepted for the model, gap-free

        self._tasks: dict[str, asyncio.Task] = {}
        self._tool_tasks: dict[str, asyncio.Task] = {}
        self._deadlines: dict[str, asyncio.TimerHandle] = {}
        self._resolved_ids: set[str] = set()

        self._current_turn: Optional[str] = None
        self._interrupted_turn: Optional[str] = None
        self._cancelled_turns: set[str] = set()

        self._muted = False
        self._client_gone = False
        self._model_ended = False
        self._released = False
        self._close_reason = ""
        self._done = asyncio.Event()
        self._started_monotonic = time.monotonic()

        self.error_code: Optional[ErrorCode] = None
        self.dropped_frames = 0

    # ── Public surface ─────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_terminal(self) -> bool:
        return self.session.state in TERMINAL_STATES

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def pending_inbound_frames(self) -> int:
        return len(self._inbound)

    @property
    def pending_outbound_frames(self) -> int:
        return len(self._outbound)

    def request_close(self, reason: str = "server_end") -> None:
        """Ask the session to close; safe from any task."""
        if not self._released:
            self._post(_ClientEnded(reason))

    async def wait_closed(self) -> None:
        await self._done.wait()

    async def run(self) -> SessionState:
        self._registry.register(self)
        logger.info("session_opened", session_id=self.session_id)
        try:
            await self._run()
        except asyncio.CancelledError:
            self._close_reason = self._close_reason or "cancelled"
            raise
        except Exception as e:
            logger.exception("session_internal_error", session_id=self.session_id, error=str(e))
            await self._fail(ErrorCode.INTERNAL, str(e))
        finally:
            await self._release()
        return self.state

    # ── Phases ─────────────────────────────────────────────

    async def _run(self) -> None:
        self._spawn(self._client_reader(), "client_reader")

        start = await self._await_start()
        if start is not None:
            self._apply_start(start)
            self._transition(SessionState.STARTING, "start_requested")
            if await self._open_model():
                self._transition(SessionState.ACTIVE, "model_ready")
                await self._send_client(SessionStartedMessage(
                    session_id=self.session_id, voice=self.session.voice,
                ))
                self._spawn(self._model_reader(), "model_reader")
                self._spawn(self._client_writer(), "client_writer")
                self._spawn(self._forward_inbound(), "startup_flush")
                await self._event_loop()

        if self.state is SessionState.CLOSING:
            await self._drain_tools()

    async def _await_start(self) -> Optional[StartMessage]:
        timeout = self.config.start_timeout_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None
        while self.state is SessionState.IDLE:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.info("session_start_timeout", session_id=self.session_id)
                self._begin_closing("start_timeout")
                return None
            try:
                item = await asyncio.wait_for(self._inbox.get(), remaining)
            except asyncio.TimeoutError:
                continue
            if isinstance(item, _StartRequested):
                return item.message
            await self._handle(item)
        return None

    def _apply_start(self, start: StartMessage) -> None:
        voice = start.voice or self.config.default_voice
        allowed = self.config.allowed_voices
        if allowed and voice not in allowed:
            logger.warning("session_voice_not_allowed", session_id=self.session_id, voice=voice)
            voice = self.config.default_voice
        self.session.voice = voice

    def _model_session_config(self) -> ModelSessionConfig:
        return ModelSessionConfig(
            session_id=self.session_id,
            prompt=self.session.prompt,
            voice=self.session.voice,
            tools=self._dispatcher.describe_for_model(self.session.enabled_tools),
        )

    async def _open_model(self) -> bool:
        """Open the model stream while still serving client items. True when ready."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.startup_timeout_s
        open_task = asyncio.create_task(
            self._model.open(self._model_session_config()),
            name=f"model_open:{self.session_id}",
        )
        try:
            while not open_task.done():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    await self._fail(ErrorCode.CONNECTION, "model startup timed out")
                    return False
                getter = asyncio.ensure_future(self._inbox.get())
                done, _ = await asyncio.wait(
                    {open_task, getter}, timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter in done:
                    await self._handle(getter.result())
                    if self.state is not SessionState.STARTING:
                        return False
                else:
                    getter.cancel()
            open_task.result()
        except ModelStreamError as e:
            await self._fail(ErrorCode.CONNECTION, f"model open failed ({e.kind.value}): {e}")
            return False
        except Exception as e:
            await self._fail(ErrorCode.CONNECTION, f"model open failed: {e}")
            return False
        finally:
            if not open_task.done():
                open_task.cancel()
        logger.info("session_model_ready",
                    session_id=self.session_id,
                    startup_ms=round((time.monotonic() - self._started_monotonic) * 1000, 1))
        return True

    async def _event_loop(self) -> None:
        while self.state in _STREAMING_STATES:
            item = await self._inbox.get()
            await self._handle(item)

    async def _drain_tools(self) -> None:
        """Closing: give in-flight tools the drain budget, then stop."""
        if self.session.pending_tools and not self._model_ended:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.drain_timeout_s
            while self.session.pending_tools and not self._model_ended and self.state is SessionState.CLOSING:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(self._inbox.get(), remaining)
                except asyncio.TimeoutError:
                    break
                if isinstance(item, _ToolResolved):
                    await self._on_tool_resolved(item)
                elif isinstance(item, StreamClosed) or (isinstance(item, StreamError) and not item.recoverable):
                    self._model_ended = True
            if self.session.pending_tools:
                logger.warning("session_drain_incomplete",
                               session_id=self.session_id,
                               pending=sorted(self.session.pending_tools))
        if self.state is SessionState.CLOSING:
            self._transition(SessionState.CLOSED, self._close_reason)

    # ── State machine ──────────────────────────────────────

    def _transition(self, new_state: SessionState, reason: str = "") -> None:
        old_state = self.session.state
        if new_state not in _TRANSITIONS[old_state]:
            raise SessionStateError(f"{old_state.value} → {new_state.value} not allowed")
        self.session.state = new_state
        logger.info("session_state_changed",
                    session_id=self.session_id,
                    from_state=old_state.value,
                    to_state=new_state.value,
                    reason=reason)

    def _begin_closing(self, reason: str, disconnected: bool = False) -> None:
        if self.state in TERMINAL_STATES or self.state is SessionState.CLOSING:
            return
        if disconnected:
            self._client_gone = True
        self._close_reason = reason
        self._cancel_task("client_reader")
        self._transition(SessionState.CLOSING, reason)

    async def _fail(self, code: ErrorCode, detail: str) -> None:
        if self.is_terminal:
            return
        logger.error("session_failed", session_id=self.session_id, code=code.value, detail=detail)
        self.error_code = code
        self._close_reason = f"failed:{code.value}"
        self._cancel_task("client_reader")
        self._transition(SessionState.FAILED, code.value)
        await self._send_client(ErrorMessage.for_code(code))

    # ── Dispatch ───────────────────────────────────────────

    async def _handle(self, item: Any) -> None:
        if isinstance(item, TranscriptDelta):
            await self._on_transcript(item)
        elif isinstance(item, AudioChunk):
            await self._on_audio(item)
        elif isinstance(item, ToolInvocationRequested):
            self._on_tool_requested(item)
        elif isinstance(item, TurnComplete):
            self.session.finalize_turn(SpeakerRole.ASSISTANT)
        elif isinstance(item, Interrupted):
            await self._on_interrupted(item)
        elif isinstance(item, StreamError):
            await self._on_stream_error(item)
        elif isinstance(item, StreamClosed):
            self._model_ended = True
            self._begin_closing("model_closed")
        elif isinstance(item, _ToolResolved):
            await self._on_tool_resolved(item)
        elif isinstance(item, _ClientEnded):
            self._begin_closing(item.reason, disconnected=item.disconnected)
        elif isinstance(item, _ClientFault):
            await self._fail(item.code, item.detail)
        elif isinstance(item, _ToolConfigRequested):
            self._on_tool_config(item)
        elif isinstance(item, _StartRequested):
            logger.warning("session_duplicate_start_ignored", session_id=self.session_id)
        elif isinstance(item, _TaskCrashed):
            await self._fail(ErrorCode.INTERNAL, f"{item.name} crashed: {item.error!r}")
        else:
            logger.warning("session_unknown_item", session_id=self.session_id, item=type(item).__name__)

    def _post(self, item: Any) -> None:
        self._inbox.put_nowait(item)

    # ── Model event handlers ───────────────────────────────

    async def _on_transcript(self, delta: TranscriptDelta) -> None:
        if self.state is SessionState.INTERRUPTED:
            self._transition(SessionState.ACTIVE, "transcript_resumed")
        self.session.record_transcript(delta)
        await self._send_client(TranscriptMessage(role=delta.role, text=delta.text, final=delta.final))

    async def _on_audio(self, chunk: AudioChunk) -> None:
        if chunk.turn_id and chunk.turn_id in self._cancelled_turns:
            self.dropped_frames += 1
            return
        if self.state is SessionState.INTERRUPTED:
            if chunk.turn_id is None or chunk.turn_id == self._interrupted_turn:
                self.dropped_frames += 1
                return
            self._transition(SessionState.ACTIVE, "new_turn_audio")

        frame = AudioFrame(
            sequence=self._model_sequence,
            direction=AudioDirection.MODEL_TO_CLIENT,
            payload=chunk.data,
            turn_id=chunk.turn_id,
        )
        try:
            self._outbound.push(frame)
        except BufferOverflowError as e:
            await self._fail(ErrorCode.BACKPRESSURE, str(e))
            return
        self._model_sequence += 1
        self._current_turn = chunk.turn_id
        self._outbound_ready.set()

    async def _on_interrupted(self, event: Interrupted) -> None:
        turn = event.turn_id or self._current_turn
        if turn:
            self._cancelled_turns.add(turn)
        self._interrupted_turn = turn
        discarded = sum(1 for _ in self._outbound.drain())
        self.dropped_frames += discarded
        self.session.finalize_turn(SpeakerRole.ASSISTANT)
        if self.state is SessionState.ACTIVE:
            self._transition(SessionState.INTERRUPTED, "barge_in")
        await self._send_client(InterruptedMessage())
        logger.info("session_barge_in",
                    session_id=self.session_id,
                    turn_id=turn,
                    discarded_frames=discarded)

    async def _on_stream_error(self, error: StreamError) -> None:
        if error.recoverable:
            logger.warning("model_stream_error_recovered",
                           session_id=self.session_id,
                           kind=error.kind.value,
                           detail=error.message)
            return
        self._model_ended = True
        await self._fail(ErrorCode.CONNECTION, f"{error.kind.value}: {error.message}")

    # ── Tools ──────────────────────────────────────────────

    def _on_tool_config(self, request: _ToolConfigRequested) -> None:
        if self.state is not SessionState.IDLE:
            logger.warning("tool_config_ignored_mid_session", session_id=self.session_id)
            return
        self.session.enabled_tools = self._dispatcher.select(request.tools)
        logger.info("session_tools_configured",
                    session_id=self.session_id,
                    tools=self.session.enabled_tools)

    def _on_tool_requested(self, request: ToolInvocationRequested) -> None:
        invocation_id = request.invocation_id
        if invocation_id in self.session.pending_tools or invocation_id in self._resolved_ids:
            logger.warning("tool_invocation_duplicate_ignored",
                           session_id=self.session_id,
                           invocation_id=invocation_id)
            return

        invocation = ToolInvocation(
            invocation_id=invocation_id,
            tool_name=request.tool_name,
            arguments=request.arguments,
        )
        self.session.pending_tools[invocation_id] = invocation

        task = asyncio.create_task(
            self._dispatcher.invoke(
                request.tool_name, request.arguments, allowed=self.session.enabled_tools,
            ),
            name=f"tool:{self.session_id}:{invocation_id}",
        )
        task.add_done_callback(lambda t, iid=invocation_id: self._on_tool_task_done(iid, t))
        self._tool_tasks[invocation_id] = task

        timeout = self._dispatcher.timeout_for(request.tool_name) or self.config.tool_timeout_s
        self._deadlines[invocation_id] = asyncio.get_running_loop().call_later(
            timeout, self._post, _ToolResolved(invocation_id, ToolTimedOut(timeout_seconds=timeout)),
        )
        logger.info("tool_invocation_started",
                    session_id=self.session_id,
                    invocation_id=invocation_id,
                    tool=request.tool_name,
                    timeout_s=timeout)

    def _on_tool_task_done(self, invocation_id: str, task: asyncio.Task) -> None:
        self._tool_tasks.pop(invocation_id, None)
        if self._released:
            logger.debug("tool_outcome_discarded", session_id=self.session_id, invocation_id=invocation_id)
            return
        if task.cancelled():
            outcome = ToolFailure(error_kind=ToolErrorKind.HANDLER_ERROR, message="tool cancelled")
        elif task.exception() is not None:
            outcome = ToolFailure(error_kind=ToolErrorKind.HANDLER_ERROR, message=str(task.exception()))
        else:
            outcome = task.result()
        self._post(_ToolResolved(invocation_id, outcome))

    async def _on_tool_resolved(self, resolved: _ToolResolved) -> None:
        invocation = self.session.pending_tools.pop(resolved.invocation_id, None)
        if invocation is None:
            logger.debug("tool_outcome_late",
                         session_id=self.session_id,
                         invocation_id=resolved.invocation_id,
                         status=resolved.outcome.status)
            return
        deadline = self._deadlines.pop(resolved.invocation_id, None)
        if deadline is not None:
            deadline.cancel()
        self._resolved_ids.add(resolved.invocation_id)
        invocation.resolve(resolved.outcome)

        if self._model_ended:
            logger.info("tool_result_undeliverable",
                        session_id=self.session_id,
                        invocation_id=invocation.invocation_id)
            return
        try:
            await self._model.send_tool_result(invocation.invocation_id, resolved.outcome)
        except ModelStreamError as e:
            self._post(StreamError.of(e.kind, f"tool result not delivered: {e}"))
            return
        logger.info("tool_result_sent",
                    session_id=self.session_id,
                    invocation_id=invocation.invocation_id,
                    tool=invocation.tool_name,
                    status=resolved.outcome.status)

    # ── Helper flows ───────────────────────────────────────

    async def _client_reader(self) -> None:
        started = False
        while True:
            try:
                message = await self._transport.receive()
            except TransportClosed:
                self._post(_ClientEnded("client_disconnected", disconnected=True))
                return
            except ClientProtocolError as e:
                self._post(_ClientFault(ErrorCode.PROTOCOL, str(e)))
                return

            if isinstance(message, AudioMessage):
                if not started:
                    logger.debug("client_audio_before_start", session_id=self.session_id, seq=message.seq)
                    continue
                if not await self._accept_client_audio(message):
                    return
            elif isinstance(message, StartMessage):
                started = True
                self._post(_StartRequested(message))
            elif isinstance(message, EndMessage):
                self._post(_ClientEnded("client_end"))
                return
            elif isinstance(message, MuteMessage):
                self._muted = message.muted
                logger.info("session_mute_changed", session_id=self.session_id, muted=message.muted)
            elif isinstance(message, ToolConfigMessage):
                self._post(_ToolConfigRequested(list(message.tools)))

    async def _accept_client_audio(self, message: AudioMessage) -> bool:
        try:
            self._inbound_sequence.advance(message.seq)
        except FrameSequenceError as e:
            self._post(_ClientFault(ErrorCode.PROTOCOL, str(e)))
            return False
        if self._muted:
            return True

        # muted frames are skipped, so the model side gets its own numbering
        frame = AudioFrame(
            sequence=self._forwarded_sequence,
            direction=AudioDirection.CLIENT_TO_MODEL,
            payload=message.data,
        )
        try:
            self._inbound.push(frame)
        except BufferOverflowError as e:
            self._post(_ClientFault(ErrorCode.BACKPRESSURE, str(e)))
            return False
        except FrameSequenceError as e:
            self._post(_ClientFault(ErrorCode.PROTOCOL, str(e)))
            return False
        self._forwarded_sequence += 1

        if self.state in _STREAMING_STATES:
            await self._forward_inbound()
        return True

    async def _forward_inbound(self) -> None:
        """Send buffered client frames to the model, oldest first."""
        async with self._forward_lock:
            for frame in self._inbound.drain():
                try:
                    await self._model.send_audio(frame)
                except ModelStreamError as e:
                    self._post(StreamError.of(e.kind, f"audio not delivered: {e}"))
                    return

    async def _model_reader(self) -> None:
        async for event in self._model.events():
            self._post(event)
            if isinstance(event, StreamClosed) or (isinstance(event, StreamError) and not event.recoverable):
                return

    async def _client_writer(self) -> None:
        while True:
            await self._outbound_ready.wait()
            self._outbound_ready.clear()
            for frame in self._outbound.drain():
                if frame.turn_id and frame.turn_id in self._cancelled_turns:
                    self.dropped_frames += 1
                    continue
                message = AudioOutMessage(seq=self._client_sequence, data=frame.payload)
                try:
                    await self._transport.send(message)
                except TransportClosed:
                    self._client_gone = True
                    self._post(_ClientEnded("client_disconnected", disconnected=True))
                    return
                self._client_sequence += 1

    async def _send_client(self, message: Any) -> None:
        if self._client_gone:
            return
        try:
            await self._transport.send(message)
        except TransportClosed:
            self._client_gone = True
            if not self.is_terminal:
                self._post(_ClientEnded("client_disconnected", disconnected=True))

    # ── Task bookkeeping ───────────────────────────────────

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}:{self.session_id}")
        task.add_done_callback(lambda t, n=name: self._task_done(n, t))
        self._tasks[name] = task
        return task

    def _task_done(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.error("session_task_failed",
                     session_id=self.session_id,
                     task=name,
                     error_type=type(error).__name__,
                     error=str(error))
        if not self._released:
            self._post(_TaskCrashed(name, error))

    def _cancel_task(self, name: str) -> None:
        task = self._tasks.get(name)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Teardown ───────────────────────────────────────────

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True

        for handle in self._deadlines.values():
            handle.cancel()
        self._deadlines.clear()

        current = asyncio.current_task()
        tasks = [t for t in self._tasks.values() if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await asyncio.wait_for(self._model.close(), self.config.close_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("model_stream_close_timeout", session_id=self.session_id)
        except Exception as e:
            logger.warning("model_stream_close_failed", session_id=self.session_id, error=str(e))

        discarded = sum(1 for _ in self._inbound.drain()) + sum(1 for _ in self._outbound.drain())

        if not self.is_terminal:
            if self.state is not SessionState.CLOSING:
                self._transition(SessionState.CLOSING, self._close_reason or "released")
            self._transition(SessionState.CLOSED, self._close_reason or "released")

        await self._send_client(SessionEndedMessage(
            session_id=self.session_id,
            reason=self._close_reason or self.state.value,
        ))
        self._registry.unregister(self.session_id)

        try:
            await self._transport.close()
        except Exception as e:
            logger.warning("client_transport_close_failed", session_id=self.session_id, error=str(e))

        self._done.set()
        logger.info("session_released",
                    session_id=self.session_id,
                    state=self.state.value,
                    reason=self._close_reason,
                    duration_s=round(time.monotonic() - self._started_monotonic, 2),
                    transcript_turns=len(self.session.transcript),
                    abandoned_tools=len(self.session.pending_tools),
                    discarded_frames=discarded + self.dropped_frames)

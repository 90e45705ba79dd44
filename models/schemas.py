"""
Core data models for the voice session core.
These are the universal types shared across all modules: audio frames,
model events, tool invocations and the client wire messages.
"""
from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_serializer, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    INTERRUPTED = "interrupted"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class AudioDirection(str, Enum):
    CLIENT_TO_MODEL = "client_to_model"
    MODEL_TO_CLIENT = "model_to_client"


class SpeakerRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class StreamErrorKind(str, Enum):
    """Why the model stream reported an error."""
    DECODE = "decode"                    # unreadable message, stream still usable
    INVALID_REQUEST = "invalid_request"  # model refused one client event
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"                # session refused at open
    CONNECTION = "connection"            # transport lost
    SERVER = "server"                    # remote failure
    PROTOCOL = "protocol"                # unexpected sequence of events


RECOVERABLE_STREAM_ERRORS = frozenset({
    StreamErrorKind.DECODE,
    StreamErrorKind.INVALID_REQUEST,
    StreamErrorKind.RATE_LIMITED,
})


class ErrorCode(str, Enum):
    """Classification surfaced to the client when a session fails."""
    CONNECTION = "connection"
    BACKPRESSURE = "backpressure"
    PROTOCOL = "protocol"
    INTERNAL = "internal"


ERROR_CODE_MESSAGES = {
    ErrorCode.CONNECTION: "The voice session lost its connection.",
    ErrorCode.BACKPRESSURE: "The voice session could not keep up with incoming audio.",
    ErrorCode.PROTOCOL: "The voice session received invalid input.",
    ErrorCode.INTERNAL: "The voice session ended unexpectedly.",
}


class ToolErrorKind(str, Enum):
    UNKNOWN_TOOL = "unknown_tool"
    HANDLER_ERROR = "handler_error"


# ──────────────────────────────────────────────────────────────
#  Audio
# ──────────────────────────────────────────────────────────────

class AudioFrame(BaseModel):
    """One opaque encoded audio chunk travelling in one direction."""
    model_config = ConfigDict(frozen=True)

    sequence: int = Field(ge=0)               # monotonic within its direction
    direction: AudioDirection
    payload: bytes
    turn_id: Optional[str] = None             # model response id (outbound only)


# ──────────────────────────────────────────────────────────────
#  Model events — produced by a ModelStreamAdapter
# ──────────────────────────────────────────────────────────────

class _ModelEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)


class TranscriptDelta(_ModelEventBase):
    type: Literal["transcript_delta"] = "transcript_delta"
    text: str = ""
    role: SpeakerRole = SpeakerRole.ASSISTANT
    final: bool = False                       # end of this speaker's utterance
    turn_id: Optional[str] = None


class AudioChunk(_ModelEventBase):
    type: Literal["audio_chunk"] = "audio_chunk"
    data: bytes
    turn_id: Optional[str] = None


class ToolInvocationRequested(_ModelEventBase):
    type: Literal["tool_invocation_requested"] = "tool_invocation_requested"
    invocation_id: str
    tool_name: str
    arguments: dict[str, Any] = {}


class TurnComplete(_ModelEventBase):
    type: Literal["turn_complete"] = "turn_complete"
    turn_id: Optional[str] = None


class Interrupted(_ModelEventBase):
    type: Literal["interrupted"] = "interrupted"
    turn_id: Optional[str] = None             # the model turn that was cut off


class StreamError(_ModelEventBase):
    type: Literal["stream_error"] = "stream_error"
    kind: StreamErrorKind
    message: str = ""
    recoverable: bool = False

    @classmethod
    def of(cls, kind: StreamErrorKind, message: str = "") -> StreamError:
        return cls(kind=kind, message=message, recoverable=kind in RECOVERABLE_STREAM_ERRORS)


class StreamClosed(_ModelEventBase):
    type: Literal["stream_closed"] = "stream_closed"


ModelEvent = Annotated[
    Union[
        TranscriptDelta, AudioChunk, ToolInvocationRequested,
        TurnComplete, Interrupted, StreamError, StreamClosed,
    ],
    Field(discriminator="type"),
]


def is_terminal_event(event: Any) -> bool:
    """True for the event that ends a model event sequence."""
    if isinstance(event, StreamClosed):
        return True
    return isinstance(event, StreamError) and not event.recoverable


# ──────────────────────────────────────────────────────────────
#  Tool invocations
# ──────────────────────────────────────────────────────────────

class ToolSuccess(BaseModel):
    status: Literal["success"] = "success"
    result: Any = None


class ToolFailure(BaseModel):
    status: Literal["failure"] = "failure"
    error_kind: ToolErrorKind
    message: str = ""


class ToolTimedOut(BaseModel):
    status: Literal["timed_out"] = "timed_out"
    timeout_seconds: float


ToolOutcome = Annotated[
    Union[ToolSuccess, ToolFailure, ToolTimedOut],
    Field(discriminator="status"),
]

TOOL_OUTCOME_TYPES = (ToolSuccess, ToolFailure, ToolTimedOut)


class ToolInvocation(BaseModel):
    """A model-requested tool call, resolved exactly once."""
    invocation_id: str
    tool_name: str
    arguments: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None
    outcome: Optional[ToolOutcome] = None

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not None

    def resolve(self, outcome: ToolSuccess | ToolFailure | ToolTimedOut) -> None:
        if self.outcome is not None:
            raise ValueError(f"Tool invocation {self.invocation_id} already resolved")
        self.outcome = outcome
        self.resolved_at = _utcnow()


# ──────────────────────────────────────────────────────────────
#  Session data
# ──────────────────────────────────────────────────────────────

class TranscriptTurn(BaseModel):
    """A contiguous span of speech by one speaker."""
    role: SpeakerRole
    text: str = ""
    final: bool = False
    turn_id: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)


class ModelSessionConfig(BaseModel):
    """What a model stream needs to open a conversation."""
    session_id: str
    prompt: str = ""
    voice: str = ""
    tools: list[dict[str, Any]] = []          # model-facing tool definitions


# ──────────────────────────────────────────────────────────────
#  Client → server messages
# ──────────────────────────────────────────────────────────────

class StartMessage(BaseModel):
    type: Literal["start"] = "start"
    voice: Optional[str] = None


class EndMessage(BaseModel):
    type: Literal["end"] = "end"


class MuteMessage(BaseModel):
    type: Literal["mute"] = "mute"
    muted: bool = True


class ToolConfigMessage(BaseModel):
    type: Literal["tool_config"] = "tool_config"
    tools: list[str] = []


class AudioMessage(BaseModel):
    type: Literal["audio"] = "audio"
    seq: int = Field(ge=0)
    data: bytes                               # base64 on the wire

    @field_validator("data", mode="before")
    @classmethod
    def _decode_base64(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except binascii.Error as e:
                raise ValueError(f"audio data is not valid base64: {e}") from e
        return value


ClientMessage = Annotated[
    Union[StartMessage, EndMessage, MuteMessage, ToolConfigMessage, AudioMessage],
    Field(discriminator="type"),
]

_CLIENT_MESSAGE_ADAPTER = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse one JSON client message. Raises pydantic.ValidationError."""
    return _CLIENT_MESSAGE_ADAPTER.validate_json(raw)


# ──────────────────────────────────────────────────────────────
#  Server → client messages
# ──────────────────────────────────────────────────────────────

class SessionStartedMessage(BaseModel):
    type: Literal["session_started"] = "session_started"
    session_id: str
    voice: str = ""


class TranscriptMessage(BaseModel):
    type: Literal["transcript"] = "transcript"
    role: SpeakerRole
    text: str
    final: bool = False


class AudioOutMessage(BaseModel):
    type: Literal["audio"] = "audio"
    seq: int
    data: bytes

    @field_serializer("data")
    def _encode_base64(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class InterruptedMessage(BaseModel):
    type: Literal["interrupted"] = "interrupted"


class SessionEndedMessage(BaseModel):
    type: Literal["session_ended"] = "session_ended"
    session_id: str
    reason: str = ""


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: ErrorCode
    message: str = ""

    @classmethod
    def for_code(cls, code: ErrorCode) -> ErrorMessage:
        return cls(code=code, message=ERROR_CODE_MESSAGES[code])


ServerMessage = Union[
    SessionStartedMessage, TranscriptMessage, AudioOutMessage,
    InterruptedMessage, SessionEndedMessage, ErrorMessage,
]

"""
Voice Subsystem — realtime speech-to-speech session core.

Modules:
- audio_buffer: bounded per-direction audio frame FIFOs and sequence checks
- model_stream: realtime model connection and typed event stream
- tool_dispatcher: tool catalog and invocation
- orchestrator: per-session state machine and event loop
- registry: live sessions by id
- server: connection-accepting session manager
"""
from voice.audio_buffer import (
    AudioFrameBuffer, BufferOverflowError, FrameSequenceError, SequenceTracker,
)
from voice.model_stream import (
    InMemoryModelStream, ModelStreamAdapter, ModelStreamError, RealtimeModelStream,
    create_model_stream_factory,
)
from voice.tool_dispatcher import (
    ToolDispatcher, ToolRegistrationError, ToolSpec, create_default_tool_dispatcher,
)
from voice.orchestrator import Session, SessionOrchestrator, SessionStateError
from voice.registry import DuplicateSessionError, SessionRegistry
from voice.server import ManagerShutdownError, VoiceSessionManager

__all__ = [
    "AudioFrameBuffer", "BufferOverflowError", "FrameSequenceError", "SequenceTracker",
    "InMemoryModelStream", "ModelStreamAdapter", "ModelStreamError", "RealtimeModelStream",
    "create_model_stream_factory",
    "ToolDispatcher", "ToolRegistrationError", "ToolSpec", "create_default_tool_dispatcher",
    "Session", "SessionOrchestrator", "SessionStateError",
    "DuplicateSessionError", "SessionRegistry",
    "ManagerShutdownError", "VoiceSessionManager",
]

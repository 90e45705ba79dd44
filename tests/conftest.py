"""Shared test fixtures for the voice session core."""
import asyncio
from typing import Any, Callable, Optional

import pytest

from channels.base import ClientProtocolError, ClientTransport, TransportClosed
from config.settings import ModelConfig, SessionConfig, Settings
from models.schemas import (
    AudioMessage, AudioOutMessage, SessionState, StartMessage,
)
from voice.model_stream import InMemoryModelStream
from voice.orchestrator import SessionOrchestrator
from voice.registry import SessionRegistry
from voice.tool_dispatcher import ToolDispatcher, ToolSpec


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


# ══════════════════════════════════════════════════════════════
#  Fakes
# ══════════════════════════════════════════════════════════════

class FakeClientTransport(ClientTransport):
    """
    Scripted client. feed() queues messages for receive(); everything the
    session sends is recorded in `sent` when send() is entered. Clearing
    `audio_gate` holds outbound audio sends until it is set again.
    """

    def __init__(self):
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[Any] = []
        self.closed = False
        self.close_calls = 0
        self.audio_gate = asyncio.Event()
        self.audio_gate.set()

    def feed(self, *messages: Any) -> None:
        for message in messages:
            self._incoming.put_nowait(message)

    def feed_audio(self, *seqs: int) -> None:
        for seq in seqs:
            self.feed(AudioMessage(seq=seq, data=f"frame-{seq}".encode()))

    def disconnect(self) -> None:
        self._incoming.put_nowait(TransportClosed("client vanished", code=1006))

    def send_garbage(self) -> None:
        self._incoming.put_nowait(ClientProtocolError("invalid client message"))

    def of_type(self, cls) -> list[Any]:
        return [m for m in self.sent if isinstance(m, cls)]

    def types(self) -> list[str]:
        return [m.type for m in self.sent]

    async def receive(self):
        if self.closed:
            raise TransportClosed()
        item = await self._incoming.get()
        if isinstance(item, Exception):
            if isinstance(item, TransportClosed):
                self.closed = True
            raise item
        return item

    async def send(self, message) -> None:
        if self.closed:
            raise TransportClosed()
        self.sent.append(message)
        if isinstance(message, AudioOutMessage):
            await self.audio_gate.wait()

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class GatedModelStream(InMemoryModelStream):
    """In-memory stream whose open() blocks until `ready` is set."""

    def __init__(self):
        super().__init__()
        self.ready = asyncio.Event()

    async def open(self, config):
        await self.ready.wait()
        return await super().open(config)


class HangingCloseModelStream(InMemoryModelStream):
    """In-memory stream whose close() never returns."""

    def __init__(self):
        super().__init__()
        self.close_started = False

    async def close(self):
        self.close_started = True
        await asyncio.Event().wait()


# ══════════════════════════════════════════════════════════════
#  Settings & tools
# ══════════════════════════════════════════════════════════════

def fast_session_config(**overrides) -> SessionConfig:
    values = dict(
        prompt="You are a test assistant.",
        default_voice="alloy",
        allowed_voices=["alloy", "verse"],
        start_timeout_s=2.0,
        startup_timeout_s=0.5,
        tool_timeout_s=0.3,
        drain_timeout_s=0.3,
        close_timeout_s=0.3,
        inbound_buffer_capacity=16,
        outbound_buffer_capacity=16,
    )
    values.update(overrides)
    return SessionConfig(**values)


@pytest.fixture
def session_config() -> SessionConfig:
    return fast_session_config()


@pytest.fixture
def settings(session_config) -> Settings:
    return Settings(
        app_name="VoiceTest",
        model=ModelConfig(backend="memory"),
        session=session_config,
    )


@pytest.fixture
def tool_gate() -> asyncio.Event:
    """Released by tests to let `slow_lookup` finish."""
    return asyncio.Event()


@pytest.fixture
def dispatcher(tool_gate) -> ToolDispatcher:
    d = ToolDispatcher()

    async def lookup_availability(arguments: dict) -> dict:
        return {"date": arguments.get("date"), "slots": ["09:00", "11:30", "15:00"]}

    async def broken_tool(arguments: dict) -> dict:
        raise RuntimeError("calendar backend exploded")

    async def slow_lookup(arguments: dict) -> dict:
        await tool_gate.wait()
        return {"slots": []}

    d.register(ToolSpec(
        name="lookup_availability",
        description="Find open appointment slots for a date",
        parameters={
            "type": "object",
            "properties": {"date": {"type": "string"}},
            "required": ["date"],
        },
    ), lookup_availability)
    d.register("broken_tool", broken_tool, description="Always fails")
    d.register("slow_lookup", slow_lookup, description="Waits for the gate")
    return d


# ══════════════════════════════════════════════════════════════
#  Session harness
# ══════════════════════════════════════════════════════════════

class SessionHarness:
    """One orchestrator wired to a fake client and an in-memory model."""

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        config: SessionConfig,
        stream: Optional[InMemoryModelStream] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self.transport = FakeClientTransport()
        self.stream = stream or InMemoryModelStream()
        self.registry = registry or SessionRegistry()
        self.dispatcher = dispatcher
        self.orchestrator = SessionOrchestrator(
            transport=self.transport,
            model_stream=self.stream,
            dispatcher=dispatcher,
            registry=self.registry,
            config=config,
        )
        self.task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self.orchestrator.state

    def run(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.orchestrator.run())
        return self.task

    async def start(self, voice: Optional[str] = None) -> None:
        """Run the session and wait until it is active."""
        if self.task is None:
            self.run()
        self.transport.feed(StartMessage(voice=voice))
        await wait_until(lambda: self.state is SessionState.ACTIVE)

    async def finished(self, timeout: float = 2.0) -> SessionState:
        return await asyncio.wait_for(self.task, timeout)


@pytest.fixture
def harness(dispatcher, session_config) -> Callable[..., SessionHarness]:
    def make(config: Optional[SessionConfig] = None, **kwargs) -> SessionHarness:
        return SessionHarness(dispatcher, config or session_config, **kwargs)
    return make

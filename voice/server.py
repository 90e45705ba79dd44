"""
Voice Session Manager — accepts client connections and runs one
SessionOrchestrator per connection.

This is the runtime that actually handles live voice conversations:
1. Freezes the tool catalog before the first session starts
2. Creates a fresh model stream per connection
3. Runs the session to completion on the caller's task
4. On shutdown, asks every session to close and cancels stragglers

Usage:
    manager = VoiceSessionManager(settings, dispatcher)
    await manager.start()

    # When a client connects:
    await manager.handle_connection(transport)

    await manager.shutdown()
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import structlog

from channels.base import ClientTransport
from config.settings import Settings
from models.schemas import SessionState
from voice.model_stream import ModelStreamAdapter, create_model_stream_factory
from voice.orchestrator import SessionOrchestrator
from voice.registry import SessionRegistry
from voice.tool_dispatcher import ToolDispatcher

logger = structlog.get_logger()


class ManagerShutdownError(RuntimeError):
    """Raised when a connection arrives after shutdown began."""


class VoiceSessionManager:

    def __init__(
        self,
        settings: Settings,
        dispatcher: ToolDispatcher,
        stream_factory: Optional[Callable[[], ModelStreamAdapter]] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.registry = registry or SessionRegistry()
        self._stream_factory = stream_factory or create_model_stream_factory(settings.model)
        self._tasks: dict[str, asyncio.Task] = {}
        self._started = False
        self._shutting_down = False

    @property
    def active_session_count(self) -> int:
        return len(self.registry)

    @property
    def accepting(self) -> bool:
        return self._started and not self._shutting_down

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        self.dispatcher.freeze()
        self._started = True
        logger.info("voice_session_manager_started",
                    tools=self.dispatcher.names(),
                    backend=self.settings.model.backend)

    async def shutdown(self) -> None:
        """Close every live session within the drain + close budget."""
        self._shutting_down = True
        sessions = self.registry.all()
        for orchestrator in sessions:
            orchestrator.request_close("server_shutdown")

        budget = self.settings.session.drain_timeout_s + self.settings.session.close_timeout_s
        if sessions:
            waiters = [asyncio.ensure_future(o.wait_closed()) for o in sessions]
            _, pending = await asyncio.wait(waiters, timeout=budget)
            for waiter in pending:
                waiter.cancel()

        stragglers = [t for t in self._tasks.values() if not t.done()]
        for task in stragglers:
            task.cancel()
        if stragglers:
            await asyncio.gather(*stragglers, return_exceptions=True)

        logger.info("voice_session_manager_stopped",
                    sessions=len(sessions),
                    cancelled=len(stragglers))

    # ── Sessions ───────────────────────────────────────────

    def create_session(self, transport: ClientTransport, session_id: str = "") -> SessionOrchestrator:
        if not self.accepting:
            raise ManagerShutdownError("Voice session manager is not accepting sessions")
        return SessionOrchestrator(
            transport=transport,
            model_stream=self._stream_factory(),
            dispatcher=self.dispatcher,
            registry=self.registry,
            config=self.settings.session,
            session_id=session_id,
        )

    async def handle_connection(self, transport: ClientTransport, session_id: str = "") -> SessionState:
        """Run one session for this client until it is released."""
        orchestrator = self.create_session(transport, session_id)
        task = asyncio.current_task()
        if task is not None:
            self._tasks[orchestrator.session_id] = task
        try:
            return await orchestrator.run()
        finally:
            self._tasks.pop(orchestrator.session_id, None)

    def get_session(self, session_id: str) -> Optional[SessionOrchestrator]:
        return self.registry.get(session_id)

    def end_session(self, session_id: str, reason: str = "server_end") -> bool:
        orchestrator = self.registry.get(session_id)
        if orchestrator is None:
            return False
        orchestrator.request_close(reason)
        return True

    def list_sessions(self) -> list[dict[str, Any]]:
        return self.registry.snapshot()

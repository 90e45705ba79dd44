"""
Tool Dispatcher — Declarative tool catalog plus invocation for voice sessions.

Every tool has:
  - A name and description (so the model understands its purpose)
  - A JSON schema for its arguments
  - An optional per-tool timeout overriding the session default
  - A handler: a function of (arguments) that returns a result or an outcome

Tools are registered when the session type is configured, before any
session starts; freeze() locks the catalog. Invocations run outside the
session's event loop path (async handlers as tasks, sync handlers in a
worker thread), so a slow tool cannot stall audio delivery.

A handler failure never escapes invoke(): unknown tools and handler
exceptions come back as ToolFailure outcomes for the model to handle.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import structlog
from pydantic import BaseModel

from models.schemas import (
    TOOL_OUTCOME_TYPES, ToolErrorKind, ToolFailure, ToolSuccess, ToolTimedOut,
)

logger = structlog.get_logger()

ToolHandler = Callable[[dict[str, Any]], Any]


class ToolRegistrationError(Exception):
    """Raised on an invalid or late tool registration."""


class ToolSpec(BaseModel):
    """Describes one callable tool for the model."""
    name: str                                             # Unique identifier
    description: str = ""                                 # What the tool does (for the model)
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    timeout_seconds: Optional[float] = None               # None = session default
    enabled: bool = True

    def to_model_definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ToolDispatcher:
    """
    Central catalog of tools available to voice sessions.

    Used by:
    - SessionOrchestrator: to run model-requested invocations
    - Model streams: to advertise tool definitions at session open
    """

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}
        self._handlers: dict[str, ToolHandler] = {}
        self._frozen = False

    # ── Registration ──────────────────────────────────

    def register(
        self,
        spec: ToolSpec | str,
        handler: ToolHandler,
        **kwargs,
    ) -> ToolSpec:
        """Register a tool. Accepts a ToolSpec or a name plus spec fields."""
        if self._frozen:
            raise ToolRegistrationError(
                "Tools must be registered before sessions start"
            )
        if isinstance(spec, str):
            spec = ToolSpec(name=spec, **kwargs)
        if not spec.name:
            raise ToolRegistrationError("Tool name must not be empty")
        if not callable(handler):
            raise ToolRegistrationError(f"Handler for {spec.name} is not callable")
        if spec.name in self._tools:
            raise ToolRegistrationError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec
        self._handlers[spec.name] = handler
        logger.info("tool_registered",
                    name=spec.name,
                    timeout_s=spec.timeout_seconds)
        return spec

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Lookup ────────────────────────────────────────

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        spec = self._tools.get(name)
        return spec is not None and spec.enabled

    def names(self) -> list[str]:
        return [t.name for t in self._tools.values() if t.enabled]

    def select(self, names: Iterable[str]) -> list[str]:
        """Keep the registered, enabled names; warn about the rest."""
        selected = []
        for name in names:
            if self.has(name):
                if name not in selected:
                    selected.append(name)
            else:
                logger.warning("tool_selection_unknown", name=name)
        return selected

    def timeout_for(self, name: str) -> Optional[float]:
        spec = self._tools.get(name)
        return spec.timeout_seconds if spec else None

    def describe_for_model(self, names: Optional[Iterable[str]] = None) -> list[dict[str, Any]]:
        """Tool definitions to advertise to the model."""
        allowed = set(names) if names is not None else None
        return [
            t.to_model_definition()
            for t in self._tools.values()
            if t.enabled and (allowed is None or t.name in allowed)
        ]

    @property
    def count(self) -> int:
        return len(self._tools)

    # ── Invocation ────────────────────────────────────

    async def invoke(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        allowed: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> ToolSuccess | ToolFailure | ToolTimedOut:
        """
        Run a tool and return its outcome. Never raises for tool problems.

        Args:
            tool_name: Registered tool name
            arguments: Arguments supplied by the model
            allowed:   Tools enabled for the calling session (None = all)
            timeout:   Optional local deadline; the orchestrator keeps its own
        """
        handler = self._handlers.get(tool_name)
        if handler is None or not self.has(tool_name) or (
            allowed is not None and tool_name not in set(allowed)
        ):
            logger.warning("tool_unknown", tool=tool_name)
            return ToolFailure(
                error_kind=ToolErrorKind.UNKNOWN_TOOL,
                message=f"Unknown tool: {tool_name}",
            )

        started = time.monotonic()
        try:
            call = self._call(handler, dict(arguments or {}))
            if timeout is not None:
                result = await asyncio.wait_for(call, timeout)
            else:
                result = await call
        except asyncio.TimeoutError:
            logger.warning("tool_timed_out", tool=tool_name, timeout_s=timeout)
            return ToolTimedOut(timeout_seconds=timeout)
        except Exception as e:
            logger.warning("tool_handler_failed",
                           tool=tool_name,
                           error_type=type(e).__name__,
                           error=str(e))
            return ToolFailure(error_kind=ToolErrorKind.HANDLER_ERROR, message=str(e))

        logger.info("tool_invoked",
                    tool=tool_name,
                    latency_ms=round((time.monotonic() - started) * 1000, 1))
        if isinstance(result, TOOL_OUTCOME_TYPES):
            return result
        return ToolSuccess(result=result)

    @staticmethod
    async def _call(handler: ToolHandler, arguments: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(arguments)
        result = await asyncio.to_thread(handler, arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def create_default_tool_dispatcher() -> ToolDispatcher:
    """Create a dispatcher pre-loaded with the standard built-in tools."""
    dispatcher = ToolDispatcher()

    async def get_current_time(arguments: dict) -> dict:
        now = datetime.now(timezone.utc)
        return {
            "utc_time": now.isoformat(timespec="seconds"),
            "weekday": now.strftime("%A"),
        }

    dispatcher.register(ToolSpec(
        name="get_current_time",
        description="Get the current date, time (UTC) and weekday",
        timeout_seconds=1.0,
    ), get_current_time)

    return dispatcher

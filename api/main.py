"""
FastAPI Application — WebSocket voice endpoint + session management API.

Provides:
- WebSocket endpoint for realtime voice sessions
- REST API to list live sessions and end one
- Health check
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from channels.websocket_transport import WebSocketClientTransport
from config.settings import Settings, get_settings
from voice.server import ManagerShutdownError, VoiceSessionManager
from voice.tool_dispatcher import create_default_tool_dispatcher

logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[VoiceSessionManager] = None,
) -> FastAPI:
    settings = settings or get_settings()
    manager = manager or VoiceSessionManager(settings, create_default_tool_dispatcher())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await manager.start()
        logger.info("voice_core_started",
                    app=settings.app_name,
                    backend=settings.model.backend)
        yield
        await manager.shutdown()
        logger.info("voice_core_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Realtime speech-to-speech voice session core",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy" if manager.accepting else "stopping",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_sessions": manager.active_session_count,
            "tools": manager.dispatcher.names(),
        }

    # ══════════════════════════════════════════════════════════════
    #  SESSIONS
    # ══════════════════════════════════════════════════════════════

    @app.get("/api/v1/sessions")
    async def list_sessions():
        sessions = manager.list_sessions()
        return {"sessions": sessions, "total": len(sessions)}

    @app.post("/api/v1/sessions/{session_id}/end")
    async def end_session(session_id: str):
        if not manager.end_session(session_id):
            raise HTTPException(404, f"Session {session_id} not found")
        return {"status": "closing", "session_id": session_id}

    # ══════════════════════════════════════════════════════════════
    #  VOICE WEBSOCKET
    # ══════════════════════════════════════════════════════════════

    @app.websocket("/ws/voice")
    async def voice_session(websocket: WebSocket):
        await websocket.accept()
        transport = WebSocketClientTransport(websocket)
        logger.info("voice_ws_connected")
        try:
            state = await manager.handle_connection(transport)
            logger.info("voice_ws_session_finished", state=state.value)
        except ManagerShutdownError:
            logger.warning("voice_ws_rejected_shutting_down")
            await transport.close()
        finally:
            logger.info("voice_ws_closed")

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    _settings = get_settings()
    uvicorn.run(app, host=_settings.server.host, port=_settings.server.port)

"""
Client Transport — the bidirectional channel between a voice client and
its session.

Provides:
- TransportClosed: the client side went away (treated as `end`)
- ClientProtocolError: the client sent something unreadable
- ClientTransport: abstract receive/send/close contract
"""
from __future__ import annotations

import abc

from models.schemas import ClientMessage, ServerMessage


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class TransportClosed(Exception):
    """The client channel is closed; no further messages in either direction."""

    def __init__(self, message: str = "client transport closed", code: int = 1000):
        self.code = code
        super().__init__(message)


class ClientProtocolError(Exception):
    """A client message could not be parsed or validated."""


# ══════════════════════════════════════════════════════════════
#  TRANSPORT CONTRACT
# ══════════════════════════════════════════════════════════════

class ClientTransport(abc.ABC):
    """
    One client connection. receive() is called from a single reader task;
    send() may be called concurrently and must serialize frames itself.
    """

    @abc.abstractmethod
    async def receive(self) -> ClientMessage:
        """Next parsed client message. Raises TransportClosed / ClientProtocolError."""

    @abc.abstractmethod
    async def send(self, message: ServerMessage) -> None:
        """Deliver one server message. Raises TransportClosed."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the channel. Idempotent."""

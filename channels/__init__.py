"""Client transports for voice sessions."""
from channels.base import ClientProtocolError, ClientTransport, TransportClosed
from channels.websocket_transport import WebSocketClientTransport

__all__ = [
    "ClientTransport", "TransportClosed", "ClientProtocolError",
    "WebSocketClientTransport",
]

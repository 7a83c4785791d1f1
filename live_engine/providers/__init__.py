"""Live session engine, transport, wire frames and setup handshake."""

from .base import RealtimeProviderInterface, TransportFactory, TransportInterface
from .gemini_live import CLOSE_CODE_MESSAGES, LiveSessionEngine, LiveTurnChannel, close_message
from .handshake import CapabilityNegotiator, HandshakeController
from .transport import WebSocketTransport, websocket_transport_factory

__all__ = [
    "RealtimeProviderInterface",
    "TransportFactory",
    "TransportInterface",
    "CLOSE_CODE_MESSAGES",
    "LiveSessionEngine",
    "LiveTurnChannel",
    "close_message",
    "CapabilityNegotiator",
    "HandshakeController",
    "WebSocketTransport",
    "websocket_transport_factory",
]

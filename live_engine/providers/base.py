from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Union

FrameCallback = Callable[[Union[str, bytes]], None]
CloseCallback = Callable[[Optional[int], str], None]


class TransportInterface(ABC):
    """
    Abstract Base Class for the duplex socket under a live session.

    Implementations deliver every inbound message to ``on_frame`` in arrival
    order and call ``on_close`` exactly once when the socket goes away,
    whoever closed it.
    """
    def __init__(self, *, on_frame: FrameCallback, on_close: CloseCallback):
        self.on_frame = on_frame
        self.on_close = on_close

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the socket is gone or was never opened."""
        pass

    @abstractmethod
    async def connect(self, url: str, timeout: float):
        """Open the socket; raise EngineConnectionError if it takes longer than timeout."""
        pass

    @abstractmethod
    async def send(self, message: Union[str, bytes]) -> bool:
        """Send one message. Returns False, without raising, if the socket is closed."""
        pass

    @abstractmethod
    async def close(self):
        """Close the socket. Safe to call more than once."""
        pass


TransportFactory = Callable[..., TransportInterface]


class RealtimeProviderInterface(ABC):
    """
    Abstract Base Class for realtime duplex providers.

    This class defines the contract the CLI and callers rely on; events are
    plain dicts with a ``type`` key delivered to ``on_event``.
    """
    def __init__(self, on_event: Optional[Callable[[Dict[str, Any]], Any]] = None):
        self.on_event = on_event

    @abstractmethod
    async def connect(self):
        """Open the socket, perform the setup handshake and become ready."""
        pass

    @abstractmethod
    async def send_text(self, text: str) -> bool:
        """Send one complete user text turn."""
        pass

    @abstractmethod
    async def send_audio_chunk(self, pcm16: bytes) -> bool:
        """Send one chunk of PCM16 microphone audio at the wire rate."""
        pass

    @abstractmethod
    async def disconnect(self):
        """Close the session permanently. Idempotent."""
        pass

    @abstractmethod
    def is_ready(self) -> bool:
        """True when sends will reach the remote service."""
        pass

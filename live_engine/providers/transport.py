"""
Websocket transport for the live session.

One instance is one socket. The engine builds a fresh transport for every
connection attempt, so a transport never reconnects by itself.
"""

import asyncio
import contextlib
from typing import Optional, Union

import websockets
import websockets.exceptions
from structlog import get_logger
from websockets.asyncio.client import ClientConnection

from ..core.errors import EngineConnectionError
from .base import CloseCallback, FrameCallback, TransportInterface

logger = get_logger(__name__)

# RFC 6455 "abnormal closure": no close frame was received.
ABNORMAL_CLOSURE = 1006


class WebSocketTransport(TransportInterface):
    def __init__(self, *, on_frame: FrameCallback, on_close: CloseCallback, close_timeout: float = 5.0):
        super().__init__(on_frame=on_frame, on_close=on_close)
        self.websocket: Optional[ClientConnection] = None
        self.close_timeout = close_timeout
        self._receive_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._close_notified = False

    @property
    def closed(self) -> bool:
        return self.websocket is None or self.websocket.state.name != "OPEN"

    async def connect(self, url: str, timeout: float):
        redacted = url.split("?", 1)[0]
        try:
            # Audio keeps the session busy; server drives pings if it wants them
            self.websocket = await asyncio.wait_for(
                websockets.connect(
                    url,
                    ping_interval=None,
                    ping_timeout=None,
                    close_timeout=self.close_timeout,
                    max_size=None,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Live websocket connect timed out", url=redacted, timeout_sec=timeout)
            raise EngineConnectionError(f"Connection timed out after {timeout:g}s") from exc
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            logger.warning("Live websocket connect failed", url=redacted, error=str(exc))
            raise EngineConnectionError(f"WebSocket connection error: {exc}") from exc

        logger.info("Connected to live endpoint", url=redacted)
        self._receive_task = asyncio.create_task(self._receive_loop(), name="live-transport-receive")

    async def send(self, message: Union[str, bytes]) -> bool:
        websocket = self.websocket
        if websocket is None or websocket.state.name != "OPEN":
            return False
        async with self._send_lock:
            try:
                await websocket.send(message)
                return True
            except websockets.exceptions.ConnectionClosed as e:
                logger.debug("Could not send frame: connection closed.", code=e.code, reason=e.reason)
                return False

    async def close(self):
        websocket = self.websocket
        if websocket is not None:
            with contextlib.suppress(Exception):
                await websocket.close()
        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=self.close_timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                task.cancel()
        if websocket is not None:
            # Covers the case where the receive loop was cancelled before its finally ran
            self._notify_close(websocket)

    async def _receive_loop(self):
        websocket = self.websocket
        if websocket is None:
            return
        try:
            async for message in websocket:
                self.on_frame(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug("Live websocket connection closed", code=e.code, reason=e.reason)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Error receiving frames from live endpoint", exc_info=True)
        finally:
            self._notify_close(websocket)

    def _notify_close(self, websocket: Optional[ClientConnection]):
        if self._close_notified:
            return
        self._close_notified = True
        code = getattr(websocket, "close_code", None) if websocket is not None else None
        reason = getattr(websocket, "close_reason", None) if websocket is not None else None
        try:
            self.on_close(code if code is not None else ABNORMAL_CLOSURE, reason or "")
        except Exception:
            logger.error("Close callback failed", exc_info=True)


def websocket_transport_factory(*, on_frame: FrameCallback, on_close: CloseCallback) -> WebSocketTransport:
    return WebSocketTransport(on_frame=on_frame, on_close=on_close)


__all__ = ["ABNORMAL_CLOSURE", "WebSocketTransport", "websocket_transport_factory"]

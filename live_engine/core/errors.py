"""
Error taxonomy for the live session engine.

Only HandshakeRejected is retried automatically (once, by the capability
negotiator). Tool failures and declined confirmations are absorbed by the
tool orchestrator and encoded into the protocol response; they are defined
here so executors can raise them. Everything else is terminal for the
session that raised it.
"""

from __future__ import annotations

from typing import Optional


class LiveEngineError(Exception):
    """Base class for all engine errors."""


class EngineConnectionError(LiveEngineError, ConnectionError):
    """The websocket could not be opened within the connect timeout."""


class HandshakeRejected(LiveEngineError):
    """The socket closed before the setup frame was acknowledged."""

    def __init__(self, code: Optional[int], reason: str = ""):
        self.code = code
        self.reason = reason or ""
        super().__init__(self.reason or f"Setup rejected (close code {code})")


class SessionExpired(LiveEngineError):
    """Session reached its renewal point. Raised by the lifetime check and handled by renewal; never surfaced."""


class ToolExecutionError(LiveEngineError):
    """A local tool failed. Converted into a structured failure result."""


class UserDeclinedConfirmation(LiveEngineError):
    """The user refused to confirm a dangerous tool call."""


class ProtocolViolation(LiveEngineError):
    """An inbound frame could not be parsed or has an unexpected shape."""


class FatalTransportError(LiveEngineError):
    """Socket error or abnormal close after setup; the session is over."""

    def __init__(self, message: str, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason or ""
        super().__init__(message)


class InvalidTransition(LiveEngineError):
    """A session state change that the lifecycle table does not allow."""


__all__ = [
    "LiveEngineError",
    "EngineConnectionError",
    "HandshakeRejected",
    "SessionExpired",
    "ToolExecutionError",
    "UserDeclinedConfirmation",
    "ProtocolViolation",
    "FatalTransportError",
    "InvalidTransition",
]

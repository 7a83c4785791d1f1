"""Session state, data model and error taxonomy."""

from .errors import (
    EngineConnectionError,
    FatalTransportError,
    HandshakeRejected,
    InvalidTransition,
    LiveEngineError,
    ProtocolViolation,
    SessionExpired,
    ToolExecutionError,
    UserDeclinedConfirmation,
)
from .history import MAX_HISTORY_MESSAGES, build_history
from .models import (
    ConversationMessage,
    FunctionCall,
    ModelResponse,
    Session,
    SessionState,
    Source,
    ToolCall,
    ToolCallStatus,
    TurnResult,
)
from .session_lifecycle import SessionLifecycleManager

__all__ = [
    "EngineConnectionError",
    "FatalTransportError",
    "HandshakeRejected",
    "InvalidTransition",
    "LiveEngineError",
    "ProtocolViolation",
    "SessionExpired",
    "ToolExecutionError",
    "UserDeclinedConfirmation",
    "MAX_HISTORY_MESSAGES",
    "build_history",
    "FunctionCall",
    "ModelResponse",
    "ConversationMessage",
    "Session",
    "SessionState",
    "Source",
    "ToolCall",
    "ToolCallStatus",
    "TurnResult",
    "SessionLifecycleManager",
]

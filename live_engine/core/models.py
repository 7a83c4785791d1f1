"""
Data model shared by the session engine components.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Session:
    """One logical session per engine instance (owned by the lifecycle manager)."""

    state: SessionState = SessionState.IDLE
    started_at: Optional[float] = None
    last_audio_activity_at: Optional[float] = None
    capability_retry_used: bool = False
    setup_acknowledged: bool = False
    soft_ready: bool = False


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ToolCall:
    id: int
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    # Provider-assigned call id (toolCall frames carry one, modelTurn parts may not)
    remote_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "args": dict(self.args),
            "status": self.status.value,
            "result": self.result,
        }


@dataclass
class FunctionCall:
    """A function call requested by the model, as it arrived on the wire."""

    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class ModelResponse:
    """Aggregated model output for one round trip (until turnComplete or toolCall)."""

    text: str = ""
    function_calls: List[FunctionCall] = field(default_factory=list)
    grounding_metadata: Optional[Dict[str, Any]] = None


@dataclass
class ConversationMessage:
    role: str  # "user" | "model"
    text: str


@dataclass
class Source:
    uri: str
    title: str = "Source"
    snippet: str = ""


@dataclass
class TurnResult:
    """Outcome of one caller message, after any agentic rounds."""

    text: str
    sources: Optional[List[Source]] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    rounds: int = 0
    hit_round_limit: bool = False


__all__ = [
    "SessionState",
    "Session",
    "ToolCallStatus",
    "ToolCall",
    "FunctionCall",
    "ModelResponse",
    "ConversationMessage",
    "Source",
    "TurnResult",
]

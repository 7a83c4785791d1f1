"""
Wire frames for the Gemini Live BidiGenerateContent protocol.

Every message on the socket maps to exactly one frame type below. Outbound
frames know how to render themselves (``to_wire``); inbound text messages
are classified by ``parse_frame``. Binary messages that do not parse as
JSON are raw PCM16 audio: the only way to tell the two apart is a failed
parse.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..core.errors import ProtocolViolation
from ..core.models import FunctionCall

AUDIO_INPUT_MIME_TYPE = "audio/pcm;rate=16000"


# ---------------------------------------------------------------------------
# ServerContent parts
# ---------------------------------------------------------------------------


@dataclass
class TextPart:
    text: str


@dataclass
class AudioPart:
    data: str  # base64 PCM16
    mime_type: str = ""


FunctionCallPart = FunctionCall

Part = Union[TextPart, AudioPart, FunctionCallPart]


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


@dataclass
class Setup:
    model: str
    response_modalities: List[str] = field(default_factory=lambda: ["AUDIO"])
    voice_name: Optional[str] = None
    system_instruction: Optional[str] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        model = self.model if self.model.startswith("models/") else f"models/{self.model}"
        generation_config: Dict[str, Any] = {"responseModalities": list(self.response_modalities)}
        if self.voice_name:
            generation_config["speechConfig"] = {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice_name}}
            }
        setup: Dict[str, Any] = {"model": model, "generationConfig": generation_config}
        if self.system_instruction:
            setup["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        if self.tools:
            setup["tools"] = self.tools
        return {"setup": setup}


@dataclass
class ClientTurn:
    turns: List[Dict[str, Any]]
    turn_complete: bool = True

    @classmethod
    def from_text(cls, text: str) -> "ClientTurn":
        return cls(turns=[{"role": "user", "parts": [{"text": text}]}])

    def to_wire(self) -> Dict[str, Any]:
        return {"clientContent": {"turns": self.turns, "turnComplete": self.turn_complete}}


@dataclass
class RealtimeAudioIn:
    data: str  # base64 PCM16 @ 16 kHz
    mime_type: str = AUDIO_INPUT_MIME_TYPE

    def to_wire(self) -> Dict[str, Any]:
        return {"realtimeInput": {"audio": {"data": self.data, "mimeType": self.mime_type}}}


@dataclass
class ToolResponse:
    # Each entry: {"id"?: str, "name": str, "response": dict}
    responses: List[Dict[str, Any]]

    def to_wire(self) -> Dict[str, Any]:
        return {"toolResponse": {"functionResponses": self.responses}}


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


@dataclass
class SetupAck:
    payload: Any = None


@dataclass
class ServerContent:
    parts: List[Part] = field(default_factory=list)
    grounding_metadata: Optional[Dict[str, Any]] = None
    turn_complete: bool = False
    interrupted: bool = False

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def function_calls(self) -> List[FunctionCall]:
        return [p for p in self.parts if isinstance(p, FunctionCall)]


@dataclass
class ToolCallFrame:
    calls: List[FunctionCall] = field(default_factory=list)


@dataclass
class ErrorFrame:
    message: str
    code: Optional[int] = None


@dataclass
class CloseFrame:
    """Socket closed. Built by the engine from the transport close callback, never parsed."""

    code: Optional[int]
    reason: str = ""


@dataclass
class BinaryAudio:
    data: bytes


@dataclass
class GoAway:
    time_left: Optional[str] = None


@dataclass
class UnknownFrame:
    payload: Dict[str, Any]


InboundFrame = Union[SetupAck, ServerContent, ToolCallFrame, ErrorFrame, GoAway, BinaryAudio, UnknownFrame]
OutboundFrame = Union[Setup, ClientTurn, RealtimeAudioIn, ToolResponse]


def encode_frame(frame: OutboundFrame) -> str:
    return json.dumps(frame.to_wire())


def _parse_function_call(raw: Any) -> FunctionCall:
    if not isinstance(raw, dict) or not raw.get("name"):
        raise ProtocolViolation("functionCall without a name")
    args = raw.get("args") or {}
    if not isinstance(args, dict):
        raise ProtocolViolation("functionCall args must be an object")
    call_id = raw.get("id")
    return FunctionCall(name=str(raw["name"]), args=args, id=str(call_id) if call_id else None)


def _parse_parts(raw_parts: Any) -> List[Part]:
    parts: List[Part] = []
    if not isinstance(raw_parts, list):
        return parts
    for raw in raw_parts:
        if not isinstance(raw, dict):
            continue
        text = raw.get("text")
        if text:
            parts.append(TextPart(text=str(text)))
        inline = raw.get("inlineData")
        if isinstance(inline, dict) and inline.get("data"):
            parts.append(AudioPart(data=inline["data"], mime_type=inline.get("mimeType", "")))
        if raw.get("functionCall"):
            parts.append(_parse_function_call(raw["functionCall"]))
    return parts


def _classify(payload: Dict[str, Any]) -> InboundFrame:
    if "setupComplete" in payload:
        return SetupAck(payload=payload["setupComplete"])

    if "error" in payload:
        error = payload["error"]
        if isinstance(error, dict):
            message = error.get("message") or "Server error"
            code = error.get("code")
            return ErrorFrame(message=str(message), code=code if isinstance(code, int) else None)
        return ErrorFrame(message=str(error or "Server error"))

    if "serverContent" in payload:
        content = payload["serverContent"] or {}
        if not isinstance(content, dict):
            raise ProtocolViolation("serverContent must be an object")
        model_turn = content.get("modelTurn") or {}
        grounding = content.get("groundingMetadata")
        return ServerContent(
            parts=_parse_parts(model_turn.get("parts") if isinstance(model_turn, dict) else None),
            grounding_metadata=grounding if isinstance(grounding, dict) else None,
            turn_complete=bool(content.get("turnComplete")),
            interrupted=bool(content.get("interrupted")),
        )

    if "toolCall" in payload:
        tool_call = payload["toolCall"] or {}
        raw_calls = tool_call.get("functionCalls") if isinstance(tool_call, dict) else None
        if not isinstance(raw_calls, list):
            raise ProtocolViolation("toolCall without functionCalls")
        return ToolCallFrame(calls=[_parse_function_call(c) for c in raw_calls])

    if "goAway" in payload:
        go_away = payload["goAway"] or {}
        return GoAway(time_left=go_away.get("timeLeft") if isinstance(go_away, dict) else None)

    return UnknownFrame(payload=payload)


def parse_frame(raw: Union[str, bytes]) -> InboundFrame:
    """
    Classify one inbound websocket message.

    Binary messages that are not JSON become BinaryAudio. Text messages that
    are not a JSON object raise ProtocolViolation.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            payload = json.loads(bytes(raw).decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return BinaryAudio(data=bytes(raw))
        if not isinstance(payload, dict):
            return BinaryAudio(data=bytes(raw))
        return _classify(payload)

    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ProtocolViolation(f"Unparseable text frame: {exc}") from exc
    if not isinstance(payload, dict):
        raise ProtocolViolation("Text frame is not a JSON object")
    return _classify(payload)


__all__ = [
    "AUDIO_INPUT_MIME_TYPE",
    "TextPart",
    "AudioPart",
    "FunctionCallPart",
    "Part",
    "Setup",
    "ClientTurn",
    "RealtimeAudioIn",
    "ToolResponse",
    "SetupAck",
    "ServerContent",
    "ToolCallFrame",
    "ErrorFrame",
    "CloseFrame",
    "BinaryAudio",
    "GoAway",
    "UnknownFrame",
    "InboundFrame",
    "OutboundFrame",
    "encode_frame",
    "parse_frame",
]

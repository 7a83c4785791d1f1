"""
Conversation history normalisation for model requests.

The caller owns the history; the engine only reads a bounded suffix and
reshapes it into the alternating user/model turn list the service accepts.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Union

from .models import ConversationMessage

MAX_HISTORY_MESSAGES = 50

HistoryEntry = Union[ConversationMessage, Dict[str, Any]]


def _role_and_text(entry: HistoryEntry) -> tuple[str, str]:
    if isinstance(entry, ConversationMessage):
        role, text = entry.role, entry.text
    else:
        role, text = entry.get("role"), entry.get("text")
    role = "model" if role == "model" else "user"
    return role, text if isinstance(text, str) else ""


def build_history(
    history: Iterable[HistoryEntry],
    max_messages: int = MAX_HISTORY_MESSAGES,
) -> List[Dict[str, Any]]:
    """
    Build a turn list from caller history.

    - keeps the most recent ``max_messages`` entries
    - drops empty texts, maps unknown roles to "user"
    - strips leading model entries
    - merges consecutive same-role entries with a newline
    - strips a trailing user entry (the in-flight message is sent separately)

    Returns a list of ``{"role": ..., "parts": [{"text": ...}]}`` dicts.
    """
    entries = list(history)
    if max_messages > 0:
        entries = entries[-max_messages:]

    raw: List[tuple[str, str]] = []
    for entry in entries:
        role, text = _role_and_text(entry)
        if text.strip():
            raw.append((role, text))

    while raw and raw[0][0] == "model":
        raw.pop(0)

    merged: List[Dict[str, Any]] = []
    for role, text in raw:
        if merged and merged[-1]["role"] == role:
            merged[-1]["parts"][0]["text"] += "\n" + text
        else:
            merged.append({"role": role, "parts": [{"text": text}]})

    if merged and merged[-1]["role"] == "user":
        merged.pop()

    return merged


__all__ = ["MAX_HISTORY_MESSAGES", "build_history"]

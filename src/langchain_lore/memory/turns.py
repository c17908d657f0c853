"""
Helpers for reading conversation turns.

The host hands the engine its live conversation as a list of LangChain
messages. ``HumanMessage`` is a user turn, ``AIMessage`` a non-user turn;
anything else (system notes, narrator inserts) is neither.
"""

import hashlib
from enum import Enum
from typing import Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage


class TurnRole(str, Enum):
    USER = "user"
    NON_USER = "non_user"
    OTHER = "other"


def turn_text(msg: Optional[BaseMessage]) -> str:
    """Flatten a message's content into plain text."""
    if msg is None:
        return ""
    content = msg.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                # thinking/reasoning blocks are not part of the visible turn
                if block.get("type") in ("thinking", "reasoning"):
                    continue
                text = block.get("text") or ""
                if text:
                    parts.append(text)
        return "\n".join(parts)
    return str(content) if content else ""


def turn_role(msg: Optional[BaseMessage]) -> TurnRole:
    if isinstance(msg, HumanMessage):
        return TurnRole.USER
    if isinstance(msg, AIMessage):
        return TurnRole.NON_USER
    return TurnRole.OTHER


def speaker_name(msg: Optional[BaseMessage]) -> str:
    name = getattr(msg, "name", None)
    if name:
        return name
    role = turn_role(msg)
    if role is TurnRole.USER:
        return "User"
    if role is TurnRole.NON_USER:
        return "Assistant"
    return "Narrator"


def get_turn(turns: list, index: int) -> Optional[BaseMessage]:
    if index < 0 or index >= len(turns):
        return None
    return turns[index]


def content_hash(text: str) -> str:
    """Deterministic hash of a turn's text, used to invalidate stale records."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()[:16]


def format_turns(turns: list, max_chars: int = 0) -> str:
    """Render turns as ``Speaker: text`` lines."""
    lines = []
    for msg in turns:
        text = turn_text(msg)
        if not text.strip():
            continue
        if max_chars and len(text) > max_chars:
            text = text[:max_chars] + "..."
        lines.append(f"{speaker_name(msg)}: {text}")
    return "\n".join(lines)

"""Reconstructed message timeline shown to clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class ToolStatus(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ToolInvocation:
    tool_use_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.RUNNING
    result_images: list[str] = field(default_factory=list)


@dataclass
class UserTurn:
    id: str
    text: str


@dataclass
class AssistantTurn:
    id: str
    text: str


@dataclass
class ToolGroup:
    id: str
    tools: list[ToolInvocation] = field(default_factory=list)


@dataclass
class ErrorTurn:
    id: str
    message: str


ReconstructedMessage = Union[UserTurn, AssistantTurn, ToolGroup, ErrorTurn]


def tool_to_dict(tool: ToolInvocation) -> dict[str, Any]:
    d: dict[str, Any] = {
        "toolUseId": tool.tool_use_id,
        "name": tool.name,
        "input": tool.input,
        "status": tool.status.value,
    }
    if tool.result_images:
        d["resultImages"] = list(tool.result_images)
    return d


def message_to_dict(message: ReconstructedMessage) -> dict[str, Any]:
    """Convert a timeline message to the JSON shape clients render."""
    if isinstance(message, UserTurn):
        return {"type": "user", "id": message.id, "content": message.text}
    if isinstance(message, AssistantTurn):
        return {"type": "assistant", "id": message.id, "content": message.text}
    if isinstance(message, ToolGroup):
        return {
            "type": "tools",
            "id": message.id,
            "tools": [tool_to_dict(t) for t in message.tools],
        }
    if isinstance(message, ErrorTurn):
        return {"type": "error", "id": message.id, "content": message.message}
    raise TypeError(f"Unknown timeline message: {type(message).__name__}")


def timeline_to_dicts(timeline: list[ReconstructedMessage]) -> list[dict[str, Any]]:
    return [message_to_dict(m) for m in timeline]

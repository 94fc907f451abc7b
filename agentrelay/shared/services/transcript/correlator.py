"""Rebuild a message timeline from an ordered sequence of protocol entries.

Two passes over the same list. The scan pass records the last
compaction boundary and the outcome of every ``tool_result`` block;
the build pass walks forward from the boundary and turns user and
assistant entries into timeline messages, resolving each tool_use
against the outcomes table. Adjacent tool groups are merged so a
reloaded session looks like the burst of tool activity a live viewer
saw.

The function is pure: the live relay calls it on the entries received
so far and the transcript reader calls it on a whole log file.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from agentrelay.shared.models.events import EntryType, RawLogEntry
from agentrelay.shared.models.timeline import (
    AssistantTurn,
    ErrorTurn,
    ReconstructedMessage,
    ToolGroup,
    ToolInvocation,
    ToolStatus,
    UserTurn,
)

from .normalize import blocks_of_type, image_data_urls, join_text_blocks, truncate_title

# User text starting with this marker is injected by the agent
# (command wrappers, local command output), not typed by the user.
CONTROL_MARKER = "<"

DEFAULT_TITLE_LIMIT = 100


@dataclass
class Reconstruction:
    timeline: list[ReconstructedMessage] = field(default_factory=list)
    compacted: bool = False
    first_user_text: str | None = None


@dataclass(frozen=True)
class _ToolOutcome:
    is_error: bool
    images: tuple[str, ...] = ()


def _scan(entries: list[RawLogEntry]) -> tuple[int, dict[str, _ToolOutcome]]:
    boundary = -1
    outcomes: dict[str, _ToolOutcome] = {}
    for idx, entry in enumerate(entries):
        if entry.is_compact_boundary:
            boundary = idx
            continue
        if entry.type != EntryType.USER.value:
            continue
        for block in blocks_of_type(entry.content, "tool_result"):
            tool_use_id = block.get("tool_use_id")
            if not isinstance(tool_use_id, str) or not tool_use_id:
                continue
            # First result wins: one terminal transition per tool_use_id.
            if tool_use_id in outcomes:
                continue
            outcomes[tool_use_id] = _ToolOutcome(
                is_error=bool(block.get("is_error")),
                images=tuple(image_data_urls(block.get("content"))),
            )
    return boundary, outcomes


def _user_turn(entry: RawLogEntry, entry_id: str) -> UserTurn | None:
    if entry.is_meta:
        return None
    content = entry.content
    if isinstance(content, str):
        if not content or content.startswith(CONTROL_MARKER):
            return None
        return UserTurn(id=entry_id, text=content)
    text = join_text_blocks(content)
    if text:
        return UserTurn(id=entry_id, text=text)
    return None


def _assistant_error(entry: RawLogEntry, text: str) -> str:
    if text:
        return text
    return f"Agent error: {entry.raw.get('error')}"


def _assistant_messages(
    entry: RawLogEntry,
    entry_id: str,
    outcomes: dict[str, _ToolOutcome],
    seen_tools: set[str],
    unresolved: ToolStatus,
) -> list[ReconstructedMessage]:
    content = entry.content
    if not isinstance(content, list):
        return []

    messages: list[ReconstructedMessage] = []
    text = join_text_blocks(content)
    if entry.raw.get("error"):
        messages.append(ErrorTurn(id=entry_id, message=_assistant_error(entry, text)))
    elif text:
        messages.append(AssistantTurn(id=entry_id, text=text))

    tools: list[ToolInvocation] = []
    for block in blocks_of_type(content, "tool_use"):
        tool_use_id = str(block.get("id") or "")
        if tool_use_id and tool_use_id in seen_tools:
            continue
        seen_tools.add(tool_use_id)
        raw_input = block.get("input")
        outcome = outcomes.get(tool_use_id)
        if outcome is None:
            status = unresolved
            images: list[str] = []
        else:
            status = ToolStatus.ERROR if outcome.is_error else ToolStatus.COMPLETE
            images = list(outcome.images)
        tools.append(
            ToolInvocation(
                tool_use_id=tool_use_id,
                name=str(block.get("name") or "tool"),
                input=raw_input if isinstance(raw_input, dict) else {},
                status=status,
                result_images=images,
            )
        )
    if tools:
        messages.append(ToolGroup(id=f"tools-{entry_id}", tools=tools))
    return messages


def _result_error(entry: RawLogEntry, entry_id: str) -> ErrorTurn | None:
    if not entry.raw.get("is_error"):
        return None
    errors = entry.raw.get("errors")
    if isinstance(errors, list):
        message = "; ".join(str(e) for e in errors if e)
    else:
        message = ""
    if not message:
        result = entry.raw.get("result")
        message = result if isinstance(result, str) else ""
    return ErrorTurn(id=entry_id, message=message or (entry.subtype or "error"))


def merge_tool_groups(messages: Iterable[ReconstructedMessage]) -> list[ReconstructedMessage]:
    """Collapse runs of adjacent ToolGroups into one group."""
    merged: list[ReconstructedMessage] = []
    for msg in messages:
        last = merged[-1] if merged else None
        if isinstance(msg, ToolGroup) and isinstance(last, ToolGroup):
            merged[-1] = ToolGroup(id=last.id, tools=[*last.tools, *msg.tools])
        else:
            merged.append(msg)
    return merged


def reconstruct(
    entries: Iterable[RawLogEntry],
    *,
    unresolved: ToolStatus = ToolStatus.COMPLETE,
    title_limit: int = DEFAULT_TITLE_LIMIT,
) -> Reconstruction:
    """Build the client timeline for *entries*.

    Args:
        entries: Decoded entries in log order.
        unresolved: Status for tool invocations with no recorded
            result. Closed logs use ``complete``; a relay that is
            still streaming uses ``running``.
        title_limit: Length at which ``first_user_text`` is cut.
    """
    items = list(entries)
    boundary, outcomes = _scan(items)
    compacted = boundary >= 0
    # Skip the boundary itself and the summary entry written after it.
    start = boundary + 2 if compacted else 0

    messages: list[ReconstructedMessage] = []
    seen_entries: set[str] = set()
    seen_tools: set[str] = set()
    for idx in range(start, len(items)):
        entry = items[idx]
        if entry.uuid:
            if entry.uuid in seen_entries:
                continue
            seen_entries.add(entry.uuid)
        entry_id = entry.uuid or f"entry-{idx}"

        if entry.type == EntryType.USER.value:
            turn = _user_turn(entry, entry_id)
            if turn is not None:
                messages.append(turn)
        elif entry.type == EntryType.ASSISTANT.value:
            messages.extend(
                _assistant_messages(entry, entry_id, outcomes, seen_tools, unresolved)
            )
        elif entry.type == EntryType.RESULT.value:
            error = _result_error(entry, entry_id)
            if error is not None:
                messages.append(error)

    timeline = merge_tool_groups(messages)
    first_user_text = None
    for msg in timeline:
        if isinstance(msg, UserTurn):
            first_user_text = truncate_title(msg.text, title_limit)
            break
    return Reconstruction(
        timeline=timeline,
        compacted=compacted,
        first_user_text=first_user_text,
    )


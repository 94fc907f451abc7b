"""Raw agent protocol entries.

Each line the agent CLI prints in ``stream-json`` mode, and each line
of its on-disk session transcript, decodes into one immutable
:class:`RawLogEntry`. Unknown ``type`` tags are kept so they can be
relayed to clients untouched.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentrelay.engine.errors import MalformedEntry

logger = logging.getLogger(__name__)


class EntryType(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    RESULT = "result"
    STREAM_EVENT = "stream_event"
    TOOL_PROGRESS = "tool_progress"
    AUTH_STATUS = "auth_status"


COMPACT_BOUNDARY_SUBTYPE = "compact_boundary"


@dataclass(frozen=True)
class RawLogEntry:
    """One decoded protocol record."""
    type: str
    session_id: str | None = None
    uuid: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def subtype(self) -> str | None:
        value = self.raw.get("subtype")
        return value if isinstance(value, str) else None

    @property
    def message(self) -> dict[str, Any]:
        value = self.raw.get("message")
        return value if isinstance(value, dict) else {}

    @property
    def content(self) -> Any:
        """``message.content``: a string, a list of blocks, or None."""
        return self.message.get("content")

    @property
    def is_meta(self) -> bool:
        return bool(self.raw.get("isMeta"))

    @property
    def is_sidechain(self) -> bool:
        return bool(self.raw.get("isSidechain"))

    @property
    def git_branch(self) -> str | None:
        value = self.raw.get("gitBranch")
        return value if isinstance(value, str) and value else None

    @property
    def timestamp(self) -> str | None:
        value = self.raw.get("timestamp")
        return value if isinstance(value, str) and value else None

    @property
    def is_compact_boundary(self) -> bool:
        return (
            self.type == EntryType.SYSTEM.value
            and self.subtype == COMPACT_BOUNDARY_SUBTYPE
        )

    def to_dict(self) -> dict[str, Any]:
        """The entry exactly as the agent emitted it."""
        return self.raw


def entry_from_dict(data: dict[str, Any]) -> RawLogEntry:
    """Build an entry from an already-parsed JSON object."""
    entry_type = data.get("type")
    if not isinstance(entry_type, str) or not entry_type:
        raise MalformedEntry(json.dumps(data)[:200], "missing type")
    session_id = data.get("session_id") or data.get("sessionId")
    uuid = data.get("uuid")
    return RawLogEntry(
        type=entry_type,
        session_id=session_id if isinstance(session_id, str) and session_id else None,
        uuid=uuid if isinstance(uuid, str) and uuid else None,
        raw=data,
    )


def decode_entry(line: str) -> RawLogEntry:
    """Parse one line of text into a :class:`RawLogEntry`.

    Raises :class:`MalformedEntry` when the line is not a JSON object
    with a string ``type``.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise MalformedEntry(line, f"invalid json: {exc.msg}") from exc
    except RecursionError as exc:
        raise MalformedEntry(line, "nesting too deep") from exc
    if not isinstance(data, dict):
        raise MalformedEntry(line, "not an object")
    entry_type = data.get("type")
    if not isinstance(entry_type, str) or not entry_type:
        raise MalformedEntry(line, "missing type")
    return entry_from_dict(data)


def iter_decoded(lines: Iterable[str]) -> Iterator[RawLogEntry | MalformedEntry]:
    """Decode lines one by one, yielding the error in place of a bad line.

    Blank lines are skipped. A malformed line never ends iteration.
    """
    for line in lines:
        if not line.strip():
            continue
        try:
            yield decode_entry(line)
        except MalformedEntry as exc:
            yield exc


def iter_entries(lines: Iterable[str]) -> Iterator[RawLogEntry]:
    """Decode lines, logging and dropping malformed ones."""
    for item in iter_decoded(lines):
        if isinstance(item, MalformedEntry):
            logger.debug("Skipping malformed entry: %s", item)
            continue
        yield item


class LineFramer:
    """Split a byte stream into newline-terminated text lines.

    Chunks may end anywhere, including inside a multi-byte UTF-8
    sequence; bytes are only decoded once a full line is buffered.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer.extend(chunk)
        lines: list[str] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            lines.append(raw.decode("utf-8", errors="replace").rstrip("\r"))
        return lines

    def flush(self) -> str | None:
        """Return any unterminated trailing line and reset the buffer."""
        if not self._buffer:
            return None
        raw = bytes(self._buffer)
        self._buffer.clear()
        text = raw.decode("utf-8", errors="replace").rstrip("\r")
        return text or None


async def aiter_frames(
    reader: asyncio.StreamReader,
    chunk_size: int = 65536,
) -> AsyncIterator[str]:
    """Yield complete lines from an asyncio stream until EOF."""
    framer = LineFramer()
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        for line in framer.feed(chunk):
            yield line
    tail = framer.flush()
    if tail is not None:
        yield tail

from __future__ import annotations

import asyncio
import json

import pytest

from agentrelay.engine.errors import MalformedEntry
from agentrelay.shared.models.events import (
    EntryType,
    LineFramer,
    aiter_frames,
    decode_entry,
    iter_decoded,
    iter_entries,
)


def test_decode_entry_keeps_raw_payload_and_ids() -> None:
    line = json.dumps({
        "type": "system",
        "subtype": "init",
        "session_id": "abc",
        "uuid": "u-1",
        "tools": ["Read"],
    })
    entry = decode_entry(line)

    assert entry.type == EntryType.SYSTEM.value
    assert entry.subtype == "init"
    assert entry.session_id == "abc"
    assert entry.uuid == "u-1"
    assert entry.to_dict()["tools"] == ["Read"]


def test_decode_entry_reads_transcript_style_session_id() -> None:
    entry = decode_entry('{"type": "user", "sessionId": "s-1", "message": {"content": "hi"}}')
    assert entry.session_id == "s-1"
    assert entry.content == "hi"


def test_unknown_type_is_preserved() -> None:
    entry = decode_entry('{"type": "brand_new_kind", "payload": 1}')
    assert entry.type == "brand_new_kind"
    assert entry.to_dict() == {"type": "brand_new_kind", "payload": 1}


@pytest.mark.parametrize(
    "line, reason",
    [
        ("not json", "invalid json"),
        ("[1, 2]", "not an object"),
        ('{"message": {}}', "missing type"),
        ('{"type": ""}', "missing type"),
    ],
)
def test_decode_entry_rejects_bad_lines(line: str, reason: str) -> None:
    with pytest.raises(MalformedEntry) as excinfo:
        decode_entry(line)
    assert excinfo.value.line == line
    assert excinfo.value.reason.startswith(reason)


def test_decode_entry_rejects_deep_nesting() -> None:
    line = "[" * 200000 + "]" * 200000
    with pytest.raises(MalformedEntry) as excinfo:
        decode_entry(line)
    assert excinfo.value.reason == "nesting too deep"


def test_compact_boundary_detection() -> None:
    boundary = decode_entry('{"type": "system", "subtype": "compact_boundary"}')
    init = decode_entry('{"type": "system", "subtype": "init"}')
    assert boundary.is_compact_boundary
    assert not init.is_compact_boundary


def test_iter_decoded_yields_errors_in_place() -> None:
    lines = ['{"type": "user"}', "garbage", "", '{"type": "assistant"}']
    items = list(iter_decoded(lines))

    assert len(items) == 3
    assert items[0].type == "user"
    assert isinstance(items[1], MalformedEntry)
    assert items[2].type == "assistant"


def test_iter_entries_skips_malformed() -> None:
    lines = ['{"type": "user"}', "{broken", '{"type": "result"}']
    assert [e.type for e in iter_entries(lines)] == ["user", "result"]


def test_line_framer_handles_split_chunks() -> None:
    framer = LineFramer()
    assert framer.feed(b'{"type": "us') == []
    assert framer.feed(b'er"}\n{"type"') == ['{"type": "user"}']
    assert framer.feed(b': "result"}\r\n') == ['{"type": "result"}']
    assert framer.flush() is None


def test_line_framer_decodes_split_multibyte_characters() -> None:
    data = "héllo ✓\n".encode("utf-8")
    framer = LineFramer()
    lines: list[str] = []
    for i in range(len(data)):
        lines.extend(framer.feed(data[i:i + 1]))
    assert lines == ["héllo ✓"]


def test_line_framer_flush_returns_unterminated_tail() -> None:
    framer = LineFramer()
    assert framer.feed(b"first\nsecond") == ["first"]
    assert framer.flush() == "second"
    assert framer.flush() is None


@pytest.mark.asyncio
async def test_aiter_frames_reads_lines_longer_than_chunk_size() -> None:
    long_text = "x" * 200_000
    reader = asyncio.StreamReader()
    reader.feed_data(json.dumps({"type": "assistant", "text": long_text}).encode() + b"\n")
    reader.feed_data(b'{"type": "result"}')
    reader.feed_eof()

    lines = [line async for line in aiter_frames(reader, chunk_size=1024)]

    assert len(lines) == 2
    assert json.loads(lines[0])["text"] == long_text
    assert lines[1] == '{"type": "result"}'

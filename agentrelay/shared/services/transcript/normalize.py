"""Normalization helpers for transcript content blocks."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 timestamps (``Z`` suffix included) into aware UTC datetimes."""
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def isoformat_utc(dt: datetime) -> str:
    """Render a datetime the way the agent writes timestamps."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def blocks_of_type(blocks: Any, block_type: str) -> list[dict[str, Any]]:
    if not isinstance(blocks, list):
        return []
    return [
        b for b in blocks
        if isinstance(b, dict) and b.get("type") == block_type
    ]


def join_text_blocks(blocks: Any) -> str:
    """Concatenate the ``text`` of every text block, in order."""
    parts: list[str] = []
    for block in blocks_of_type(blocks, "text"):
        text = block.get("text")
        if isinstance(text, str):
            parts.append(text)
    return "".join(parts)


def image_data_urls(blocks: Any) -> list[str]:
    """Extract base64 image blocks as ``data:`` URLs."""
    urls: list[str] = []
    for block in blocks_of_type(blocks, "image"):
        source = block.get("source")
        if not isinstance(source, dict) or source.get("type") != "base64":
            continue
        media_type = source.get("media_type")
        data = source.get("data")
        if media_type and data:
            urls.append(f"data:{media_type};base64,{data}")
    return urls


def truncate_title(text: str, limit: int = 100) -> str:
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text

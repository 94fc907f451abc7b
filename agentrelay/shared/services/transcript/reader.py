"""Read agent session transcripts from disk.

Storage layout (written by the agent CLI itself):
    <projects_root>/<project folder>/<session_id>.jsonl

where <project folder> is the project's working directory with every
``/`` replaced by ``-``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from agentrelay.engine.errors import InvalidSessionId
from agentrelay.shared.models.events import EntryType, RawLogEntry, iter_entries
from agentrelay.shared.models.timeline import ReconstructedMessage

from .correlator import CONTROL_MARKER, DEFAULT_TITLE_LIMIT, reconstruct
from .normalize import isoformat_utc, parse_timestamp, truncate_title

logger = logging.getLogger(__name__)

TRANSCRIPT_SUFFIX = ".jsonl"


@dataclass
class SessionHistory:
    timeline: list[ReconstructedMessage] = field(default_factory=list)
    compacted: bool = False
    first_user_text: str | None = None


@dataclass
class SessionSummary:
    """Metadata for one transcript file, as shown in a session picker."""

    session_id: str
    path: Path
    created_at: str
    modified_at: str
    first_user_text: str | None = None
    branch_label: str | None = None
    is_sidechain: bool = False


def default_projects_root() -> Path:
    return Path.home() / ".claude" / "projects"


def project_folder_name(cwd: str | Path) -> str:
    return str(cwd).replace("/", "-")


def project_log_dir(cwd: str | Path, projects_root: Path | None = None) -> Path:
    root = projects_root if projects_root is not None else default_projects_root()
    return root / project_folder_name(cwd)


def validate_session_id(session_id: str) -> str:
    if (
        not session_id
        or "/" in session_id
        or "\\" in session_id
        or ".." in session_id
        or "\x00" in session_id
    ):
        raise InvalidSessionId(session_id)
    return session_id


def transcript_path(
    session_id: str,
    cwd: str | Path,
    projects_root: Path | None = None,
) -> Path:
    validate_session_id(session_id)
    return project_log_dir(cwd, projects_root) / f"{session_id}{TRANSCRIPT_SUFFIX}"


def _read_lines(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8", errors="replace").splitlines()


def read_session(
    log_path: Path,
    *,
    title_limit: int = DEFAULT_TITLE_LIMIT,
) -> SessionHistory:
    """Reconstruct the full timeline of one transcript file.

    A missing file means the session has no history yet and returns an
    empty history rather than raising.
    """
    if not log_path.exists():
        logger.debug("Transcript not found: %s", log_path)
        return SessionHistory()
    try:
        lines = _read_lines(log_path)
    except OSError:
        logger.exception("Failed to read transcript %s", log_path)
        return SessionHistory()

    result = reconstruct(iter_entries(lines), title_limit=title_limit)
    logger.debug(
        "Read transcript %s: %d lines -> %d messages compacted=%s",
        log_path.name, len(lines), len(result.timeline), result.compacted,
    )
    return SessionHistory(
        timeline=result.timeline,
        compacted=result.compacted,
        first_user_text=result.first_user_text,
    )


def _prompt_text(entry: RawLogEntry) -> str | None:
    """Text of a user-authored prompt entry, or None for tool results and meta."""
    if entry.is_meta:
        return None
    content = entry.content
    if isinstance(content, str):
        if content and not content.startswith(CONTROL_MARKER):
            return content
        return None
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str) and text:
                    return text
    return None


def summarize_session(
    path: Path,
    *,
    title_limit: int = DEFAULT_TITLE_LIMIT,
) -> SessionSummary | None:
    """Extract picker metadata from one transcript.

    Returns None for files without a session id or without a prompt the
    user typed (empty, system-only or meta-only logs).
    """
    try:
        stat = path.stat()
        lines = _read_lines(path)
    except OSError:
        logger.exception("Error reading transcript %s", path)
        return None

    session_id: str | None = None
    created_at: str | None = None
    first_user_text: str | None = None
    branch_label: str | None = None
    is_sidechain = False

    for entry in iter_entries(lines):
        if session_id is None and entry.session_id:
            session_id = entry.session_id
        if created_at is None:
            parsed = parse_timestamp(entry.timestamp)
            if parsed is not None:
                created_at = isoformat_utc(parsed)
        if entry.type != EntryType.USER.value or entry.content is None:
            continue
        if entry.git_branch:
            branch_label = entry.git_branch
        if entry.is_sidechain:
            is_sidechain = True
        first_user_text = _prompt_text(entry)
        if first_user_text:
            break

    if not session_id or not first_user_text:
        return None

    modified_at = isoformat_utc(datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc))
    return SessionSummary(
        session_id=session_id,
        path=path,
        created_at=created_at or modified_at,
        modified_at=modified_at,
        first_user_text=truncate_title(first_user_text, title_limit),
        branch_label=branch_label,
        is_sidechain=is_sidechain,
    )


def list_sessions(
    directory: Path,
    *,
    title_limit: int = DEFAULT_TITLE_LIMIT,
) -> list[SessionSummary]:
    """Summaries for every session transcript in *directory*.

    Ordering is left to the caller.
    """
    if not directory.is_dir():
        return []
    summaries: list[SessionSummary] = []
    for path in directory.iterdir():
        if not path.is_file() or path.suffix != TRANSCRIPT_SUFFIX:
            continue
        summary = summarize_session(path, title_limit=title_limit)
        if summary is not None:
            summaries.append(summary)
    return summaries


def delete_session(log_path: Path) -> bool:
    """Remove a session's transcript. Returns False if it did not exist."""
    try:
        log_path.unlink()
    except FileNotFoundError:
        logger.debug("Transcript not found: %s", log_path)
        return False
    logger.info("Deleted transcript: %s", log_path)
    return True

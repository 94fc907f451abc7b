"""Transcript reconstruction for agent sessions."""

from .correlator import Reconstruction, merge_tool_groups, reconstruct
from .reader import (
    SessionHistory,
    SessionSummary,
    delete_session,
    list_sessions,
    project_log_dir,
    read_session,
    transcript_path,
)

__all__ = [
    "Reconstruction",
    "SessionHistory",
    "SessionSummary",
    "delete_session",
    "list_sessions",
    "merge_tool_groups",
    "project_log_dir",
    "read_session",
    "reconstruct",
    "transcript_path",
]

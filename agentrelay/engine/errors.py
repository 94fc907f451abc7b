"""Exception hierarchy for the session event engine.

Specific exceptions for each failure mode. Decode errors are values
that callers skip; subprocess errors end a relay with a terminal
error frame.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all session event engine errors."""


class MalformedEntry(RelayError):
    """One line of agent output or transcript could not be decoded."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 80 else f"{line[:80]}..."
        super().__init__(f"Malformed entry ({reason}): {preview!r}")


class SubprocessSpawnError(RelayError):
    """The agent process could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start agent process '{command}': {reason}")


class SubprocessExitError(RelayError):
    """The agent process exited with a nonzero status."""
    def __init__(self, returncode: int, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or "no diagnostic output"
        super().__init__(
            f"Agent process exited with code {returncode}: {detail}"
        )


class InvalidSessionId(RelayError):
    """A session id that cannot name a transcript file."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Invalid session id: {session_id!r}")

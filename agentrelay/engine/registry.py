"""Registry of sessions with an in-flight agent request.

Maps a session id to the relay run serving it, so a cancel request
can reach the subprocess and a status request can report whether the
session is busy. Absence from the registry is the normal idle state.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentrelay.engine.relay import RelayRun

logger = logging.getLogger(__name__)


@dataclass
class ActiveSession:
    """One registered run: its process handle and cancellation handle."""

    session_id: str
    run: RelayRun

    @property
    def pid(self) -> int | None:
        return self.run.pid


class SessionRegistry:
    """Thread-safe map of session id -> ActiveSession.

    Owned by a server instance; independent servers (and tests) each
    hold their own registry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, ActiveSession] = {}

    def register(self, session_id: str, run: RelayRun) -> ActiveSession:
        entry = ActiveSession(session_id=session_id, run=run)
        with self._lock:
            previous = self._sessions.get(session_id)
            self._sessions[session_id] = entry
        if previous is not None and previous.run is not run:
            logger.warning(
                "Session %s re-registered while run pid=%s was still active",
                session_id, previous.pid,
            )
        logger.debug("Registered session %s pid=%s", session_id, entry.pid)
        return entry

    def rekey(self, old_id: str, new_id: str, run: RelayRun) -> bool:
        """Move *run*'s entry from *old_id* to *new_id*.

        Returns False when the run is no longer registered under
        *old_id* (it was cancelled or finished meanwhile).
        """
        with self._lock:
            entry = self._sessions.get(old_id)
            if entry is None or entry.run is not run:
                return False
            del self._sessions[old_id]
            entry.session_id = new_id
            self._sessions[new_id] = entry
        logger.debug("Session %s is now %s", old_id, new_id)
        return True

    def unregister(self, session_id: str, run: RelayRun | None = None) -> bool:
        """Remove *session_id*; with *run* given, only if that run owns it."""
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return False
            if run is not None and entry.run is not run:
                return False
            del self._sessions[session_id]
        logger.debug("Unregistered session %s", session_id)
        return True

    def get(self, session_id: str) -> ActiveSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def cancel(self, session_id: str) -> bool:
        """Unregister *session_id* and signal its run.

        The session reports idle as soon as this returns, before the
        subprocess has exited. Returns False when nothing was active.
        """
        with self._lock:
            entry = self._sessions.pop(session_id, None)
        if entry is None:
            logger.debug("Cancel for idle session %s: nothing to cancel", session_id)
            return False
        logger.info("Cancelling session %s pid=%s", session_id, entry.pid)
        entry.run.cancel()
        return True

    def cancel_all(self) -> int:
        with self._lock:
            entries = list(self._sessions.values())
            self._sessions.clear()
        for entry in entries:
            entry.run.cancel()
        return len(entries)

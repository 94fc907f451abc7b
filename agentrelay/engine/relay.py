"""Live relay of one agent subprocess to one streaming HTTP response.

A RelayRun moves through

    STARTING -> STREAMING -> COMPLETED | CANCELLED | FAILED

It spawns the agent, frames its stdout into lines, decodes each line
into a RawLogEntry and hands it on immediately, in receipt order.
Every run ends with exactly one ``[DONE]`` frame; a failed run sends
one error frame before it so the client can tell "done" from
"dropped".
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentrelay.engine.errors import (
    MalformedEntry,
    SubprocessExitError,
    SubprocessSpawnError,
)
from agentrelay.engine.providers.base import AgentProvider
from agentrelay.engine.registry import SessionRegistry
from agentrelay.shared.models.events import (
    EntryType,
    RawLogEntry,
    aiter_frames,
    decode_entry,
    entry_from_dict,
)
from agentrelay.shared.models.timeline import ReconstructedMessage, ToolStatus
from agentrelay.shared.services.transcript.correlator import DEFAULT_TITLE_LIMIT, reconstruct

logger = logging.getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"

# Session id used in requests to start a fresh session.
NEW_SESSION = "new"


def encode_frame(payload: Any) -> bytes:
    """One server-sent event frame carrying *payload* as JSON."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def resolve_session_id(session_id: str | None) -> str | None:
    """Map the request's session id to a resume target (None = new session)."""
    if not session_id or session_id == NEW_SESSION:
        return None
    return session_id


class RelayState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    RelayState.COMPLETED,
    RelayState.CANCELLED,
    RelayState.FAILED,
})


@dataclass
class RelayRequest:
    """One message send: the prompt, optional images, and where to run it."""
    message: str
    cwd: str
    session_id: str | None = None
    images: list[str] = field(default_factory=list)


class RelayRun:
    """Supervise one agent subprocess for one request."""

    def __init__(
        self,
        request: RelayRequest,
        *,
        provider: AgentProvider,
        registry: SessionRegistry,
        read_chunk_size: int = 65536,
        exit_grace_seconds: float = 5.0,
        stderr_limit: int = 16384,
        title_limit: int = DEFAULT_TITLE_LIMIT,
    ) -> None:
        self.request = request
        self.state = RelayState.STARTING
        self.session_id = resolve_session_id(request.session_id)
        self.error: str | None = None
        self.started_at = time.time()
        self._provider = provider
        self._registry = registry
        self._read_chunk_size = read_chunk_size
        self._exit_grace_seconds = exit_grace_seconds
        self._stderr_limit = stderr_limit
        self._title_limit = title_limit
        self._registry_key = self.session_id or f"pending-{uuid.uuid4().hex[:12]}"
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr = bytearray()
        self._stderr_task: asyncio.Task | None = None
        self._kill_handle: asyncio.TimerHandle | None = None
        self._cancel_requested = False
        self._saw_result = False
        self._cleaned_up = False
        self._forwarded = 0
        self._entries: list[RawLogEntry] = [
            entry_from_dict({
                "type": EntryType.USER.value,
                "message": {"role": "user", "content": request.message},
            })
        ]

    # ── Introspection ──

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def registry_key(self) -> str:
        return self._registry_key

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def stderr_text(self) -> str:
        return self._stderr.decode("utf-8", errors="replace")

    def timeline(self) -> list[ReconstructedMessage]:
        """Timeline of what has been relayed so far.

        Tool calls without a result yet are reported as running.
        """
        return reconstruct(
            self._entries,
            unresolved=ToolStatus.RUNNING,
            title_limit=self._title_limit,
        ).timeline

    # ── Control ──

    def cancel(self) -> bool:
        """Stop forwarding and terminate the subprocess.

        Returns False when the run had already finished.
        """
        if self.is_finished or self._cancel_requested:
            return False
        self._cancel_requested = True
        self._registry.unregister(self._registry_key, self)
        logger.info(
            "Relay cancel session=%s pid=%s forwarded=%d",
            self._registry_key, self.pid, self._forwarded,
        )
        self._terminate()
        return True

    def _terminate(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        if self._kill_handle is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            self._kill_handle = loop.call_later(self._exit_grace_seconds, self._kill)

    def _kill(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        logger.warning("Agent pid=%s ignored SIGTERM; killing", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    async def aclose(self) -> None:
        """Release the subprocess and registry entry.

        Called when the client goes away; a run still streaming is
        treated as cancelled.
        """
        if not self.is_finished:
            self.cancel()
        await self._cleanup()

    # ── Streaming ──

    async def _start(self) -> None:
        if not self._cancel_requested:
            self._registry.register(self._registry_key, self)
        self._proc = await self._provider.spawn(
            self.request.message,
            cwd=self.request.cwd,
            session_id=self.session_id,
            images=self.request.images,
        )
        logger.info(
            "Relay started session=%s pid=%s",
            self._registry_key, self._proc.pid,
        )
        if self._proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(self._proc.stderr))
        if self._cancel_requested:
            self._terminate()

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                return
            self._stderr.extend(chunk)
            overflow = len(self._stderr) - self._stderr_limit
            if overflow > 0:
                del self._stderr[:overflow]

    def _capture_session_id(self, entry: RawLogEntry) -> None:
        if self.session_id is not None or not entry.session_id:
            return
        self.session_id = entry.session_id
        if self._cancel_requested:
            return
        if self._registry.rekey(self._registry_key, entry.session_id, self):
            self._registry_key = entry.session_id
        logger.info("New session id %s (pid=%s)", entry.session_id, self.pid)

    def _fail(self, message: str) -> None:
        self.state = RelayState.FAILED
        self.error = message
        logger.warning("Relay failed session=%s: %s", self._registry_key, message)

    async def _wait_for_exit(self) -> int | None:
        assert self._proc is not None
        try:
            return await asyncio.wait_for(self._proc.wait(), self._exit_grace_seconds)
        except asyncio.TimeoutError:
            return None

    async def _finish(self) -> None:
        assert self._proc is not None
        if self._cancel_requested:
            self.state = RelayState.CANCELLED
            return

        if self._saw_result:
            if await self._wait_for_exit() is None:
                logger.info(
                    "Agent pid=%s still running after result; terminating",
                    self._proc.pid,
                )
                self._terminate()
            self.state = RelayState.COMPLETED
            return

        returncode = await self._proc.wait()
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(self._stderr_task, self._exit_grace_seconds)
            except asyncio.TimeoutError:
                pass
        if self._cancel_requested:
            self.state = RelayState.CANCELLED
        elif returncode == 0:
            self.state = RelayState.COMPLETED
        else:
            self._fail(str(SubprocessExitError(returncode, self.stderr_text)))

    async def events(self) -> AsyncIterator[RawLogEntry]:
        """Yield decoded entries as the agent emits them.

        The run's final state is in ``self.state`` once iteration ends.
        """
        try:
            try:
                await self._start()
            except SubprocessSpawnError as exc:
                self._fail(str(exc))
                return

            assert self._proc is not None and self._proc.stdout is not None
            self.state = RelayState.STREAMING
            try:
                async for line in aiter_frames(self._proc.stdout, self._read_chunk_size):
                    if self._cancel_requested:
                        break
                    if not line.strip():
                        continue
                    try:
                        entry = decode_entry(line)
                    except MalformedEntry as exc:
                        logger.warning("Skipping agent output line: %s", exc)
                        continue
                    self._entries.append(entry)
                    self._capture_session_id(entry)
                    self._forwarded += 1
                    yield entry
                    if self._cancel_requested:
                        break
                    if entry.type == EntryType.RESULT.value:
                        self._saw_result = True
                        break
            except OSError as exc:
                self._fail(f"Error reading agent output: {exc}")
                return
            except Exception as exc:
                logger.exception("Relay error session=%s", self._registry_key)
                self._fail(f"Relay error: {type(exc).__name__}: {exc}")
                return
            await self._finish()
        finally:
            await self._cleanup()

    async def frames(self) -> AsyncIterator[bytes]:
        """Server-sent event frames for the HTTP response, ending with [DONE]."""
        async with contextlib.aclosing(self.events()) as events:
            async for entry in events:
                yield encode_frame(entry.to_dict())
        if self.state is RelayState.FAILED:
            yield encode_frame({"type": "error", "error": self.error or "Agent process failed"})
        yield DONE_FRAME

    async def _cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        proc = self._proc
        if proc is not None and proc.returncode is None:
            self._terminate()
            if await self._wait_for_exit() is None:
                self._kill()
                try:
                    await asyncio.wait_for(proc.wait(), self._exit_grace_seconds)
                except asyncio.TimeoutError:
                    logger.error("Agent pid=%s did not exit after SIGKILL", proc.pid)
        if self._kill_handle is not None:
            self._kill_handle.cancel()
            self._kill_handle = None
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        self._registry.unregister(self._registry_key, self)
        if not self.is_finished:
            self.state = RelayState.CANCELLED
        logger.info(
            "Relay finished session=%s state=%s forwarded=%d duration_ms=%.1f",
            self._registry_key, self.state.value, self._forwarded,
            (time.time() - self.started_at) * 1000,
        )

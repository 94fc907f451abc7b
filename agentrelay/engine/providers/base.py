"""Abstract base for agent CLI providers.

A provider knows how to turn a prompt (plus optional images and a
session to resume) into an agent subprocess that prints one JSON
object per line on stdout. The relay owns everything after spawn.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import shutil

from agentrelay.engine.errors import SubprocessSpawnError

logger = logging.getLogger(__name__)


class AgentProvider(abc.ABC):
    """Abstract agent CLI provider.

    Implementations:
    - ClaudeCliProvider: the ``claude`` CLI in ``stream-json`` mode
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude')."""

    @abc.abstractmethod
    def build_command(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        has_images: bool = False,
    ) -> list[str]:
        """Full argv for one streaming agent run."""

    def build_stdin_payload(
        self,
        prompt: str,
        images: list[str],
        *,
        session_id: str | None = None,
    ) -> bytes | None:
        """Bytes written to the agent's stdin before it is closed.

        Default: nothing; the prompt travels on the command line.
        """
        return None

    async def compact_session(self, session_id: str, *, cwd: str) -> None:
        """Summarize a saved session's context.

        Default: unsupported. Override in providers whose CLI can compact.
        """
        raise NotImplementedError(f"{self.name} provider does not support compaction")

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if the provider's CLI is installed."""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, self.name,
                )
                return fallback
            return command
        return fallback or command

    async def spawn(
        self,
        prompt: str,
        *,
        cwd: str,
        session_id: str | None = None,
        images: list[str] | None = None,
    ) -> asyncio.subprocess.Process:
        """Start the agent process with stdout/stderr piped.

        Raises SubprocessSpawnError if the process cannot be started.
        """
        images = images or []
        cmd = self.build_command(prompt, session_id=session_id, has_images=bool(images))
        payload = self.build_stdin_payload(prompt, images, session_id=session_id)
        logger.info(
            "Spawning %s agent cwd=%s resume=%s images=%d",
            self.name, cwd, session_id or "<new>", len(images),
        )
        try:
            # Args are passed as an array; no shell.
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise SubprocessSpawnError(cmd[0], str(exc)) from exc
        except OSError as exc:
            raise SubprocessSpawnError(cmd[0], f"{type(exc).__name__}: {exc}") from exc

        if proc.stdin is not None:
            try:
                if payload:
                    proc.stdin.write(payload)
                    await proc.stdin.drain()
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                # Process exited before reading its input; the exit
                # status reports the failure.
                logger.warning("Agent pid=%s closed stdin early", proc.pid)
        return proc

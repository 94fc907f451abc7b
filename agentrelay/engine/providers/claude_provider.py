"""Claude CLI provider.

Runs ``claude -p --output-format stream-json`` for each request.
Text-only prompts are passed as the last argument; prompts with
images switch the CLI to ``--input-format stream-json`` and send a
single user record on stdin.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from typing import Any

from agentrelay.engine.errors import SubprocessExitError, SubprocessSpawnError

from .base import AgentProvider

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


def build_message_content(prompt: str, images: list[str]) -> str | list[dict[str, Any]]:
    """Message content for the CLI: plain text, or image blocks then a text block.

    Images are ``data:<media type>;base64,<data>`` URLs; anything else
    is dropped.
    """
    if not images:
        return prompt
    content: list[dict[str, Any]] = []
    for url in images:
        match = _DATA_URL_RE.match(url)
        if not match:
            logger.warning("Dropping image that is not a base64 data URL")
            continue
        content.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": match.group(1),
                "data": match.group(2),
            },
        })
    if prompt:
        content.append({"type": "text", "text": prompt})
    return content


class ClaudeCliProvider(AgentProvider):
    """Provider backed by the ``claude`` CLI.

    Auth: uses the CLI's own credentials; nothing is passed through.
    """

    def __init__(
        self,
        command: list[str] | None = None,
        permission_mode: str = "bypassPermissions",
        append_system_prompt: str | None = None,
        include_partial_messages: bool = True,
    ) -> None:
        command = list(command or ["claude"])
        if len(command) == 1:
            command[0] = self.resolve_command(command[0], "claude")
        self._command = command
        self._permission_mode = permission_mode
        self._append_system_prompt = append_system_prompt
        self._include_partial_messages = include_partial_messages

    @property
    def name(self) -> str:
        return "claude"

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def _base_args(self, session_id: str | None) -> list[str]:
        args = [
            "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", self._permission_mode,
        ]
        if self._permission_mode == "bypassPermissions":
            args.append("--dangerously-skip-permissions")
        if session_id:
            args.extend(["--resume", session_id])
        return args

    def build_command(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        has_images: bool = False,
    ) -> list[str]:
        args = self._base_args(session_id)
        if self._include_partial_messages:
            args.append("--include-partial-messages")
        if self._append_system_prompt:
            args.extend(["--append-system-prompt", self._append_system_prompt])
        if has_images:
            args.extend(["--input-format", "stream-json"])
        else:
            args.append(prompt)
        return [*self._command, *args]

    def build_stdin_payload(
        self,
        prompt: str,
        images: list[str],
        *,
        session_id: str | None = None,
    ) -> bytes | None:
        if not images:
            return None
        record = {
            "type": "user",
            "session_id": session_id or "",
            "message": {
                "role": "user",
                "content": build_message_content(prompt, images),
            },
            "parent_tool_use_id": None,
        }
        return (json.dumps(record) + "\n").encode("utf-8")

    async def run_slash_command(self, command: str, session_id: str, *, cwd: str) -> None:
        """Run a slash command (e.g. ``/compact``) against a saved session.

        Raises SubprocessSpawnError or SubprocessExitError on failure.
        """
        cmd = [*self._command, *self._base_args(session_id), command]
        logger.info("Sending %s to session %s", command, session_id)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as exc:
            raise SubprocessSpawnError(cmd[0], str(exc)) from exc

        _, stderr_bytes = await proc.communicate()
        if proc.returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace")
            logger.error(
                "%s failed for session %s (rc=%s): %s",
                command, session_id, proc.returncode, stderr.strip()[:500],
            )
            raise SubprocessExitError(proc.returncode or -1, stderr)
        logger.info("%s complete for session %s", command, session_id)

    async def compact_session(self, session_id: str, *, cwd: str) -> None:
        await self.run_slash_command("/compact", session_id, cwd=cwd)

    def is_available(self) -> bool:
        """Check if the configured CLI is installed."""
        return shutil.which(self._command[0]) is not None

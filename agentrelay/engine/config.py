"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTRELAY_* env vars,
or with a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _default_claude_command() -> list[str]:
    return ["claude"]


def _default_projects_root() -> str:
    return str(Path.home() / ".claude" / "projects")


def _default_workspace_root() -> str:
    return str(Path.home() / "projects")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class RelayConfig:
    """Session event engine configuration."""

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 0

    # Project working directory the agent runs in. None = process cwd.
    cwd: str | None = None

    # Agent CLI invocation. The first elements may be a wrapper
    # (e.g. ["nix", "develop", "--command", "claude"]).
    claude_command: list[str] = field(default_factory=_default_claude_command)
    # Permission profile for unattended tool execution.
    permission_mode: str = "bypassPermissions"
    append_system_prompt: str | None = (
        "Your responses must always be accurate and concise."
    )
    include_partial_messages: bool = True

    # Where the agent CLI writes its per-project session transcripts.
    projects_root: str = field(default_factory=_default_projects_root)
    # Directory whose children can be selected as the active project.
    workspace_root: str = field(default_factory=_default_workspace_root)

    # Relay tuning
    read_chunk_size: int = 65536
    # Time the agent gets to exit after its result entry or a cancel
    # before it is killed.
    exit_grace_seconds: float = 5.0
    # Bytes of stderr kept for error reporting.
    stderr_limit: int = 16384

    # Display
    title_limit: int = 100

    # Logging
    log_level: str = "INFO"

    @property
    def resolved_cwd(self) -> str:
        return self.cwd or str(Path.cwd())

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from AGENTRELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTRELAY_")
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: AGENTRELAY_* env overrides: %s",
                ", ".join(sorted(relay_vars)),
            )
        else:
            logger.debug("RelayConfig.from_env: no AGENTRELAY_* env vars set, using defaults")

        defaults = cls()
        command_raw = os.getenv("AGENTRELAY_CLAUDE_COMMAND")
        config = cls(
            host=os.getenv("AGENTRELAY_HOST", defaults.host),
            port=int(os.getenv("AGENTRELAY_PORT", str(defaults.port))),
            cwd=os.getenv("AGENTRELAY_CWD") or None,
            claude_command=(
                shlex.split(command_raw) if command_raw else defaults.claude_command
            ),
            permission_mode=os.getenv(
                "AGENTRELAY_PERMISSION_MODE", defaults.permission_mode
            ),
            append_system_prompt=os.getenv(
                "AGENTRELAY_APPEND_SYSTEM_PROMPT",
                defaults.append_system_prompt or "",
            ) or None,
            include_partial_messages=_env_bool(
                "AGENTRELAY_PARTIAL_MESSAGES", defaults.include_partial_messages
            ),
            projects_root=os.getenv(
                "AGENTRELAY_PROJECTS_ROOT", defaults.projects_root
            ),
            workspace_root=os.getenv(
                "AGENTRELAY_WORKSPACE_ROOT", defaults.workspace_root
            ),
            read_chunk_size=int(os.getenv(
                "AGENTRELAY_READ_CHUNK_SIZE", str(defaults.read_chunk_size)
            )),
            exit_grace_seconds=float(os.getenv(
                "AGENTRELAY_EXIT_GRACE", str(defaults.exit_grace_seconds)
            )),
            stderr_limit=int(os.getenv(
                "AGENTRELAY_STDERR_LIMIT", str(defaults.stderr_limit)
            )),
            title_limit=int(os.getenv(
                "AGENTRELAY_TITLE_LIMIT", str(defaults.title_limit)
            )),
            log_level=os.getenv("AGENTRELAY_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "RelayConfig.from_env: command=%s cwd=%s projects_root=%s log_level=%s",
            " ".join(config.claude_command), config.resolved_cwd,
            config.projects_root, config.log_level,
        )
        return config

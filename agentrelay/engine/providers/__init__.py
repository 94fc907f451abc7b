"""Agent CLI providers."""

from .base import AgentProvider
from .claude_provider import ClaudeCliProvider, build_message_content

__all__ = [
    "AgentProvider",
    "ClaudeCliProvider",
    "build_message_content",
]

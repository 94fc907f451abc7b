from __future__ import annotations

import sys
from pathlib import Path

from agentrelay.engine.providers.claude_provider import ClaudeCliProvider


FAKE_AGENT = Path(__file__).parent / "fixtures" / "fake_agent.py"
FAKE_SESSION_ID = "sess-fake-0001"


class ScriptProvider(ClaudeCliProvider):
    """Runs a fake agent scenario instead of the real CLI."""

    def __init__(self, scenario: str, executable: str = sys.executable) -> None:
        super().__init__(command=[executable, str(FAKE_AGENT)])
        self.scenario = scenario
        self.executable = executable
        self.compacted: list[str] = []

    def build_command(self, prompt, *, session_id=None, has_images=False):
        return [self.executable, str(FAKE_AGENT), self.scenario]

    async def compact_session(self, session_id: str, *, cwd: str) -> None:
        self.compacted.append(session_id)

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from plancouncil.backends.base import ParsedOutput, WorkerAdapter
from plancouncil.config import DEFAULT_CLAUDE_ALLOWED_TOOLS, ClaudeOptions

WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})


class ClaudeCodeAdapter(WorkerAdapter):
    family = "claude"
    label = "Claude Code"
    default_binary = "claude"

    @property
    def options(self) -> ClaudeOptions:
        return self.config.claude or ClaudeOptions()

    @property
    def allowed_tools(self) -> list[str]:
        if self.options.allowed_tools is not None:
            return list(self.options.allowed_tools)
        return list(DEFAULT_CLAUDE_ALLOWED_TOOLS)

    def apply_thinking(self, prompt: str) -> str:
        # Extended thinking is triggered by a magic word ("think", "ultrathink") in the prompt.
        if not self.config.thinking:
            return prompt
        return f"{self.config.thinking}\n\n{prompt}"

    def build_command(
        self,
        prompt: str,
        *,
        worktree: Path,
        continuation_id: str | None,
    ) -> list[str]:
        command = [self.binary, "--print", "--output-format", "json"]
        if self.config.model:
            command.extend(["--model", self.config.model])
        for directory in [str(worktree), *(self.options.add_dir or [])]:
            command.extend(["--add-dir", directory])
        if self.allowed_tools:
            command.extend(["--allowedTools", *self.allowed_tools])
        if continuation_id:
            command.extend(["--resume", continuation_id])
        command.extend(["-p", self.apply_thinking(prompt)])
        return command

    @staticmethod
    def _decode_payload(raw: str) -> dict[str, Any] | None:
        stripped = raw.strip()
        if not stripped:
            return None
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = None
            for line in reversed(stripped.splitlines()):
                line = line.strip()
                if not (line.startswith("{") and line.endswith("}")):
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                break
        return payload if isinstance(payload, dict) else None

    def parse_output(self, stdout_text: str) -> ParsedOutput:
        payload = self._decode_payload(stdout_text)
        if payload is None:
            return ParsedOutput(text=stdout_text)
        session_id = payload.get("session_id")
        result = payload.get("result")
        return ParsedOutput(
            text=result if isinstance(result, str) else stdout_text,
            continuation_id=session_id if isinstance(session_id, str) and session_id else None,
        )

    def prefers_live_text(self) -> bool:
        return not any(tool in WRITE_TOOLS for tool in self.allowed_tools)

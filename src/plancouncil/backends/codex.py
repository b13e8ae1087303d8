from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from plancouncil.backends.base import ParsedOutput, WorkerAdapter
from plancouncil.config import CodexOptions


class CodexCLIAdapter(WorkerAdapter):
    family = "codex"
    label = "Codex CLI"
    default_binary = "codex"

    @property
    def options(self) -> CodexOptions:
        return self.config.codex or CodexOptions()

    def build_command(
        self,
        prompt: str,
        *,
        worktree: Path,
        continuation_id: str | None,
    ) -> list[str]:
        options = self.options
        command = [self.binary, "exec", "--json"]
        if self.config.model:
            command.extend(["--model", self.config.model])
        if self.config.thinking:
            command.extend(["-c", f"model_reasoning_effort={json.dumps(self.config.thinking)}"])
        for key, value in options.passthrough().items():
            command.extend(["-c", f"{key}={json.dumps(value, ensure_ascii=False)}"])
        if options.search:
            command.append("--search")

        if options.dangerously_bypass:
            command.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            has_sandbox_config = bool(options.sandbox or options.approval_policy)
            full_auto = True if options.full_auto is None else options.full_auto
            if full_auto and not has_sandbox_config:
                command.append("--full-auto")
            if options.sandbox:
                command.extend(["--sandbox", options.sandbox])
            if options.approval_policy:
                command.extend(["--ask-for-approval", options.approval_policy])

        for directory in [str(worktree), *(options.add_dir or [])]:
            command.extend(["--add-dir", directory])
        if continuation_id:
            command.extend(["resume", continuation_id])
        command.append(prompt)
        return command

    @staticmethod
    def _assistant_text(event: dict[str, Any]) -> str:
        event_type = event.get("type")
        if event_type == "item.message" and event.get("role") == "assistant":
            content = event.get("content")
            return content if isinstance(content, str) else ""
        if event_type == "item.completed":
            item = event.get("item")
            if isinstance(item, dict) and item.get("type") == "agent_message":
                text = item.get("text")
                return text if isinstance(text, str) else ""
        return ""

    def parse_output(self, stdout_text: str) -> ParsedOutput:
        thread_id: str | None = None
        messages: list[str] = []
        for raw_line in stdout_text.strip().splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict):
                continue
            if event.get("type") == "thread.started":
                candidate = event.get("thread_id")
                if isinstance(candidate, str) and candidate:
                    thread_id = candidate
                continue
            text = self._assistant_text(event)
            if text:
                messages.append(text)

        return ParsedOutput(
            text=messages[-1] if messages else stdout_text,
            continuation_id=thread_id,
        )

    def prefers_live_text(self) -> bool:
        if self.options.dangerously_bypass:
            return False
        return self.options.sandbox == "read-only"

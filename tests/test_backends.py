import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any

import pytest

from plancouncil.backends import (
    TIMEOUT_MESSAGE,
    ClaudeCodeAdapter,
    CodexCLIAdapter,
    build_adapter,
)
from plancouncil.backends.streams import RUN_SEPARATOR
from plancouncil.config import ClaudeOptions, CodexOptions, ConfigError, WorkerConfig
from plancouncil.models import WorkerStatus


def _script(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(0o755)
    return path


def _claude_config(**kwargs: Any) -> WorkerConfig:
    return WorkerConfig(id="w1", type="claude", model="sonnet", **kwargs)


def _codex_config(**kwargs: Any) -> WorkerConfig:
    return WorkerConfig(id="w2", type="codex", model="gpt-5.2-codex", **kwargs)


def _recording_claude(tmp_path: Path, record: Path, stdout: str) -> Path:
    return _script(
        tmp_path / "fake-claude",
        "import json, sys\n"
        f"with open({str(record)!r}, 'a', encoding='utf-8') as handle:\n"
        "    handle.write(json.dumps(sys.argv[1:]) + '\\n')\n"
        f"sys.stdout.write({stdout!r})\n",
    )


def test_claude_build_command_shape(tmp_path: Path) -> None:
    adapter = ClaudeCodeAdapter(
        _claude_config(thinking="ultrathink", claude=ClaudeOptions(add_dir=["/extra"]))
    )
    command = adapter.build_command("write a plan", worktree=tmp_path, continuation_id="abc")

    assert command[:4] == ["claude", "--print", "--output-format", "json"]
    assert command[command.index("--model") + 1] == "sonnet"
    assert command.count("--add-dir") == 2
    assert command[command.index("--add-dir") + 1] == str(tmp_path)
    assert "--allowedTools" in command
    assert command[command.index("--resume") + 1] == "abc"
    assert command[-2] == "-p"
    assert command[-1] == "ultrathink\n\nwrite a plan"


def test_codex_build_command_defaults_to_full_auto(tmp_path: Path) -> None:
    adapter = CodexCLIAdapter(
        _codex_config(thinking="xhigh", codex=CodexOptions(search=True, mcp={"servers": {}}))
    )
    command = adapter.build_command("plan it", worktree=tmp_path, continuation_id=None)

    assert command[:3] == ["codex", "exec", "--json"]
    assert 'model_reasoning_effort="xhigh"' in command
    assert 'mcp={"servers": {}}' in command
    assert "--search" in command
    assert "--full-auto" in command
    assert "resume" not in command
    assert command[-1] == "plan it"


def test_codex_build_command_sandbox_and_resume(tmp_path: Path) -> None:
    adapter = CodexCLIAdapter(
        _codex_config(codex=CodexOptions(sandbox="read-only", approval_policy="never"))
    )
    command = adapter.build_command("plan it", worktree=tmp_path, continuation_id="thread-9")

    assert "--full-auto" not in command
    assert command[command.index("--sandbox") + 1] == "read-only"
    assert command[command.index("--ask-for-approval") + 1] == "never"
    assert command[-3:] == ["resume", "thread-9", "plan it"]
    assert adapter.prefers_live_text() is True


def test_codex_bypass_suppresses_other_flags(tmp_path: Path) -> None:
    adapter = CodexCLIAdapter(
        _codex_config(codex=CodexOptions(dangerously_bypass=True, sandbox="read-only"))
    )
    command = adapter.build_command("x", worktree=tmp_path, continuation_id=None)

    assert "--dangerously-bypass-approvals-and-sandbox" in command
    assert "--sandbox" not in command
    assert "--full-auto" not in command
    assert adapter.prefers_live_text() is False


def test_claude_parse_output_variants() -> None:
    adapter = ClaudeCodeAdapter(_claude_config())

    parsed = adapter.parse_output(json.dumps({"session_id": "s1", "result": "text"}))
    assert parsed.text == "text"
    assert parsed.continuation_id == "s1"

    noisy = "warming up\n" + json.dumps({"session_id": "s2", "result": "later"})
    assert adapter.parse_output(noisy).continuation_id == "s2"

    raw = adapter.parse_output("not json at all")
    assert raw.text == "not json at all"
    assert raw.continuation_id is None


def test_codex_parse_output_takes_last_assistant_message() -> None:
    adapter = CodexCLIAdapter(_codex_config())
    lines = [
        json.dumps({"type": "thread.started", "thread_id": "t-1"}),
        "garbage line",
        json.dumps({"type": "item.message", "role": "assistant", "content": "first"}),
        json.dumps(
            {"type": "item.completed", "item": {"type": "agent_message", "text": "final plan"}}
        ),
        json.dumps({"type": "turn.completed"}),
    ]

    parsed = adapter.parse_output("\n".join(lines))

    assert parsed.text == "final plan"
    assert parsed.continuation_id == "t-1"
    assert adapter.parse_output("plain").text == "plain"


def test_prefers_live_text_follows_write_tools() -> None:
    assert ClaudeCodeAdapter(_claude_config()).prefers_live_text() is False
    read_only = ClaudeCodeAdapter(_claude_config(claude=ClaudeOptions(allowed_tools=["Read"])))
    assert read_only.prefers_live_text() is True


def test_build_adapter_dispatches_on_type() -> None:
    assert isinstance(build_adapter(_claude_config()), ClaudeCodeAdapter)
    assert isinstance(build_adapter(_codex_config()), CodexCLIAdapter)
    with pytest.raises(ConfigError):
        build_adapter(WorkerConfig(id="x", type="gemini", model="m"))  # type: ignore[arg-type]


def test_run_sync_persists_continuation_and_resumes(tmp_path: Path) -> None:
    record = tmp_path / "argv.jsonl"
    binary = _recording_claude(
        tmp_path, record, json.dumps({"session_id": "sess-1", "result": "live plan"})
    )
    events: list[dict[str, Any]] = []
    adapter = ClaudeCodeAdapter(_claude_config(), binary=str(binary), event_hook=events.append)
    output_file = tmp_path / "plan.md"
    log_file = tmp_path / "logs" / "agent.log"
    continuation = tmp_path / "agent" / "session.txt"

    async def _run() -> tuple[bool, str]:
        return await adapter.run_sync(
            tmp_path, "prompt", output_file, log_file, continuation_file=continuation
        )

    first = asyncio.run(_run())
    second = asyncio.run(_run())

    assert first == (True, "live plan")
    assert second == (True, "live plan")
    assert continuation.read_text(encoding="utf-8") == "sess-1"
    calls = [json.loads(line) for line in record.read_text(encoding="utf-8").splitlines()]
    assert "--resume" not in calls[0]
    assert calls[1][calls[1].index("--resume") + 1] == "sess-1"
    event_names = [event["event"] for event in events]
    assert "worker_cli_start" in event_names
    assert "worker_continuation_saved" in event_names
    assert all(event["worker"] == "w1" for event in events)


def test_run_sync_returns_file_when_worker_writes_it(tmp_path: Path) -> None:
    record = tmp_path / "argv.jsonl"
    binary = _recording_claude(tmp_path, record, json.dumps({"result": "chatty summary"}))
    output_file = tmp_path / "plan.md"
    output_file.write_text("# Plan from file\n", encoding="utf-8")
    adapter = ClaudeCodeAdapter(_claude_config(), binary=str(binary))

    success, text = asyncio.run(
        adapter.run_sync(tmp_path, "prompt", output_file, tmp_path / "agent.log")
    )

    assert success is True
    assert text == "# Plan from file\n"


def test_run_sync_prefers_live_text_for_read_only_worker(tmp_path: Path) -> None:
    record = tmp_path / "argv.jsonl"
    binary = _recording_claude(tmp_path, record, json.dumps({"result": "fresh plan"}))
    output_file = tmp_path / "plan.md"
    output_file.write_text("stale plan", encoding="utf-8")
    adapter = ClaudeCodeAdapter(
        _claude_config(claude=ClaudeOptions(allowed_tools=["Read", "Grep"])),
        binary=str(binary),
    )

    success, text = asyncio.run(
        adapter.run_sync(tmp_path, "prompt", output_file, tmp_path / "agent.log")
    )

    assert (success, text) == (True, "fresh plan")
    assert output_file.read_text(encoding="utf-8") == "fresh plan"


def test_run_sync_reports_non_zero_exit(tmp_path: Path) -> None:
    binary = _script(
        tmp_path / "fake-codex",
        "import sys\nsys.stderr.write('error: unexpected argument --bogus\\n')\nsys.exit(2)\n",
    )
    continuation = tmp_path / "session.txt"
    adapter = CodexCLIAdapter(_codex_config(), binary=str(binary))

    success, output = asyncio.run(
        adapter.run_sync(
            tmp_path,
            "prompt",
            tmp_path / "plan.md",
            tmp_path / "agent.log",
            continuation_file=continuation,
        )
    )

    assert success is False
    assert "error: unexpected argument --bogus" in output
    assert not continuation.exists()
    assert "unexpected argument" in (tmp_path / "agent.log").read_text(encoding="utf-8")


def test_run_sync_times_out_and_kills_worker(tmp_path: Path) -> None:
    binary = _script(tmp_path / "slow", "import time\ntime.sleep(1)\nprint('{}')\n")
    output_file = tmp_path / "plan.md"
    adapter = CodexCLIAdapter(_codex_config(), binary=str(binary))

    started = time.monotonic()
    success, output = asyncio.run(
        adapter.run_sync(tmp_path, "prompt", output_file, tmp_path / "agent.log", timeout=0.01)
    )

    assert (success, output) == (False, TIMEOUT_MESSAGE)
    assert time.monotonic() - started < 1.0
    assert not output_file.exists()


def test_run_sync_missing_binary(tmp_path: Path) -> None:
    adapter = ClaudeCodeAdapter(_claude_config(), binary=str(tmp_path / "no-such-claude"))

    success, output = asyncio.run(
        adapter.run_sync(tmp_path, "prompt", tmp_path / "plan.md", tmp_path / "agent.log")
    )

    assert success is False
    assert output.endswith("command not found")


def test_append_log_writes_run_separator(tmp_path: Path) -> None:
    binary = _script(tmp_path / "echo", "print('hello from worker')\n")
    adapter = CodexCLIAdapter(_codex_config(), binary=str(binary))
    log_file = tmp_path / "agent.log"

    async def _run() -> None:
        await adapter.run_sync(tmp_path, "p", tmp_path / "plan.md", log_file, append_log=True)

    asyncio.run(_run())
    asyncio.run(_run())

    log = log_file.read_text(encoding="utf-8")
    assert log.count(RUN_SEPARATOR) == 2
    assert log.count("hello from worker") == 2


def test_helper_holding_pipes_does_not_mask_success(tmp_path: Path) -> None:
    binary = _script(
        tmp_path / "fake-claude",
        "import json, subprocess, sys\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(10)'])\n"
        "print(json.dumps({'session_id': 's-1', 'result': 'plan with helper'}))\n",
    )
    adapter = ClaudeCodeAdapter(_claude_config(), binary=str(binary))

    started = time.monotonic()
    success, output = asyncio.run(
        adapter.run_sync(
            tmp_path, "prompt", tmp_path / "plan.md", tmp_path / "agent.log", timeout=5
        )
    )

    assert (success, output) == (True, "plan with helper")
    assert time.monotonic() - started < 5


def test_timeout_kills_helpers_holding_pipes(tmp_path: Path) -> None:
    binary = _script(
        tmp_path / "fake-claude",
        "import subprocess, sys, time\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(10)'])\n"
        "time.sleep(10)\n",
    )
    events: list[dict[str, Any]] = []
    adapter = ClaudeCodeAdapter(_claude_config(), binary=str(binary), event_hook=events.append)

    started = time.monotonic()
    success, output = asyncio.run(
        adapter.run_sync(
            tmp_path, "prompt", tmp_path / "plan.md", tmp_path / "agent.log", timeout=0.5
        )
    )

    assert (success, output) == (False, TIMEOUT_MESSAGE)
    assert time.monotonic() - started < 5
    assert {"worker": "w1", "event": "worker_timeout", "timeout_seconds": 0.5} in events


def test_handle_reports_status_after_exit(tmp_path: Path) -> None:
    ok = _script(tmp_path / "ok", "print('done')\n")
    failing = _script(tmp_path / "failing", "import sys\nsys.exit(3)\n")

    async def _status(binary: Path) -> tuple[bool, WorkerStatus]:
        adapter = CodexCLIAdapter(_codex_config(), binary=str(binary))
        handle = await adapter.spawn(tmp_path, "p", tmp_path / "plan.md", tmp_path / "agent.log")
        await handle.wait_for_exit(5)
        await handle.output()
        return handle.is_running(), handle.status()

    assert asyncio.run(_status(ok)) == (False, WorkerStatus.DONE)
    assert asyncio.run(_status(failing)) == (False, WorkerStatus.ERROR)


def test_invalid_codex_options_fail_the_call_instead_of_raising(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    adapter = CodexCLIAdapter(
        _codex_config(codex=CodexOptions(config={"mcp": {"a": 1}}, mcp={"b": 2})),
        binary=str(_script(tmp_path / "never-run", "print('unreachable')\n")),
        event_hook=events.append,
    )

    success, output = asyncio.run(
        adapter.run_sync(tmp_path, "prompt", tmp_path / "plan.md", tmp_path / "agent.log")
    )

    assert success is False
    assert "codex.mcp conflicts with codex.config.mcp" in output
    assert [event["event"] for event in events] == ["worker_spawn_failed"]


def test_unwritable_output_file_is_reported(tmp_path: Path) -> None:
    record = tmp_path / "argv.jsonl"
    binary = _recording_claude(tmp_path, record, json.dumps({"result": "live only"}))
    output_file = tmp_path / "plan.md"
    output_file.mkdir()
    events: list[dict[str, Any]] = []
    adapter = ClaudeCodeAdapter(
        _claude_config(claude=ClaudeOptions(allowed_tools=["Read"])),
        binary=str(binary),
        event_hook=events.append,
    )

    success, text = asyncio.run(
        adapter.run_sync(tmp_path, "prompt", output_file, tmp_path / "agent.log")
    )

    assert (success, text) == (True, "live only")
    assert "worker_output_write_failed" in [event["event"] for event in events]

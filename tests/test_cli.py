import json
import sys
from pathlib import Path
from typing import Any

import yaml
from click.testing import CliRunner, Result

from plancouncil.cli import cli

PLAN_WITH_QUESTION = "# Plan\n\n### Questions\n\n**Q1: Which cache?**\n- **Answer:**\n\n## Tasks\n"


def _fake_claude(tmp_path: Path, plan: str) -> Path:
    script = tmp_path / "fake-claude"
    script.write_text(
        f"#!{sys.executable}\n"
        "import json\n"
        f"print(json.dumps({{'session_id': 'cli-1', 'result': {plan!r}}}))\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


def _planner_dir(tmp_path: Path, plan: str = PLAN_WITH_QUESTION) -> Path:
    planner_dir = tmp_path / ".plancouncil"
    planner_dir.mkdir()
    binary = str(_fake_claude(tmp_path, plan))
    config = {
        "agents": [{"id": "solo", "type": "claude", "model": "sonnet", "binary": binary}],
        "synthesizer": {"id": "synth", "type": "claude", "model": "sonnet", "binary": binary},
    }
    (planner_dir / "plancouncil.yaml").write_text(yaml.safe_dump(config), encoding="utf-8")
    return planner_dir


def _invoke(runner: CliRunner, planner_dir: Path, *args: str) -> Result:
    return runner.invoke(cli, ["--planner-dir", str(planner_dir), *args])


def _json(result: Result) -> dict[str, Any]:
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_full_planning_flow(tmp_path: Path) -> None:
    runner = CliRunner()
    planner_dir = _planner_dir(tmp_path)

    created = _json(_invoke(runner, planner_dir, "init", "Add a cache"))
    session_id = created["session_id"]
    assert created["phase"] == "drafting"
    assert created["turn"] == 1

    waited = _json(_invoke(runner, planner_dir, "wait", "--session", session_id))
    assert waited["phase"] == "user_review"
    assert waited["has_questions"] is True
    turn_file = Path(waited["file"])
    assert turn_file.read_text(encoding="utf-8") == PLAN_WITH_QUESTION

    blocked = _invoke(runner, planner_dir, "approve", "--session", session_id)
    assert blocked.exit_code != 0
    assert "unanswered questions" in blocked.output

    turn_file.write_text(
        PLAN_WITH_QUESTION.replace("**Answer:**", "**Answer:** Redis"), encoding="utf-8"
    )
    continued = _json(_invoke(runner, planner_dir, "continue", "--session", session_id))
    assert continued["turn"] == 2
    assert continued["phase"] == "drafting"

    second = _json(_invoke(runner, planner_dir, "wait", "--session", session_id))
    assert second["turn"] == 2

    diff = _json(_invoke(runner, planner_dir, "diff", "--session", session_id))
    assert diff["from_turn"] == 1
    assert "-- **Answer:** Redis" in diff["diff"]

    Path(second["file"]).write_text("# Final plan\n", encoding="utf-8")
    approved = _json(_invoke(runner, planner_dir, "approve", "--session", session_id))
    assert approved["phase"] == "approved"
    assert Path(approved["plan_path"]).read_text(encoding="utf-8") == "# Final plan\n"

    done = _json(_invoke(runner, planner_dir, "wait", "--session", session_id))
    assert done["hint"] == "Planning complete"


def test_status_and_list(tmp_path: Path) -> None:
    runner = CliRunner()
    planner_dir = _planner_dir(tmp_path)
    session_id = _json(_invoke(runner, planner_dir, "init", "Task one"))["session_id"]

    status = _json(_invoke(runner, planner_dir, "status", "--session", session_id))
    listing = _json(_invoke(runner, planner_dir, "list"))

    assert status["file"] is None
    assert status["has_questions"] is False
    assert [item["session_id"] for item in listing["sessions"]] == [session_id]
    assert listing["sessions"][0]["task"] == "Task one"


def test_archive_hides_session_from_list(tmp_path: Path) -> None:
    runner = CliRunner()
    planner_dir = _planner_dir(tmp_path)
    session_id = _json(_invoke(runner, planner_dir, "init", "Task one"))["session_id"]

    archived = _json(_invoke(runner, planner_dir, "archive", "--session", session_id))

    assert archived["archived"] is True
    assert _json(_invoke(runner, planner_dir, "list"))["sessions"] == []
    assert len(_json(_invoke(runner, planner_dir, "list", "--all"))["sessions"]) == 1


def test_clean_removes_session(tmp_path: Path) -> None:
    runner = CliRunner()
    planner_dir = _planner_dir(tmp_path)
    session_id = _json(_invoke(runner, planner_dir, "init", "Task"))["session_id"]

    cleaned = _json(_invoke(runner, planner_dir, "clean", "--session", session_id))
    again = _invoke(runner, planner_dir, "clean", "--session", session_id)

    assert cleaned == {"cleaned": True, "session_id": session_id}
    assert again.exit_code != 0
    assert "Session not found" in again.output


def test_errors_exit_non_zero(tmp_path: Path) -> None:
    runner = CliRunner()
    planner_dir = _planner_dir(tmp_path)
    session_id = _json(_invoke(runner, planner_dir, "init", "Task"))["session_id"]

    missing = _invoke(runner, planner_dir, "status", "--session", "ghost-town")
    early_diff = _invoke(runner, planner_dir, "diff", "--session", session_id)
    early_continue = _invoke(runner, planner_dir, "continue", "--session", session_id)

    assert missing.exit_code != 0
    assert "Session not found: ghost-town" in missing.output
    assert early_diff.exit_code != 0
    assert "Diff not available" in early_diff.output
    assert early_continue.exit_code != 0


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    runner = CliRunner()
    planner_dir = tmp_path / ".plancouncil"
    planner_dir.mkdir()
    (planner_dir / "plancouncil.yaml").write_text("agents: []\n", encoding="utf-8")

    result = _invoke(runner, planner_dir, "init", "Task")

    assert result.exit_code != 0
    assert "agents must include at least one entry" in result.output


def test_pretty_output_is_indented(tmp_path: Path) -> None:
    runner = CliRunner()
    planner_dir = _planner_dir(tmp_path)

    result = runner.invoke(cli, ["--planner-dir", str(planner_dir), "--pretty", "list"])

    assert result.exit_code == 0
    assert result.output == '{\n  "sessions": []\n}\n'

from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from plancouncil.config import ConfigError, load_config_from_dir
from plancouncil.models import Phase, Session, SessionError
from plancouncil.orchestrator import DiffUnavailableError, TurnOrchestrator
from plancouncil.session import DEFAULT_PLANNER_DIR, SessionNotFoundError, SessionStore

TURN_HINT = "call wait to block until turn complete"
REVIEW_HINT = "User should edit file, then call continue or approve"


@dataclass(slots=True)
class Runtime:
    planner_dir: Path
    store: SessionStore
    pretty: bool


def _emit(runtime: Runtime, payload: dict[str, Any]) -> None:
    if runtime.pretty:
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        click.echo(json.dumps(payload, ensure_ascii=False))


def _require(runtime: Runtime, session_id: str) -> Session:
    try:
        return runtime.store.require_session(session_id)
    except SessionError as exc:
        raise click.ClickException(str(exc)) from exc


def _review_payload(runtime: Runtime, session: Session) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "turn": session.turn,
        "phase": session.phase.value,
        "file": str(runtime.store.get_paths(session.session_id).turn_file(session.turn)),
        "has_questions": runtime.store.has_questions(session.session_id),
        "hint": REVIEW_HINT,
    }


@click.group()
@click.option(
    "--planner-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=DEFAULT_PLANNER_DIR,
    show_default=True,
)
@click.option("--pretty", is_flag=True, default=False, help="Pretty print JSON output.")
@click.option("--verbose", is_flag=True, default=False, help="Log progress to stderr.")
@click.pass_context
def cli(ctx: click.Context, planner_dir: Path, pretty: bool, verbose: bool) -> None:
    """Multi-agent planning sessions."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    ctx.obj = Runtime(planner_dir=planner_dir, store=SessionStore(planner_dir), pretty=pretty)


@cli.command("init")
@click.argument("task")
@click.pass_obj
def init_command(runtime: Runtime, task: str) -> None:
    try:
        config = load_config_from_dir(runtime.planner_dir)
        session = runtime.store.create_session(task, config)
    except (ConfigError, SessionError) as exc:
        raise click.ClickException(str(exc)) from exc
    session.transition(Phase.DRAFTING)
    runtime.store.save_state(session)
    _emit(
        runtime,
        {
            "session_id": session.session_id,
            "turn": session.turn,
            "phase": session.phase.value,
            "hint": TURN_HINT,
        },
    )


@cli.command("list")
@click.option("--all", "include_archived", is_flag=True, default=False)
@click.pass_obj
def list_command(runtime: Runtime, include_archived: bool) -> None:
    sessions = runtime.store.list_sessions(include_archived=include_archived)
    _emit(
        runtime,
        {
            "sessions": [
                {
                    "session_id": session.session_id,
                    "task": session.task,
                    "turn": session.turn,
                    "phase": session.phase.value,
                    "archived": session.archived,
                    "updated_at": session.updated_at.isoformat(),
                }
                for session in sessions
            ]
        },
    )


@cli.command("status")
@click.option("--session", "session_id", required=True)
@click.pass_obj
def status_command(runtime: Runtime, session_id: str) -> None:
    session = _require(runtime, session_id)
    turn_file = runtime.store.get_paths(session_id).turn_file(session.turn)
    payload: dict[str, Any] = {
        "session_id": session.session_id,
        "turn": session.turn,
        "phase": session.phase.value,
        "file": str(turn_file) if turn_file.exists() else None,
        "has_questions": runtime.store.has_questions(session_id),
        "agents": {key: value.value for key, value in session.workers.items()},
    }
    if session.worker_errors:
        payload["agent_errors"] = dict(session.worker_errors)
    _emit(runtime, payload)


@cli.command("wait")
@click.option("--session", "session_id", required=True)
@click.option("--timeout", type=float, default=None, help="Per-worker timeout in seconds.")
@click.pass_obj
def wait_command(runtime: Runtime, session_id: str, timeout: float | None) -> None:
    session = _require(runtime, session_id)
    if session.phase == Phase.USER_REVIEW:
        _emit(runtime, _review_payload(runtime, session))
        return
    if session.phase == Phase.APPROVED:
        _emit(
            runtime,
            {
                "session_id": session.session_id,
                "turn": session.turn,
                "phase": session.phase.value,
                "file": str(runtime.store.get_paths(session_id).final_plan),
                "hint": "Planning complete",
            },
        )
        return
    if session.phase == Phase.ERROR:
        raise click.ClickException(f"Session {session_id} is in the error phase")

    try:
        config = load_config_from_dir(runtime.planner_dir)
        orchestrator = TurnOrchestrator(runtime.store, config, timeout=timeout)
        success = asyncio.run(orchestrator.run_turn(session_id))
    except (ConfigError, SessionError) as exc:
        raise click.ClickException(str(exc)) from exc

    updated = _require(runtime, session_id)
    if not success:
        raise click.ClickException(
            f"Turn {updated.turn} failed; check agent logs in "
            f"{runtime.store.get_paths(session_id).agents}"
        )
    _emit(runtime, _review_payload(runtime, updated))


@cli.command("continue")
@click.option("--session", "session_id", required=True)
@click.pass_obj
def continue_command(runtime: Runtime, session_id: str) -> None:
    try:
        session = runtime.store.continue_session(session_id)
    except SessionError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(
        runtime,
        {
            "session_id": session.session_id,
            "turn": session.turn,
            "phase": session.phase.value,
            "hint": TURN_HINT,
        },
    )


@cli.command("approve")
@click.option("--session", "session_id", required=True)
@click.pass_obj
def approve_command(runtime: Runtime, session_id: str) -> None:
    try:
        plan_path = runtime.store.approve_session(session_id)
    except SessionError as exc:
        raise click.ClickException(str(exc)) from exc
    session = _require(runtime, session_id)
    _emit(
        runtime,
        {
            "session_id": session.session_id,
            "phase": session.phase.value,
            "final_turn": session.turn,
            "plan_path": str(plan_path),
            "hint": "Planning complete. Plan is ready for implementation.",
        },
    )


@cli.command("archive")
@click.option("--session", "session_id", required=True)
@click.option("--undo", is_flag=True, default=False, help="Unarchive the session.")
@click.pass_obj
def archive_command(runtime: Runtime, session_id: str, undo: bool) -> None:
    try:
        session = runtime.store.set_archived(session_id, not undo)
    except SessionError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(runtime, {"session_id": session.session_id, "archived": session.archived})


@cli.command("clean")
@click.option("--session", "session_id", required=True)
@click.pass_obj
def clean_command(runtime: Runtime, session_id: str) -> None:
    if not runtime.store.delete_session(session_id):
        raise click.ClickException(str(SessionNotFoundError(session_id)))
    _emit(runtime, {"cleaned": True, "session_id": session_id})


@cli.command("diff")
@click.option("--session", "session_id", required=True)
@click.pass_obj
def diff_command(runtime: Runtime, session_id: str) -> None:
    orchestrator = TurnOrchestrator(runtime.store)
    try:
        diff = orchestrator.get_diff(session_id)
    except (DiffUnavailableError, SessionError) as exc:
        raise click.ClickException(str(exc)) from exc
    session = _require(runtime, session_id)
    _emit(
        runtime,
        {
            "session_id": session_id,
            "from_turn": session.turn - 1,
            "to_turn": session.turn,
            "diff": diff,
        },
    )

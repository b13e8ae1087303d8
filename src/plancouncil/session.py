from __future__ import annotations

import logging
import re
import secrets
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from plancouncil.config import ConfigError, PlannerConfig
from plancouncil.files import atomic_write_text, read_text_or_none
from plancouncil.models import (
    InvalidPhaseTransition,
    Phase,
    Session,
    SessionError,
    SessionPaths,
    WorkerStatus,
    utcnow,
)
from plancouncil.names import DEFAULT_ATTEMPTS, generate_name, random_suffix

logger = logging.getLogger(__name__)

DEFAULT_PLANNER_DIR = Path(".plancouncil")
ANSWER_MARKER = "**Answer:**"
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")


class SessionStateError(SessionError):
    """Raised when a session's files are missing or cannot be parsed."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class UnansweredQuestionsError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} has unanswered questions")
        self.session_id = session_id


def _answer_missing(lines: list[str], index: int) -> bool:
    line = lines[index]
    marker_at = line.find(ANSWER_MARKER)
    if line[marker_at + len(ANSWER_MARKER) :].strip():
        return False
    if index + 1 >= len(lines):
        return True
    following = lines[index + 1].strip()
    return not following or following.startswith("#") or following.startswith("---")


def find_unanswered_questions(content: str) -> bool:
    """Return True when a Questions section holds an ``**Answer:**`` with nothing after it."""
    lines = content.splitlines()
    section_level: int | None = None
    for index, line in enumerate(lines):
        heading = _HEADING_RE.match(line.strip())
        if heading:
            level = len(heading.group(1))
            if section_level is not None and level <= section_level:
                section_level = None
            if level >= 2 and heading.group(2).strip().lower() == "questions":
                section_level = level
            continue
        if section_level is None or ANSWER_MARKER not in line:
            continue
        if _answer_missing(lines, index):
            return True
    return False


def _parse_timestamp(value: Any, name: str, session_id: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise SessionStateError(
                f"{name} is not an ISO-8601 timestamp: {value!r}", session_id=session_id
            ) from exc
    else:
        raise SessionStateError(f"{name} is missing or invalid", session_id=session_id)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _string_mapping(value: Any, name: str, session_id: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SessionStateError(f"{name} must be a mapping", session_id=session_id)
    return {str(key): str(item) for key, item in value.items()}


class SessionStore:
    """Durable sessions under ``<planner_dir>/sessions/<session_id>/``."""

    def __init__(self, planner_dir: Path = DEFAULT_PLANNER_DIR) -> None:
        self.planner_dir = planner_dir
        self.sessions_dir = planner_dir / "sessions"

    def get_paths(self, session_id: str) -> SessionPaths:
        return SessionPaths(self.sessions_dir / session_id)

    def _allocate_id(self) -> str:
        for _ in range(DEFAULT_ATTEMPTS):
            candidate = generate_name()
            if not (self.sessions_dir / candidate).exists():
                return candidate
        return f"{generate_name()}-{random_suffix()}"

    def create_session(self, task: str, config: PlannerConfig | None = None) -> Session:
        if not task.strip():
            raise SessionError("Task must not be empty")
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        session_id = self._allocate_id()
        paths = self.get_paths(session_id)
        for directory in (paths.root, paths.turns, paths.agents, paths.plans):
            directory.mkdir(parents=True, exist_ok=True)

        session = Session(session_id=session_id, task=task)
        meta: dict[str, Any] = {
            "session_id": session_id,
            "task": task,
            "created_at": session.created_at.isoformat(),
        }
        if config is not None:
            meta["config"] = config.to_dict()
        atomic_write_text(paths.meta, yaml.safe_dump(meta, sort_keys=False, allow_unicode=True))
        self.save_state(session, touch_timestamp=False)
        logger.info(f"Created session {session_id}")
        return session

    def _read_yaml(self, path: Path, session_id: str) -> dict[str, Any]:
        content = read_text_or_none(path)
        if content is None:
            raise SessionStateError(f"Missing {path.name}", session_id=session_id)
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise SessionStateError(
                f"{path.name} is not valid YAML: {exc}", session_id=session_id
            ) from exc
        if not isinstance(data, dict):
            raise SessionStateError(f"{path.name} must be a mapping", session_id=session_id)
        return data

    def load_session(self, session_id: str) -> Session | None:
        paths = self.get_paths(session_id)
        if not paths.root.is_dir():
            return None
        meta = self._read_yaml(paths.meta, session_id)
        state = self._read_yaml(paths.state, session_id)

        task = meta.get("task")
        if not isinstance(task, str):
            raise SessionStateError("meta.yaml task is missing", session_id=session_id)

        try:
            phase = Phase(state.get("phase"))
        except ValueError as exc:
            raise SessionStateError(
                f"Unknown phase: {state.get('phase')!r}", session_id=session_id
            ) from exc

        turn = state.get("turn")
        if isinstance(turn, bool) or not isinstance(turn, int) or turn < 1:
            raise SessionStateError(f"Invalid turn: {turn!r}", session_id=session_id)

        raw_agents = state.get("agents") or {}
        if not isinstance(raw_agents, dict):
            raise SessionStateError("agents must be a mapping", session_id=session_id)
        try:
            workers = {str(key): WorkerStatus(value) for key, value in raw_agents.items()}
        except ValueError as exc:
            raise SessionStateError(f"Invalid agent status: {exc}", session_id=session_id) from exc

        token = state.get("session_token")
        return Session(
            session_id=session_id,
            task=task,
            turn=turn,
            phase=phase,
            created_at=_parse_timestamp(meta.get("created_at"), "created_at", session_id),
            updated_at=_parse_timestamp(state.get("updated_at"), "updated_at", session_id),
            archived=bool(state.get("archived", False)),
            workers=workers,
            worker_plan_ids=_string_mapping(
                state.get("agent_plan_ids"), "agent_plan_ids", session_id
            ),
            worker_errors=_string_mapping(state.get("agent_errors"), "agent_errors", session_id),
            session_token=str(token) if token else None,
        )

    def require_session(self, session_id: str) -> Session:
        session = self.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def load_config_snapshot(self, session_id: str) -> PlannerConfig | None:
        meta = self._read_yaml(self.get_paths(session_id).meta, session_id)
        snapshot = meta.get("config")
        if snapshot is None:
            return None
        try:
            return PlannerConfig.from_dict(snapshot)
        except ConfigError as exc:
            raise SessionStateError(
                f"Invalid config snapshot: {exc}", session_id=session_id
            ) from exc

    def save_state(self, session: Session, touch_timestamp: bool = True) -> None:
        if touch_timestamp:
            session.updated_at = utcnow()
        data = session.to_dict()
        for key in ("session_id", "task", "created_at"):
            data.pop(key)
        atomic_write_text(
            self.get_paths(session.session_id).state,
            yaml.safe_dump(data, sort_keys=False, allow_unicode=True),
        )

    def list_sessions(self, include_archived: bool = True) -> list[Session]:
        if not self.sessions_dir.is_dir():
            return []
        sessions: list[Session] = []
        for entry in self.sessions_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                session = self.load_session(entry.name)
            except SessionStateError as exc:
                logger.warning(f"Skipping unreadable session {entry.name}: {exc}")
                continue
            if session is None or (session.archived and not include_archived):
                continue
            sessions.append(session)
        sessions.sort(key=lambda item: item.updated_at, reverse=True)
        return sessions

    def delete_session(self, session_id: str) -> bool:
        root = self.get_paths(session_id).root
        if not root.is_dir():
            return False
        shutil.rmtree(root)
        logger.info(f"Deleted session {session_id}")
        return True

    def set_archived(self, session_id: str, archived: bool) -> Session:
        session = self.require_session(session_id)
        session.archived = archived
        self.save_state(session)
        return session

    def ensure_session_token(self, session_id: str) -> str:
        session = self.require_session(session_id)
        if session.session_token:
            return session.session_token
        session.session_token = secrets.token_urlsafe(32)
        self.save_state(session, touch_timestamp=False)
        return session.session_token

    def current_turn_file(self, session_id: str) -> Path | None:
        session = self.load_session(session_id)
        if session is None:
            return None
        return self.get_paths(session_id).turn_file(session.turn)

    def has_questions(self, session_id: str) -> bool:
        turn_file = self.current_turn_file(session_id)
        content = read_text_or_none(turn_file)
        if content is None:
            return False
        return find_unanswered_questions(content)

    def continue_session(self, session_id: str) -> Session:
        session = self.require_session(session_id)
        session.start_next_turn()
        self.save_state(session)
        logger.info(f"Session {session_id} advanced to turn {session.turn}")
        return session

    def approve_session(self, session_id: str) -> Path:
        session = self.require_session(session_id)
        if session.phase != Phase.USER_REVIEW:
            raise InvalidPhaseTransition(session.phase, Phase.APPROVED)
        if self.has_questions(session_id):
            raise UnansweredQuestionsError(session_id)
        paths = self.get_paths(session_id)
        artifact = read_text_or_none(paths.turn_file(session.turn))
        if artifact is None:
            raise SessionStateError(
                f"Missing turn artifact for turn {session.turn}", session_id=session_id
            )
        atomic_write_text(paths.final_plan, artifact)
        session.transition(Phase.APPROVED)
        self.save_state(session)
        logger.info(f"Session {session_id} approved")
        return paths.final_plan

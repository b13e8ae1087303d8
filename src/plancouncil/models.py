from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any


class Phase(StrEnum):
    INITIALIZING = "initializing"
    DRAFTING = "drafting"
    PEER_REVIEW = "peer_review"
    SYNTHESIZING = "synthesizing"
    USER_REVIEW = "user_review"
    APPROVED = "approved"
    ERROR = "error"


class WorkerStatus(StrEnum):
    PENDING = "pending"
    WORKING = "working"
    DONE = "done"
    ERROR = "error"


# peer_review/synthesizing -> drafting restarts a turn interrupted mid-run.
PHASE_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.INITIALIZING: frozenset({Phase.DRAFTING}),
    Phase.DRAFTING: frozenset({Phase.PEER_REVIEW, Phase.ERROR}),
    Phase.PEER_REVIEW: frozenset({Phase.SYNTHESIZING, Phase.DRAFTING, Phase.ERROR}),
    Phase.SYNTHESIZING: frozenset({Phase.USER_REVIEW, Phase.DRAFTING, Phase.ERROR}),
    Phase.USER_REVIEW: frozenset({Phase.APPROVED, Phase.DRAFTING, Phase.ERROR}),
    Phase.APPROVED: frozenset(),
    Phase.ERROR: frozenset(),
}

TERMINAL_PHASES = frozenset({Phase.APPROVED, Phase.ERROR})


class SessionError(RuntimeError):
    """Base class for session lifecycle failures."""


class InvalidPhaseTransition(SessionError):
    def __init__(self, current: Phase, target: Phase) -> None:
        super().__init__(f"Cannot move session from {current.value} to {target.value}")
        self.current = current
        self.target = target


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class Session:
    session_id: str
    task: str
    turn: int = 1
    phase: Phase = Phase.INITIALIZING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    archived: bool = False
    workers: dict[str, WorkerStatus] = field(default_factory=dict)
    worker_plan_ids: dict[str, str] = field(default_factory=dict)
    worker_errors: dict[str, str] = field(default_factory=dict)
    session_token: str | None = None

    def transition(self, target: Phase) -> None:
        if target == self.phase and target == Phase.DRAFTING:
            return
        if target not in PHASE_TRANSITIONS[self.phase]:
            raise InvalidPhaseTransition(self.phase, target)
        self.phase = target

    def start_next_turn(self) -> None:
        if self.phase != Phase.USER_REVIEW:
            raise InvalidPhaseTransition(self.phase, Phase.DRAFTING)
        self.turn += 1
        self.phase = Phase.DRAFTING

    def mark_done(self, worker_id: str) -> None:
        self.workers[worker_id] = WorkerStatus.DONE
        self.worker_errors.pop(worker_id, None)

    def mark_error(self, worker_id: str, summary: str) -> None:
        self.workers[worker_id] = WorkerStatus.ERROR
        self.worker_errors[worker_id] = summary

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "session_id": self.session_id,
            "task": self.task,
            "turn": self.turn,
            "phase": self.phase.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "archived": self.archived,
            "agents": {key: value.value for key, value in self.workers.items()},
            "agent_plan_ids": dict(self.worker_plan_ids),
        }
        if self.session_token:
            data["session_token"] = self.session_token
        if self.worker_errors:
            data["agent_errors"] = dict(self.worker_errors)
        return data


class SessionPaths:
    """File layout of one session directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.meta = root / "meta.yaml"
        self.state = root / "state.yaml"
        self.turns = root / "turns"
        self.agents = root / "agents"
        self.plans = root / "plans"
        self.final_plan = root / "PLAN.md"

    @staticmethod
    def _turn_stem(turn: int) -> str:
        return f"{turn:03d}"

    def turn_file(self, turn: int) -> Path:
        return self.turns / f"{self._turn_stem(turn)}.md"

    def turn_snapshot_file(self, turn: int) -> Path:
        return self.turns / f"{self._turn_stem(turn)}.snapshot.md"

    def turn_snapshot_dir(self, turn: int) -> Path:
        return self.turns / self._turn_stem(turn)

    def worker_plan_file(self, plan_id: str) -> Path:
        return self.plans / f"{plan_id}.md"

    def worker_dir(self, plan_id: str) -> Path:
        return self.agents / plan_id

    def worker_log_file(self, plan_id: str) -> Path:
        return self.worker_dir(plan_id) / "agent.log"

    def worker_continuation_file(self, plan_id: str) -> Path:
        return self.worker_dir(plan_id) / "session.txt"

    @property
    def synthesizer_output_file(self) -> Path:
        return self.agents / "synthesis_temp.md"

    @property
    def synthesizer_log_file(self) -> Path:
        return self.agents / "synthesizer.log"

    @property
    def synthesizer_continuation_file(self) -> Path:
        return self.agents / "synthesizer" / "session.txt"

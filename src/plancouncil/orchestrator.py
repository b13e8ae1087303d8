from __future__ import annotations

import asyncio
import difflib
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Literal

from plancouncil.backends import WorkerAdapter, WorkerEventHook, build_adapter
from plancouncil.config import PlannerConfig, WorkerConfig
from plancouncil.files import atomic_write_text, read_text_or_none
from plancouncil.models import InvalidPhaseTransition, Phase, Session, SessionPaths, WorkerStatus
from plancouncil.names import generate_unique_name
from plancouncil.prompts import get_draft_prompt, get_peer_review_prompt, get_synthesis_prompt
from plancouncil.session import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[WorkerConfig, WorkerEventHook | None], WorkerAdapter]

# Phases a turn may (re)start from; a crash mid-turn restarts it from drafting.
TURN_START_PHASES = frozenset(
    {Phase.INITIALIZING, Phase.DRAFTING, Phase.PEER_REVIEW, Phase.SYNTHESIZING}
)
SUMMARY_LIMIT = 200
ERROR_HINTS = (
    "unexpected argument",
    "invalid option",
    "command not found",
    "permission denied",
    "timeout",
)


class DiffUnavailableError(RuntimeError):
    """Raised when a turn-over-turn diff cannot be produced."""

    def __init__(self, reason: str, *, session_id: str | None = None) -> None:
        super().__init__(f"Diff not available: {reason}")
        self.reason = reason
        self.session_id = session_id


@dataclass(slots=True)
class HumanFeedback:
    kind: Literal["none", "diff", "full_text"] = "none"
    text: str = ""

    def render(self) -> str:
        if self.kind == "diff":
            return f"```diff\n{self.text}\n```"
        if self.kind == "full_text":
            return f"User's current plan:\n\n{self.text}"
        return ""


@dataclass(slots=True)
class StepResult:
    worker_id: str
    success: bool
    output: str


def _truncate(text: str) -> str:
    return text[:SUMMARY_LIMIT] + "..." if len(text) > SUMMARY_LIMIT else text


def extract_error_summary(output: str) -> str:
    lines = output.strip().splitlines()
    for line in lines:
        if line.strip().lower().startswith("error:"):
            return line.strip()
    for line in lines:
        lowered = line.lower()
        if any(hint in lowered for hint in ERROR_HINTS):
            return line.strip()
    for line in lines:
        if line.strip():
            return _truncate(line.strip())
    return _truncate(output)


def unified_diff(original: str, edited: str, from_label: str, to_label: str) -> str:
    """Unified diff with 3 lines of context; empty when the texts match."""
    lines = difflib.unified_diff(
        original.splitlines(),
        edited.splitlines(),
        fromfile=from_label,
        tofile=to_label,
        n=3,
        lineterm="",
    )
    return "\n".join(lines)


def compute_human_feedback(paths: SessionPaths, turn: int) -> HumanFeedback:
    if turn < 2:
        return HumanFeedback()
    edited = read_text_or_none(paths.turn_file(turn - 1))
    if edited is None:
        return HumanFeedback()
    snapshot = read_text_or_none(paths.turn_snapshot_file(turn - 1))
    if snapshot is None:
        return HumanFeedback(kind="full_text", text=edited)
    diff = unified_diff(snapshot, edited, "synthesis", "user-edited")
    if not diff.strip():
        return HumanFeedback()
    return HumanFeedback(kind="diff", text=diff)


def combine_plans(task: str, plans: dict[str, str]) -> str:
    parts = [f"# Plan: {task}\n\n", "## Combined from agents\n\n"]
    for worker_id, plan in plans.items():
        parts.append(f"### From {worker_id}\n\n{plan}\n\n---\n\n")
    return "".join(parts)


def _log_worker_event(event: dict[str, Any]) -> None:
    logger.debug(f"worker event: {event}")


class TurnOrchestrator:
    """Drives one turn: concurrent drafts, ring peer review, then synthesis."""

    def __init__(
        self,
        store: SessionStore,
        config: PlannerConfig | None = None,
        *,
        project_root: Path | None = None,
        adapter_factory: AdapterFactory = build_adapter,
        timeout: float | None = None,
    ) -> None:
        self.store = store
        self.config = config or PlannerConfig.default()
        self.timeout = timeout
        self.project_root = project_root or store.planner_dir.resolve().parent
        self.adapter_factory = adapter_factory

    def _session_config(self, session_id: str) -> PlannerConfig:
        config = self.store.load_config_snapshot(session_id) or self.config
        if self.timeout is not None:
            config = replace(config, timeout=self.timeout)
        return config

    def _timeout_for(self, worker: WorkerConfig, config: PlannerConfig) -> float | None:
        return worker.timeout if worker.timeout is not None else config.timeout

    def _assign_plan_ids(self, session: Session, worker_ids: list[str]) -> None:
        for worker_id in worker_ids:
            if worker_id in session.worker_plan_ids:
                continue
            existing = set(session.worker_plan_ids.values())
            session.worker_plan_ids[worker_id] = generate_unique_name(existing)

    async def _invoke(
        self,
        worker_id: str,
        adapter: WorkerAdapter,
        prompt: str,
        paths: SessionPaths,
        plan_id: str,
        timeout: float | None,
    ) -> StepResult:
        success, output = await self._run_worker(
            worker_id,
            adapter,
            prompt,
            paths.worker_plan_file(plan_id),
            paths.worker_log_file(plan_id),
            paths.worker_continuation_file(plan_id),
            timeout,
        )
        return StepResult(worker_id, success, output)

    async def _run_worker(
        self,
        worker_id: str,
        adapter: WorkerAdapter,
        prompt: str,
        output_file: Path,
        log_file: Path,
        continuation_file: Path,
        timeout: float | None,
    ) -> tuple[bool, str]:
        """Run one worker call; any failure becomes an unsuccessful result for that worker."""
        try:
            return await adapter.run_sync(
                self.project_root,
                prompt,
                output_file,
                log_file,
                timeout=timeout,
                continuation_file=continuation_file,
                append_log=True,
            )
        except Exception as exc:
            logger.exception(f"Worker {worker_id} raised during its call")
            return False, f"error: {type(exc).__name__}: {exc}"

    async def run_turn(self, session_id: str) -> bool:
        session = self.store.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.phase not in TURN_START_PHASES:
            raise InvalidPhaseTransition(session.phase, Phase.DRAFTING)

        config = self._session_config(session_id)
        workers = {worker.id: worker for worker in config.enabled_agents}
        adapters = {
            worker_id: self.adapter_factory(worker, _log_worker_event)
            for worker_id, worker in workers.items()
        }
        paths = self.store.get_paths(session_id)
        turn = session.turn
        snapshot_dir = paths.turn_snapshot_dir(turn)
        snapshot_dir.mkdir(parents=True, exist_ok=True)

        self._assign_plan_ids(session, list(workers))
        self.store.save_state(session)
        feedback = compute_human_feedback(paths, turn)
        logger.info(f"Session {session_id} turn {turn}: feedback kind {feedback.kind}")

        drafts = await self._draft(session, config, workers, adapters, paths, feedback)
        if not drafts:
            session.transition(Phase.ERROR)
            self.store.save_state(session)
            logger.error(f"Session {session_id} turn {turn}: every worker failed to draft")
            return False

        finals = await self._peer_review(session, config, workers, adapters, paths, drafts)

        session.transition(Phase.SYNTHESIZING)
        self.store.save_state(session)
        synthesis = await self._synthesize(session, config, paths, finals, feedback)

        atomic_write_text(paths.turn_file(turn), synthesis)
        atomic_write_text(paths.turn_snapshot_file(turn), synthesis)
        for worker_id in workers:
            atomic_write_text(paths.worker_plan_file(session.worker_plan_ids[worker_id]), synthesis)

        session.transition(Phase.USER_REVIEW)
        self.store.save_state(session)
        logger.info(f"Session {session_id} turn {turn} ready for review")
        return True

    async def _draft(
        self,
        session: Session,
        config: PlannerConfig,
        workers: dict[str, WorkerConfig],
        adapters: dict[str, WorkerAdapter],
        paths: SessionPaths,
        feedback: HumanFeedback,
    ) -> dict[str, str]:
        session.transition(Phase.DRAFTING)
        for worker_id in adapters:
            session.workers[worker_id] = WorkerStatus.WORKING
        self.store.save_state(session)

        user_feedback = feedback.render()
        calls = []
        for worker_id, adapter in adapters.items():
            plan_id = session.worker_plan_ids[worker_id]
            plan_file = paths.worker_plan_file(plan_id)
            current_plan = read_text_or_none(plan_file) if session.turn > 1 else None
            prompt = get_draft_prompt(
                session.task,
                session.turn,
                plan_file,
                plan_file=plan_file if current_plan is not None else None,
                user_feedback=user_feedback,
                current_plan=current_plan or "",
            )
            calls.append(
                self._invoke(
                    worker_id,
                    adapter,
                    prompt,
                    paths,
                    plan_id,
                    self._timeout_for(workers[worker_id], config),
                )
            )

        drafts: dict[str, str] = {}
        snapshot_dir = paths.turn_snapshot_dir(session.turn)
        for result in await asyncio.gather(*calls):
            if result.success:
                plan_id = session.worker_plan_ids[result.worker_id]
                drafts[result.worker_id] = result.output
                atomic_write_text(snapshot_dir / f"{plan_id}-draft.md", result.output)
                session.mark_done(result.worker_id)
            else:
                session.mark_error(result.worker_id, extract_error_summary(result.output))
                logger.warning(
                    f"Worker {result.worker_id} failed to draft: "
                    f"{session.worker_errors[result.worker_id]}"
                )
        self.store.save_state(session)
        return drafts

    async def _peer_review(
        self,
        session: Session,
        config: PlannerConfig,
        workers: dict[str, WorkerConfig],
        adapters: dict[str, WorkerAdapter],
        paths: SessionPaths,
        drafts: dict[str, str],
    ) -> dict[str, str]:
        session.transition(Phase.PEER_REVIEW)
        reviewers = list(drafts)
        for worker_id in reviewers:
            session.workers[worker_id] = WorkerStatus.WORKING
        self.store.save_state(session)

        calls = []
        for index, worker_id in enumerate(reviewers):
            peer_id = reviewers[(index + 1) % len(reviewers)]
            prompt = get_peer_review_prompt(
                session.task,
                drafts[worker_id],
                session.worker_plan_ids[peer_id],
                drafts[peer_id],
            )
            calls.append(
                self._invoke(
                    worker_id,
                    adapters[worker_id],
                    prompt,
                    paths,
                    session.worker_plan_ids[worker_id],
                    self._timeout_for(workers[worker_id], config),
                )
            )

        finals: dict[str, str] = {}
        snapshot_dir = paths.turn_snapshot_dir(session.turn)
        for result in await asyncio.gather(*calls):
            if result.success:
                plan_id = session.worker_plan_ids[result.worker_id]
                finals[result.worker_id] = result.output
                atomic_write_text(snapshot_dir / f"{plan_id}-reviewed.md", result.output)
                session.mark_done(result.worker_id)
            else:
                finals[result.worker_id] = drafts[result.worker_id]
                session.mark_error(result.worker_id, extract_error_summary(result.output))
                logger.warning(
                    f"Worker {result.worker_id} failed peer review, keeping its draft: "
                    f"{session.worker_errors[result.worker_id]}"
                )
        self.store.save_state(session)
        return finals

    async def _synthesize(
        self,
        session: Session,
        config: PlannerConfig,
        paths: SessionPaths,
        finals: dict[str, str],
        feedback: HumanFeedback,
    ) -> str:
        if len(finals) == 1:
            return next(iter(finals.values()))

        synthesizer = config.synthesizer
        adapter = self.adapter_factory(synthesizer, _log_worker_event)
        output_file = paths.synthesizer_output_file
        output_file.unlink(missing_ok=True)
        prompt = get_synthesis_prompt(
            session.task,
            finals,
            output_file,
            user_diff=feedback.render(),
        )
        success, output = await self._run_worker(
            synthesizer.id,
            adapter,
            prompt,
            output_file,
            paths.synthesizer_log_file,
            paths.synthesizer_continuation_file,
            self._timeout_for(synthesizer, config),
        )
        output_file.unlink(missing_ok=True)
        if success and output.strip():
            return output

        logger.warning(
            f"Synthesis failed for session {session.session_id}, combining plans instead: "
            f"{extract_error_summary(output) if output.strip() else 'empty output'}"
        )
        return combine_plans(session.task, finals)

    def get_diff(self, session_id: str) -> str:
        session = self.store.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.turn < 2:
            raise DiffUnavailableError("no previous turn to compare", session_id=session_id)

        paths = self.store.get_paths(session_id)
        previous = read_text_or_none(paths.turn_file(session.turn - 1))
        current = read_text_or_none(paths.turn_file(session.turn))
        if previous is None or current is None:
            raise DiffUnavailableError("turn files are missing", session_id=session_id)
        return unified_diff(
            previous,
            current,
            f"turn-{session.turn - 1:03d}.md",
            f"turn-{session.turn:03d}.md",
        )

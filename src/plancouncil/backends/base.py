from __future__ import annotations

import asyncio
import os
import signal
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from plancouncil.backends.streams import (
    prepare_log,
    read_continuation_id,
    stream_to_log,
    write_continuation_id,
)
from plancouncil.config import ConfigError, WorkerConfig
from plancouncil.models import WorkerStatus

TIMEOUT_MESSAGE = "Timeout expired"
DRAIN_TIMEOUT_SECONDS = 5.0
EXIT_POLL_SECONDS = 0.05
PIPE_GRACE_SECONDS = 0.5

WorkerEventHook = Callable[[dict[str, Any]], None]


class WorkerExecutionError(RuntimeError):
    """Raised when a worker process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.exit_code = exit_code


class WorkerTimeoutError(WorkerExecutionError):
    """Raised when a worker exceeds its configured timeout."""


class WorkerProcessError(WorkerExecutionError):
    """Raised when a worker process cannot be started."""


@dataclass(slots=True)
class ParsedOutput:
    text: str
    continuation_id: str | None = None


class WorkerHandle:
    def __init__(
        self,
        worker_id: str,
        process: asyncio.subprocess.Process,
        log_file: Path,
        output_task: asyncio.Task[tuple[str, str]],
    ) -> None:
        self.worker_id = worker_id
        self.process = process
        self.log_file = log_file
        self.output_task = output_task

    def is_running(self) -> bool:
        return self.process.returncode is None

    def status(self) -> WorkerStatus:
        if self.is_running():
            return WorkerStatus.WORKING
        if self.process.returncode == 0:
            return WorkerStatus.DONE
        return WorkerStatus.ERROR

    async def wait(self) -> int:
        """Wait for the worker process itself to exit.

        ``Process.wait()`` also waits for the pipes to close, which never happens
        while a helper spawned by the worker still holds them.
        """
        returncode = self.process.returncode
        while returncode is None:
            await asyncio.sleep(EXIT_POLL_SECONDS)
            returncode = self.process.returncode
        return returncode

    async def wait_for_exit(self, timeout: float | None) -> int:
        if timeout is None:
            return await self.wait()
        try:
            return await asyncio.wait_for(self.wait(), timeout=timeout)
        except TimeoutError as exc:
            raise WorkerTimeoutError(TIMEOUT_MESSAGE, worker=self.worker_id) from exc

    def kill(self) -> None:
        """Kill the worker's whole process group, including any helpers it left behind."""
        try:
            os.killpg(self.process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    async def output(self) -> tuple[str, str]:
        """Collect the pumped output, killing leftover helpers that keep the pipes open."""
        try:
            return await asyncio.wait_for(asyncio.shield(self.output_task), PIPE_GRACE_SECONDS)
        except TimeoutError:
            self.kill()
        return await asyncio.wait_for(self.output_task, DRAIN_TIMEOUT_SECONDS)


class WorkerAdapter(ABC):
    """Uniform interface over one family of CLI-driven agents."""

    family: str = "worker"
    label: str = "Worker"
    default_binary: str = ""

    def __init__(
        self,
        config: WorkerConfig,
        *,
        binary: str | None = None,
        event_hook: WorkerEventHook | None = None,
    ) -> None:
        self.config = config
        self.binary = binary or config.binary or self.default_binary
        self.event_hook = event_hook

    @property
    def display_name(self) -> str:
        return f"{self.label} ({self.config.model})"

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook({"worker": self.config.id, **payload})

    @abstractmethod
    def build_command(
        self,
        prompt: str,
        *,
        worktree: Path,
        continuation_id: str | None,
    ) -> list[str]:
        """Render the argv for one invocation."""

    @abstractmethod
    def parse_output(self, stdout_text: str) -> ParsedOutput:
        """Extract result text and continuation id; never raises on bad input."""

    @abstractmethod
    def prefers_live_text(self) -> bool:
        """Whether returned text beats whatever the worker left in the output file."""

    async def spawn(
        self,
        worktree: Path,
        prompt: str,
        output_file: Path,
        log_file: Path,
        continuation_file: Path | None = None,
        append_log: bool = False,
    ) -> WorkerHandle:
        try:
            continuation_id = read_continuation_id(continuation_file)
            command = self.build_command(
                prompt,
                worktree=worktree,
                continuation_id=continuation_id,
            )
            prepare_log(log_file, append_log)
            output_file.parent.mkdir(parents=True, exist_ok=True)
        except (ConfigError, OSError) as exc:
            raise WorkerProcessError(
                f"Failed to prepare worker {self.config.id}: {exc}",
                worker=self.config.id,
            ) from exc
        self._emit(
            {
                "event": "worker_cli_start",
                "command": command[:4],
                "resume": continuation_id is not None,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(worktree),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"{self.binary}: command not found",
                worker=self.config.id,
            ) from exc
        except OSError as exc:
            raise WorkerProcessError(
                f"Failed to start {self.binary}: {exc}",
                worker=self.config.id,
            ) from exc

        output_task = asyncio.create_task(stream_to_log(process.stdout, process.stderr, log_file))
        return WorkerHandle(self.config.id, process, log_file, output_task)

    async def run_sync(
        self,
        worktree: Path,
        prompt: str,
        output_file: Path,
        log_file: Path,
        timeout: float | None = None,
        continuation_file: Path | None = None,
        append_log: bool = False,
    ) -> tuple[bool, str]:
        try:
            handle = await self.spawn(
                worktree,
                prompt,
                output_file,
                log_file,
                continuation_file=continuation_file,
                append_log=append_log,
            )
        except WorkerProcessError as exc:
            self._emit({"event": "worker_spawn_failed", "error": str(exc)})
            return False, str(exc)

        try:
            await handle.wait_for_exit(timeout)
        except WorkerTimeoutError as exc:
            await self._abandon(handle)
            self._emit({"event": "worker_timeout", "timeout_seconds": timeout})
            return False, str(exc)
        except asyncio.CancelledError:
            handle.kill()
            raise

        try:
            stdout_text, stderr_text = await handle.output()
        except (OSError, TimeoutError) as exc:
            self._emit({"event": "worker_output_failed", "error": str(exc)})
            return False, f"Failed to collect output from {self.binary}: {exc}"
        full_output = stdout_text + stderr_text
        return_code = handle.process.returncode
        self._emit({"event": "worker_cli_exit", "exit_code": return_code})
        if return_code != 0:
            return False, full_output or "Unknown error"

        parsed = self._safe_parse(stdout_text or full_output)
        try:
            if write_continuation_id(continuation_file, parsed.continuation_id):
                self._emit({"event": "worker_continuation_saved"})
        except OSError as exc:
            self._emit({"event": "worker_continuation_write_failed", "error": str(exc)})

        return True, self._resolve_result(output_file, parsed.text)

    async def _abandon(self, handle: WorkerHandle) -> None:
        handle.kill()
        try:
            await asyncio.wait_for(handle.wait(), DRAIN_TIMEOUT_SECONDS)
            await asyncio.wait_for(handle.output_task, DRAIN_TIMEOUT_SECONDS)
        except (OSError, TimeoutError) as exc:
            self._emit({"event": "worker_drain_failed", "error": str(exc) or type(exc).__name__})

    def _safe_parse(self, raw: str) -> ParsedOutput:
        try:
            return self.parse_output(raw)
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            self._emit({"event": "worker_output_parse_fallback", "error": str(exc)})
            return ParsedOutput(text=raw)

    def _resolve_result(self, output_file: Path, live_text: str) -> str:
        if self.prefers_live_text() and live_text.strip():
            try:
                output_file.write_text(live_text, encoding="utf-8")
            except OSError as exc:
                self._emit({"event": "worker_output_write_failed", "error": str(exc)})
            return live_text

        try:
            if not output_file.exists() or output_file.stat().st_size == 0:
                output_file.write_text(live_text, encoding="utf-8")
                return live_text
            return output_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return live_text

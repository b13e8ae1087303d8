from __future__ import annotations

from plancouncil.backends.base import (
    TIMEOUT_MESSAGE,
    ParsedOutput,
    WorkerAdapter,
    WorkerEventHook,
    WorkerExecutionError,
    WorkerHandle,
    WorkerProcessError,
    WorkerTimeoutError,
)
from plancouncil.backends.claude import ClaudeCodeAdapter
from plancouncil.backends.codex import CodexCLIAdapter
from plancouncil.config import ConfigError, WorkerConfig

ADAPTERS: dict[str, type[WorkerAdapter]] = {
    ClaudeCodeAdapter.family: ClaudeCodeAdapter,
    CodexCLIAdapter.family: CodexCLIAdapter,
}


def build_adapter(
    config: WorkerConfig,
    event_hook: WorkerEventHook | None = None,
) -> WorkerAdapter:
    adapter_cls = ADAPTERS.get(config.type)
    if adapter_cls is None:
        raise ConfigError(f"Unsupported worker type for {config.id}: {config.type}")
    return adapter_cls(config, event_hook=event_hook)


__all__ = [
    "ADAPTERS",
    "TIMEOUT_MESSAGE",
    "ClaudeCodeAdapter",
    "CodexCLIAdapter",
    "ParsedOutput",
    "WorkerAdapter",
    "WorkerEventHook",
    "WorkerExecutionError",
    "WorkerHandle",
    "WorkerProcessError",
    "WorkerTimeoutError",
    "build_adapter",
]

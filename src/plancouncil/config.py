from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

import yaml

WorkerFamily = Literal["claude", "codex"]

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("plancouncil.yaml", "plancouncil.yml")
DEFAULT_CLAUDE_ALLOWED_TOOLS = [
    "Read",
    "Glob",
    "Grep",
    "Write",
    "Edit",
    "WebSearch",
    "WebFetch",
]
CODEX_REASONING_EFFORTS = ("none", "minimal", "low", "medium", "high", "xhigh")


class ConfigError(ValueError):
    """Raised when a planner configuration is malformed."""


@dataclass(slots=True)
class ClaudeOptions:
    allowed_tools: list[str] | None = None
    add_dir: list[str] | None = None

    def merged_over(self, base: ClaudeOptions | None) -> ClaudeOptions:
        if base is None:
            return ClaudeOptions(
                allowed_tools=_copy_list(self.allowed_tools),
                add_dir=_copy_list(self.add_dir),
            )
        allowed_tools = self.allowed_tools if self.allowed_tools is not None else base.allowed_tools
        add_dir = self.add_dir if self.add_dir is not None else base.add_dir
        return ClaudeOptions(allowed_tools=_copy_list(allowed_tools), add_dir=_copy_list(add_dir))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.allowed_tools:
            data["allowed_tools"] = list(self.allowed_tools)
        if self.add_dir:
            data["add_dir"] = list(self.add_dir)
        return data


@dataclass(slots=True)
class CodexOptions:
    full_auto: bool | None = None
    sandbox: str | None = None
    approval_policy: str | None = None
    dangerously_bypass: bool | None = None
    add_dir: list[str] | None = None
    search: bool | None = None
    config: dict[str, Any] | None = None
    mcp: dict[str, Any] | None = None

    def merged_over(self, base: CodexOptions | None) -> CodexOptions:
        base = base or CodexOptions()

        def pick(name: str) -> Any:
            value = getattr(self, name)
            return value if value is not None else getattr(base, name)

        config = pick("config")
        mcp = pick("mcp")
        return CodexOptions(
            full_auto=pick("full_auto"),
            sandbox=pick("sandbox"),
            approval_policy=pick("approval_policy"),
            dangerously_bypass=pick("dangerously_bypass"),
            add_dir=_copy_list(pick("add_dir")),
            search=pick("search"),
            config=dict(config) if config is not None else None,
            mcp=dict(mcp) if mcp is not None else None,
        )

    def passthrough(self, name: str = "codex") -> dict[str, Any]:
        """Arbitrary codex configuration, with ``mcp`` folded in."""
        data: dict[str, Any] = dict(self.config or {})
        if self.mcp is not None:
            if "mcp" in data:
                raise ConfigError(f"{name}.mcp conflicts with {name}.config.mcp")
            data["mcp"] = dict(self.mcp)
        return data

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.full_auto is not None:
            data["full_auto"] = self.full_auto
        if self.sandbox:
            data["sandbox"] = self.sandbox
        if self.approval_policy:
            data["approval_policy"] = self.approval_policy
        if self.dangerously_bypass is not None:
            data["dangerously_bypass"] = self.dangerously_bypass
        if self.add_dir:
            data["add_dir"] = list(self.add_dir)
        if self.search is not None:
            data["search"] = self.search
        if self.config:
            data["config"] = dict(self.config)
        if self.mcp:
            data["mcp"] = dict(self.mcp)
        return data


@dataclass(slots=True)
class WorkerConfig:
    id: str
    type: WorkerFamily
    model: str
    thinking: str | None = None
    claude: ClaudeOptions | None = None
    codex: CodexOptions | None = None
    enabled: bool = True
    timeout: float | None = None
    binary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "type": self.type, "model": self.model}
        if self.thinking:
            data["thinking"] = self.thinking
        if self.claude is not None and self.claude.to_dict():
            data["claude"] = self.claude.to_dict()
        if self.codex is not None and self.codex.to_dict():
            data["codex"] = self.codex.to_dict()
        data["enabled"] = self.enabled
        if self.timeout is not None:
            data["timeout"] = self.timeout
        if self.binary:
            data["binary"] = self.binary
        return data


def _default_claude_options() -> ClaudeOptions:
    return ClaudeOptions(allowed_tools=list(DEFAULT_CLAUDE_ALLOWED_TOOLS))


def _default_codex_options() -> CodexOptions:
    return CodexOptions(full_auto=True, search=True)


def _default_agents() -> list[WorkerConfig]:
    return [
        WorkerConfig(
            id="opus",
            type="claude",
            model="opus",
            thinking="ultrathink",
            claude=_default_claude_options(),
        ),
        WorkerConfig(
            id="codex",
            type="codex",
            model="gpt-5.2-codex",
            thinking="xhigh",
            codex=_default_codex_options(),
        ),
    ]


def _default_synthesizer() -> WorkerConfig:
    return WorkerConfig(
        id="synthesizer",
        type="claude",
        model="opus",
        thinking="ultrathink",
        claude=_default_claude_options(),
    )


@dataclass(slots=True)
class PlannerConfig:
    agents: list[WorkerConfig] = field(default_factory=_default_agents)
    synthesizer: WorkerConfig = field(default_factory=_default_synthesizer)
    timeout: float | None = None

    @classmethod
    def default(cls) -> PlannerConfig:
        return cls()

    @property
    def enabled_agents(self) -> list[WorkerConfig]:
        return [agent for agent in self.agents if agent.enabled]

    @classmethod
    def from_dict(cls, data: Any) -> PlannerConfig:
        if not isinstance(data, dict):
            raise ConfigError("config must be a mapping")

        claude_defaults = _parse_claude(data["claude"], "claude") if "claude" in data else None
        codex_defaults = _parse_codex(data["codex"], "codex") if "codex" in data else None
        family_defaults = {
            "claude": (claude_defaults or ClaudeOptions()).merged_over(_default_claude_options()),
            "codex": (codex_defaults or CodexOptions()).merged_over(_default_codex_options()),
        }

        if "agents" in data:
            agents = _parse_agents(data["agents"], family_defaults)
        else:
            agents = [
                _apply_family_defaults(
                    replace(agent, claude=None, codex=None), family_defaults, f"agents[{index}]"
                )
                for index, agent in enumerate(_default_agents())
            ]

        if "synthesizer" in data:
            synthesizer = _parse_worker(data["synthesizer"], "synthesizer", family_defaults)
        else:
            synthesizer = _apply_family_defaults(
                replace(_default_synthesizer(), claude=None), family_defaults, "synthesizer"
            )

        return cls(
            agents=agents,
            synthesizer=synthesizer,
            timeout=_optional_seconds(data.get("timeout"), "timeout"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "agents": [agent.to_dict() for agent in self.agents],
            "synthesizer": self.synthesizer.to_dict(),
        }
        if self.timeout is not None:
            data["timeout"] = self.timeout
        return data


def _copy_list(values: list[str] | None) -> list[str] | None:
    return list(values) if values is not None else None


def _require_string(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def _optional_string(value: Any, name: str) -> str | None:
    if value is None:
        return None
    return _require_string(value, name)


def _optional_bool(value: Any, name: str) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ConfigError(f"{name} must be a boolean")
    return value


def _optional_seconds(value: Any, name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number of seconds")
    return float(value)


def _string_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, list):
        raise ConfigError(f"{name} must be a list")
    if not value:
        raise ConfigError(f"{name} must include at least one entry")
    return [_require_string(entry, f"{name}[{index}]") for index, entry in enumerate(value)]


def _optional_mapping(value: Any, name: str) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")
    return dict(value)


def _first_present(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _parse_claude(value: Any, name: str) -> ClaudeOptions:
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")
    allowed_tools = _first_present(value, "allowed_tools", "allowedTools")
    add_dir = _first_present(value, "add_dir", "addDir")
    return ClaudeOptions(
        allowed_tools=(
            None if allowed_tools is None else _string_list(allowed_tools, f"{name}.allowed_tools")
        ),
        add_dir=None if add_dir is None else _string_list(add_dir, f"{name}.add_dir"),
    )


def _parse_codex(value: Any, name: str) -> CodexOptions:
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")
    config = _optional_mapping(value.get("config"), f"{name}.config")
    mcp = _optional_mapping(value.get("mcp"), f"{name}.mcp")
    if config is not None and "mcp" in config and mcp is not None:
        raise ConfigError(f"{name}.mcp conflicts with {name}.config.mcp")
    add_dir = _first_present(value, "add_dir", "addDir")
    return CodexOptions(
        full_auto=_optional_bool(
            _first_present(value, "full_auto", "fullAuto"), f"{name}.full_auto"
        ),
        sandbox=_optional_string(value.get("sandbox"), f"{name}.sandbox"),
        approval_policy=_optional_string(
            _first_present(value, "approval_policy", "ask_for_approval", "approvalPolicy"),
            f"{name}.approval_policy",
        ),
        dangerously_bypass=_optional_bool(
            _first_present(
                value,
                "dangerously_bypass",
                "dangerously_bypass_approvals_and_sandbox",
                "dangerouslyBypass",
            ),
            f"{name}.dangerously_bypass",
        ),
        add_dir=None if add_dir is None else _string_list(add_dir, f"{name}.add_dir"),
        search=_optional_bool(_first_present(value, "search", "web_search"), f"{name}.search"),
        config=config,
        mcp=mcp,
    )


def _normalize_codex_thinking(value: str | None, name: str) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if normalized == "xmax":
        logger.warning(f'{name} "xmax" is deprecated; using "xhigh" instead')
        return "xhigh"
    if normalized not in CODEX_REASONING_EFFORTS:
        raise ConfigError(f"{name} must be one of {', '.join(CODEX_REASONING_EFFORTS)}")
    return normalized


def _apply_family_defaults(
    worker: WorkerConfig, family_defaults: dict[str, Any], name: str
) -> WorkerConfig:
    if worker.type == "claude":
        worker.claude = (worker.claude or ClaudeOptions()).merged_over(family_defaults["claude"])
    elif worker.type == "codex":
        worker.codex = (worker.codex or CodexOptions()).merged_over(family_defaults["codex"])
        # The merge can pair a top-level mcp with a worker-level config.mcp.
        worker.codex.passthrough(f"{name}.codex")
    return worker


def _parse_worker(value: Any, name: str, family_defaults: dict[str, Any]) -> WorkerConfig:
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")
    family = _require_string(value.get("type"), f"{name}.type")
    if family not in ("claude", "codex"):
        raise ConfigError(f"{name}.type must be one of claude, codex")

    thinking = _optional_string(value.get("thinking"), f"{name}.thinking")
    claude = _parse_claude(value["claude"], f"{name}.claude") if "claude" in value else None
    codex = _parse_codex(value["codex"], f"{name}.codex") if "codex" in value else None
    if family == "claude" and codex is not None:
        raise ConfigError(f"{name}.codex is not valid for claude agents")
    if family == "codex" and claude is not None:
        raise ConfigError(f"{name}.claude is not valid for codex agents")
    if family == "codex":
        thinking = _normalize_codex_thinking(thinking, f"{name}.thinking")

    enabled = _optional_bool(value.get("enabled"), f"{name}.enabled")
    worker = WorkerConfig(
        id=_require_string(value.get("id"), f"{name}.id"),
        type=family,  # type: ignore[arg-type]
        model=_require_string(value.get("model"), f"{name}.model"),
        thinking=thinking,
        claude=claude,
        codex=codex,
        enabled=True if enabled is None else enabled,
        timeout=_optional_seconds(value.get("timeout"), f"{name}.timeout"),
        binary=_optional_string(value.get("binary"), f"{name}.binary"),
    )
    return _apply_family_defaults(worker, family_defaults, name)


def _parse_agents(value: Any, family_defaults: dict[str, Any]) -> list[WorkerConfig]:
    if not isinstance(value, list):
        raise ConfigError("agents must be a list")
    if not value:
        raise ConfigError("agents must include at least one entry")
    agents = [
        _parse_worker(entry, f"agents[{index}]", family_defaults)
        for index, entry in enumerate(value)
    ]
    seen: set[str] = set()
    for agent in agents:
        if agent.id in seen:
            raise ConfigError(f"agents contains duplicate id: {agent.id}")
        seen.add(agent.id)
    if not any(agent.enabled for agent in agents):
        raise ConfigError("agents must include at least one enabled agent")
    return agents


def config_from_data(data: Any, source: str) -> PlannerConfig:
    if data is None:
        raise ConfigError(f"Invalid config {source}: config is empty")
    try:
        return PlannerConfig.from_dict(data)
    except ConfigError as exc:
        raise ConfigError(f"Invalid config {source}: {exc}") from exc


def dumps_yaml(config: PlannerConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True)


def load_config(path: Path) -> PlannerConfig:
    if not path.exists():
        return PlannerConfig.default()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid config {path}: {exc}") from exc
    return config_from_data(data, str(path))


def resolve_config_path(planner_dir: Path) -> Path | None:
    for candidate in CONFIG_FILENAMES:
        path = planner_dir / candidate
        if path.exists():
            return path
    return None


def load_config_from_dir(planner_dir: Path) -> PlannerConfig:
    config_path = resolve_config_path(planner_dir)
    if config_path is None:
        return PlannerConfig.default()
    return load_config(config_path)


def save_config(path: Path, config: PlannerConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_yaml(config), encoding="utf-8")

from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from foreman.permissions import PermissionPolicy

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
CONFIG_FILENAME = "foreman.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    workspace_root: str = "."
    state_dir: str = ".foreman"
    global_state_dir: str = "~/.foreman"


@dataclass(slots=True)
class PlannerConfig:
    command: str = "claude"
    args: list[str] = field(
        default_factory=lambda: ["-p", "{prompt}", "--output-format", "stream-json"]
    )
    model: str = ""
    max_parse_attempts: int = 3
    timeout_seconds: float = 120.0
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class AgentConfig:
    max_retries: int = 1
    correction_timeout_seconds: float = 180.0
    require_final_response: bool = True


@dataclass(slots=True)
class PermissionsConfig:
    shell_execution: bool = True
    filesystem_write: bool = True
    filesystem_read: bool = True
    internet_access: bool = False

    def to_policy(self) -> PermissionPolicy:
        return PermissionPolicy(
            shell_execution=self.shell_execution,
            filesystem_write=self.filesystem_write,
            filesystem_read=self.filesystem_read,
            internet_access=self.internet_access,
        )


@dataclass(slots=True)
class CapabilitiesConfig:
    enabled: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "WARNING"
    json: bool = False


@dataclass(slots=True)
class ForemanConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)
    capabilities: CapabilitiesConfig = field(default_factory=CapabilitiesConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            planner=PlannerConfig(**data.get("planner", {})),
            agent=AgentConfig(**data.get("agent", {})),
            permissions=PermissionsConfig(**data.get("permissions", {})),
            capabilities=CapabilitiesConfig(**data.get("capabilities", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def resolve_path(self, base: Path, raw: str) -> Path:
        path = Path(raw).expanduser()
        return path if path.is_absolute() else (base / path)


SECTION_ORDER = ["project", "planner", "agent", "permissions", "capabilities", "logging"]


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")

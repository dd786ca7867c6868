import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from counselors.util import safe_write_file

logger = logging.getLogger(__name__)

CONFIG_ENV_KEY = "COUNSELORS_CONFIG"
PROJECT_CONFIG_NAME = ".counselors.json"
CONFIG_FILE_MODE = 0o600

DEFAULT_TIMEOUT_SEC = 540
DEFAULT_OUTPUT_DIR = "./agents/counselors"
DEFAULT_READ_ONLY = "bestEffort"
DEFAULT_MAX_CONTEXT_KB = 50
DEFAULT_MAX_PARALLEL = 4

ReadOnlyLevelName = Literal["enforced", "bestEffort", "none"]


class ConfigError(Exception):
    pass


def default_config_dir() -> Path:
    xdg = (os.environ.get("XDG_CONFIG_HOME") or "").strip()
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "counselors"


def config_file_path() -> Path:
    override = (os.environ.get(CONFIG_ENV_KEY) or "").strip()
    if override:
        return Path(override).expanduser()
    return default_config_dir() / "config.json"


class ReadOnlySpec(BaseModel):
    # None defers to the adapter family (custom tools then count as "none").
    level: Optional[ReadOnlyLevelName] = None
    flags: List[str] = Field(default_factory=list)


class ToolConfig(BaseModel):
    binary: str
    adapter: Optional[str] = None
    read_only: ReadOnlySpec = Field(default_factory=ReadOnlySpec)
    extra_flags: List[str] = Field(default_factory=list)
    timeout: Optional[int] = Field(default=None, gt=0)
    stdin: bool = False
    custom: bool = False


class Defaults(BaseModel):
    timeout: int = Field(default=DEFAULT_TIMEOUT_SEC, gt=0)
    output_dir: str = DEFAULT_OUTPUT_DIR
    read_only: ReadOnlyLevelName = DEFAULT_READ_ONLY
    max_context_kb: int = Field(default=DEFAULT_MAX_CONTEXT_KB, gt=0)
    max_parallel: int = Field(default=DEFAULT_MAX_PARALLEL, ge=1)


class Config(BaseModel):
    version: Literal[1] = 1
    defaults: Defaults = Field(default_factory=Defaults)
    tools: Dict[str, ToolConfig] = Field(default_factory=dict)


class ProjectDefaults(BaseModel):
    timeout: Optional[int] = Field(default=None, gt=0)
    output_dir: Optional[str] = None
    read_only: Optional[ReadOnlyLevelName] = None
    max_context_kb: Optional[int] = Field(default=None, gt=0)
    max_parallel: Optional[int] = Field(default=None, ge=1)


class ProjectConfig(BaseModel):
    """Project-level overrides. Only defaults; a repository can never add tools."""

    model_config = ConfigDict(extra="ignore")

    defaults: ProjectDefaults = Field(default_factory=ProjectDefaults)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc


def load_config(path: Optional[Path] = None) -> Config:
    config_path = Path(path) if path is not None else config_file_path()
    if not config_path.exists():
        return Config()
    raw = _read_json(config_path)
    try:
        return Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {config_path}: {exc}") from exc


def load_project_config(cwd: Path) -> Optional[ProjectConfig]:
    path = Path(cwd) / PROJECT_CONFIG_NAME
    if not path.exists():
        return None
    raw = _read_json(path)
    if isinstance(raw, dict) and "tools" in raw:
        logger.warning("Ignoring 'tools' in %s: project config may only override defaults.", path)
    try:
        return ProjectConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid project config in {path}: {exc}") from exc


def merge_configs(
    global_config: Config,
    project: Optional[ProjectConfig] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Config:
    defaults = global_config.defaults.model_copy()
    if project is not None:
        defaults = defaults.model_copy(update=project.defaults.model_dump(exclude_none=True))
    if overrides:
        cleaned = {k: v for k, v in overrides.items() if v is not None}
        defaults = Defaults.model_validate({**defaults.model_dump(), **cleaned})
    return Config(version=1, defaults=defaults, tools=dict(global_config.tools))


def save_config(config: Config, path: Optional[Path] = None) -> Path:
    target = Path(path) if path is not None else config_file_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = config.model_dump(mode="json", exclude_none=True)
    safe_write_file(target, json.dumps(payload, indent=2) + "\n")
    os.chmod(target, CONFIG_FILE_MODE)
    return target


def add_tool(config: Config, tool_id: str, tool: ToolConfig) -> Config:
    return config.model_copy(update={"tools": {**config.tools, tool_id: tool}})


def remove_tool(config: Config, tool_id: str) -> Config:
    tools = dict(config.tools)
    tools.pop(tool_id, None)
    return config.model_copy(update={"tools": tools})


def rename_tool(config: Config, old_id: str, new_id: str) -> Config:
    if old_id not in config.tools:
        raise ConfigError(f'Tool "{old_id}" is not configured.')
    tools = {}
    for key, value in config.tools.items():
        tools[new_id if key == old_id else key] = value
    return config.model_copy(update={"tools": tools})


def configured_tool_ids(config: Config) -> List[str]:
    return list(config.tools)

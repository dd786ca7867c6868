from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from counselors.adapters.amp import amp_adapter
from counselors.adapters.base import ToolAdapter
from counselors.adapters.claude import claude_adapter
from counselors.adapters.codex import codex_adapter
from counselors.adapters.custom import custom_adapter
from counselors.adapters.gemini import gemini_adapter
from counselors.execution.policy import weaker_level

if TYPE_CHECKING:
    from counselors.config import ToolConfig


class UnknownToolError(KeyError):
    pass


BUILTIN_ADAPTERS: Dict[str, Callable[[], ToolAdapter]] = {
    "claude": claude_adapter,
    "codex": codex_adapter,
    "gemini": gemini_adapter,
    "amp": amp_adapter,
}


def is_builtin_tool(tool_id: str) -> bool:
    return tool_id in BUILTIN_ADAPTERS


def builtin_tool_ids() -> List[str]:
    return list(BUILTIN_ADAPTERS)


def get_adapter(tool_id: str, config: Optional["ToolConfig"] = None) -> ToolAdapter:
    factory = BUILTIN_ADAPTERS.get(tool_id)
    if factory is not None:
        return factory()
    if config is not None:
        return custom_adapter(tool_id, config)
    raise UnknownToolError(f'Unknown tool: {tool_id}. Add it to the config first.')


def resolve_adapter(tool_id: str, config: "ToolConfig") -> ToolAdapter:
    """Pick the family for a configured id.

    Compound ids such as ``codex-5.3-high`` name their family in
    ``config.adapter``; anything else that is not built in is custom.
    """
    family = config.adapter or tool_id
    if is_builtin_tool(family) and not config.custom:
        return BUILTIN_ADAPTERS[family]()
    return custom_adapter(tool_id, config)


def effective_read_only_level(adapter: ToolAdapter, config: "ToolConfig") -> str:
    # A config entry can lower a tool's guarantee but never raise a built-in's.
    derived = adapter.effective_read_only_level(config)
    if config.read_only.level is None:
        return derived
    return weaker_level(derived, config.read_only.level)


__all__ = [
    "BUILTIN_ADAPTERS",
    "ToolAdapter",
    "UnknownToolError",
    "builtin_tool_ids",
    "effective_read_only_level",
    "get_adapter",
    "is_builtin_tool",
    "resolve_adapter",
]

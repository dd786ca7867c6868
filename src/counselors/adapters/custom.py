from __future__ import annotations

from typing import TYPE_CHECKING

from counselors.adapters.base import ToolAdapter, prompt_file_instruction
from counselors.domain.contracts import Invocation, RunRequest
from counselors.execution.policy import normalize_level, should_attach_flags

if TYPE_CHECKING:
    from counselors.config import ToolConfig


def custom_adapter(tool_id: str, config: "ToolConfig") -> ToolAdapter:
    """Adapter for a user-defined tool, driven entirely by its config record."""
    binary = (config.binary or "").strip()
    if not binary:
        raise ValueError(f'Custom tool "{tool_id}" has no binary configured.')
    read_only_flags = tuple(config.read_only.flags)
    use_stdin = bool(config.stdin)

    def build(req: RunRequest) -> Invocation:
        args = list(req.extra_flags)
        if should_attach_flags(req.read_only_policy):
            args.extend(read_only_flags)
        cmd = req.binary or binary
        if use_stdin:
            return Invocation(cmd=cmd, args=tuple(args), cwd=req.cwd, stdin=req.prompt)
        args.append(prompt_file_instruction(req.prompt_file_path))
        return Invocation(cmd=cmd, args=tuple(args), cwd=req.cwd)

    return ToolAdapter(
        id=tool_id,
        display_name=tool_id,
        command=binary,
        read_only_level=normalize_level(config.read_only.level),
        build=build,
    )

from counselors.adapters.base import ToolAdapter, prompt_file_instruction
from counselors.domain.contracts import Invocation, RunRequest
from counselors.execution.policy import READ_ONLY_ENFORCED, should_attach_flags

CLAUDE_COMMAND = "claude"
CLAUDE_READ_ONLY_TOOLS = "Read,Glob,Grep,WebFetch,WebSearch"
CLAUDE_READ_ONLY_FLAGS = (
    "--tools",
    CLAUDE_READ_ONLY_TOOLS,
    "--allowedTools",
    CLAUDE_READ_ONLY_TOOLS,
    "--strict-mcp-config",
)


def build_claude_invocation(req: RunRequest) -> Invocation:
    args = ["-p", "--output-format", "text"]
    args.extend(req.extra_flags)
    if should_attach_flags(req.read_only_policy):
        args.extend(CLAUDE_READ_ONLY_FLAGS)
    args.append(prompt_file_instruction(req.prompt_file_path))
    return Invocation(cmd=req.binary or CLAUDE_COMMAND, args=tuple(args), cwd=req.cwd)


def claude_adapter() -> ToolAdapter:
    return ToolAdapter(
        id="claude",
        display_name="Claude Code",
        command=CLAUDE_COMMAND,
        read_only_level=READ_ONLY_ENFORCED,
        build=build_claude_invocation,
        install_url="https://docs.anthropic.com/en/docs/claude-code",
    )

from counselors.adapters.base import ToolAdapter, prompt_file_instruction
from counselors.domain.contracts import Invocation, RunRequest
from counselors.execution.policy import READ_ONLY_ENFORCED, should_attach_flags

CODEX_COMMAND = "codex"
CODEX_READ_ONLY_FLAGS = ("--sandbox", "read-only")


def build_codex_invocation(req: RunRequest) -> Invocation:
    args = ["exec"]
    if should_attach_flags(req.read_only_policy):
        args.extend(CODEX_READ_ONLY_FLAGS)
    args.extend(["-c", "web_search=live", "--skip-git-repo-check"])
    args.extend(req.extra_flags)
    args.append(prompt_file_instruction(req.prompt_file_path))
    return Invocation(cmd=req.binary or CODEX_COMMAND, args=tuple(args), cwd=req.cwd)


def codex_adapter() -> ToolAdapter:
    return ToolAdapter(
        id="codex",
        display_name="OpenAI Codex",
        command=CODEX_COMMAND,
        read_only_level=READ_ONLY_ENFORCED,
        build=build_codex_invocation,
        install_url="https://github.com/openai/codex",
    )

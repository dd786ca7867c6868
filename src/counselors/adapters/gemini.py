from counselors.adapters.base import ToolAdapter
from counselors.domain.contracts import Invocation, RunRequest
from counselors.execution.policy import READ_ONLY_BEST_EFFORT, should_attach_flags

GEMINI_COMMAND = "gemini"
# Each allowed tool is its own argv token; gemini does not split comma lists here.
GEMINI_READ_ONLY_FLAGS = (
    "--extensions",
    "",
    "--allowed-tools",
    "read_file",
    "list_directory",
    "search_file_content",
    "glob",
    "google_web_search",
    "codebase_investigator",
)


def build_gemini_invocation(req: RunRequest) -> Invocation:
    # "-p ''" selects headless mode; the prompt itself arrives on stdin.
    args = ["-p", ""]
    args.extend(req.extra_flags)
    if should_attach_flags(req.read_only_policy):
        args.extend(GEMINI_READ_ONLY_FLAGS)
    args.extend(["--output-format", "text"])
    return Invocation(
        cmd=req.binary or GEMINI_COMMAND,
        args=tuple(args),
        cwd=req.cwd,
        stdin=req.prompt,
    )


def gemini_adapter() -> ToolAdapter:
    return ToolAdapter(
        id="gemini",
        display_name="Gemini CLI",
        command=GEMINI_COMMAND,
        read_only_level=READ_ONLY_BEST_EFFORT,
        build=build_gemini_invocation,
        install_url="https://github.com/google-gemini/gemini-cli",
    )

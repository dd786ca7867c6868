from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from counselors.adapters.base import ToolAdapter
from counselors.config import default_config_dir
from counselors.domain.contracts import Invocation, RunRequest
from counselors.execution.policy import (
    READ_ONLY_BEST_EFFORT,
    READ_ONLY_ENFORCED,
    should_attach_flags,
)

if TYPE_CHECKING:
    from counselors.config import ToolConfig

AMP_COMMAND = "amp"
AMP_SETTINGS_NAME = "amp-readonly-settings.json"
AMP_DEEP_SETTINGS_NAME = "amp-deep-settings.json"
ASSETS_DIR = Path(__file__).resolve().parent / "assets"

AMP_DEEP_SAFETY_PROMPT = "\n\nMANDATORY: Do not change any files. You are in read-only mode."
AMP_ORACLE_SUFFIX = (
    "\n\nUse the oracle tool to provide deeper reasoning and analysis on the most "
    "complex or critical aspects of this review."
)


def is_deep_mode(extra_flags: Sequence[str]) -> bool:
    """True when the flags select the ``deep`` model via ``-m deep``.

    Deep mode reads files through a write-capable mechanism, so it cannot be
    fully restricted by the settings file.
    """
    flags = list(extra_flags or ())
    for idx, token in enumerate(flags):
        if token == "deep" and idx > 0 and flags[idx - 1] == "-m":
            return True
    return False


def settings_file(deep: bool) -> Path:
    name = AMP_DEEP_SETTINGS_NAME if deep else AMP_SETTINGS_NAME
    user_copy = default_config_dir() / name
    if user_copy.exists():
        return user_copy
    return ASSETS_DIR / name


def build_amp_invocation(req: RunRequest) -> Invocation:
    deep = is_deep_mode(req.extra_flags)
    args = ["-x"]
    args.extend(req.extra_flags)
    if should_attach_flags(req.read_only_policy):
        args.extend(["--settings-file", str(settings_file(deep))])

    stdin = req.prompt
    if deep:
        stdin += AMP_DEEP_SAFETY_PROMPT
    stdin += AMP_ORACLE_SUFFIX
    return Invocation(cmd=req.binary or AMP_COMMAND, args=tuple(args), cwd=req.cwd, stdin=stdin)


def amp_read_only_level(config: "ToolConfig") -> str:
    if is_deep_mode(config.extra_flags):
        return READ_ONLY_BEST_EFFORT
    return READ_ONLY_ENFORCED


def amp_adapter() -> ToolAdapter:
    return ToolAdapter(
        id="amp",
        display_name="Amp CLI",
        command=AMP_COMMAND,
        read_only_level=READ_ONLY_ENFORCED,
        build=build_amp_invocation,
        derive_level=amp_read_only_level,
        install_url="https://ampcode.com",
        tracks_usage=True,
    )

"""Shared shape for tool-family adapters.

An adapter is a plain record of behaviour: how to turn a ``RunRequest`` into an
``Invocation``, how to read an ``ExecResult`` back, and which read-only level the
tool can honour for a given configuration. Families differ only in the functions
they plug in; there is no adapter class hierarchy.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from counselors.domain.contracts import (
    REPORT_STATUS_ERROR,
    REPORT_STATUS_SUCCESS,
    REPORT_STATUS_TIMEOUT,
    ExecResult,
    Invocation,
    RunRequest,
)
from counselors.util import strip_control_chars, word_count

if TYPE_CHECKING:
    from counselors.config import ToolConfig


PROMPT_FILE_INSTRUCTION = "Read the file at {path} and follow the instructions within it."

BuildFn = Callable[[RunRequest], Invocation]
ParseFn = Callable[[ExecResult], Dict[str, Any]]
LevelFn = Callable[["ToolConfig"], str]


def prompt_file_instruction(prompt_file_path: str) -> str:
    # Control characters would let a crafted path start a new line of instructions.
    return PROMPT_FILE_INSTRUCTION.format(path=strip_control_chars(prompt_file_path))


def derive_status(result: ExecResult) -> str:
    if result.timed_out:
        return REPORT_STATUS_TIMEOUT
    if result.exit_code == 0:
        return REPORT_STATUS_SUCCESS
    return REPORT_STATUS_ERROR


def default_parse_result(result: ExecResult) -> Dict[str, Any]:
    return {
        "status": derive_status(result),
        "exit_code": result.exit_code,
        "duration_ms": result.duration_ms,
        "word_count": word_count(result.stdout),
    }


@dataclass(frozen=True)
class ToolAdapter:
    id: str
    display_name: str
    command: str
    read_only_level: str
    build: BuildFn
    parse: ParseFn = default_parse_result
    derive_level: Optional[LevelFn] = None
    install_url: str = ""
    # Vendor exposes a balance query that can be diffed around a run.
    tracks_usage: bool = False

    def build_invocation(self, req: RunRequest) -> Invocation:
        return self.build(req)

    def parse_result(self, result: ExecResult) -> Dict[str, Any]:
        fields = default_parse_result(result)
        fields.update(self.parse(result))
        fields["status"] = derive_status(result)
        return fields

    def effective_read_only_level(self, config: Optional["ToolConfig"] = None) -> str:
        if config is None or self.derive_level is None:
            return self.read_only_level
        return self.derive_level(config)

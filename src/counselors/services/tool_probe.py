from __future__ import annotations

import dataclasses
import os
import time
from typing import TYPE_CHECKING, Optional

from counselors.adapters.base import ToolAdapter
from counselors.domain.contracts import Executor, Invocation, RunRequest
from counselors.domain.runs import ProbeResult
from counselors.execution.executor import execute
from counselors.execution.policy import READ_ONLY_NONE

if TYPE_CHECKING:
    from counselors.config import ToolConfig

PROBE_PROMPT = "Reply with exactly: OK"
PROBE_EXPECTED = "OK"
PROBE_TIMEOUT_SEC = 30
PROBE_EXCERPT_CHARS = 500


def _strip_settings_file(args: tuple) -> tuple:
    kept = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if arg == "--settings-file":
            skip_next = True
            continue
        kept.append(arg)
    return tuple(kept)


def build_probe_invocation(adapter: ToolAdapter, tool_id: str, tool_config: "ToolConfig", cwd: Optional[str] = None) -> Invocation:
    """The tool's normal invocation with the prompt swapped for the probe sentence."""
    req = RunRequest(
        prompt=PROBE_PROMPT,
        prompt_file_path="",
        tool_id=tool_id,
        output_dir="",
        read_only_policy=READ_ONLY_NONE,
        timeout_sec=PROBE_TIMEOUT_SEC,
        cwd=cwd or os.getcwd(),
        binary=tool_config.binary,
        extra_flags=tuple(tool_config.extra_flags),
    )
    invocation = adapter.build_invocation(req)
    if invocation.stdin is not None:
        return dataclasses.replace(invocation, stdin=PROBE_PROMPT, args=_strip_settings_file(invocation.args))
    if not invocation.args:
        return dataclasses.replace(invocation, args=(PROBE_PROMPT,))
    return dataclasses.replace(invocation, args=(*invocation.args[:-1], PROBE_PROMPT))


async def probe_tool(
    adapter: ToolAdapter,
    tool_id: str,
    tool_config: "ToolConfig",
    executor: Executor = execute,
    timeout_sec: float = PROBE_TIMEOUT_SEC,
) -> ProbeResult:
    start = time.monotonic()
    invocation = build_probe_invocation(adapter, tool_id, tool_config)
    result = await executor(invocation, timeout_sec)
    passed = PROBE_EXPECTED in result.stdout
    error = None
    if not passed:
        error = result.stderr[:PROBE_EXCERPT_CHARS] or f'Output did not contain "{PROBE_EXPECTED}"'
    return ProbeResult(
        tool_id=tool_id,
        passed=passed,
        output=result.stdout[:PROBE_EXCERPT_CHARS],
        duration_ms=int((time.monotonic() - start) * 1000),
        error=error,
    )

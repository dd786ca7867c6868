from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from counselors.domain.contracts import REPORT_STATUS_ERROR, REPORT_STATUS_SUCCESS, REPORT_STATUS_TIMEOUT
from counselors.domain.runs import DryRunEntry, ProbeResult, RunManifest

_STATUS_ICONS = {
    REPORT_STATUS_SUCCESS: "✓",
    REPORT_STATUS_TIMEOUT: "⏱",
}
_FAIL_ICON = "✗"


def status_icon(status: str) -> str:
    return _STATUS_ICONS.get(status, _FAIL_ICON)


@dataclass(frozen=True)
class ToolListEntry:
    id: str
    binary: str
    read_only_level: str = ""
    args: Tuple[str, ...] = field(default_factory=tuple)


def _quote(arg: str) -> str:
    return shlex.quote(arg) if arg else "''"


def format_run_summary(manifest: RunManifest, output_dir: str = "") -> str:
    lines = ["", f"Run complete: {manifest.slug}", ""]
    for report in manifest.tools:
        icon = status_icon(report.status)
        lines.append(f"  {icon} {report.tool_id}: {report.word_count} words, {report.duration_ms / 1000:.1f}s")
        if report.cost is not None:
            lines.append(f"    Cost: ${report.cost.cost_usd:.2f} ({report.cost.source})")
        if report.status == REPORT_STATUS_ERROR and report.error:
            lines.append(f"    Error: {report.error}")
    lines.append("")
    lines.append(f"Reports saved to: {output_dir or 'output dir'}")
    lines.append("")
    return "\n".join(lines)


def format_dry_run(entries: Sequence[DryRunEntry]) -> str:
    lines = ["", "Dry run, would dispatch:", ""]
    for entry in entries:
        inv = entry.invocation
        lines.append(f"  {entry.tool_id}")
        lines.append(f"    $ {' '.join(_quote(a) for a in inv.argv())}")
        if inv.stdin is not None:
            lines.append(f"    (prompt on stdin, {len(inv.stdin)} chars)")
    lines.append("")
    return "\n".join(lines)


def format_tool_list(tools: Sequence[ToolListEntry], verbose: bool = False) -> str:
    if not tools:
        return "\nNo tools configured. Add one to the config file to get started.\n"
    lines: List[str] = ["", "Configured tools:", ""]
    for tool in tools:
        level = f" [{tool.read_only_level}]" if tool.read_only_level else ""
        if not verbose:
            lines.append(f"  {tool.id} ({tool.binary}){level}")
            continue
        lines.append(f"  {tool.id}{level}")
        # One flag per line keeps long model/effort flag lists readable.
        current = "   "
        for part in (tool.binary, *tool.args):
            token = _quote(part)
            if token.startswith("-") and current.strip():
                lines.append(current)
                current = f"    {token}"
            else:
                current = f"{current} {token}"
        if current.strip():
            lines.append(current)
    lines.append("")
    return "\n".join(lines)


def format_probe_results(results: Sequence[ProbeResult]) -> str:
    lines = ["", "Test results:", ""]
    for result in results:
        icon = "✓" if result.passed else _FAIL_ICON
        lines.append(f"  {icon} {result.tool_id} ({result.duration_ms}ms)")
        if not result.passed and result.error:
            lines.append(f"    Error: {result.error}")
    lines.append("")
    return "\n".join(lines)

"""Heuristic run summary written next to the tool outputs as ``summary.md``."""
import logging
import re
from pathlib import Path
from typing import List, Union

from counselors.domain.contracts import REPORT_STATUS_ERROR, REPORT_STATUS_SUCCESS, ToolReport
from counselors.domain.runs import RunManifest
from counselors.presentation.formatter import status_icon
from counselors.services.cost_tracking import COST_SOURCE_CREDITS
from counselors.util import sanitize_id

logger = logging.getLogger(__name__)

PROMPT_EXCERPT_CHARS = 100
MAX_HEADINGS = 10
_HEADING_RE = re.compile(r"^#{1,3}\s+(.+)")


def extract_headings(output_dir: Union[str, Path], report: ToolReport) -> List[str]:
    path = Path(output_dir) / f"{sanitize_id(report.tool_id)}.md"
    if not path.exists():
        return []
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("Cannot read %s for headings: %s", path, exc)
        return []
    headings: List[str] = []
    for line in content.splitlines():
        match = _HEADING_RE.match(line)
        if match:
            headings.append(match.group(1).strip())
            if len(headings) >= MAX_HEADINGS:
                break
    return headings


def synthesize(manifest: RunManifest, output_dir: Union[str, Path]) -> str:
    prompt = manifest.prompt
    excerpt = prompt[:PROMPT_EXCERPT_CHARS] + ("..." if len(prompt) > PROMPT_EXCERPT_CHARS else "")
    parts = [
        "# Run Summary",
        "",
        f"**Prompt:** {excerpt}",
        f"**Tools:** {', '.join(r.tool_id for r in manifest.tools)}",
        f"**Policy:** read-only={manifest.read_only_policy}",
        "",
        "## Results",
        "",
    ]

    for report in manifest.tools:
        icon = status_icon(report.status)
        parts.append(f"### {icon} {report.tool_id}")
        parts.append("")
        parts.append(f"- Status: {report.status}")
        parts.append(f"- Duration: {report.duration_ms / 1000:.1f}s")
        parts.append(f"- Word count: {report.word_count}")
        if report.cost is not None:
            parts.append(f"- Cost: ${report.cost.cost_usd:.2f} ({report.cost.source})")
        if report.status == REPORT_STATUS_ERROR and report.error:
            parts.append(f"- Error: {report.error}")
        if report.status == REPORT_STATUS_SUCCESS:
            headings = extract_headings(output_dir, report)
            if headings:
                parts.append("- Key sections:")
                parts.extend(f"  - {h}" for h in headings)
        parts.append("")

    costed = [r for r in manifest.tools if r.cost is not None]
    if costed:
        parts.extend(["## Cost Summary", "", "| Tool | Cost | Source | Remaining |", "|------|------|--------|-----------|"])
        for report in costed:
            cost = report.cost
            remaining = cost.credits_remaining_usd if cost.source == COST_SOURCE_CREDITS else cost.free_remaining_usd
            parts.append(f"| {report.tool_id} | ${cost.cost_usd:.2f} | {cost.source} | ${remaining:.2f} |")
        parts.append("")

    return "\n".join(parts)

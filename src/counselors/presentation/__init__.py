from counselors.presentation.formatter import (
    ToolListEntry,
    format_dry_run,
    format_probe_results,
    format_run_summary,
    format_tool_list,
    status_icon,
)

__all__ = [
    "ToolListEntry",
    "format_dry_run",
    "format_probe_results",
    "format_run_summary",
    "format_tool_list",
    "status_icon",
]

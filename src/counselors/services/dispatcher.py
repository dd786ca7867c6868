from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from counselors.adapters import effective_read_only_level, resolve_adapter
from counselors.adapters.base import ToolAdapter
from counselors.config import Config
from counselors.domain.contracts import (
    PROGRESS_COMPLETED,
    PROGRESS_STARTED,
    REPORT_STATUS_ERROR,
    ExecResult,
    Executor,
    ProgressCallback,
    ProgressEvent,
    RunRequest,
    ToolReport,
    UsageProbe,
)
from counselors.domain.runs import DryRunEntry
from counselors.execution.executor import execute
from counselors.execution.policy import READ_ONLY_ENFORCED, ReadOnlyPolicyResolver, normalize_level
from counselors.observability.structured_log import log_json
from counselors.services.cost_tracking import capture_amp_usage, cost_from_snapshots
from counselors.util import safe_write_file, sanitize_id

logger = logging.getLogger(__name__)

ERROR_EXCERPT_CHARS = 500
_REPORT_FIELDS = {f.name for f in dataclasses.fields(ToolReport)}


class DispatchError(Exception):
    pass


class NoEligibleToolsError(DispatchError):
    pass


@dataclass
class DispatchOptions:
    config: Config
    tool_ids: Sequence[str]
    prompt_file_path: str
    prompt_content: str
    output_dir: str
    read_only_policy: str
    cwd: str
    on_progress: Optional[ProgressCallback] = None
    executor: Executor = execute
    usage_probe: UsageProbe = capture_amp_usage


def filter_eligible_tools(config: Config, tool_ids: Sequence[str], read_only_policy: str) -> List[str]:
    """Drop unconfigured tools and, under ``enforced``, tools that cannot honour it.

    Every dropped tool is logged as a warning. Duplicate ids run once, and of
    several ids that map onto the same output filename only the first runs.
    """
    resolver = ReadOnlyPolicyResolver()
    eligible: List[str] = []
    file_owners: Dict[str, str] = {}
    for tool_id in tool_ids:
        if tool_id in eligible:
            continue
        tool_config = config.tools.get(tool_id)
        if tool_config is None:
            logger.warning('Tool "%s" not configured, skipping.', tool_id)
            continue
        safe_id = sanitize_id(tool_id)
        if safe_id in file_owners:
            logger.warning(
                'Skipping "%s": its output files would overwrite those of "%s".', tool_id, file_owners[safe_id]
            )
            continue
        try:
            adapter = resolve_adapter(tool_id, tool_config)
        except ValueError as exc:
            # Its run task reports the same error unless the policy needs a verified level.
            if normalize_level(read_only_policy) == READ_ONLY_ENFORCED:
                logger.warning('Skipping "%s": %s', tool_id, exc)
                continue
            file_owners[safe_id] = tool_id
            eligible.append(tool_id)
            continue
        level = effective_read_only_level(adapter, tool_config)
        decision = resolver.evaluate(read_only_policy, level)
        if not decision.eligible:
            logger.warning('Skipping "%s": %s', tool_id, decision.reason)
            continue
        file_owners[safe_id] = tool_id
        eligible.append(tool_id)
    return eligible


def _require_eligible(config: Config, tool_ids: Sequence[str], read_only_policy: str) -> List[str]:
    eligible = filter_eligible_tools(config, tool_ids, read_only_policy)
    if not eligible:
        raise NoEligibleToolsError("No eligible tools after read-only policy filtering.")
    return eligible


def _timeout_for(config: Config, tool_id: str) -> int:
    return config.tools[tool_id].timeout or config.defaults.timeout


def _build_request(
    config: Config,
    tool_id: str,
    prompt_content: str,
    prompt_file_path: str,
    output_dir: str,
    read_only_policy: str,
    cwd: str,
) -> RunRequest:
    tool_config = config.tools[tool_id]
    return RunRequest(
        prompt=prompt_content,
        prompt_file_path=prompt_file_path,
        tool_id=tool_id,
        output_dir=output_dir,
        read_only_policy=read_only_policy,
        timeout_sec=_timeout_for(config, tool_id),
        cwd=cwd,
        binary=tool_config.binary,
        extra_flags=tuple(tool_config.extra_flags),
    )


def build_dry_run(
    config: Config,
    tool_ids: Sequence[str],
    prompt_content: str,
    prompt_file_path: str,
    output_dir: str,
    read_only_policy: str,
    cwd: str,
) -> List[DryRunEntry]:
    """Invocations a real run would spawn. Touches neither processes nor the filesystem."""
    entries: List[DryRunEntry] = []
    for tool_id in _require_eligible(config, tool_ids, read_only_policy):
        adapter = resolve_adapter(tool_id, config.tools[tool_id])
        req = _build_request(
            config, tool_id, prompt_content, prompt_file_path, output_dir, read_only_policy, cwd
        )
        entries.append(DryRunEntry(tool_id=tool_id, invocation=adapter.build_invocation(req)))
    return entries


def _notify(callback: Optional[ProgressCallback], event: ProgressEvent) -> None:
    if callback is None:
        return
    try:
        callback(event)
    except Exception:
        logger.exception("Progress callback failed for %s (%s)", event.tool_id, event.event)


def _error_report(tool_id: str, exc: BaseException) -> ToolReport:
    return ToolReport(
        tool_id=tool_id,
        status=REPORT_STATUS_ERROR,
        exit_code=1,
        duration_ms=0,
        word_count=0,
        output_file="",
        stderr_file="",
        error=str(exc) or exc.__class__.__name__,
    )


def _error_excerpt(result: ExecResult, timeout_sec: int) -> Optional[str]:
    excerpt = result.stderr[:ERROR_EXCERPT_CHARS]
    if result.timed_out:
        return excerpt or f"Timed out after {timeout_sec}s"
    if result.exit_code != 0:
        return excerpt
    return None


async def _run_tool(options: DispatchOptions, tool_id: str, limiter: asyncio.Semaphore) -> ToolReport:
    async with limiter:
        _notify(options.on_progress, ProgressEvent(tool_id=tool_id, event=PROGRESS_STARTED))
        tool_config = options.config.tools[tool_id]
        adapter: ToolAdapter = resolve_adapter(tool_id, tool_config)
        req = _build_request(
            options.config,
            tool_id,
            options.prompt_content,
            options.prompt_file_path,
            options.output_dir,
            options.read_only_policy,
            options.cwd,
        )
        invocation = adapter.build_invocation(req)

        usage_binary = tool_config.binary or adapter.command
        usage_before = await options.usage_probe(usage_binary) if adapter.tracks_usage else None
        log_json(logger, "dispatch.tool.start", tool_id=tool_id, cmd=invocation.cmd, timeout_sec=req.timeout_sec)
        result = await options.executor(invocation, req.timeout_sec)
        cost = None
        if adapter.tracks_usage:
            usage_after = await options.usage_probe(usage_binary)
            cost = cost_from_snapshots(usage_before, usage_after)

        safe_id = sanitize_id(tool_id)
        out_dir = Path(options.output_dir)
        output_file = safe_write_file(out_dir / f"{safe_id}.md", result.stdout)
        stderr_file = safe_write_file(out_dir / f"{safe_id}.stderr", result.stderr)
        if cost is not None:
            safe_write_file(out_dir / f"{safe_id}.stats.json", json.dumps({"cost": cost.to_dict()}, indent=2))

        fields: Dict[str, Any] = {
            "tool_id": tool_id,
            "output_file": str(output_file),
            "stderr_file": str(stderr_file),
            "cost": cost,
            "error": _error_excerpt(result, req.timeout_sec),
        }
        fields.update({k: v for k, v in adapter.parse_result(result).items() if k in _REPORT_FIELDS})
        report = ToolReport(**fields)

        log_json(
            logger,
            "dispatch.tool.finish",
            tool_id=tool_id,
            status=report.status,
            exit_code=report.exit_code,
            duration_ms=report.duration_ms,
            word_count=report.word_count,
            error=report.error or "",
        )
        _notify(options.on_progress, ProgressEvent(tool_id=tool_id, event=PROGRESS_COMPLETED, report=report))
        return report


async def dispatch(options: DispatchOptions) -> List[ToolReport]:
    eligible = _require_eligible(options.config, options.tool_ids, options.read_only_policy)
    limiter = asyncio.Semaphore(options.config.defaults.max_parallel)
    outcomes = await asyncio.gather(
        *(_run_tool(options, tool_id, limiter) for tool_id in eligible),
        return_exceptions=True,
    )

    reports: List[ToolReport] = []
    for tool_id, outcome in zip(eligible, outcomes):
        if isinstance(outcome, BaseException):
            logger.error("Tool %s failed: %s", tool_id, outcome)
            report = _error_report(tool_id, outcome)
            _notify(options.on_progress, ProgressEvent(tool_id=tool_id, event=PROGRESS_COMPLETED, report=report))
            reports.append(report)
            continue
        reports.append(outcome)
    return reports

import argparse
import asyncio
import json
import logging
import os
import shutil
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from counselors.adapters import effective_read_only_level, resolve_adapter
from counselors.config import Config, ConfigError, load_config, load_project_config, merge_configs
from counselors.domain.contracts import PROGRESS_STARTED, REPORT_STATUS_SUCCESS, ProgressEvent, RunRequest
from counselors.domain.runs import (
    PROMPT_SOURCE_FILE,
    PROMPT_SOURCE_INLINE,
    PROMPT_SOURCE_STDIN,
    ProbeResult,
    RunManifest,
)
from counselors.execution.executor import install_interrupt_handler
from counselors.execution.policy import parse_cli_policy
from counselors.presentation import (
    ToolListEntry,
    format_dry_run,
    format_probe_results,
    format_run_summary,
    format_tool_list,
)
from counselors.services.dispatcher import DispatchError, DispatchOptions, build_dry_run, dispatch
from counselors.services.prompt_builder import (
    build_prompt,
    gather_file_context,
    generate_slug,
    resolve_output_dir,
    slug_from_file,
)
from counselors.services.synthesis import synthesize
from counselors.services.tool_probe import probe_tool
from counselors.util import safe_write_file

logger = logging.getLogger(__name__)

PROMPT_FILE_NAME = "prompt.md"
MANIFEST_FILE_NAME = "run.json"
SUMMARY_FILE_NAME = "summary.md"


class UsageError(Exception):
    pass


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="counselors", description="Ask several AI coding agents for a second opinion")
    parser.add_argument("--config", default=None, help="Path to the global config file")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "WARNING"))
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Dispatch a prompt to configured tools in parallel")
    run.add_argument("prompt", nargs="?", help="Inline question (wrapped in the review template)")
    run.add_argument("-f", "--file", help="Use a pre-built prompt file as is")
    run.add_argument("-t", "--tools", help="Comma-separated tool ids (default: all configured)")
    run.add_argument("--context", help="Comma-separated files to inline as context")
    run.add_argument("--read-only", help="Read-only policy: strict, best-effort, off (default: from config)")
    run.add_argument("--dry-run", action="store_true", help="Print the invocations without running anything")
    run.add_argument("--json", action="store_true", help="Print the run manifest as JSON")
    run.add_argument("-o", "--output-dir", help="Base output directory")
    run.add_argument("--max-parallel", type=int, help="Maximum tools running at once")
    run.add_argument("--timeout", type=int, help="Default per-tool timeout in seconds")

    tools = commands.add_parser("tools", help="Inspect configured tools")
    tool_commands = tools.add_subparsers(dest="tools_command", required=True)
    listing = tool_commands.add_parser("list", aliases=["ls"], help="List configured tools")
    listing.add_argument("-v", "--verbose", action="store_true", help="Show the full command line per tool")
    probe = tool_commands.add_parser("test", help='Check each tool with a "reply OK" prompt')
    probe.add_argument("ids", nargs="*", help="Tool ids (default: all configured)")
    return parser


def _load_effective_config(args: argparse.Namespace, cwd: Path) -> Config:
    overrides = {
        "output_dir": getattr(args, "output_dir", None),
        "max_parallel": getattr(args, "max_parallel", None),
        "timeout": getattr(args, "timeout", None),
    }
    global_config = load_config(Path(args.config) if args.config else None)
    return merge_configs(global_config, load_project_config(cwd), overrides)


def _split_ids(raw: Optional[str]) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def _resolve_prompt(args: argparse.Namespace, config: Config, cwd: Path) -> Tuple[str, str, str, str]:
    """Returns (prompt content, prompt source, slug, manifest prompt label)."""
    if args.file:
        path = (cwd / args.file).resolve()
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise UsageError(f"Cannot read prompt file: {path}") from exc
        return content, PROMPT_SOURCE_FILE, slug_from_file(path), f"file:{path.name}"

    if args.prompt:
        question, source, label = args.prompt, PROMPT_SOURCE_INLINE, args.prompt
    else:
        if sys.stdin.isatty():
            raise UsageError("No prompt provided. Pass it as an argument, use -f <file>, or pipe it via stdin.")
        question = sys.stdin.read().strip()
        if not question:
            raise UsageError("Empty prompt from stdin.")
        source, label = PROMPT_SOURCE_STDIN, "stdin"

    context = None
    if args.context:
        context = gather_file_context(cwd, _split_ids(args.context), config.defaults.max_context_kb) or None
    return build_prompt(question, context), source, generate_slug(question), label


def _log_progress(event: ProgressEvent) -> None:
    if event.event == PROGRESS_STARTED:
        logger.info("%s started", event.tool_id)
        return
    if event.report is not None:
        logger.info("%s finished: %s", event.tool_id, event.report.status)


async def _run(args: argparse.Namespace) -> int:
    cwd = Path.cwd()
    config = _load_effective_config(args, cwd)
    policy = parse_cli_policy(args.read_only) if args.read_only is not None else config.defaults.read_only
    tool_ids = _split_ids(args.tools) or list(config.tools)
    if not tool_ids:
        raise UsageError("No tools configured. Add tools to the config file first.")

    prompt, source, slug, label = _resolve_prompt(args, config, cwd)
    slug = slug or f"run-{int(time.time() * 1000)}"
    base_dir = Path(config.defaults.output_dir)

    if args.dry_run:
        # Paths are only computed here; nothing is created.
        would_be_dir = (cwd / base_dir / slug).resolve()
        entries = build_dry_run(
            config,
            tool_ids,
            prompt,
            str(would_be_dir / PROMPT_FILE_NAME),
            str(would_be_dir),
            policy,
            str(cwd),
        )
        print(format_dry_run(entries))
        return 0

    output_dir = resolve_output_dir(cwd / base_dir, slug).resolve()
    prompt_file = output_dir / PROMPT_FILE_NAME
    if args.file:
        shutil.copyfile(cwd / args.file, prompt_file)
    else:
        safe_write_file(prompt_file, prompt)

    install_interrupt_handler(asyncio.get_running_loop())
    reports = await dispatch(
        DispatchOptions(
            config=config,
            tool_ids=tool_ids,
            prompt_file_path=str(prompt_file),
            prompt_content=prompt,
            output_dir=str(output_dir),
            read_only_policy=policy,
            cwd=str(cwd),
            on_progress=_log_progress,
        )
    )

    manifest = RunManifest(
        timestamp=datetime.now(timezone.utc).isoformat(),
        slug=slug,
        prompt=label,
        prompt_source=source,
        read_only_policy=policy,
        tools=reports,
    )
    safe_write_file(output_dir / MANIFEST_FILE_NAME, json.dumps(manifest.to_dict(), indent=2))
    safe_write_file(output_dir / SUMMARY_FILE_NAME, synthesize(manifest, output_dir))

    if args.json:
        print(json.dumps(manifest.to_dict(), indent=2))
    else:
        print(format_run_summary(manifest, str(output_dir)))
    failed = [r.tool_id for r in reports if r.status != REPORT_STATUS_SUCCESS]
    if failed:
        logger.warning("Tools without a successful result: %s", ", ".join(failed))
    return 0


def _tools_list(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, Path.cwd())
    entries = []
    for tool_id, tool_config in config.tools.items():
        adapter = resolve_adapter(tool_id, tool_config)
        level = effective_read_only_level(adapter, tool_config)
        arg_list: Tuple[str, ...] = ()
        if args.verbose:
            invocation = adapter.build_invocation(
                RunRequest(
                    prompt="<prompt>",
                    prompt_file_path="<prompt-file>",
                    tool_id=tool_id,
                    output_dir=".",
                    read_only_policy=level,
                    timeout_sec=tool_config.timeout or config.defaults.timeout,
                    cwd=os.getcwd(),
                    binary=tool_config.binary,
                    extra_flags=tuple(tool_config.extra_flags),
                )
            )
            arg_list = invocation.args
        entries.append(ToolListEntry(id=tool_id, binary=tool_config.binary, read_only_level=level, args=arg_list))
    print(format_tool_list(entries, verbose=args.verbose))
    return 0


async def _tools_test(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, Path.cwd())
    ids = list(args.ids) or list(config.tools)
    if not ids:
        raise UsageError("No tools configured. Add tools to the config file first.")

    results = []
    for tool_id in ids:
        tool_config = config.tools.get(tool_id)
        if tool_config is None:
            results.append(ProbeResult(tool_id=tool_id, passed=False, output="", duration_ms=0, error="Not configured"))
            continue
        adapter = resolve_adapter(tool_id, tool_config)
        results.append(await probe_tool(adapter, tool_id, tool_config))
    print(format_probe_results(results))
    return 0 if all(r.passed for r in results) else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    try:
        if args.command == "run":
            return asyncio.run(_run(args))
        if args.tools_command == "test":
            return asyncio.run(_tools_test(args))
        return _tools_list(args)
    except (UsageError, ConfigError, DispatchError, ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

import logging
import re
import time
from pathlib import Path
from typing import Optional, Sequence, Union

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 40

_SLUG_DROP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACE_RE = re.compile(r"\s+")
_SLUG_DASHES_RE = re.compile(r"-+")

_INSTRUCTIONS = (
    "## Instructions",
    "You are providing an independent second opinion. Be critical and thorough.",
    "- Analyze the question in the context provided",
    "- Identify risks, tradeoffs, and blind spots",
    "- Suggest alternatives if you see better approaches",
    "- Be direct and opinionated; don't hedge",
    "- Structure your response with clear headings",
    "- Keep your response focused and actionable",
    "",
)


def generate_slug(text: str) -> str:
    slug = _SLUG_DROP_RE.sub("", (text or "").lower())
    slug = _SLUG_SPACE_RE.sub("-", slug)
    slug = _SLUG_DASHES_RE.sub("-", slug).strip("-")
    return slug[:MAX_SLUG_LENGTH]


def slug_from_file(file_path: Union[str, Path]) -> str:
    """Name a run after the prompt file's folder, or the file itself at top level."""
    path = Path(file_path)
    parent = path.parent.name
    if parent and parent not in (".", ".."):
        return generate_slug(parent)
    return generate_slug(path.stem if path.suffix == ".md" else path.name)


def resolve_output_dir(base_dir: Union[str, Path], slug: str) -> Path:
    """Create a fresh run directory; an existing one gets a millisecond suffix."""
    target = Path(base_dir) / slug
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.mkdir()
    except FileExistsError:
        target = target.with_name(f"{target.name}-{int(time.time() * 1000)}")
        target.mkdir(parents=True)
    return target


def build_prompt(question: str, context: Optional[str] = None) -> str:
    parts = ["# Second Opinion Request", "", "## Question", question, ""]
    if context:
        parts.extend(["## Context", "", context, ""])
    parts.extend(_INSTRUCTIONS)
    return "\n".join(parts)


def gather_file_context(cwd: Union[str, Path], paths: Sequence[str], max_kb: int) -> str:
    """Inline the named files as fenced blocks, stopping at ``max_kb`` in total.

    Files that do not fit in the remaining budget are skipped whole.
    """
    max_bytes = max_kb * 1024
    total = 0
    parts = ["### Files Referenced", ""]
    for raw in paths:
        if total >= max_bytes:
            logger.debug("Context limit reached (%sKB), skipping remaining files", max_kb)
            break
        path = Path(cwd) / raw
        try:
            if not path.is_file():
                continue
            size = path.stat().st_size
            if size > max_bytes - total:
                logger.debug("Skipping %s: too large (%s bytes)", raw, size)
                continue
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.debug("Could not read %s: %s", raw, exc)
            continue
        parts.extend([f"#### {raw}", "", "```", content, "```", ""])
        total += len(content.encode("utf-8"))
    if len(parts) == 2:
        return ""
    return "\n".join(parts)

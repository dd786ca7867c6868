import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Union

logger = logging.getLogger(__name__)

DEFAULT_REPLACEMENT = "REDACTED"
_DEFAULT_PATTERNS = (
    (r"sk-[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"sk-ant-[A-Za-z0-9_-]{10,}", "sk-ant-REDACTED"),
    (r"AIza[0-9A-Za-z_-]{30,}", "AIza-REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*\b", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)
_EXTRA_PATTERNS_ENV = "REDACTION_EXTRA_PATTERNS"

# CSI sequences, OSC sequences (BEL or ST terminated) and lone two-byte escapes.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
    r"|\x9b[0-?]*[ -/]*[@-~]"
)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_UNSAFE_ID_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")

SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass(frozen=True)
class RedactionResult:
    text: str
    redacted: bool
    replacements: int


def redact(text: str) -> str:
    return redact_with_audit(text).text


def redact_with_audit(text: str) -> RedactionResult:
    value = text or ""
    total = 0
    for regex, replacement in _compiled_patterns():
        value, count = regex.subn(replacement, value)
        total += count
    return RedactionResult(text=value, redacted=total > 0, replacements=total)


@lru_cache(maxsize=2)
def _compiled_patterns() -> List[tuple[re.Pattern[str], str]]:
    items: List[tuple[re.Pattern[str], str]] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    extra_raw = (os.environ.get(_EXTRA_PATTERNS_ENV) or "").strip()
    if not extra_raw:
        return items
    for token in extra_raw.split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text or "")


def strip_control_chars(text: str) -> str:
    """Remove C0 control characters and DEL, newlines included."""
    return _CONTROL_CHARS_RE.sub("", text or "")


def sanitize_id(tool_id: str) -> str:
    """Map a tool id onto a filename-safe token.

    Every character outside ``[A-Za-z0-9._-]`` becomes ``_`` so ``../evil``
    turns into ``.._evil`` and can never introduce a path separator.
    """
    return _UNSAFE_ID_CHARS_RE.sub("_", tool_id or "")


def word_count(text: str) -> int:
    return len((text or "").split())


def safe_write_file(path: Union[str, Path], content: str) -> Path:
    """Write ``content`` through a temp file and an atomic rename.

    The rename never follows a symlink planted at ``path``. On failure the temp
    file is removed and the original ``OSError`` propagates.
    """
    target = Path(path)
    tmp = target.with_name(f"{target.name}.tmp.{os.getpid()}")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, target)
    except OSError as exc:
        try:
            tmp.unlink()
        except OSError:
            pass
        logger.warning("Failed to write %s: %s", target, exc)
        raise
    return target

"""Amp spend, reconstructed from ``amp usage`` balances taken around a run.

The vendor reports remaining balances, not per-run cost, so the cost of one run
is the drop between a snapshot taken just before and one taken just after it.
This is best effort: any other Amp session on the same account that spends in
the same window is attributed to this run, and parallel Amp tools in one batch
see each other's spend. Nothing here tries to correct for that.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

from counselors.domain.contracts import CostInfo, Invocation
from counselors.execution.executor import execute

logger = logging.getLogger(__name__)

USAGE_TIMEOUT_SEC = 10
COST_SOURCE_FREE = "free"
COST_SOURCE_CREDITS = "credits"

_FREE_RE = re.compile(r"Amp Free: \$([0-9.]+)/\$([0-9.]+)")
_CREDITS_RE = re.compile(r"Individual credits: \$([0-9.]+)")


@dataclass(frozen=True)
class AmpUsage:
    free_remaining: float = 0.0
    free_total: float = 0.0
    credits_remaining: float = 0.0


def _to_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        return 0.0


def parse_amp_usage(text: str) -> AmpUsage:
    """Unrecognised output parses to zero balances rather than failing."""
    free = _FREE_RE.search(text or "")
    credits = _CREDITS_RE.search(text or "")
    return AmpUsage(
        free_remaining=_to_float(free.group(1)) if free else 0.0,
        free_total=_to_float(free.group(2)) if free else 0.0,
        credits_remaining=_to_float(credits.group(1)) if credits else 0.0,
    )


def compute_amp_cost(before: AmpUsage, after: AmpUsage) -> CostInfo:
    free_used = max(0.0, before.free_remaining - after.free_remaining)
    credits_used = max(0.0, before.credits_remaining - after.credits_remaining)
    return CostInfo(
        cost_usd=round(free_used + credits_used, 2),
        free_used_usd=round(free_used, 2),
        credits_used_usd=round(credits_used, 2),
        source=COST_SOURCE_CREDITS if credits_used > 0 else COST_SOURCE_FREE,
        free_remaining_usd=after.free_remaining,
        free_total_usd=after.free_total,
        credits_remaining_usd=after.credits_remaining,
    )


def cost_from_snapshots(before: Optional[str], after: Optional[str]) -> Optional[CostInfo]:
    # A failed snapshot means the cost is unknown, which is not the same as free.
    if before is None or after is None:
        return None
    return compute_amp_cost(parse_amp_usage(before), parse_amp_usage(after))


async def capture_amp_usage(binary: str = "amp", timeout_sec: float = USAGE_TIMEOUT_SEC) -> Optional[str]:
    invocation = Invocation(cmd=binary, args=("usage",), cwd=os.getcwd())
    result = await execute(invocation, timeout_sec, kill_grace_sec=1.0)
    if result.timed_out or result.exit_code != 0:
        logger.debug("amp usage failed (exit=%s, timed_out=%s)", result.exit_code, result.timed_out)
        return None
    return result.stdout

from dataclasses import dataclass


READ_ONLY_NONE = "none"
READ_ONLY_BEST_EFFORT = "bestEffort"
READ_ONLY_ENFORCED = "enforced"

_LEVEL_RANK = {
    READ_ONLY_NONE: 0,
    READ_ONLY_BEST_EFFORT: 1,
    READ_ONLY_ENFORCED: 2,
}
VALID_READ_ONLY_LEVELS = set(_LEVEL_RANK)

CLI_POLICY_NAMES = {
    "strict": READ_ONLY_ENFORCED,
    "best-effort": READ_ONLY_BEST_EFFORT,
    "off": READ_ONLY_NONE,
}


@dataclass(frozen=True)
class PolicyDecision:
    eligible: bool
    attach_flags: bool
    reason: str


def normalize_level(level: str) -> str:
    """Unknown levels collapse to ``none``; a typo must never widen trust."""
    value = (level or "").strip()
    if value not in VALID_READ_ONLY_LEVELS:
        return READ_ONLY_NONE
    return value


def rank(level: str) -> int:
    return _LEVEL_RANK[normalize_level(level)]


def weaker_level(first: str, second: str) -> str:
    return first if rank(first) <= rank(second) else second


def is_eligible(requested: str, effective: str) -> bool:
    # Only ``enforced`` filters; weaker policies change flags, not the tool set.
    if normalize_level(requested) != READ_ONLY_ENFORCED:
        return True
    return normalize_level(effective) == READ_ONLY_ENFORCED


def should_attach_flags(requested: str) -> bool:
    return normalize_level(requested) != READ_ONLY_NONE


def parse_cli_policy(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in CLI_POLICY_NAMES:
        raise ValueError(
            f'Invalid --read-only value "{value}". Must be: strict, best-effort, or off.'
        )
    return CLI_POLICY_NAMES[normalized]


class ReadOnlyPolicyResolver:
    def evaluate(self, requested: str, effective: str) -> PolicyDecision:
        policy = normalize_level(requested)
        level = normalize_level(effective)
        attach = should_attach_flags(policy)
        if not is_eligible(policy, level):
            return PolicyDecision(
                eligible=False,
                attach_flags=attach,
                reason=f'read-only level is "{level}", policy requires "{policy}".',
            )
        return PolicyDecision(eligible=True, attach_flags=attach, reason="Allowed.")

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from counselors.domain.contracts import Invocation, ToolReport


PROMPT_SOURCE_INLINE = "inline"
PROMPT_SOURCE_FILE = "file"
PROMPT_SOURCE_STDIN = "stdin"


@dataclass(frozen=True)
class RunManifest:
    timestamp: str
    slug: str
    prompt: str
    prompt_source: str
    read_only_policy: str
    tools: List[ToolReport] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "slug": self.slug,
            "prompt": self.prompt,
            "promptSource": self.prompt_source,
            "readOnlyPolicy": self.read_only_policy,
            "tools": [report.to_dict() for report in self.tools],
        }


@dataclass(frozen=True)
class ProbeResult:
    tool_id: str
    passed: bool
    output: str
    duration_ms: int
    error: Optional[str] = None


@dataclass(frozen=True)
class DryRunEntry:
    tool_id: str
    invocation: Invocation

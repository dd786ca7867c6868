from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Tuple


REPORT_STATUS_SUCCESS = "success"
REPORT_STATUS_ERROR = "error"
REPORT_STATUS_TIMEOUT = "timeout"

PROGRESS_STARTED = "started"
PROGRESS_COMPLETED = "completed"


@dataclass(frozen=True)
class RunRequest:
    prompt: str
    prompt_file_path: str
    tool_id: str
    output_dir: str
    read_only_policy: str
    timeout_sec: int
    cwd: str
    binary: Optional[str] = None
    extra_flags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Invocation:
    cmd: str
    args: Tuple[str, ...]
    cwd: str
    env: Optional[Mapping[str, str]] = None
    stdin: Optional[str] = None

    def argv(self) -> Tuple[str, ...]:
        return (self.cmd, *self.args)


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: int


@dataclass(frozen=True)
class CostInfo:
    cost_usd: float
    free_used_usd: float
    credits_used_usd: float
    source: str
    free_remaining_usd: float
    free_total_usd: float
    credits_remaining_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cost_usd": self.cost_usd,
            "free_used_usd": self.free_used_usd,
            "credits_used_usd": self.credits_used_usd,
            "source": self.source,
            "free_remaining_usd": self.free_remaining_usd,
            "free_total_usd": self.free_total_usd,
            "credits_remaining_usd": self.credits_remaining_usd,
        }


@dataclass(frozen=True)
class ToolReport:
    tool_id: str
    status: str
    exit_code: int
    duration_ms: int
    word_count: int
    output_file: str
    stderr_file: str
    cost: Optional[CostInfo] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "toolId": self.tool_id,
            "status": self.status,
            "exitCode": self.exit_code,
            "durationMs": self.duration_ms,
            "wordCount": self.word_count,
            "outputFile": self.output_file,
            "stderrFile": self.stderr_file,
        }
        if self.cost is not None:
            payload["cost"] = self.cost.to_dict()
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ProgressEvent:
    tool_id: str
    event: str
    report: Optional[ToolReport] = None


ProgressCallback = Callable[[ProgressEvent], None]


class Executor(Protocol):
    def __call__(self, invocation: Invocation, timeout_sec: float) -> Awaitable[ExecResult]:
        ...


class UsageProbe(Protocol):
    def __call__(self, binary: str = "amp") -> Awaitable[Optional[str]]:
        ...

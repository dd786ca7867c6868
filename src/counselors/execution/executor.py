"""Run one tool invocation as an isolated child process.

The child gets an argv vector (never a shell), an allowlisted environment, a
closed or pre-filled stdin and capped, ANSI-stripped output capture. Timeouts
escalate from SIGTERM to SIGKILL on the child's whole process group, and descendants
that still hold the output pipes after the main process exits are killed too.
``execute`` always returns an ``ExecResult``, including when the binary could
not be started at all.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Dict, Mapping, Optional, Set

from counselors.domain.contracts import ExecResult, Invocation
from counselors.observability.structured_log import log_json
from counselors.util import strip_ansi

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 10 * 1024 * 1024
TRUNCATION_MARKER = "\n[output truncated at 10MB]"
READ_CHUNK_BYTES = 65_536
KILL_GRACE_SEC = 15.0
INTERRUPT_GRACE_SEC = 2.0
# How long descendants may keep the output pipes open after the main process exited.
ORPHAN_PIPE_GRACE_SEC = 2.0
EXIT_POLL_SEC = 0.1

EXIT_CODE_SPAWN_FAILED = 1
EXIT_CODE_NOT_EXECUTABLE = 126
EXIT_CODE_NOT_FOUND = 127

ENV_PASSTHROUGH_KEY = "COUNSELORS_ENV_PASSTHROUGH"
ENV_ALLOWLIST = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "SHELL",
    "TERM",
    "LANG",
    "LANGUAGE",
    "LC_ALL",
    "LC_CTYPE",
    "TMPDIR",
    "TZ",
    "XDG_CONFIG_HOME",
    "XDG_DATA_HOME",
    "XDG_CACHE_HOME",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "ALL_PROXY",
    "http_proxy",
    "https_proxy",
    "no_proxy",
    "all_proxy",
)
_FORCED_ENV = {"CI": "true", "NO_COLOR": "1"}

# Children that are running right now. Only ``terminate_all`` walks this set.
_ACTIVE_CHILDREN: Set[asyncio.subprocess.Process] = set()


def build_safe_env(
    extra: Optional[Mapping[str, str]] = None,
    source: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    base = os.environ if source is None else source
    names = list(ENV_ALLOWLIST)
    for token in (base.get(ENV_PASSTHROUGH_KEY) or "").split(","):
        name = token.strip()
        if name:
            names.append(name)
    env = {name: base[name] for name in names if base.get(name)}
    if extra:
        env.update(extra)
    env.update(_FORCED_ENV)
    return env


class _CappedBuffer:
    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        # Past the cap the stream is still drained so the child never blocks on a full pipe.
        if self.truncated:
            return
        room = self._limit - len(self._data)
        if len(chunk) > room:
            self._data.extend(chunk[:room])
            self.truncated = True
            return
        self._data.extend(chunk)

    def text(self) -> str:
        value = strip_ansi(self._data.decode("utf-8", errors="replace"))
        if self.truncated:
            value += TRUNCATION_MARKER
        return value


async def _drain(stream: Optional[asyncio.StreamReader], buffer: _CappedBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return
        buffer.feed(chunk)


async def _feed_stdin(proc: asyncio.subprocess.Process, payload: Optional[str]) -> None:
    if proc.stdin is None:
        return
    try:
        if payload:
            proc.stdin.write(payload.encode("utf-8"))
            await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Child %s closed stdin before reading the full prompt.", proc.pid)
    finally:
        proc.stdin.close()


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the child's session group, even after the main process was reaped."""
    killpg = getattr(os, "killpg", None)
    if killpg is not None:
        try:
            killpg(proc.pid, sig)
            return
        except ProcessLookupError:
            return
        except PermissionError:
            pass
    if proc.returncode is not None:
        return
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        return


def _retrieve_io_outcome(task: asyncio.Future[object]) -> None:
    if not task.cancelled():
        task.exception()


async def _wait_io(io_task: asyncio.Future[object], timeout: float) -> bool:
    if timeout > 0 and not io_task.done():
        await asyncio.wait({io_task}, timeout=timeout)
    return io_task.done()


async def _wait_main_exit(
    proc: asyncio.subprocess.Process,
    io_task: asyncio.Future[object],
    deadline: float,
) -> bool:
    """Wait until the pipes close or the main process exits. False once ``deadline`` passes."""
    loop = asyncio.get_running_loop()
    while not io_task.done() and proc.returncode is None:
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.wait({io_task}, timeout=min(remaining, EXIT_POLL_SEC))
    return True


def _spawn_exit_code(exc: OSError) -> int:
    if isinstance(exc, FileNotFoundError):
        return EXIT_CODE_NOT_FOUND
    if isinstance(exc, PermissionError):
        return EXIT_CODE_NOT_EXECUTABLE
    return EXIT_CODE_SPAWN_FAILED


def _exit_code(returncode: Optional[int]) -> int:
    if returncode is None:
        return EXIT_CODE_SPAWN_FAILED
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def execute(
    invocation: Invocation,
    timeout_sec: float,
    kill_grace_sec: float = KILL_GRACE_SEC,
) -> ExecResult:
    start = time.monotonic()
    argv = invocation.argv()
    logger.debug("Executing: %s", " ".join(argv))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=invocation.cwd or None,
            env=build_safe_env(invocation.env),
            start_new_session=True,
        )
    except OSError as exc:
        log_json(logger, "executor.spawn_failed", cmd=invocation.cmd, error=str(exc))
        return ExecResult(
            exit_code=_spawn_exit_code(exc),
            stdout="",
            stderr=str(exc),
            timed_out=False,
            duration_ms=_elapsed_ms(start),
        )

    _ACTIVE_CHILDREN.add(proc)
    log_json(logger, "executor.start", cmd=invocation.cmd, pid=proc.pid, timeout_sec=timeout_sec)
    stdout_buf = _CappedBuffer(MAX_OUTPUT_BYTES)
    stderr_buf = _CappedBuffer(MAX_OUTPUT_BYTES)
    io_task = asyncio.ensure_future(
        asyncio.gather(
            _feed_stdin(proc, invocation.stdin),
            _drain(proc.stdout, stdout_buf),
            _drain(proc.stderr, stderr_buf),
            proc.wait(),
        )
    )
    io_task.add_done_callback(_retrieve_io_outcome)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_sec
    timed_out = False
    try:
        if not await _wait_main_exit(proc, io_task, deadline):
            timed_out = True
            log_json(logger, "executor.timeout", level=logging.WARNING, cmd=invocation.cmd, pid=proc.pid)
            _signal_group(proc, signal.SIGTERM)
            if not await _wait_io(io_task, kill_grace_sec):
                _signal_group(proc, signal.SIGKILL)
                await _wait_io(io_task, kill_grace_sec)
        elif not io_task.done():
            # The main process is gone but a descendant still holds the output pipes.
            grace = min(ORPHAN_PIPE_GRACE_SEC, max(deadline - loop.time(), 0.0))
            if not await _wait_io(io_task, grace):
                log_json(logger, "executor.orphans_killed", level=logging.WARNING, cmd=invocation.cmd, pid=proc.pid)
                _signal_group(proc, signal.SIGKILL)
                await _wait_io(io_task, kill_grace_sec)
        if io_task.done():
            io_task.result()
        else:
            # A descendant outside the group may still hold the pipes open.
            logger.warning("Output pipes of pid %s stayed open after SIGKILL; giving up on them.", proc.pid)
    except Exception as exc:
        logger.exception("Execution of %s failed: %s", invocation.cmd, exc)
        _signal_group(proc, signal.SIGKILL)
        return ExecResult(
            exit_code=EXIT_CODE_SPAWN_FAILED,
            stdout=stdout_buf.text(),
            stderr=str(exc),
            timed_out=timed_out,
            duration_ms=_elapsed_ms(start),
        )
    finally:
        _ACTIVE_CHILDREN.discard(proc)
        # Nothing from the child's session may outlive the call.
        _signal_group(proc, signal.SIGKILL)
        if not io_task.done():
            io_task.cancel()

    result = ExecResult(
        exit_code=_exit_code(proc.returncode),
        stdout=stdout_buf.text(),
        stderr=stderr_buf.text(),
        timed_out=timed_out,
        duration_ms=_elapsed_ms(start),
    )
    log_json(
        logger,
        "executor.finish",
        cmd=invocation.cmd,
        pid=proc.pid,
        exit_code=result.exit_code,
        timed_out=result.timed_out,
        duration_ms=result.duration_ms,
        stdout_truncated=stdout_buf.truncated,
        stderr_truncated=stderr_buf.truncated,
    )
    return result


def terminate_all(sig: int = signal.SIGTERM) -> int:
    """Signal every in-flight child. Returns how many were signalled."""
    children = list(_ACTIVE_CHILDREN)
    for proc in children:
        _signal_group(proc, sig)
    return len(children)


def install_interrupt_handler(
    loop: asyncio.AbstractEventLoop,
    grace_sec: float = INTERRUPT_GRACE_SEC,
) -> None:
    """Route SIGINT/SIGTERM to the running children, then force-exit after ``grace_sec``."""

    def _force_exit() -> None:
        terminate_all(signal.SIGKILL)
        os._exit(130)

    def _on_interrupt() -> None:
        count = terminate_all(signal.SIGTERM)
        logger.warning("Interrupted; terminating %d running tool(s).", count)
        loop.call_later(grace_sec, _force_exit)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_interrupt)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers are not supported on this event loop.")
            return

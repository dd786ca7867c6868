import asyncio
import gc
import json
import os
import sys
import time
import unittest
from unittest.mock import patch

from counselors.domain.contracts import Invocation
from counselors.execution import executor
from counselors.execution.executor import (
    TRUNCATION_MARKER,
    build_safe_env,
    execute,
    terminate_all,
)


def _py(code, stdin=None, env=None):
    return Invocation(cmd=sys.executable, args=("-c", code), cwd=os.getcwd(), stdin=stdin, env=env)


def _is_running(pid):
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as handle:
            state = handle.read().rsplit(")", 1)[1].split()[0]
    except FileNotFoundError:
        return False
    return state not in ("Z", "X")


class TestBuildSafeEnv(unittest.TestCase):
    def test_only_allowlisted_names_survive(self):
        source = {"PATH": "/bin", "HTTPS_PROXY": "http://proxy:3128", "AWS_SECRET_ACCESS_KEY": "x"}
        env = build_safe_env(source=source)
        self.assertEqual(env["PATH"], "/bin")
        self.assertEqual(env["HTTPS_PROXY"], "http://proxy:3128")
        self.assertNotIn("AWS_SECRET_ACCESS_KEY", env)
        self.assertEqual(env["CI"], "true")
        self.assertEqual(env["NO_COLOR"], "1")

    def test_passthrough_and_overrides(self):
        source = {"PATH": "/bin", "ANTHROPIC_API_KEY": "k", "COUNSELORS_ENV_PASSTHROUGH": "ANTHROPIC_API_KEY, ,"}
        env = build_safe_env({"EXTRA": "1", "CI": "false"}, source=source)
        self.assertEqual(env["ANTHROPIC_API_KEY"], "k")
        self.assertEqual(env["EXTRA"], "1")
        self.assertEqual(env["CI"], "true")


class TestExecute(unittest.IsolatedAsyncioTestCase):
    async def test_captures_stdout_and_exit_code(self):
        result = await execute(_py("print('hello')"), 30)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.stdout.strip(), "hello")
        self.assertFalse(result.timed_out)
        self.assertGreaterEqual(result.duration_ms, 0)

    async def test_nonzero_exit_and_stderr(self):
        result = await execute(_py("import sys; sys.stderr.write('bad'); sys.exit(3)"), 30)
        self.assertEqual(result.exit_code, 3)
        self.assertEqual(result.stderr, "bad")

    async def test_writes_stdin_then_closes_it(self):
        result = await execute(_py("import sys; print(sys.stdin.read().upper())", stdin="abc"), 30)
        self.assertEqual(result.stdout.strip(), "ABC")

    async def test_stdin_closed_when_absent(self):
        result = await execute(_py("import sys; print(len(sys.stdin.read()))"), 10)
        self.assertFalse(result.timed_out)
        self.assertEqual(result.stdout.strip(), "0")

    async def test_missing_binary_resolves_with_127(self):
        result = await execute(Invocation(cmd="/nonexistent/counselors-tool", args=(), cwd=os.getcwd()), 5)
        self.assertEqual(result.exit_code, 127)
        self.assertTrue(result.stderr)
        self.assertEqual(result.stdout, "")

    async def test_strips_ansi_sequences(self):
        result = await execute(_py("print('\\x1b[31mred\\x1b[0m plain')"), 30)
        self.assertEqual(result.stdout.strip(), "red plain")

    async def test_environment_is_allowlisted(self):
        code = "import json, os; print(json.dumps(dict(os.environ)))"
        extra = {"HTTPS_PROXY": "http://proxy:3128", "COUNSELORS_TEST_SECRET": "hunter2"}
        with patch.dict(os.environ, extra):
            result = await execute(_py(code, env={"OVERRIDE_ME": "yes"}), 30)
        seen = json.loads(result.stdout)
        self.assertNotIn("COUNSELORS_TEST_SECRET", seen)
        self.assertEqual(seen["HTTPS_PROXY"], "http://proxy:3128")
        self.assertEqual(seen["OVERRIDE_ME"], "yes")
        self.assertEqual(seen["CI"], "true")
        self.assertEqual(seen["NO_COLOR"], "1")

    async def test_output_is_capped(self):
        with patch.object(executor, "MAX_OUTPUT_BYTES", 1000):
            result = await execute(_py("import sys; sys.stdout.write('x' * 50000)"), 30)
        self.assertEqual(result.exit_code, 0)
        self.assertTrue(result.stdout.endswith(TRUNCATION_MARKER))
        self.assertLessEqual(len(result.stdout), 1000 + len(TRUNCATION_MARKER))

    async def test_timeout_sends_sigterm(self):
        result = await execute(_py("import time; time.sleep(30)"), 0.5, kill_grace_sec=5)
        self.assertTrue(result.timed_out)
        self.assertEqual(result.exit_code, 128 + 15)
        self.assertFalse(executor._ACTIVE_CHILDREN)

    async def test_timeout_escalates_to_sigkill(self):
        code = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        start = time.monotonic()
        result = await execute(_py(code), 1.0, kill_grace_sec=0.5)
        self.assertTrue(result.timed_out)
        self.assertEqual(result.exit_code, 128 + 9)
        self.assertLess(time.monotonic() - start, 5.0)
        self.assertFalse(executor._ACTIVE_CHILDREN)

    @unittest.skipUnless(os.path.isdir("/proc/self"), "needs procfs")
    async def test_descendant_holding_pipes_is_killed_after_main_exits(self):
        code = (
            "import subprocess, sys\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
            "print(child.pid, flush=True)\n"
        )
        start = time.monotonic()
        result = await execute(_py(code), 20, kill_grace_sec=0.5)
        self.assertLess(time.monotonic() - start, 10.0)
        self.assertEqual(result.exit_code, 0)
        self.assertFalse(result.timed_out)
        grandchild = int(result.stdout.split()[0])
        for _ in range(40):
            if not _is_running(grandchild):
                break
            await asyncio.sleep(0.05)
        self.assertFalse(_is_running(grandchild))

    async def test_cancelled_run_leaves_no_unretrieved_errors(self):
        errors = []
        asyncio.get_running_loop().set_exception_handler(lambda _loop, context: errors.append(context))
        task = asyncio.ensure_future(execute(_py("import time; time.sleep(30)"), 30))
        for _ in range(100):
            if executor._ACTIVE_CHILDREN:
                break
            await asyncio.sleep(0.05)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        for _ in range(10):
            await asyncio.sleep(0.01)
        del task
        gc.collect()
        self.assertEqual([c for c in errors if "never retrieved" in c.get("message", "")], [])
        self.assertFalse(executor._ACTIVE_CHILDREN)

    async def test_terminate_all_reaches_running_children(self):
        task = asyncio.ensure_future(execute(_py("import time; time.sleep(30)"), 30))
        for _ in range(100):
            if executor._ACTIVE_CHILDREN:
                break
            await asyncio.sleep(0.05)
        self.assertEqual(terminate_all(), 1)
        result = await asyncio.wait_for(task, 10)
        self.assertFalse(result.timed_out)
        self.assertNotEqual(result.exit_code, 0)
        self.assertEqual(terminate_all(), 0)


if __name__ == "__main__":
    unittest.main()

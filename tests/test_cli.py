import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import AsyncMock, patch

from counselors import cli
from counselors.domain.contracts import ToolReport
from counselors.domain.runs import ProbeResult


def _write_config(root: Path) -> Path:
    path = root / "config.json"
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "tools": {
                    "claude": {"binary": "claude"},
                    "gemini": {"binary": "gemini"},
                },
            }
        ),
        encoding="utf-8",
    )
    return path


class CliTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.config_path = _write_config(self.root)
        self._cwd = os.getcwd()
        os.chdir(self.root)
        self._env = patch.dict(os.environ, {"XDG_CONFIG_HOME": str(self.root / "xdg")})
        self._env.start()

    def tearDown(self):
        self._env.stop()
        os.chdir(self._cwd)
        self._tmp.cleanup()

    def _main(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = cli.main(["--config", str(self.config_path), *argv])
        return code, out.getvalue(), err.getvalue()


class TestRunCommand(CliTestCase):
    def test_dry_run_writes_nothing(self):
        before = sorted(os.listdir(self.root))
        code, out, _ = self._main("run", "Is the cache safe?", "--dry-run")
        self.assertEqual(code, 0)
        self.assertIn("$ claude -p --output-format text", out)
        self.assertIn("gemini", out)
        self.assertEqual(sorted(os.listdir(self.root)), before)
        self.assertFalse((self.root / "agents").exists())

    def test_dry_run_strict_filters_tools(self):
        code, out, _ = self._main("run", "Q?", "--dry-run", "--read-only", "strict")
        self.assertEqual(code, 0)
        self.assertIn("claude", out)
        self.assertNotIn("gemini", out)

    def test_read_only_default_comes_from_config(self):
        raw = json.loads(self.config_path.read_text(encoding="utf-8"))
        raw["defaults"] = {"read_only": "enforced"}
        self.config_path.write_text(json.dumps(raw), encoding="utf-8")
        code, out, _ = self._main("run", "Q?", "--dry-run")
        self.assertEqual(code, 0)
        self.assertIn("claude", out)
        self.assertNotIn("gemini", out)

        code, out, _ = self._main("run", "Q?", "--dry-run", "--read-only", "off")
        self.assertEqual(code, 0)
        self.assertIn("gemini", out)

    def test_run_writes_manifest_and_summary(self):
        async def fake_dispatch(options):
            Path(options.output_dir, "claude.md").write_text("# Answer\nfine", encoding="utf-8")
            return [
                ToolReport(
                    "claude",
                    "success",
                    0,
                    1500,
                    2,
                    str(Path(options.output_dir, "claude.md")),
                    str(Path(options.output_dir, "claude.stderr")),
                )
            ]

        with patch.object(cli, "dispatch", side_effect=fake_dispatch) as dispatch_mock, patch.object(
            cli, "install_interrupt_handler"
        ):
            code, out, _ = self._main("run", "Is the cache safe?", "-t", "claude", "--json")
        self.assertEqual(code, 0)
        options = dispatch_mock.call_args.args[0]
        self.assertEqual(options.tool_ids, ["claude"])
        self.assertEqual(options.read_only_policy, "bestEffort")
        run_dir = Path(options.output_dir)
        self.assertEqual(run_dir.name, "is-the-cache-safe")
        self.assertIn("## Question\nIs the cache safe?", (run_dir / "prompt.md").read_text(encoding="utf-8"))
        manifest = json.loads((run_dir / "run.json").read_text(encoding="utf-8"))
        self.assertEqual(manifest["promptSource"], "inline")
        self.assertEqual(manifest["tools"][0]["toolId"], "claude")
        self.assertIn("Answer", (run_dir / "summary.md").read_text(encoding="utf-8"))
        self.assertEqual(json.loads(out)["slug"], "is-the-cache-safe")

    def test_file_prompt_is_used_as_is(self):
        Path(self.root, "plan").mkdir()
        Path(self.root, "plan", "prompt.md").write_text("Custom body", encoding="utf-8")
        code, out, _ = self._main("run", "-f", "plan/prompt.md", "--dry-run", "-t", "claude")
        self.assertEqual(code, 0)
        self.assertIn("plan/prompt.md", out)
        self.assertFalse((self.root / "agents").exists())

    def test_invalid_read_only_value(self):
        code, _, err = self._main("run", "Q?", "--read-only", "maybe", "--dry-run")
        self.assertEqual(code, 1)
        self.assertIn("Invalid --read-only value", err)


class TestToolsCommands(CliTestCase):
    def test_list(self):
        code, out, _ = self._main("tools", "list")
        self.assertEqual(code, 0)
        self.assertIn("claude (claude) [enforced]", out)
        self.assertIn("gemini (gemini) [bestEffort]", out)

    def test_test_reports_failures(self):
        probe = AsyncMock(return_value=ProbeResult("claude", True, "OK", 10))
        with patch.object(cli, "probe_tool", probe):
            code, out, _ = self._main("tools", "test", "claude", "ghost")
        self.assertEqual(code, 1)
        self.assertIn("✓ claude", out)
        self.assertIn("Not configured", out)


if __name__ == "__main__":
    unittest.main()

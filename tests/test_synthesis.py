import tempfile
import unittest
from pathlib import Path

from counselors.domain.contracts import CostInfo, ToolReport
from counselors.domain.runs import RunManifest
from counselors.services.synthesis import MAX_HEADINGS, synthesize


def _report(tool_id, status="success", **kwargs):
    fields = dict(
        tool_id=tool_id,
        status=status,
        exit_code=0 if status == "success" else 1,
        duration_ms=12340,
        word_count=250,
        output_file="",
        stderr_file="",
    )
    fields.update(kwargs)
    return ToolReport(**fields)


class TestSynthesis(unittest.TestCase):
    def test_summary_sections(self):
        cost = CostInfo(0.42, 0.42, 0.0, "free", 9.58, 10.0, 0.0)
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "claude.md").write_text("# Verdict\nok\n## Risks\n#### too deep\n", encoding="utf-8")
            manifest = RunManifest(
                timestamp="2026-01-01T00:00:00+00:00",
                slug="review",
                prompt="p" * 150,
                prompt_source="inline",
                read_only_policy="enforced",
                tools=[
                    _report("claude"),
                    _report("amp", cost=cost),
                    _report("codex", status="error", error="auth failed"),
                    _report("gemini", status="timeout"),
                ],
            )
            text = synthesize(manifest, tmp)

        self.assertTrue(text.startswith("# Run Summary"))
        self.assertIn("**Prompt:** " + "p" * 100 + "...", text)
        self.assertIn("**Tools:** claude, amp, codex, gemini", text)
        self.assertIn("read-only=enforced", text)
        self.assertIn("### ✓ claude", text)
        self.assertIn("### ✗ codex", text)
        self.assertIn("### ⏱ gemini", text)
        self.assertIn("- Duration: 12.3s", text)
        self.assertIn("  - Verdict", text)
        self.assertIn("  - Risks", text)
        self.assertNotIn("too deep", text)
        self.assertIn("- Error: auth failed", text)
        self.assertIn("## Cost Summary", text)
        self.assertIn("| amp | $0.42 | free | $9.58 |", text)

    def test_heading_limit_and_sanitized_lookup(self):
        with tempfile.TemporaryDirectory() as tmp:
            body = "\n".join(f"## Point {i}" for i in range(15))
            Path(tmp, ".._evil.md").write_text(body, encoding="utf-8")
            manifest = RunManifest("ts", "s", "short", "inline", "none", [_report("../evil")])
            text = synthesize(manifest, tmp)
        self.assertEqual(text.count("  - Point"), MAX_HEADINGS)
        self.assertNotIn("## Cost Summary", text)


if __name__ == "__main__":
    unittest.main()

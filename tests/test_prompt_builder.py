import tempfile
import unittest
from pathlib import Path

from counselors.services.prompt_builder import (
    MAX_SLUG_LENGTH,
    build_prompt,
    gather_file_context,
    generate_slug,
    resolve_output_dir,
    slug_from_file,
)


class TestSlugs(unittest.TestCase):
    def test_generate_slug(self):
        self.assertEqual(generate_slug("How should I structure auth?!"), "how-should-i-structure-auth")
        self.assertEqual(generate_slug("  --Already - dashed--  "), "already-dashed")
        self.assertEqual(generate_slug("???"), "")

    def test_slug_is_capped(self):
        self.assertLessEqual(len(generate_slug("word " * 40)), MAX_SLUG_LENGTH)

    def test_slug_from_file(self):
        self.assertEqual(slug_from_file("/work/plans/Auth Review/prompt.md"), "auth-review")
        self.assertEqual(slug_from_file("notes.md"), "notes")


class TestOutputDir(unittest.TestCase):
    def test_existing_dir_gets_suffix(self):
        with tempfile.TemporaryDirectory() as tmp:
            first = resolve_output_dir(Path(tmp) / "base", "my-run")
            second = resolve_output_dir(Path(tmp) / "base", "my-run")
            self.assertTrue(first.is_dir())
            self.assertTrue(second.is_dir())
            self.assertEqual(first.name, "my-run")
            self.assertNotEqual(first, second)
            self.assertTrue(second.name.startswith("my-run-"))


class TestBuildPrompt(unittest.TestCase):
    def test_template_sections(self):
        text = build_prompt("Should we shard the queue?")
        self.assertTrue(text.startswith("# Second Opinion Request"))
        self.assertIn("## Question\nShould we shard the queue?", text)
        self.assertIn("## Instructions", text)
        self.assertNotIn("## Context", text)

    def test_context_section(self):
        text = build_prompt("Q?", context="### Files Referenced")
        self.assertLess(text.index("## Context"), text.index("## Instructions"))


class TestFileContext(unittest.TestCase):
    def test_respects_budget(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "small.py").write_text("print('hi')\n", encoding="utf-8")
            Path(tmp, "big.txt").write_text("x" * 4096, encoding="utf-8")
            text = gather_file_context(tmp, ["small.py", "big.txt", "missing.txt"], max_kb=1)
        self.assertIn("#### small.py", text)
        self.assertIn("print('hi')", text)
        self.assertNotIn("big.txt", text)

    def test_nothing_readable_gives_empty(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(gather_file_context(tmp, ["missing"], max_kb=50), "")


if __name__ == "__main__":
    unittest.main()

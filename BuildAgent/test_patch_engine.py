import unittest
import tempfile
import shutil
from pathlib import Path
from unittest.mock import MagicMock, patch

import sys
sys.path.append(str(Path(__file__).parent.parent))

from BuildAgent.errors import ContainmentError, PatchError
from BuildAgent.patch_engine import (
    AddFile, UpdateFile, apply_patch, is_trivial_patch, parse_patch_blocks,
)
from BuildAgent.sandbox import LAST_REJECT_PATH, PATCH_TMP_DIR


def envelope(*blocks: str) -> str:
    return "*** Begin Patch\n" + "".join(blocks) + "*** End Patch\n"


class TestEnvelopeParsing(unittest.TestCase):
    def test_add_and_update_blocks(self):
        text = envelope(
            "*** Add File: src/hello.ts\n+export const hi = 1;\n+\n+// end\n",
            "*** Update File: README.md\n@@\n-old title\n+new title\n@@\n",
        )
        blocks = parse_patch_blocks(text)
        self.assertEqual(blocks[0], AddFile("src/hello.ts", "export const hi = 1;\n\n// end\n"))
        self.assertEqual(blocks[1], UpdateFile("README.md", "old title", "new title\n"))

    def test_blocks_across_envelopes(self):
        text = envelope("*** Add File: a.txt\n+a\n") + "some prose\n" + envelope("*** Add File: b.txt\n+b\n")
        self.assertEqual([b.rel_path for b in parse_patch_blocks(text)], ["a.txt", "b.txt"])

    def test_update_without_new_lines_is_malformed(self):
        with self.assertRaises(PatchError):
            parse_patch_blocks(envelope("*** Update File: a.txt\n-gone\n"))

    def test_trivial_detection(self):
        self.assertTrue(is_trivial_patch(""))
        self.assertTrue(is_trivial_patch("I could not produce a patch."))
        self.assertFalse(is_trivial_patch("--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b\n"))
        self.assertFalse(is_trivial_patch(envelope("*** Add File: x\n+x\n")))


class TestApplyPatch(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.root)

    def test_add_file_creates_parents_and_keeps_artifact(self):
        text = envelope("*** Add File: src/hello.txt\n+hello\n+world\n")
        apply_patch(self.root, text)
        self.assertEqual((self.root / "src" / "hello.txt").read_text(), "hello\nworld\n")
        artifacts = list((self.root / PATCH_TMP_DIR).glob("patch-*.diff"))
        self.assertEqual(len(artifacts), 1)
        self.assertEqual(artifacts[0].read_text(), text)

    def test_update_replaces_whole_file(self):
        (self.root / "a.txt").write_text("old\nlines\n")
        apply_patch(self.root, envelope("*** Update File: a.txt\n-old\n-lines\n+fresh\n"))
        self.assertEqual((self.root / "a.txt").read_text(), "fresh\n")

    def test_drifted_file_still_gets_new_content(self):
        (self.root / "a.txt").write_text("edited locally\n")
        apply_patch(self.root, envelope("*** Update File: a.txt\n-what the planner saw\n+replacement\n"))
        self.assertEqual((self.root / "a.txt").read_text(), "replacement\n")

    def test_failure_rolls_back_every_touched_file(self):
        (self.root / "keep.txt").write_text("original\n")
        text = envelope(
            "*** Update File: keep.txt\n+changed\n",
            "*** Add File: brand-new.txt\n+new\n",
            "*** Update File: broken.txt\n-no plus lines here\n",
        )
        with self.assertRaises(PatchError):
            apply_patch(self.root, text)
        self.assertEqual((self.root / "keep.txt").read_text(), "original\n")
        self.assertFalse((self.root / "brand-new.txt").exists())

    def test_escape_is_blocked_and_rolled_back(self):
        (self.root / "inside.txt").write_text("v1\n")
        text = envelope(
            "*** Update File: inside.txt\n+v2\n",
            "*** Add File: ../evil.txt\n+pwned\n",
        )
        with self.assertRaises(ContainmentError):
            apply_patch(self.root, text)
        self.assertFalse((self.root.parent / "evil.txt").exists())
        self.assertEqual((self.root / "inside.txt").read_text(), "v1\n")

    def test_trivial_patch_is_skipped(self):
        apply_patch(self.root, "Sorry, nothing to change.")
        self.assertFalse((self.root / PATCH_TMP_DIR).exists())

    def test_unknown_mode(self):
        with self.assertRaises(ValueError):
            apply_patch(self.root, envelope("*** Add File: x\n+x\n"), mode="fuzzy")

    @patch("BuildAgent.patch_engine.ensure_git_repo")
    @patch("BuildAgent.patch_engine.subprocess.run")
    def test_failed_unified_diff_reports_rejects(self, run, _git):
        run.return_value = MagicMock(returncode=1)
        (self.root / "src").mkdir()
        (self.root / "src" / "app.js.rej").write_text("@@ rejected hunk @@\n")
        diff = "--- a/src/app.js\n+++ b/src/app.js\n@@ -1 +1 @@\n-a\n+b\n"

        with self.assertRaises(PatchError) as ctx:
            apply_patch(self.root, diff)

        self.assertEqual(ctx.exception.rejects, ["src/app.js.rej"])
        self.assertIn("src/app.js.rej", str(ctx.exception))
        self.assertEqual((self.root / LAST_REJECT_PATH).read_text(), diff)
        self.assertTrue(ctx.exception.artifact.exists())
        self.assertEqual(run.call_count, 2)

    @unittest.skipIf(shutil.which("git") is None, "git not installed")
    def test_unified_diff_applies_with_git(self):
        (self.root / "a.txt").write_text("one\ntwo\n")
        diff = "--- a/a.txt\n+++ b/a.txt\n@@ -1,2 +1,2 @@\n one\n-two\n+three\n"
        apply_patch(self.root, diff, mode="hunks")
        self.assertTrue((self.root / ".git").exists())
        self.assertEqual((self.root / "a.txt").read_text(), "one\nthree\n")


if __name__ == "__main__":
    unittest.main()

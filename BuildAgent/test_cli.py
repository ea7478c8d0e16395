import unittest
import tempfile
import shutil
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.append(str(Path(__file__).parent.parent))

from BuildAgent.cli import main
from BuildAgent.sandbox import CACHE_PATH


class TestCli(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp())
        (self.root / "index.html").write_text("<h1>hi</h1>\n")

    def tearDown(self):
        shutil.rmtree(self.root)

    def _printed(self, console):
        return " ".join(str(c.args[0]) for c in console.print.call_args_list if c.args)

    @patch("BuildAgent.cli.console")
    def test_scan_without_cache_write_does_not_mention_cache(self, console):
        self.assertEqual(main(["--root", str(self.root), "scan", "--no-cache-write"]), 0)
        self.assertNotIn("Cache:", self._printed(console))
        self.assertFalse((self.root / CACHE_PATH).exists())

    @patch("BuildAgent.cli.console")
    def test_scan_reports_cache_path(self, console):
        self.assertEqual(main(["--root", str(self.root), "scan"]), 0)
        self.assertIn("Cache:", self._printed(console))
        self.assertTrue((self.root / CACHE_PATH).exists())

    @patch("BuildAgent.daemon.OpenAIPlanner")
    @patch("BuildAgent.daemon.Daemon.run_forever", side_effect=KeyboardInterrupt)
    def test_daemon_starts_without_building_planner(self, run_forever, planner_cls):
        self.assertEqual(main(["--root", str(self.root), "daemon", "--api-key", "k"]), 0)
        run_forever.assert_called_once()
        planner_cls.assert_not_called()

    def test_resume_unknown_task_is_an_error(self):
        self.assertEqual(main(["--root", str(self.root), "resume", "missing-id"]), 1)


if __name__ == "__main__":
    unittest.main()

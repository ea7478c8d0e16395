import os
import unittest
import tempfile
import shutil
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.append(str(Path(__file__).parent.parent))

from BuildAgent.config import DEFAULT_SHELL_ALLOWLIST, PlannerConfig, load_executor_config
from BuildAgent.errors import BuildAgentError, ContainmentError
from BuildAgent.sandbox import CONFIG_PATH, ensure_project_root, find_root, resolve_in_root


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp())
        (self.root / ".af").mkdir()

    def tearDown(self):
        shutil.rmtree(self.root)

    def test_missing_config_uses_default_allowlist(self):
        cfg = load_executor_config(self.root)
        self.assertEqual(cfg.merged_allowlist(), DEFAULT_SHELL_ALLOWLIST)
        self.assertTrue(cfg.run_build)

    def test_both_allowlist_sources_are_merged(self):
        (self.root / CONFIG_PATH).write_text(
            "shellAllowlist: [npm, git]\n"
            "actions:\n  shell:\n    allow: [make, npm]\n"
            "check:\n  runBuild: false\n  command: make check\n"
            "exec:\n  timeout: 90\n"
            "deploy:\n  command: vercel deploy\n"
        )
        cfg = load_executor_config(self.root)
        self.assertEqual(cfg.merged_allowlist(), ["make", "npm", "git"])
        self.assertFalse(cfg.run_build)
        self.assertEqual(cfg.check_command, "make check")
        self.assertEqual(cfg.exec_timeout, 90.0)
        self.assertEqual(cfg.deploy_command, "vercel deploy")

    def test_invalid_yaml(self):
        (self.root / CONFIG_PATH).write_text("shellAllowlist: [npm\n")
        with self.assertRaises(BuildAgentError):
            load_executor_config(self.root)

    @patch.dict(os.environ, {"AF_API_KEY": "", "TOGETHER_API_KEY": "tk", "AF_MODEL": "m1"}, clear=False)
    def test_planner_env(self):
        cfg = PlannerConfig.from_env()
        self.assertEqual(cfg.api_key, "tk")
        self.assertEqual(cfg.model, "m1")


class TestSandbox(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp()).resolve()

    def tearDown(self):
        shutil.rmtree(self.root)

    def test_find_root_walks_up_to_git(self):
        (self.root / ".git").mkdir()
        nested = self.root / "a" / "b"
        nested.mkdir(parents=True)
        self.assertEqual(find_root(nested), self.root)
        self.assertEqual(ensure_project_root(nested), self.root)
        self.assertTrue((self.root / ".af").is_dir())

    def test_resolve_in_root(self):
        self.assertEqual(resolve_in_root(self.root, "x/../y.txt"), self.root / "y.txt")
        self.assertEqual(resolve_in_root(self.root, "."), self.root)
        with self.assertRaises(ContainmentError):
            resolve_in_root(self.root, "../sibling")
        with self.assertRaises(ContainmentError):
            resolve_in_root(self.root, "/etc/passwd")

    def test_symlink_escape_is_blocked(self):
        outside = Path(tempfile.mkdtemp())
        try:
            (self.root / "link").symlink_to(outside, target_is_directory=True)
            with self.assertRaises(ContainmentError):
                resolve_in_root(self.root, "link/file.txt")
        finally:
            shutil.rmtree(outside)


if __name__ == "__main__":
    unittest.main()

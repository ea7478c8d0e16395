import unittest
import tempfile
import shutil
from pathlib import Path
from unittest.mock import MagicMock, patch

import sys
sys.path.append(str(Path(__file__).parent.parent))

from BuildAgent.config import ExecutorConfig, PlannerConfig
from BuildAgent.daemon import Daemon
from BuildAgent.phase_runner import PhaseResult
from BuildAgent.planner import Planner


class NeverCalledPlanner(Planner):
    def complete(self, system, user):
        raise AssertionError("planner should not be consulted")


class TestDaemon(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp())
        self.cfg = ExecutorConfig(shell_allowlist=["git"])
        self.daemon = Daemon(self.root, self.cfg, planner=NeverCalledPlanner())

    def tearDown(self):
        shutil.rmtree(self.root)

    def test_single_flight(self):
        first = self.daemon.store.enqueue("check")
        second = self.daemon.store.enqueue("check")
        finished = self.daemon.run_once()
        self.assertEqual(finished.id, first)

        statuses = {t.id: t.status for t in self.daemon.store.list_tasks()}
        self.assertIn(statuses[first], ("running", "done", "failed"))
        self.assertEqual(statuses[second], "queued")

    def test_idle_cycle_returns_none(self):
        self.assertIsNone(self.daemon.run_once())

    def test_check_task_done(self):
        tid = self.daemon.store.enqueue("check")
        self.daemon.run_once()
        self.assertEqual(self.daemon.store.get(tid).status, "done")

    def test_deploy_without_command_fails(self):
        tid = self.daemon.store.enqueue("deploy")
        task = self.daemon.run_once()
        self.assertEqual(task.status, "failed")
        self.assertIn("deploy.command", self.daemon.store.get(tid).meta["error"])

    @patch("BuildAgent.daemon.run_inherited", return_value=0)
    def test_deploy_runs_configured_command(self, run):
        self.daemon.cfg.deploy_command = "vercel deploy --prod"
        self.daemon.store.enqueue("deploy")
        self.assertEqual(self.daemon.run_once().status, "done")
        self.assertEqual(run.call_args.args[0], "vercel deploy --prod")

    def test_edit_with_actions_uses_executor(self):
        tid = self.daemon.store.enqueue("edit", {"actions": [
            {"type": "write_file", "path": "notes.md", "content": "hi\n"},
        ]})
        self.daemon.run_once()
        self.assertEqual(self.daemon.store.get(tid).status, "done")
        self.assertEqual((self.root / "notes.md").read_text(), "hi\n")

    def test_failed_actions_are_recorded(self):
        tid = self.daemon.store.enqueue("edit", {"actions": [{"type": "exec", "cmd": "rm -rf ."}]})
        self.daemon.run_once()
        task = self.daemon.store.get(tid)
        self.assertEqual(task.status, "failed")
        self.assertIn("'rm'", task.meta["error"])

    @patch("BuildAgent.daemon.run_phased_build", return_value=PhaseResult(ok=True, attempts=2))
    def test_generate_goal_goes_through_phase_runner(self, run):
        tid = self.daemon.store.enqueue("generate", {"args": ["todo", "app"]})
        self.daemon.run_once()
        self.assertEqual(run.call_args.args[1], "todo app")
        task = self.daemon.store.get(tid)
        self.assertEqual(task.status, "done")
        self.assertEqual(task.meta["attempts"], 2)

    def test_generate_without_goal_fails(self):
        tid = self.daemon.store.enqueue("generate")
        self.daemon.run_once()
        self.assertEqual(self.daemon.store.get(tid).status, "failed")

    def test_fifo_by_list_position(self):
        ids = [self.daemon.store.enqueue("check") for _ in range(3)]
        done = [self.daemon.run_once().id for _ in range(3)]
        self.assertEqual(done, ids)
        self.assertIsNone(self.daemon.run_once())

    def test_task_left_running_does_not_block_queue(self):
        stale = self.daemon.store.enqueue("check")
        self.daemon.store.set_status(stale, "running")
        waiting = self.daemon.store.enqueue("check")

        finished = self.daemon.run_once()

        self.assertEqual(finished.id, waiting)
        self.assertEqual(finished.status, "done")
        old = self.daemon.store.get(stale)
        self.assertEqual(old.status, "failed")
        self.assertEqual(old.meta["error"], "interrupted")

    def test_interrupt_during_task_marks_it_failed(self):
        tid = self.daemon.store.enqueue("check")
        with patch.dict(self.daemon._dispatch, {"check": MagicMock(side_effect=KeyboardInterrupt)}):
            with self.assertRaises(KeyboardInterrupt):
                self.daemon.run_once()
        task = self.daemon.store.get(tid)
        self.assertEqual(task.status, "failed")
        self.assertEqual(task.meta["error"], "interrupted")

    @patch("BuildAgent.daemon.OpenAIPlanner")
    def test_planner_is_only_built_for_build_tasks(self, planner_cls):
        daemon = Daemon(self.root, self.cfg, planner_config=PlannerConfig(api_key="k"))
        daemon.store.enqueue("check")
        daemon.run_once()
        planner_cls.assert_not_called()

        with patch("BuildAgent.daemon.run_phased_build", return_value=PhaseResult(ok=True, attempts=1)):
            daemon.store.enqueue("generate", {"goal": "site"})
            daemon.run_once()
        planner_cls.assert_called_once()
        self.assertEqual(planner_cls.call_args.args[0].api_key, "k")


if __name__ == "__main__":
    unittest.main()

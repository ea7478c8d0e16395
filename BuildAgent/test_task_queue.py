import unittest
import tempfile
import shutil
import json
from pathlib import Path

import sys
sys.path.append(str(Path(__file__).parent.parent))

from BuildAgent.errors import TaskStateError
from BuildAgent.sandbox import STATE_PATH
from BuildAgent.task_queue import TaskStore


class TestTaskStore(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp())
        self.store = TaskStore(self.root)

    def tearDown(self):
        shutil.rmtree(self.root)

    def test_enqueue_persists_in_order(self):
        a = self.store.enqueue("check")
        b = self.store.enqueue("generate", {"goal": "landing page"})
        tasks = TaskStore(self.root).list_tasks()
        self.assertEqual([t.id for t in tasks], [a, b])
        self.assertTrue(all(t.status == "queued" for t in tasks))
        self.assertEqual(tasks[1].meta, {"goal": "landing page"})

        state = json.loads((self.root / STATE_PATH).read_text())
        self.assertEqual(set(state), {"tasks", "auth"})
        self.assertEqual(set(state["tasks"][0]), {"id", "type", "status", "createdAt", "updatedAt", "meta"})

    def test_unknown_type_and_status(self):
        with self.assertRaises(TaskStateError):
            self.store.enqueue("refactor")
        tid = self.store.enqueue("check")
        with self.assertRaises(TaskStateError):
            self.store.set_status(tid, "sleeping")
        with self.assertRaises(TaskStateError):
            self.store.set_status("missing-id", "done")

    def test_meta_patch_is_merged(self):
        tid = self.store.enqueue("deploy", {"target": "prod"})
        task = self.store.set_status(tid, "failed", {"error": "boom"})
        self.assertEqual(task.meta, {"target": "prod", "error": "boom"})
        self.assertEqual(self.store.get(tid).status, "failed")

    def test_only_one_running_task(self):
        a = self.store.enqueue("check")
        b = self.store.enqueue("check")
        self.store.set_status(a, "running")
        with self.assertRaises(TaskStateError):
            self.store.set_status(b, "running")
        self.store.set_status(a, "done")
        self.store.set_status(b, "running")

    def test_human_gate_and_resume(self):
        tid = self.store.enqueue("deploy")
        self.store.set_status(tid, "running")
        task = self.store.request_human_action(tid, "Link the hosting project", ["run `vercel link`"])
        self.assertEqual(task.status, "paused-awaiting-human")
        self.assertEqual(task.meta["checklist"], ["run `vercel link`"])
        self.assertIsNone(self.store.next_queued())

        self.assertEqual(self.store.resume(tid).status, "queued")
        self.assertEqual(self.store.next_queued().id, tid)

    def test_resume_recovers_stale_running_task(self):
        tid = self.store.enqueue("generate", {"goal": "x"})
        self.store.set_status(tid, "running")
        self.assertEqual(self.store.resume(tid).status, "queued")
        self.assertEqual(self.store.next_queued().id, tid)

    def test_resume_rejects_queued_task(self):
        tid = self.store.enqueue("check")
        with self.assertRaises(TaskStateError):
            self.store.resume(tid)


if __name__ == "__main__":
    unittest.main()

"""
Durable FIFO of tasks in `.af/state/state.json`.

Every call re-reads the store, applies one change and rewrites it
atomically. There is no cross-process locking: one daemon (or CLI
invocation) per project root at a time is an operating constraint.
"""

import uuid
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from BuildAgent.errors import TaskStateError
from BuildAgent.sandbox import STATE_PATH
from BuildAgent.utils import now_iso, read_json, write_json_atomic

TASK_TYPES = ("generate", "edit", "check", "deploy")
TASK_STATUSES = ("queued", "running", "paused-awaiting-human", "done", "failed")


@dataclass
class Task:
    id: str
    type: str
    status: str
    createdAt: str
    updatedAt: str
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Task":
        return cls(
            id=d["id"], type=d["type"], status=d["status"],
            createdAt=d.get("createdAt", ""), updatedAt=d.get("updatedAt", ""),
            meta=dict(d.get("meta") or {}),
        )


def _blank_state() -> Dict[str, Any]:
    return {"tasks": [], "auth": {"initialized": False, "storedAt": ""}}


class TaskStore:
    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self.path = self.root / STATE_PATH

    def _load(self) -> Dict[str, Any]:
        state = read_json(self.path, None)
        if state is None:
            state = _blank_state()
            write_json_atomic(self.path, state)
        state.setdefault("tasks", [])
        return state

    def _save(self, state: Dict[str, Any]):
        write_json_atomic(self.path, state)

    def enqueue(self, task_type: str, meta: Optional[Dict[str, Any]] = None) -> str:
        if task_type not in TASK_TYPES:
            raise TaskStateError(f"Unknown task type: {task_type} (expected one of {', '.join(TASK_TYPES)})")
        now = now_iso()
        task = Task(id=str(uuid.uuid4()), type=task_type, status="queued",
                    createdAt=now, updatedAt=now, meta=dict(meta or {}))
        state = self._load()
        state["tasks"].append(asdict(task))
        self._save(state)
        return task.id

    def list_tasks(self) -> List[Task]:
        return [Task.from_dict(d) for d in self._load()["tasks"]]

    def get(self, task_id: str) -> Task:
        for t in self.list_tasks():
            if t.id == task_id:
                return t
        raise TaskStateError(f"Task not found: {task_id}")

    def next_queued(self) -> Optional[Task]:
        """First queued task in list order (FIFO by position, not timestamp)."""
        return next((t for t in self.list_tasks() if t.status == "queued"), None)

    def set_status(self, task_id: str, status: str, meta_patch: Optional[Dict[str, Any]] = None) -> Task:
        if status not in TASK_STATUSES:
            raise TaskStateError(f"Unknown task status: {status}")
        state = self._load()
        entry = next((d for d in state["tasks"] if d["id"] == task_id), None)
        if entry is None:
            raise TaskStateError(f"Task not found: {task_id}")
        if status == "running":
            busy = [d["id"] for d in state["tasks"] if d["status"] == "running" and d["id"] != task_id]
            if busy:
                raise TaskStateError(f"Task {busy[0]} is already running")
        entry["status"] = status
        entry["updatedAt"] = now_iso()
        if meta_patch:
            entry["meta"] = {**(entry.get("meta") or {}), **meta_patch}
        self._save(state)
        return Task.from_dict(entry)

    def request_human_action(self, task_id: str, instruction: str, checklist: List[str]) -> Task:
        return self.set_status(task_id, "paused-awaiting-human",
                               {"instruction": instruction, "checklist": list(checklist)})

    def resume(self, task_id: str) -> Task:
        task = self.get(task_id)
        # `running` is accepted so a task orphaned by a killed daemon can be recovered
        if task.status not in ("paused-awaiting-human", "failed", "running"):
            raise TaskStateError(f"Task {task_id} is {task.status}; only paused, failed or stale running tasks can be resumed")
        return self.set_status(task_id, "queued")

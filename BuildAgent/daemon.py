#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
daemon.py - polling consumer of the task queue.

One task at a time: pick the first queued task, mark it running,
dispatch it by type, then record done/failed. The loop only stops when
the process is interrupted.
"""

import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from rich.markup import escape

from BuildAgent.actions import CheckAction, execute_actions
from BuildAgent.config import ExecutorConfig, PlannerConfig, load_executor_config
from BuildAgent.env_store import load_pending_sync
from BuildAgent.errors import BuildAgentError, CommandFailed
from BuildAgent.phase_runner import run_phased_build
from BuildAgent.planner import OpenAIPlanner, Planner
from BuildAgent.task_queue import Task, TaskStore
from BuildAgent.utils import console, run_inherited


class Daemon:
    def __init__(self, root: Union[str, Path], cfg: Optional[ExecutorConfig] = None,
                 planner: Optional[Planner] = None, max_retries: int = 5,
                 planner_config: Optional[PlannerConfig] = None):
        self.root = Path(root).resolve()
        self.cfg = cfg or load_executor_config(self.root)
        self.store = TaskStore(self.root)
        self.max_retries = max_retries
        self._planner = planner
        self._planner_config = planner_config
        self._dispatch: Dict[str, Callable[[Task], Dict[str, Any]]] = {
            "check": self._do_check,
            "deploy": self._do_deploy,
            "generate": self._do_build,
            "edit": self._do_build,
        }

    @property
    def planner(self) -> Planner:
        if self._planner is None:
            # Built on first generate/edit task; check and deploy never need it
            self._planner = OpenAIPlanner(self._planner_config or PlannerConfig.from_env())
        return self._planner

    # ---------------------------
    # Per-type handlers: return a meta patch, raise on failure
    # ---------------------------

    def _do_check(self, task: Task) -> Dict[str, Any]:
        paths = task.meta.get("paths")
        result = execute_actions(self.root, self.cfg, [CheckAction(paths=paths, description="Queued check")])
        if not result.ok:
            raise BuildAgentError(result.error_log or "check failed")
        return {}

    def _do_deploy(self, task: Task) -> Dict[str, Any]:
        cmd = task.meta.get("command") or self.cfg.deploy_command
        if not cmd:
            raise BuildAgentError("No deploy command configured (.af/config.yml -> deploy.command)")
        pending = load_pending_sync(self.root)
        if pending:
            console.print(f"[yellow]{len(pending)} env var(s) pending provider sync: "
                          f"{escape(', '.join(v.name for v in pending))}[/yellow]")
        console.print(f"$ {escape(cmd)}")
        code = run_inherited(cmd, cwd=self.root, timeout=self.cfg.exec_timeout)
        if code != 0:
            raise CommandFailed(cmd, code)
        return {}

    def _do_build(self, task: Task) -> Dict[str, Any]:
        actions = task.meta.get("actions")
        if isinstance(actions, list):
            result = execute_actions(self.root, self.cfg, actions)
            if not result.ok:
                raise BuildAgentError(result.error_log or f"{task.type} failed")
            return {"result": result.to_dict()}

        goal = task.meta.get("goal")
        if not goal and task.meta.get("args"):
            goal = " ".join(str(a) for a in task.meta["args"])
        if not goal:
            raise BuildAgentError(f"{task.type} task has neither 'actions' nor 'goal' in meta")
        phase = run_phased_build(self.root, goal, self.planner,
                                 max_retries=self.max_retries, exec_config=self.cfg)
        if not phase.ok:
            raise BuildAgentError(phase.last_error or f"{task.type} failed after {phase.attempts} round(s)")
        return {"attempts": phase.attempts}

    # ---------------------------
    # Loop
    # ---------------------------

    def recover_interrupted(self) -> List[Task]:
        """Fail tasks left `running` by a previous daemon that was interrupted."""
        stale = [t for t in self.store.list_tasks() if t.status == "running"]
        recovered = []
        for t in stale:
            console.print(f"[yellow]Task {t.id} was left running; marking it failed.[/yellow]")
            recovered.append(self.store.set_status(t.id, "failed", {"error": "interrupted"}))
        return recovered

    def run_once(self) -> Optional[Task]:
        """Process at most one queued task. Returns the finished task, or None when idle."""
        # Between cycles this daemon owns no task, so any `running` entry is stale
        self.recover_interrupted()
        task = self.store.next_queued()
        if task is None:
            return None

        self.store.set_status(task.id, "running")
        console.print(f"[cyan]▶ {task.type} {task.id}[/cyan]")
        try:
            meta_patch = self._dispatch[task.type](task)
        except KeyboardInterrupt:
            self.store.set_status(task.id, "failed", {"error": "interrupted"})
            raise
        except Exception as e:
            console.print(f"[red]✗ {task.type} {task.id}: {escape(str(e))}[/red]")
            return self.store.set_status(task.id, "failed", {"error": str(e)})
        console.print(f"[green]✓ {task.type} {task.id}[/green]")
        return self.store.set_status(task.id, "done", meta_patch)

    def run_forever(self, interval: float = 1.5):
        console.print(f"[bold]Daemon watching {escape(str(self.root))} (every {interval}s). Ctrl-C to stop.[/bold]")
        while True:
            if self.run_once() is None:
                time.sleep(interval)

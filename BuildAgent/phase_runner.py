#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
phase_runner.py - multi-round Plan -> Execute -> Diagnose loop.

Each round executes the current plan (with a trailing `check` appended
when the planner left it out). A failed round sends the error log back to
the planner for the smallest corrective plan. The loop ends on the first
passing round, after `max_retries` rounds, or after two unparseable
planner replies in a row.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from rich.markup import escape
from rich.panel import Panel

from BuildAgent.actions import execute_actions
from BuildAgent.config import DEFAULT_SHELL_ALLOWLIST, ExecutorConfig
from BuildAgent.errors import PlannerFormatError, PlannerUnavailable
from BuildAgent.planner import (
    SYSTEM_POLICY, Plan, Planner, first_build_prompt, fix_prompt, invalid_json_prompt,
    parse_plan, read_product_spec,
)
from BuildAgent.sandbox import SESSIONS_DIR
from BuildAgent.utils import console, now_stamp


@dataclass
class PhaseResult:
    ok: bool
    attempts: int
    last_error: Optional[str] = None


class SessionLog:
    """Per-turn prompt/response/result files under `.af/sessions/<stamp>/`."""

    def __init__(self, session_dir: Path):
        self.session_dir = session_dir
        self._turn = 0

    def next_turn(self, label: str) -> Path:
        self._turn += 1
        d = self.session_dir / f"{self._turn:04d}_{label}"
        d.mkdir(parents=True, exist_ok=True)
        return d


def _action_type(a: Any) -> Optional[str]:
    if isinstance(a, dict):
        return a.get("type")
    return getattr(a, "TYPE", None)

def with_trailing_check(actions: List[Any], check_paths: Optional[List[str]] = None) -> List[Any]:
    actions = list(actions)
    if not any(_action_type(a) == "check" for a in actions):
        check: Dict[str, Any] = {"type": "check", "description": "Run build/type checks"}
        if check_paths:
            check["paths"] = list(check_paths)
        actions.append(check)
    return actions


def _ask(planner: Planner, user_prompt: str, session: SessionLog, label: str) -> Optional[Plan]:
    turn_dir = session.next_turn(label)
    (turn_dir / "prompt.md").write_text(user_prompt, encoding="utf-8")
    try:
        reply = planner.complete(SYSTEM_POLICY, user_prompt)
    except Exception as e:
        console.print(f"[red]Planner call failed: {escape(str(e))}[/red]")
        raise PlannerUnavailable(f"Planner call failed: {e}") from e
    (turn_dir / "response.md").write_text(reply, encoding="utf-8")
    try:
        return parse_plan(reply)
    except PlannerFormatError as e:
        console.print(f"[yellow]{e}[/yellow]")
        return None


def run_phased_build(
    root: Union[str, Path],
    goal: str,
    planner: Planner,
    max_retries: int = 5,
    check_paths: Optional[List[str]] = None,
    exec_config: Optional[ExecutorConfig] = None,
    session_dir: Optional[Path] = None,
) -> PhaseResult:
    root = Path(root).resolve()
    max_retries = max(1, max_retries)
    cfg = exec_config or ExecutorConfig(shell_allowlist=list(DEFAULT_SHELL_ALLOWLIST))
    session = SessionLog(session_dir or root / SESSIONS_DIR / now_stamp())

    # Plan
    console.print("[bold cyan]Phase: Plan[/bold cyan]")
    try:
        plan = _ask(planner, first_build_prompt(goal, read_product_spec(root), check_paths), session, "plan")
        if plan is None:
            plan = _ask(planner, invalid_json_prompt("The initial plan was not valid JSON."), session, "plan_retry")
    except PlannerUnavailable as e:
        return PhaseResult(ok=False, attempts=0, last_error=str(e))
    if plan is None:
        return PhaseResult(ok=False, attempts=0,
                           last_error="Planner returned invalid JSON twice for the initial plan.")

    attempts = 0
    last_error: Optional[str] = None
    while attempts < max_retries:
        attempts += 1
        console.rule(f"Round {attempts}/{max_retries}")
        if plan.notes:
            console.print(Panel(escape(plan.notes), title="Planner notes", style="magenta"))

        # Execute
        actions = with_trailing_check(plan.actions, check_paths)
        result = execute_actions(root, cfg, actions)
        turn_dir = session.next_turn("result")
        (turn_dir / "result.json").write_text(
            json.dumps({"round": attempts, "actions": actions, "result": result.to_dict()},
                       indent=2, ensure_ascii=False, default=str),
            encoding="utf-8",
        )
        if result.ok:
            console.print(f"[green]Verification PASSED in round {attempts}.[/green]")
            return PhaseResult(ok=True, attempts=attempts)

        last_error = result.error_log or "Unknown error"
        console.print(Panel(escape(last_error[:500]), title=f"Round {attempts} failed", style="red"))
        if attempts >= max_retries:
            break

        # Diagnose
        console.print("[bold cyan]Phase: Diagnose[/bold cyan]")
        try:
            plan = _ask(planner, fix_prompt(goal, last_error), session, "fix")
            if plan is None:
                plan = _ask(planner, invalid_json_prompt(last_error), session, "fix_retry")
        except PlannerUnavailable as e:
            return PhaseResult(ok=False, attempts=attempts, last_error=str(e))
        if plan is None:
            return PhaseResult(ok=False, attempts=attempts,
                               last_error="Planner returned invalid JSON twice in a row.")

    console.print(f"[bold red]Retry budget exhausted after {attempts} round(s).[/bold red]")
    return PhaseResult(ok=False, attempts=attempts, last_error=last_error)

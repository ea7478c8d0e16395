#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
cli.py - `buildagent` command line.

  buildagent run --goal "..."          multi-round plan/execute/fix loop
  buildagent apply plan.json           execute one action batch
  buildagent scan --deep               scan repo, refresh .af/cache.json
  buildagent queue add check           enqueue a task
  buildagent queue ls                  list tasks
  buildagent daemon --interval 1.5     consume the queue
  buildagent resume <id>               re-queue a paused, failed or stale running task
"""

import argparse
import json
import sys
from pathlib import Path

from rich.markup import escape
from rich.table import Table

from BuildAgent.actions import execute_actions
from BuildAgent.config import PlannerConfig, load_executor_config
from BuildAgent.daemon import Daemon
from BuildAgent.errors import BuildAgentError, ScanCancelled
from BuildAgent.phase_runner import run_phased_build
from BuildAgent.planner import OpenAIPlanner, extract_json
from BuildAgent.repo_scanner import CancelToken, cancel_on_interrupt, scan_repository
from BuildAgent.sandbox import ensure_project_root, project_root, resolve_in_root
from BuildAgent.task_queue import TASK_TYPES, TaskStore
from BuildAgent.utils import console


def _planner_config_from_args(args) -> PlannerConfig:
    cfg = PlannerConfig.from_env()
    if args.base_url:
        cfg.base_url = args.base_url
    if args.api_key:
        cfg.api_key = args.api_key
    if args.model:
        cfg.model = args.model
    cfg.max_context = args.max_context
    cfg.max_output = args.max_output
    return cfg


def cmd_run(args) -> int:
    root = ensure_project_root(args.root)
    result = run_phased_build(
        root, args.goal, OpenAIPlanner(_planner_config_from_args(args)),
        max_retries=args.max_retries,
        check_paths=args.check_path or None,
        exec_config=load_executor_config(root),
    )
    return 0 if result.ok else 1


def cmd_apply(args) -> int:
    root = ensure_project_root(args.root)
    data = extract_json(Path(args.plan).read_text(encoding="utf-8"))
    actions = data.get("actions") if isinstance(data, dict) else data
    if not isinstance(actions, list):
        console.print("[red]Plan file has no 'actions' array.[/red]")
        return 2
    result = execute_actions(root, load_executor_config(root), actions)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.ok else 1


def cmd_scan(args) -> int:
    base = project_root(args.root)
    scan_root = resolve_in_root(base, args.scan_root, verb="Scan") if args.scan_root else base
    token = CancelToken()
    try:
        with cancel_on_interrupt(token):
            result = scan_repository(
                root=scan_root,
                mode="deep" if args.deep else "fast",
                concurrency=args.concurrency,
                respect_ignore=not args.no_ignore,
                cancel=token,
                write_cache_file=not args.no_cache_write,
            )
    except ScanCancelled:
        console.print("\n[yellow]Scan canceled.[/yellow]")
        return 130
    console.print(
        f"[green]Scanned {result.stats.files} files, {result.stats.dirs} dirs, "
        f"{round(result.stats.bytes / 1024)} KiB.[/green]"
    )
    if not args.no_cache_write:
        console.print(f"[dim]Cache: {escape(str(result.cache_path))}[/dim]")
    return 0


def cmd_queue_add(args) -> int:
    root = ensure_project_root(args.root)
    meta = {"args": args.args} if args.args else {}
    if args.goal:
        meta["goal"] = args.goal
    task_id = TaskStore(root).enqueue(args.type, meta)
    console.print(f"[green]Queued {args.type}: {task_id}[/green]")
    return 0


def cmd_queue_ls(args) -> int:
    tasks = TaskStore(project_root(args.root)).list_tasks()
    if not tasks:
        console.print("[dim]Queue is empty.[/dim]")
        return 0
    table = Table(title="Tasks")
    table.add_column("id", style="cyan")
    table.add_column("type")
    table.add_column("status")
    table.add_column("updated", style="dim")
    table.add_column("error", style="red")
    for t in tasks:
        table.add_row(t.id, t.type, t.status, t.updatedAt, escape(str(t.meta.get("error", ""))[:80]))
    console.print(table)
    return 0


def cmd_daemon(args) -> int:
    root = ensure_project_root(args.root)
    daemon = Daemon(root, load_executor_config(root), max_retries=args.max_retries,
                    planner_config=_planner_config_from_args(args))
    try:
        daemon.run_forever(interval=args.interval)
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped.[/yellow]")
    return 0


def cmd_resume(args) -> int:
    task = TaskStore(project_root(args.root)).resume(args.id)
    console.print(f"[green]Re-queued {task.type}: {task.id}[/green]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="buildagent", description="Apply planner actions to a project tree")
    parser.add_argument("--root", default=".", help="Start directory for project root discovery")
    sub = parser.add_subparsers(dest="command", required=True)

    def planner_flags(p):
        p.add_argument("--base-url", default=None, help="OpenAI-compatible endpoint (env AF_BASE_URL)")
        p.add_argument("--api-key", default=None, help="API key (env AF_API_KEY)")
        p.add_argument("--model", default=None, help="Model name (env AF_MODEL)")
        p.add_argument("--max-context", type=int, default=32000, help="Max context length")
        p.add_argument("--max-output", type=int, default=8000, help="Max output tokens")
        p.add_argument("--max-retries", type=int, default=5, help="Plan/execute/fix rounds")

    p = sub.add_parser("run", help="Plan, execute and fix until checks pass")
    p.add_argument("--goal", required=True, help="What to build")
    p.add_argument("--check-path", action="append", help="Repo path to check (repeatable)")
    planner_flags(p)
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("apply", help="Execute a JSON action plan once")
    p.add_argument("plan", help="File with {\"actions\": [...]} or a bare array")
    p.add_argument("--json", action="store_true", help="Print the executor result as JSON")
    p.set_defaults(func=cmd_apply)

    p = sub.add_parser("scan", help="Scan the repository and refresh the cache")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--fast", action="store_true", help="Metadata only (default)")
    mode.add_argument("--deep", action="store_true", help="Also hash file contents")
    p.add_argument("--scan-root", default=None, help="Subdirectory to scan")
    p.add_argument("--concurrency", type=int, default=None)
    p.add_argument("--no-ignore", action="store_true", help="Do not skip node_modules/.git/etc.")
    p.add_argument("--no-cache-write", action="store_true", help="Do not update .af/cache.json")
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser("queue", help="Task queue")
    qsub = p.add_subparsers(dest="queue_command", required=True)
    q = qsub.add_parser("add", help="Enqueue a task")
    q.add_argument("type", choices=TASK_TYPES)
    q.add_argument("args", nargs="*", help="Free-form arguments stored in meta.args")
    q.add_argument("--goal", default=None, help="Goal for generate/edit tasks")
    q.set_defaults(func=cmd_queue_add)
    q = qsub.add_parser("ls", help="List tasks")
    q.set_defaults(func=cmd_queue_ls)

    p = sub.add_parser("daemon", help="Process queued tasks until interrupted")
    p.add_argument("--interval", type=float, default=1.5, help="Idle poll interval in seconds")
    planner_flags(p)
    p.set_defaults(func=cmd_daemon)

    p = sub.add_parser("resume", help="Move a paused, failed or stale running task back to queued")
    p.add_argument("id")
    p.set_defaults(func=cmd_resume)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except BuildAgentError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
actions.py - typed planner actions and the sequential executor.

`execute_actions` runs actions strictly in order, one at a time, and stops
at the first failure. Actions applied before the failure stay applied:
the batch is fail-stop, not transactional. Failures are reported through
the returned ExecutorResult, never raised.
"""

import json
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Union

from rich.markup import escape

from BuildAgent.config import ExecutorConfig
from BuildAgent.env_store import (
    PROVIDERS, SCOPES, EnvVarRequest, is_hosting_linked, queue_provider_sync, safe_merge_env_local,
)
from BuildAgent.errors import AllowlistError, CommandFailed, UnknownActionError
from BuildAgent.patch_engine import apply_patch
from BuildAgent.repo_scanner import SCAN_MODES, CancelToken, cancel_on_interrupt, scan_repository
from BuildAgent.sandbox import resolve_in_root
from BuildAgent.utils import console, run_inherited


# ---------------------------
# Action types
# ---------------------------

@dataclass
class PatchAction:
    TYPE: ClassVar[str] = "patch"
    diff: str
    description: Optional[str] = None

@dataclass
class ExecAction:
    TYPE: ClassVar[str] = "exec"
    cmd: str
    cwd: Optional[str] = None
    description: Optional[str] = None

@dataclass
class CheckAction:
    TYPE: ClassVar[str] = "check"
    paths: Optional[List[str]] = None
    description: Optional[str] = None

@dataclass
class EnvRequestAction:
    TYPE: ClassVar[str] = "env_request"
    variables: List[Dict[str, Any]] = field(default_factory=list)
    names: List[str] = field(default_factory=list)            # legacy
    providers: Optional[List[str]] = None                     # legacy
    scopes: Optional[List[str]] = None                        # legacy
    description: Optional[str] = None

@dataclass
class ReadFileAction:
    TYPE: ClassVar[str] = "read_file"
    path: str
    description: Optional[str] = None

@dataclass
class WriteFileAction:
    TYPE: ClassVar[str] = "write_file"
    path: str
    content: str
    description: Optional[str] = None

@dataclass
class EditFileAction:
    TYPE: ClassVar[str] = "edit_file"
    path: str
    old_content: str
    new_content: str
    description: Optional[str] = None

@dataclass
class ScanRepoAction:
    TYPE: ClassVar[str] = "scan_repo"
    root: Optional[str] = None
    mode: str = "fast"
    respect_ignore: bool = True
    description: Optional[str] = None


Action = Union[
    PatchAction, ExecAction, CheckAction, EnvRequestAction,
    ReadFileAction, WriteFileAction, EditFileAction, ScanRepoAction,
]

ACTION_TYPES: Dict[str, type] = {
    cls.TYPE: cls for cls in (
        PatchAction, ExecAction, CheckAction, EnvRequestAction,
        ReadFileAction, WriteFileAction, EditFileAction, ScanRepoAction,
    )
}


@dataclass
class ExecutorResult:
    ok: bool
    error_log: Optional[str] = None
    data: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"ok": self.ok}
        if self.error_log is not None:
            d["errorLog"] = self.error_log
        if self.data is not None:
            d["data"] = self.data
        return d


# ---------------------------
# Parsing (planner wire format -> dataclasses)
# ---------------------------

def _field(d: Dict[str, Any], key: str, kind: type, required: bool = True, default: Any = None) -> Any:
    if key not in d or d[key] is None:
        if required:
            raise UnknownActionError(f"{d.get('type')} action is missing '{key}'")
        return default
    value = d[key]
    if not isinstance(value, kind):
        raise UnknownActionError(f"{d.get('type')}.{key} must be {kind.__name__}")
    return value

def _str_list(d: Dict[str, Any], key: str) -> Optional[List[str]]:
    value = _field(d, key, list, required=False)
    if value is None:
        return None
    return [str(v) for v in value]

def parse_action(d: Any) -> Action:
    """Build an Action from a planner dict. Unknown types are a hard error."""
    if not isinstance(d, dict):
        raise UnknownActionError(f"Action must be an object, got {type(d).__name__}")
    kind = d.get("type")
    desc = _field(d, "description", str, required=False)

    if kind == "patch":
        return PatchAction(diff=_field(d, "diff", str), description=desc)
    if kind == "exec":
        return ExecAction(cmd=_field(d, "cmd", str), cwd=_field(d, "cwd", str, required=False), description=desc)
    if kind == "check":
        return CheckAction(paths=_str_list(d, "paths"), description=desc)
    if kind == "env_request":
        return EnvRequestAction(
            variables=list(_field(d, "variables", list, required=False, default=[])),
            names=_str_list(d, "names") or [],
            providers=_str_list(d, "providers"),
            scopes=_str_list(d, "scopes"),
            description=desc,
        )
    if kind == "read_file":
        return ReadFileAction(path=_field(d, "path", str), description=desc)
    if kind == "write_file":
        return WriteFileAction(path=_field(d, "path", str), content=_field(d, "content", str), description=desc)
    if kind == "edit_file":
        old = _field(d, "oldContent", str)
        if not old:
            raise UnknownActionError("edit_file.oldContent must be non-empty")
        return EditFileAction(path=_field(d, "path", str), old_content=old,
                              new_content=_field(d, "newContent", str), description=desc)
    if kind == "scan_repo":
        mode = _field(d, "mode", str, required=False, default="fast")
        if mode not in SCAN_MODES:
            raise UnknownActionError(f"scan_repo.mode must be one of {', '.join(SCAN_MODES)}")
        return ScanRepoAction(root=_field(d, "root", str, required=False), mode=mode,
                              respect_ignore=_field(d, "respectIgnore", bool, required=False, default=True),
                              description=desc)
    raise UnknownActionError(f"Unknown action type: {kind!r}")

def coerce_action(a: Any) -> Action:
    if type(a) in _HANDLERS:
        return a
    return parse_action(a)

def describe(a: Action) -> str:
    return f"{a.TYPE}: {a.description}" if a.description else a.TYPE


# ---------------------------
# env_request
# ---------------------------

def normalize_env_request(a: EnvRequestAction) -> List[EnvVarRequest]:
    """Uniform request list from `variables[]` or legacy `names[]`+`providers`+`scopes`."""
    providers = a.providers or list(PROVIDERS)
    scopes = a.scopes or list(SCOPES)

    if a.variables:
        rows = []
        for v in a.variables:
            if not isinstance(v, dict):
                raise ValueError("env_request.variables entries must be objects")
            rows.append(EnvVarRequest(
                name=v.get("name", ""),
                value=v.get("value"),
                required_providers=list(v.get("requiredProviders") or providers),
                scopes=list(v.get("scopes") or scopes),
            ))
        return rows

    if not a.names:
        raise ValueError("env_request missing variables[] or names[]")
    return [EnvVarRequest(name=n, required_providers=list(providers), scopes=list(scopes)) for n in a.names]


# ---------------------------
# check
# ---------------------------

def find_check_command(check_root: Path, cfg: ExecutorConfig) -> Optional[str]:
    if cfg.check_command:
        return cfg.check_command
    pkg = check_root / "package.json"
    if pkg.exists():
        scripts = json.loads(pkg.read_text(encoding="utf-8")).get("scripts") or {}
        if cfg.run_build and scripts.get("build"):
            return "npm run build"
        return None
    if (check_root / "tsconfig.json").exists():
        return "tsc -p tsconfig.json"
    if (check_root / "pyproject.toml").exists() or (check_root / "setup.py").exists():
        return f"{shlex.quote(sys.executable)} -m compileall -q ."
    return None

def run_default_check(root: Path, cfg: ExecutorConfig, paths: Optional[List[str]] = None):
    """Advisory smoke check: build/typecheck entry point under each root."""
    roots = [resolve_in_root(root, p, verb="Check") for p in paths if p] if paths else [root]
    for check_root in roots:
        cmd = find_check_command(check_root, cfg)
        if not cmd:
            console.print(f"[yellow]No build/typecheck entry point under {escape(str(check_root))} - skipping.[/yellow]")
            continue
        console.print(f"[dim]$ {escape(cmd)}  (in {escape(str(check_root))})[/dim]")
        code = run_inherited(cmd, cwd=check_root, timeout=cfg.exec_timeout)
        if code != 0:
            raise CommandFailed(cmd, code)


# ---------------------------
# Handlers
# ---------------------------

@dataclass
class _Context:
    root: Path
    cfg: ExecutorConfig
    allow: List[str]
    results: List[Dict[str, Any]]


def _run_patch(ctx: _Context, a: PatchAction):
    if not a.diff.strip():
        raise ValueError("patch.diff is empty")
    console.print(f"[cyan]✍️  {escape(a.description or 'Applying patch')}[/cyan]")
    apply_patch(ctx.root, a.diff, mode="auto")

def _run_exec(ctx: _Context, a: ExecAction):
    tokens = a.cmd.split()
    if not tokens:
        raise ValueError("exec.cmd is empty")
    binary = tokens[0]
    if ctx.allow and binary not in ctx.allow:
        raise AllowlistError(binary)
    cwd = resolve_in_root(ctx.root, a.cwd, verb="Exec") if a.cwd else ctx.root
    console.print(f"$ {escape(a.cmd)}")
    code = run_inherited(a.cmd, cwd=cwd, timeout=ctx.cfg.exec_timeout)
    if code != 0:
        raise CommandFailed(a.cmd, code)

def _run_check(ctx: _Context, a: CheckAction):
    console.print("[cyan]🔎 Running checks...[/cyan]")
    run_default_check(ctx.root, ctx.cfg, a.paths)

def _run_env_request(ctx: _Context, a: EnvRequestAction):
    variables = normalize_env_request(a)
    added, kept = safe_merge_env_local(ctx.root, variables)
    queue_provider_sync(ctx.root, variables)  # deferred to deploy
    linked = is_hosting_linked(ctx.root)
    console.print(f"[green]🔐 Env: added {len(added)}, kept {len(kept)}. "
                  f"Hosting linked: {'yes' if linked else 'no'}[/green]")
    ctx.results.append({"action": "env_request", "added": added, "kept": kept, "hostingLinked": linked})

def _run_read_file(ctx: _Context, a: ReadFileAction):
    target = resolve_in_root(ctx.root, a.path, verb="Read")
    console.print(f"📖 Reading: {escape(a.path)}")
    ctx.results.append({"action": "read_file", "path": a.path, "content": target.read_text(encoding="utf-8")})

def _run_write_file(ctx: _Context, a: WriteFileAction):
    target = resolve_in_root(ctx.root, a.path, verb="Write")
    console.print(f"📝 Writing: {escape(a.path)}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(a.content, encoding="utf-8")

def _run_edit_file(ctx: _Context, a: EditFileAction):
    target = resolve_in_root(ctx.root, a.path, verb="Edit")
    console.print(f"✏️  Editing: {escape(a.path)}")
    current = target.read_text(encoding="utf-8")
    if a.old_content not in current:
        raise ValueError(f"oldContent not found in {a.path}")
    target.write_text(current.replace(a.old_content, a.new_content, 1), encoding="utf-8")

def _run_scan_repo(ctx: _Context, a: ScanRepoAction):
    scan_root = resolve_in_root(ctx.root, a.root or ".", verb="Scan")
    token = CancelToken()
    with cancel_on_interrupt(token):
        result = scan_repository(root=scan_root, mode=a.mode, cancel=token, respect_ignore=a.respect_ignore)
    ctx.results.append({"action": "scan_repo", "result": result.to_dict()})
    console.print(
        f"[green]📦 Scanned {result.stats.files} files, {result.stats.dirs} dirs, "
        f"{round(result.stats.bytes / 1024)} KiB. Cache: {escape(str(result.cache_path))}[/green]"
    )


_HANDLERS: Dict[type, Callable[[_Context, Any], None]] = {
    PatchAction: _run_patch,
    ExecAction: _run_exec,
    CheckAction: _run_check,
    EnvRequestAction: _run_env_request,
    ReadFileAction: _run_read_file,
    WriteFileAction: _run_write_file,
    EditFileAction: _run_edit_file,
    ScanRepoAction: _run_scan_repo,
}

# Every action type needs a handler; fail at import, not at dispatch
_unhandled = set(ACTION_TYPES.values()) ^ set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Action types without a handler: {sorted(c.__name__ for c in _unhandled)}")


# ---------------------------
# Executor
# ---------------------------

def execute_actions(root: Union[str, Path], cfg: ExecutorConfig, actions: Sequence[Any]) -> ExecutorResult:
    """
    Run `actions` (dataclasses or planner dicts) in order under `root`.
    The whole batch is validated before anything runs.
    """
    root = Path(root).resolve()
    n = len(actions)

    parsed: List[Action] = []
    for idx, raw in enumerate(actions, 1):
        try:
            parsed.append(coerce_action(raw))
        except UnknownActionError as e:
            msg = f"Action {idx}/{n} rejected: {e}"
            console.print(f"[red]❌ {escape(msg)}[/red]")
            return ExecutorResult(ok=False, error_log=msg)

    ctx = _Context(root=root, cfg=cfg, allow=cfg.merged_allowlist(), results=[])
    for idx, action in enumerate(parsed, 1):
        try:
            _HANDLERS[type(action)](ctx, action)
        except Exception as e:
            msg = f"Action {idx}/{n} ({describe(action)}) failed: {e}"
            console.print(f"[red]❌ {escape(msg)}[/red]")
            return ExecutorResult(ok=False, error_log=msg, data=ctx.results or None)

    return ExecutorResult(ok=True, data=ctx.results or None)

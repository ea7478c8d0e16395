#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
patch_engine.py - applies planner patches to the working tree.

Two dialects:
  1. Unified diffs, applied with `git apply --3way` (then `--reject`). Failures are
     fatal; reject files are listed for manual inspection.
  2. The whole-file envelope:

        *** Begin Patch
        *** Add File: path/to/new.txt
        +line one
        *** Update File: path/to/existing.py
        @@
        -old body (advisory only)
        +new body
        @@
        *** End Patch

     Update blocks replace the entire file. Existing files are backed up
     before the first write and the whole batch is rolled back if any
     block fails.

The raw patch text is always saved under `.af/tmp/` before anything runs.
"""

import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from BuildAgent.errors import PatchError
from BuildAgent.sandbox import (
    BACKUPS_DIR, LAST_REJECT_PATH, PATCH_TMP_DIR, resolve_in_root,
)
from BuildAgent.utils import console, now_millis, run_shell

PATCH_MODES = ("auto", "whole-file-only", "hunks")
ENVELOPE_MARKER = "*** Begin Patch"

_ENVELOPE_RE = re.compile(r"\*\*\*\s*Begin Patch(.*?)\*\*\*\s*End Patch", re.DOTALL)
_BLOCK_HEADER_RE = re.compile(r"^\*\*\*\s*(Add|Update) File:[ \t]*(.*)$", re.MULTILINE)
_UNIFIED_MARKERS_RE = re.compile(r"(^diff --git|^---\s|^\+\+\+\s|^@@\s)", re.MULTILINE)


@dataclass
class AddFile:
    rel_path: str
    content: str


@dataclass
class UpdateFile:
    rel_path: str
    old_content: Optional[str]
    new_content: str


@dataclass
class RawBlock:
    kind: str       # "Add" | "Update"
    rel_path: str
    body: str


# ---------------------------
# Detection
# ---------------------------

def has_envelope(text: str) -> bool:
    return ENVELOPE_MARKER in (text or "")

def is_trivial_patch(text: str) -> bool:
    """No diff markers and no envelope marker: nothing to apply."""
    t = (text or "").strip()
    if not t:
        return True
    return not _UNIFIED_MARKERS_RE.search(t) and not has_envelope(t)


# ---------------------------
# Envelope parsing
# ---------------------------

def split_raw_blocks(text: str) -> List[RawBlock]:
    """Split every envelope into per-file blocks (bodies not yet interpreted)."""
    src = text.replace("\r\n", "\n")
    blocks: List[RawBlock] = []
    for env in _ENVELOPE_RE.finditer(src):
        body = env.group(1)
        headers = list(_BLOCK_HEADER_RE.finditer(body))
        for i, h in enumerate(headers):
            end = headers[i + 1].start() if i + 1 < len(headers) else len(body)
            block_body = body[h.end():end]
            if block_body.startswith("\n"):
                block_body = block_body[1:]
            blocks.append(RawBlock(kind=h.group(1), rel_path=h.group(2).strip(), body=block_body))
    return blocks

def _ensure_nl(s: str) -> str:
    return s if s.endswith("\n") else s + "\n"

def _collect_prefixed(lines: List[str], prefix: str) -> List[str]:
    return [l[len(prefix):] for l in lines if l.startswith(prefix)]

def materialize_block(raw: RawBlock) -> Union[AddFile, UpdateFile]:
    if not raw.rel_path:
        raise PatchError(f"{raw.kind} File block is missing a path")

    lines = raw.body.split("\n")
    if raw.kind == "Add":
        # Bare empty lines are envelope padding; '+' alone is a blank line
        content = [l[1:] if l.startswith("+") else l for l in lines if l]
        return AddFile(rel_path=raw.rel_path, content=_ensure_nl("\n".join(content)))

    # Keep only the section between '@@' delimiters when present
    if "@@" in [l.strip() for l in lines]:
        marks = [i for i, l in enumerate(lines) if l.strip() == "@@"]
        end = marks[1] if len(marks) > 1 else len(lines)
        lines = lines[marks[0] + 1:end]

    new_lines = _collect_prefixed(lines, "+")
    if not new_lines:
        raise PatchError(f"Update File block for {raw.rel_path} has no new content")
    old_lines = _collect_prefixed(lines, "-")
    return UpdateFile(
        rel_path=raw.rel_path,
        old_content="\n".join(old_lines) if old_lines else None,
        new_content=_ensure_nl("\n".join(new_lines)),
    )

def parse_patch_blocks(text: str) -> List[Union[AddFile, UpdateFile]]:
    return [materialize_block(b) for b in split_raw_blocks(text)]


# ---------------------------
# Artifacts
# ---------------------------

def save_patch_artifact(root: Path, text: str) -> Path:
    tmp_dir = root / PATCH_TMP_DIR
    tmp_dir.mkdir(parents=True, exist_ok=True)
    path = tmp_dir / f"patch-{now_millis()}.diff"
    path.write_text(text, encoding="utf-8")
    return path

def find_rejects(root: Path) -> List[str]:
    rejects = []
    for p in root.rglob("*.rej"):
        if ".git" in p.relative_to(root).parts:
            continue
        rejects.append(p.relative_to(root).as_posix())
    return sorted(rejects)


# ---------------------------
# Whole-file envelope
# ---------------------------

def _norm(s: str) -> str:
    return s.replace("\r\n", "\n").rstrip()

def apply_envelope(root: Path, text: str) -> List[str]:
    """
    Apply every Add/Update block. On any failure, restore all files touched
    so far from the backup directory and re-raise. Returns touched paths.
    """
    raw_blocks = split_raw_blocks(text)
    if not raw_blocks:
        raise PatchError("Patch envelope contains no Add File / Update File blocks")

    backup_dir = root / BACKUPS_DIR / now_millis()
    # abs target -> backup copy (None when the file did not exist before)
    touched: Dict[Path, Optional[Path]] = {}

    try:
        for raw in raw_blocks:
            block = materialize_block(raw)
            target = resolve_in_root(root, block.rel_path, verb="Patch")

            if target not in touched:
                if target.exists():
                    backup = backup_dir / target.relative_to(root)
                    backup.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(target, backup)
                    touched[target] = backup
                else:
                    touched[target] = None

            if isinstance(block, UpdateFile) and block.old_content is not None and target.exists():
                live = target.read_text(encoding="utf-8")
                if _norm(live) != _norm(block.old_content):
                    console.print(f"[yellow]Content drift for {block.rel_path} - applying new content anyway.[/yellow]")

            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(block, AddFile):
                target.write_text(block.content, encoding="utf-8")
                console.print(f"[green]Added {block.rel_path}[/green]")
            else:
                target.write_text(block.new_content, encoding="utf-8")
                console.print(f"[green]Updated {block.rel_path}[/green]")
    except Exception:
        rollback(touched)
        console.print(f"[red]Whole-file patch failed; restored {len(touched)} file(s).[/red]")
        raise

    return [p.relative_to(root).as_posix() for p in touched]

def rollback(touched: Dict[Path, Optional[Path]]):
    for target, backup in touched.items():
        if backup is None:
            if target.exists():
                target.unlink()
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(backup, target)


# ---------------------------
# Unified diff via git
# ---------------------------

def ensure_git_repo(root: Path):
    if (root / ".git").exists():
        return
    code, out = run_shell("git init -q", cwd=root)
    if code != 0:
        raise PatchError(f"git init failed:\n{out}")

def apply_unified_diff(root: Path, text: str, artifact: Path):
    ensure_git_repo(root)
    # git refuses --3way together with --reject, so reject files come from a second pass
    for flags in (["--3way"], ["--reject"]):
        proc = subprocess.run(
            ["git", "apply", *flags, "--whitespace=fix", str(artifact)],
            cwd=str(root),
        )
        if proc.returncode == 0:
            console.print("[green]Patch applied.[/green]")
            return

    last_rej = root / LAST_REJECT_PATH
    last_rej.parent.mkdir(parents=True, exist_ok=True)
    last_rej.write_text(text, encoding="utf-8")

    rejects = find_rejects(root)
    if rejects:
        msg = "Some hunks failed. Reject files:\n" + "\n".join(f" - {r}" for r in rejects)
    else:
        msg = "git apply failed. Check patch format or rebase your changes."
    raise PatchError(f"{msg}\nPatch saved to {last_rej}", rejects=rejects, artifact=artifact)


# ---------------------------
# Entry point
# ---------------------------

def apply_patch(root: Union[str, Path], patch_text: str, mode: str = "auto"):
    """Apply `patch_text` under `root`. Raises PatchError on irrecoverable failure."""
    if mode not in PATCH_MODES:
        raise ValueError(f"Unknown patch mode: {mode}")
    root = Path(root).resolve()

    if is_trivial_patch(patch_text):
        console.print("[yellow]No valid patch content detected - skipping.[/yellow]")
        return

    artifact = save_patch_artifact(root, patch_text)

    if mode == "whole-file-only" or (mode == "auto" and has_envelope(patch_text)):
        apply_envelope(root, patch_text)
        return

    apply_unified_diff(root, patch_text, artifact)

#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Shared helpers: the console every module prints through, timestamps,
shell execution, token budgeting and atomic JSON writes.
"""

import os
import json
import time
import tempfile
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Tuple

import tiktoken
from rich.console import Console

console = Console()


def now_stamp() -> str:
    return time.strftime("%Y-%m-%d_%H%M%S")

def now_millis() -> str:
    return str(int(time.time() * 1000))

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    try:
        enc = tiktoken.get_encoding("cl100k_base")
        return len(enc.encode(text))
    except Exception:
        # Encoding files may be unavailable offline; 1 token ~= 4 chars
        return len(text) // 4

def truncate_to_tokens(text: str, max_tokens: int) -> str:
    if estimate_tokens(text) <= max_tokens:
        return text
    target_chars = int(max_tokens * 3.5)
    return text[:target_chars] + "\n...[TRUNCATED]..."

def compute_safe_max_tokens(input_tokens: int, model_max_context: int, desired_max_output: int,
                            safety_margin: int = 200, min_output: int = 1024) -> int:
    """
    Largest max_tokens that keeps input + output inside the model's context.
    Clamps to `min_output` when the budget is very tight.
    """
    available = model_max_context - input_tokens - safety_margin
    if available < min_output:
        console.print(f"[red]Context budget very tight: {available} tokens available "
                      f"(input={input_tokens}, limit={model_max_context}). "
                      f"Clamping to min={min_output}.[/red]")
        return min_output
    return min(desired_max_output, available)

def run_shell(cmd: str, cwd: Optional[Path] = None, cap: int = 20000,
              timeout: Optional[float] = None) -> Tuple[int, str]:
    """Run a command and capture combined output (tail-capped)."""
    p = subprocess.run(cmd, shell=True, text=True, capture_output=True,
                       cwd=str(cwd) if cwd else None, timeout=timeout)
    out = (p.stdout or "") + (p.stderr or "")
    if len(out) > cap:
        out = out[-cap:]
    return p.returncode, out

def run_inherited(cmd: str, cwd: Optional[Path] = None, timeout: Optional[float] = None) -> int:
    """Run a command with the parent's stdio; only the exit code is observed."""
    p = subprocess.run(cmd, shell=True, cwd=str(cwd) if cwd else None, timeout=timeout)
    return p.returncode

def read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))

def write_json_atomic(path: Path, obj: Any):
    """Write JSON to a sibling temp file, then rename it over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(obj, indent=2, ensure_ascii=False) + "\n")
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise

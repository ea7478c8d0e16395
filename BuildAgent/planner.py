#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
planner.py - boundary to the external language-model planner.

The planner is anything with `complete(system, user) -> str`. The default
implementation talks to an OpenAI-compatible chat endpoint. Replies are
free text that should contain a JSON object `{"actions": [...], "notes"?}`;
`extract_json` pulls the first balanced object/array out of it.
"""

import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from openai import OpenAI

from BuildAgent.config import PlannerConfig
from BuildAgent.errors import PlannerFormatError
from BuildAgent.utils import compute_safe_max_tokens, console, estimate_tokens, truncate_to_tokens

ERROR_LOG_TOKENS = 5000
TINY_FIX_TOKENS = 1000

SYSTEM_POLICY = """\
You are the AF build agent. Produce only valid JSON with an "actions" array.
Allowed action types: "patch", "exec", "check", "env_request", "read_file",
"write_file", "edit_file", "scan_repo".
- "patch": { "type":"patch", "diff":"<unified diff or *** Begin Patch envelope>", "description":"..." }
  * Unified diffs need correct '---' / '+++' file markers and @@ hunks.
  * The envelope form uses '*** Add File: <path>' or '*** Update File: <path>'
    blocks with '+' prefixed lines and replaces whole files.
  * Use UTF-8 and LF line endings.
- "exec": { "type":"exec", "cmd":"...", "cwd":"optional" }
  * Only use commands commonly present in the project toolchain.
- "check": { "type":"check", "paths":["optional", "roots"] }
  * Triggers build/typecheck on the given repo paths.
- "env_request": { "type":"env_request", "variables":[
    { "name":"API_KEY", "requiredProviders":["local","source-host","hosting-platform","runtime-platform"],
      "scopes":["development","preview","production"] } ] }
- "read_file": { "type":"read_file", "path":"..." }
- "write_file": { "type":"write_file", "path":"...", "content":"..." }
- "edit_file": { "type":"edit_file", "path":"...", "oldContent":"exact text", "newContent":"..." }
- "scan_repo": { "type":"scan_repo", "mode":"fast" | "deep" }
DO NOT sync envs to providers; the CLI defers that to deployment.
Never write to .env - use .env.local only.

Idempotence: re-runs must keep working; skip recreating files if already correct.
If checks fail, propose targeted patches only.
Return minimal shell commands and rely on patches otherwise.
"""


class Planner:
    """Interface: turn a system instruction plus user text into a reply."""

    def complete(self, system: str, user: str) -> str:
        raise NotImplementedError


class OpenAIPlanner(Planner):
    def __init__(self, config: PlannerConfig, client: Optional[OpenAI] = None):
        self.config = config
        self.client = client or OpenAI(base_url=config.base_url, api_key=config.api_key)

    def complete(self, system: str, user: str) -> str:
        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        max_tokens = compute_safe_max_tokens(
            input_tokens=estimate_tokens(system + user),
            model_max_context=self.config.max_context,
            desired_max_output=self.config.max_output,
        )

        last_error: Optional[Exception] = None
        for attempt in range(3):
            try:
                resp = self.client.chat.completions.create(
                    model=self.config.model,
                    messages=messages,
                    temperature=self.config.temperature,
                    max_tokens=max_tokens,
                )
                return resp.choices[0].message.content or ""
            except Exception as e:
                last_error = e
                err_str = str(e)
                if "max_tokens" in err_str or "context length" in err_str:
                    max_tokens = max(1024, max_tokens // 2)
                    console.print(f"[red]Context overflow. Retrying with max_tokens={max_tokens}...[/red]")
                    continue
                console.print(f"[red]Planner call failed: {e}[/red]")
                if attempt < 2:
                    time.sleep(2 ** attempt)
        raise RuntimeError(f"Planner unavailable after 3 attempts: {last_error}")


# ---------------------------
# Reply parsing
# ---------------------------

def extract_json(raw: str) -> Optional[Any]:
    """
    First balanced JSON object/array in `raw`, tolerating prose and fenced
    code blocks. Returns None when nothing parses.
    """
    if not raw:
        return None
    text = re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL)
    fence = (re.search(r"```\s*json\s*\n(.*?)```", text, re.DOTALL | re.IGNORECASE)
             or re.search(r"```\s*\n(.*?)```", text, re.DOTALL))
    candidate = fence.group(1) if fence else text

    starts = [i for i in (candidate.find("{"), candidate.find("[")) if i >= 0]
    if not starts:
        return None
    start = min(starts)

    depth = 0
    in_string = False
    escaped = False
    end = -1
    for i in range(start, len(candidate)):
        ch = candidate[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                end = i + 1
                break
    if end == -1:
        return None
    try:
        return json.loads(candidate[start:end])
    except ValueError:
        return None


@dataclass
class Plan:
    actions: List[Dict[str, Any]] = field(default_factory=list)
    notes: Optional[str] = None


def parse_plan(raw: str) -> Plan:
    """A Plan from a planner reply; a bare array is read as the action list."""
    data = extract_json(raw)
    if isinstance(data, list):
        return Plan(actions=data)
    if isinstance(data, dict) and isinstance(data.get("actions"), list):
        notes = data.get("notes")
        return Plan(actions=data["actions"], notes=notes if isinstance(notes, str) else None)
    raise PlannerFormatError("Planner did not return a JSON plan with an 'actions' array")


# ---------------------------
# Prompts
# ---------------------------

def read_product_spec(root: Path) -> str:
    p = Path(root) / "product.spec.yml"
    if p.exists():
        return p.read_text(encoding="utf-8")
    return "# (no product.spec.yml present)\n"

def first_build_prompt(goal: str, spec: str, check_paths: Optional[List[str]] = None) -> str:
    paths = ", ".join(check_paths) if check_paths else "(repo root)"
    return (
        f"Goal:\n{goal}\n\n"
        f"Project spec (product.spec.yml):\n---\n{spec}\n---\n\n"
        f"Context:\n"
        f"- You are adding/patching files to complete the product.\n"
        f"- Check paths: {paths}\n\n"
        f"Task:\nPlan the next set of actions to move toward a fully working build. Emit JSON only.\n"
    )

def fix_prompt(goal: str, error_log: str) -> str:
    return (
        f"Goal:\n{goal}\n\n"
        f"The previous actions failed. Here is the error log:\n\n"
        f"<<<ERROR LOG START>>>\n{truncate_to_tokens(error_log.strip(), ERROR_LOG_TOKENS)}\n<<<ERROR LOG END>>>\n\n"
        f"Task:\nPropose the smallest set of additional actions to fix the build and pass checks.\n"
        f"Emit JSON only.\n"
    )

def invalid_json_prompt(error_log: str) -> str:
    return (
        f"You returned invalid JSON. Create one small \"patch\" to fix the error:\n"
        f"{truncate_to_tokens(error_log, TINY_FIX_TOKENS)}\n"
        f"Return JSON only."
    )

"""
Executor and planner configuration.

`.af/config.yml` is optional; everything has a default. The planner
endpoint comes from the environment (overridden by CLI flags).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from BuildAgent.errors import BuildAgentError
from BuildAgent.sandbox import CONFIG_PATH

DEFAULT_SHELL_ALLOWLIST = [
    "pnpm", "npm", "npx", "node", "git", "gh", "vercel", "supabase", "railway",
    "tsc", "eslint", "prettier", "vitest", "pytest", "go", "cargo", "pip", "uv",
    "bun", "yarn", "python", "python3",
]

DEFAULT_BASE_URL = "https://api.together.xyz/v1"
DEFAULT_MODEL = "meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo"


@dataclass
class ExecutorConfig:
    shell_allowlist: List[str] = field(default_factory=list)
    shell_allow: List[str] = field(default_factory=list)  # actions.shell.allow
    run_build: bool = True
    check_command: Optional[str] = None
    exec_timeout: Optional[float] = None
    deploy_command: Optional[str] = None

    def merged_allowlist(self) -> List[str]:
        # Union of both sources, first-seen order
        return list(dict.fromkeys([*self.shell_allow, *self.shell_allowlist]))


@dataclass
class PlannerConfig:
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    model: str = DEFAULT_MODEL
    temperature: float = 0.2
    max_output: int = 8000
    max_context: int = 32000

    @classmethod
    def from_env(cls) -> "PlannerConfig":
        return cls(
            base_url=os.environ.get("AF_BASE_URL", DEFAULT_BASE_URL),
            api_key=os.environ.get("AF_API_KEY") or os.environ.get("TOGETHER_API_KEY", ""),
            model=os.environ.get("AF_MODEL") or os.environ.get("TOGETHER_MODEL", DEFAULT_MODEL),
        )


def _dig(obj: Dict[str, Any], dotted: str, default: Any = None) -> Any:
    cur: Any = obj
    for part in dotted.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if str(v).strip()]


def load_raw_config(root: Path) -> Dict[str, Any]:
    path = Path(root) / CONFIG_PATH
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise BuildAgentError(f"Invalid YAML in {path}: {e}") from e
    return loaded if isinstance(loaded, dict) else {}


def load_executor_config(root: Path) -> ExecutorConfig:
    raw = load_raw_config(root)
    if not raw:
        return ExecutorConfig(shell_allowlist=list(DEFAULT_SHELL_ALLOWLIST))

    timeout = _dig(raw, "exec.timeout")
    return ExecutorConfig(
        shell_allowlist=_str_list(raw.get("shellAllowlist")),
        shell_allow=_str_list(_dig(raw, "actions.shell.allow")),
        run_build=bool(_dig(raw, "check.runBuild", True)),
        check_command=_dig(raw, "check.command"),
        exec_timeout=float(timeout) if timeout is not None else None,
        deploy_command=_dig(raw, "deploy.command"),
    )

"""
Environment-variable requests.

`.env.local` is only ever appended to: keys that already exist keep their
value and their line. Provider sync is never done inline; requests are
accumulated in `.af/pending-env-sync.json` for an explicit deploy step.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from BuildAgent.sandbox import PENDING_ENV_PATH
from BuildAgent.utils import read_json, write_json_atomic

ENV_LOCAL = ".env.local"

PROVIDERS = ("local", "source-host", "hosting-platform", "runtime-platform")
SCOPES = ("development", "preview", "production")
PROVIDER_ALIASES = {
    "github": "source-host",
    "vercel": "hosting-platform",
    "railway": "runtime-platform",
}

_ENV_LINE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")
_NEEDS_QUOTES_RE = re.compile(r"[\s#'\"\\]")


def normalize_provider(name: str) -> str:
    p = PROVIDER_ALIASES.get(name, name)
    if p not in PROVIDERS:
        raise ValueError(f"Unknown provider: {name}")
    return p

def normalize_scope(name: str) -> str:
    if name not in SCOPES:
        raise ValueError(f"Unknown scope: {name}")
    return name


@dataclass
class EnvVarRequest:
    name: str
    value: Optional[str] = None
    required_providers: List[str] = field(default_factory=lambda: list(PROVIDERS))
    scopes: List[str] = field(default_factory=lambda: list(SCOPES))

    def __post_init__(self):
        self.name = (self.name or "").strip()
        if not self.name:
            raise ValueError("EnvVarRequest.name must be non-empty")
        self.required_providers = list(dict.fromkeys(normalize_provider(p) for p in self.required_providers))
        self.scopes = list(dict.fromkeys(normalize_scope(s) for s in self.scopes))

    def merge(self, other: "EnvVarRequest") -> "EnvVarRequest":
        """Union providers/scopes; a non-empty value wins over an empty one."""
        value = other.value if other.value else self.value
        return EnvVarRequest(
            name=self.name,
            value=value,
            required_providers=[*self.required_providers, *other.required_providers],
            scopes=[*self.scopes, *other.scopes],
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "requiredProviders": self.required_providers,
            "scopes": self.scopes,
        }
        if self.value is not None:
            d["value"] = self.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EnvVarRequest":
        return cls(
            name=d.get("name", ""),
            value=d.get("value"),
            required_providers=list(d.get("requiredProviders") or PROVIDERS),
            scopes=list(d.get("scopes") or SCOPES),
        )


# ---------------------------
# .env.local
# ---------------------------

def read_env_file(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _ENV_LINE_RE.match(line)
        if not m:
            continue
        v = m.group(2)
        if len(v) >= 2 and v[0] == v[-1] and v[0] in "\"'":
            if v[0] == '"':
                try:
                    v = json.loads(v)
                except ValueError:
                    v = v[1:-1]
            else:
                v = v[1:-1]
        values[m.group(1)] = v
    return values

def format_env_line(key: str, value: str) -> str:
    if _NEEDS_QUOTES_RE.search(value):
        return f"{key}={json.dumps(value)}"
    return f"{key}={value}"

def safe_merge_env_local(root: Path, variables: Iterable[EnvVarRequest]) -> Tuple[List[str], List[str]]:
    """
    Add missing keys to `.env.local` (blank when no value was given).
    Returns (added, kept).
    """
    path = Path(root) / ENV_LOCAL
    current = read_env_file(path)
    added: List[str] = []
    kept: List[str] = []
    new_lines: List[str] = []

    for v in variables:
        if v.name in current:
            if v.name not in kept:
                kept.append(v.name)
            continue
        current[v.name] = v.value or ""
        new_lines.append(format_env_line(v.name, current[v.name]))
        added.append(v.name)

    if new_lines:
        existing = path.read_text(encoding="utf-8") if path.exists() else ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        path.write_text(existing + "\n".join(new_lines) + "\n", encoding="utf-8")
    return added, kept


# ---------------------------
# Pending provider sync
# ---------------------------

def load_pending_sync(root: Path) -> List[EnvVarRequest]:
    path = Path(root) / PENDING_ENV_PATH
    try:
        data = read_json(path, {"variables": []})
    except ValueError:
        # A corrupt queue is replaced by a clean one on the next write
        return []
    return [EnvVarRequest.from_dict(d) for d in data.get("variables", []) if d.get("name")]

def queue_provider_sync(root: Path, variables: Iterable[EnvVarRequest]) -> List[EnvVarRequest]:
    by_name: Dict[str, EnvVarRequest] = {v.name: v for v in load_pending_sync(root)}
    for v in variables:
        by_name[v.name] = by_name[v.name].merge(v) if v.name in by_name else v
    merged = list(by_name.values())
    write_json_atomic(Path(root) / PENDING_ENV_PATH, {"variables": [v.to_dict() for v in merged]})
    return merged

def is_hosting_linked(root: Path) -> bool:
    return (Path(root) / ".vercel" / "project.json").exists()

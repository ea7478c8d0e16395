"""
Project root discovery and sandbox containment.

Every file the executor or patch engine touches goes through
`resolve_in_root`, which refuses anything that lands outside the root
once `..` segments, absolute paths and symlinks are resolved.
"""

from pathlib import Path
from typing import Optional, Union

from BuildAgent.errors import ContainmentError

AF_DIR = ".af"
CONFIG_PATH = Path(AF_DIR) / "config.yml"
STATE_PATH = Path(AF_DIR) / "state" / "state.json"
CACHE_PATH = Path(AF_DIR) / "cache.json"
PENDING_ENV_PATH = Path(AF_DIR) / "pending-env-sync.json"
PATCH_TMP_DIR = Path(AF_DIR) / "tmp"
BACKUPS_DIR = Path(AF_DIR) / "backups"
SESSIONS_DIR = Path(AF_DIR) / "sessions"
LAST_REJECT_PATH = Path(AF_DIR) / "last.patch.rej.txt"


def find_root(start: Union[str, Path]) -> Optional[Path]:
    """Walk upward from `start` to the first directory holding `.git`."""
    d = Path(start).resolve()
    while True:
        if (d / ".git").exists():
            return d
        if d.parent == d:
            return None
        d = d.parent


def project_root(cwd: Union[str, Path]) -> Path:
    """The enclosing git root, or `cwd` itself when there is none."""
    return find_root(cwd) or Path(cwd).resolve()


def ensure_project_root(cwd: Union[str, Path]) -> Path:
    root = project_root(cwd)
    (root / AF_DIR).mkdir(parents=True, exist_ok=True)
    return root


def is_inside(root: Path, target: Path) -> bool:
    root = root.resolve()
    target = target.resolve()
    return target == root or root in target.parents


def resolve_in_root(root: Union[str, Path], raw_path: Union[str, Path], verb: str = "Access") -> Path:
    """
    Resolve a relative or absolute path and require it to stay under `root`.
    Raises ContainmentError otherwise.
    """
    root = Path(root).resolve()
    p = Path(raw_path)
    candidate = p if p.is_absolute() else root / p
    resolved = candidate.resolve()
    if not is_inside(root, resolved):
        raise ContainmentError(f"{verb} outside root blocked: {raw_path}")
    return resolved


def to_posix(rel: Union[str, Path]) -> str:
    return Path(rel).as_posix()

#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
repo_scanner.py - concurrent repository walk with a change-detection cache.

- fast mode: size / mtime / binary heuristic only
- deep mode: also a streamed SHA-1, reused from the previous run's cache
  whenever size and mtime are unchanged
- directory and file visits are independent work units on a bounded pool
- cancellation is cooperative (checked before every unit of work); a
  cancelled or failed scan writes no cache
- the cache holds only entries seen in this run, so stale paths drop out
"""

import os
import time
import signal
import hashlib
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from BuildAgent.errors import ScanCancelled
from BuildAgent.sandbox import CACHE_PATH
from BuildAgent.utils import console, read_json, write_json_atomic

CACHE_VERSION = 1
BINARY_SNIFF_BYTES = 1024
HASH_CHUNK = 64 * 1024
SCAN_MODES = ("fast", "deep")

DEFAULT_IGNORE_DIRS = {
    ".git", ".hg", ".svn",
    ".af", ".cache", "tmp", "temp",
    "node_modules", "dist", "build", "out", ".next", "coverage",
    "__pycache__", ".venv", ".mypy_cache", ".pytest_cache",
}


@dataclass
class RepoFileInfo:
    path: str           # POSIX, relative to root
    size: int
    mtime: float
    is_binary: bool
    sha1: Optional[str] = None


@dataclass
class ScanStats:
    files: int = 0
    dirs: int = 0
    bytes: int = 0


@dataclass
class ScanResult:
    files: List[RepoFileInfo]
    stats: ScanStats
    cache_path: Path
    mode: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": [asdict(f) for f in self.files],
            "stats": asdict(self.stats),
            "cachePath": str(self.cache_path),
            "mode": self.mode,
        }


class CancelToken:
    """Shared flag passed down the scan; set it to stop scheduling work."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ScanCancelled("Scan canceled")


@contextmanager
def cancel_on_interrupt(token: CancelToken):
    """Route SIGINT to `token` for the duration of the block, then restore."""
    # Signal handlers can only be installed from the main thread
    if threading.current_thread() is not threading.main_thread():
        yield token
        return
    previous = signal.getsignal(signal.SIGINT)

    def on_sigint(signum, frame):
        token.cancel()

    signal.signal(signal.SIGINT, on_sigint)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


class WorkerPool:
    """
    Fixed set of worker threads draining a pending-work list.

    `join()` returns once the list is empty and no worker is active. The
    first exception raised by a work unit stops further scheduling and is
    re-raised from `join()`.
    """

    def __init__(self, size: int, cancel: CancelToken):
        self._cancel = cancel
        self._pending: Deque[Callable[[], None]] = deque()
        self._active = 0
        self._cond = threading.Condition()
        self._stopping = False
        self._error: Optional[BaseException] = None
        self._threads = [
            threading.Thread(target=self._worker, name=f"scan-worker-{i}", daemon=True)
            for i in range(size)
        ]
        for t in self._threads:
            t.start()

    def _halted(self) -> bool:
        return self._cancel.cancelled or self._error is not None

    def submit(self, fn: Callable[[], None]):
        with self._cond:
            if self._halted():
                return
            self._pending.append(fn)
            self._cond.notify()

    def _worker(self):
        while True:
            with self._cond:
                while not self._pending and not self._stopping:
                    self._cond.wait()
                if self._stopping and not self._pending:
                    return
                fn = self._pending.popleft()
                if self._halted():
                    # Abandon queued-but-unstarted work
                    self._pending.clear()
                    self._cond.notify_all()
                    continue
                self._active += 1
            try:
                fn()
            except BaseException as e:
                with self._cond:
                    if self._error is None:
                        self._error = e
            finally:
                with self._cond:
                    self._active -= 1
                    if self._halted():
                        self._pending.clear()
                    self._cond.notify_all()

    def join(self):
        with self._cond:
            while self._pending or self._active:
                self._cond.wait()
            self._stopping = True
            self._cond.notify_all()
        for t in self._threads:
            t.join()
        if self._error is not None:
            raise self._error


def looks_binary(path: Path) -> bool:
    """Binary-ish if there is a NUL byte in the first KiB."""
    try:
        with open(path, "rb") as f:
            return b"\0" in f.read(BINARY_SNIFF_BYTES)
    except OSError:
        return False


def sha1_of_file(path: Path) -> str:
    h = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def read_cache(cache_path: Path) -> Dict[str, Dict[str, Any]]:
    try:
        data = read_json(cache_path, None)
    except (OSError, ValueError):
        return {}
    if isinstance(data, dict) and data.get("version") == CACHE_VERSION and isinstance(data.get("entries"), dict):
        return data["entries"]
    return {}


def write_cache(cache_path: Path, entries: Dict[str, Dict[str, Any]]):
    write_json_atomic(cache_path, {
        "version": CACHE_VERSION,
        "entries": {k: entries[k] for k in sorted(entries)},
    })


def default_concurrency(requested: Optional[int] = None) -> int:
    return max(2, requested or os.cpu_count() or 2)


def scan_repository(
    root: Union[str, Path, None] = None,
    mode: str = "fast",
    concurrency: Optional[int] = None,
    respect_ignore: bool = True,
    cancel: Optional[CancelToken] = None,
    write_cache_file: bool = True,
    progress_interval: float = 0.25,
) -> ScanResult:
    """
    Scan `root` and persist `.af/cache.json` (unless `write_cache_file` is False).
    Raises ScanCancelled if `cancel` fires before the walk completes.
    """
    if mode not in SCAN_MODES:
        raise ValueError(f"Unknown scan mode: {mode} (expected one of {', '.join(SCAN_MODES)})")
    root = Path(root or os.getcwd()).resolve()
    cancel = cancel or CancelToken()
    cache_path = root / CACHE_PATH

    prev_entries = read_cache(cache_path)
    next_entries: Dict[str, Dict[str, Any]] = {}
    binary_flags: Dict[str, bool] = {}
    stats = ScanStats()
    lock = threading.Lock()

    pool = WorkerPool(default_concurrency(concurrency), cancel)

    def visit_file(abs_path: Path, rel: str):
        cancel.raise_if_cancelled()
        try:
            st = abs_path.stat()
            prev = prev_entries.get(rel)
            entry: Dict[str, Any] = {"size": st.st_size, "mtime": st.st_mtime}
            is_binary = looks_binary(abs_path)
            if mode == "deep":
                if prev and prev.get("size") == st.st_size and prev.get("mtime") == st.st_mtime and prev.get("sha1"):
                    entry["sha1"] = prev["sha1"]
                else:
                    entry["sha1"] = sha1_of_file(abs_path)
        except OSError as e:
            # One unreadable file should not abort the scan
            console.print(f"[dim]Skipped {rel}: {e}[/dim]")
            return
        with lock:
            next_entries[rel] = entry
            binary_flags[rel] = is_binary
            stats.files += 1
            stats.bytes += st.st_size

    def visit_dir(abs_dir: Path, rel_dir: str):
        cancel.raise_if_cancelled()
        with lock:
            stats.dirs += 1
        with os.scandir(abs_dir) as it:
            for entry in it:
                cancel.raise_if_cancelled()
                rel = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
                child = Path(entry.path)
                if entry.is_dir(follow_symlinks=False):
                    if respect_ignore and entry.name in DEFAULT_IGNORE_DIRS:
                        continue
                    pool.submit(lambda c=child, r=rel: visit_dir(c, r))
                elif entry.is_file(follow_symlinks=False):
                    pool.submit(lambda c=child, r=rel: visit_file(c, r))

    started = time.time()
    stop_ticker = threading.Event()

    def ticker():
        while not stop_ticker.wait(progress_interval):
            secs = max(1.0, time.time() - started)
            console.print(
                f"[dim]Scanning ({mode}) - files: {stats.files} dirs: {stats.dirs} "
                f"~{int(stats.files / secs)}/s[/dim]",
                end="\r",
            )

    tick_thread = threading.Thread(target=ticker, name="scan-progress", daemon=True)
    tick_thread.start()
    try:
        pool.submit(lambda: visit_dir(root, ""))
        pool.join()
        cancel.raise_if_cancelled()
    finally:
        stop_ticker.set()
        tick_thread.join()
        console.print()

    if write_cache_file:
        write_cache(cache_path, next_entries)

    files = [
        RepoFileInfo(
            path=rel,
            size=e["size"],
            mtime=e["mtime"],
            is_binary=binary_flags.get(rel, False),
            sha1=e.get("sha1"),
        )
        for rel, e in sorted(next_entries.items())
    ]
    return ScanResult(files=files, stats=stats, cache_path=cache_path, mode=mode)

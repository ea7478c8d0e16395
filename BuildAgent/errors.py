"""Exception taxonomy shared by the executor, patch engine, scanner and queue."""

from pathlib import Path
from typing import List, Optional


class BuildAgentError(Exception):
    pass


class ContainmentError(BuildAgentError):
    """A path resolved outside the sandbox root."""


class AllowlistError(BuildAgentError):
    def __init__(self, binary: str):
        self.binary = binary
        super().__init__(
            f"Command '{binary}' is not in allowlist. "
            f"Add it under .af/config.yml -> actions.shell.allow"
        )


class UnknownActionError(BuildAgentError):
    pass


class PatchError(BuildAgentError):
    def __init__(self, message: str, rejects: Optional[List[str]] = None,
                 artifact: Optional[Path] = None):
        super().__init__(message)
        self.rejects = rejects or []
        self.artifact = artifact


class ScanCancelled(BuildAgentError):
    pass


class PlannerFormatError(BuildAgentError):
    pass


class TaskStateError(BuildAgentError):
    pass


class CommandFailed(BuildAgentError):
    def __init__(self, cmd: str, code: int):
        self.cmd = cmd
        self.code = code
        super().__init__(f"Command failed with exit code {code}: {cmd}")


class PlannerUnavailable(BuildAgentError):
    """The planner call itself failed (network, auth, exhausted retries)."""

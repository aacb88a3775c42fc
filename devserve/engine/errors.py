"""Exception hierarchy for the dev server orchestrator.

Specific exceptions for each failure mode. The registry converts them
into structured results at its boundary; nothing here is meant to
escape to the host UI as a raw exception.
"""
from __future__ import annotations


class DevServerError(Exception):
    """Base exception for all dev server orchestration errors."""


class NoPortsAvailableError(DevServerError):
    """Every port in the allocation range is reserved or unbindable."""
    def __init__(self, base_port: int, max_port: int):
        self.base_port = base_port
        self.max_port = max_port
        super().__init__(
            f"No available ports found between {base_port} and {max_port}"
        )


class WorktreeNotFoundError(DevServerError):
    """The worktree directory does not exist."""
    def __init__(self, worktree_path: str):
        self.worktree_path = worktree_path
        super().__init__(f"Worktree path does not exist: {worktree_path}")


class ManifestNotFoundError(DevServerError):
    """The worktree has no package.json."""
    def __init__(self, worktree_path: str, manifest: str = "package.json"):
        self.worktree_path = worktree_path
        self.manifest = manifest
        super().__init__(f"No {manifest} found in: {worktree_path}")


class UnresolvableStartCommandError(DevServerError):
    """No package manager could be detected for the worktree."""
    def __init__(self, worktree_path: str):
        self.worktree_path = worktree_path
        super().__init__(
            f"Could not determine dev command for: {worktree_path}"
        )


class EarlyProcessFailureError(DevServerError):
    """The dev server errored or exited during the startup grace period."""
    def __init__(
        self,
        worktree_path: str,
        reason: str,
        exit_code: int | None = None,
    ):
        self.worktree_path = worktree_path
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(reason)


class NotRunningError(DevServerError):
    """No dev server is registered for the worktree."""
    def __init__(self, worktree_path: str):
        self.worktree_path = worktree_path
        super().__init__(
            f"No dev server running for worktree: {worktree_path}"
        )


class InvalidWorktreePathError(DevServerError):
    """The worktree path is not a non-empty string."""
    def __init__(self, worktree_path: object):
        self.worktree_path = worktree_path
        super().__init__(
            f"Worktree path must be a non-empty string, got {worktree_path!r}"
        )

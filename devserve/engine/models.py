"""Core data models for the dev server orchestrator.

All dataclasses and enums. Single source of truth to avoid circular
imports between the allocator, pipeline, supervisor and registry.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ServerState(str, Enum):
    """Dev server lifecycle states. See lifecycle.py for transition rules."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class PackageManager(str, Enum):
    """Package managers recognised by lockfile probing."""
    BUN = "bun"
    PNPM = "pnpm"
    YARN = "yarn"
    NPM = "npm"


@dataclass(frozen=True)
class StartCommand:
    """Executable plus arguments used to launch a worktree's dev server."""
    command: str
    args: tuple[str, ...] = ()
    package_manager: PackageManager = PackageManager.NPM

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def display(self) -> str:
        return " ".join(self.argv)


@dataclass
class ServerEntry:
    """In-memory record for one worktree's dev server.

    Only the output pipeline touches ``scrollback``/``pending_output``;
    only the supervisor and registry touch the rest.
    """
    worktree_path: str
    port: int
    url: str
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    state: ServerState = ServerState.STARTING
    process: asyncio.subprocess.Process | None = field(
        default=None, repr=False,
    )
    scrollback: str = field(default="", repr=False)
    pending_output: str = field(default="", repr=False)
    flush_task: asyncio.Task | None = field(default=None, repr=False)
    # One-way: set by terminate, never cleared.
    stopping: bool = False
    exit_code: int | None = None
    error: str | None = None
    # Set when port + registry slot have been given back.
    released: bool = False
    reader_tasks: list[asyncio.Task] = field(default_factory=list, repr=False)
    watch_task: asyncio.Task | None = field(default=None, repr=False)
    # Resolves with the return code when the child exits, even while
    # a grandchild still holds its output pipes.
    exit_future: asyncio.Future | None = field(default=None, repr=False)

    @property
    def exited(self) -> bool:
        return self.exit_code is not None or self.error is not None

    def summary(self) -> dict[str, Any]:
        return {
            "worktree_path": self.worktree_path,
            "port": self.port,
            "url": self.url,
        }


@dataclass
class OperationResult:
    """Structured ``{success, result | error}`` outcome for API callers."""
    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None

    @classmethod
    def ok(cls, **result: Any) -> OperationResult:
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: BaseException | str) -> OperationResult:
        if isinstance(error, BaseException):
            return cls(
                success=False,
                error=str(error),
                error_type=type(error).__name__,
            )
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success}
        if self.result is not None:
            d["result"] = self.result
        if self.error is not None:
            d["error"] = self.error
        if self.error_type is not None:
            d["error_type"] = self.error_type
        return d

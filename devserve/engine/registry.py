"""Public API of the dev server orchestrator.

One ServerEntry per worktree path. The registry coordinates the port
allocator, process supervisor and output pipeline, and converts every
failure into an OperationResult so the host UI never has to catch.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from .config import DevServerConfig, fire_event
from .errors import (
    DevServerError,
    InvalidWorktreePathError,
    ManifestNotFoundError,
    NotRunningError,
    UnresolvableStartCommandError,
    WorktreeNotFoundError,
)
from .lifecycle import advance
from .models import OperationResult, ServerEntry, ServerState, utcnow_iso
from .output_pipeline import OutputPipeline
from .port_allocator import PortAllocator
from .supervisor import MANIFEST_FILE, ProcessSupervisor

logger = logging.getLogger(__name__)


class DevServerRegistry:
    """Per-worktree dev servers: start, stop, list and log replay.

    Construct one per host application and wire ``stop_all()`` into its
    shutdown sequence.
    """

    def __init__(
        self,
        config: DevServerConfig | None = None,
        *,
        allocator: PortAllocator | None = None,
        pipeline: OutputPipeline | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self.config = config or DevServerConfig()
        cfg = self.config
        self._allocator = allocator or PortAllocator(
            cfg.base_port,
            cfg.max_port,
            auxiliary_ports=cfg.auxiliary_ports,
            reclaim_delay_seconds=cfg.reclaim_delay_seconds,
            force_reclaim=cfg.force_reclaim,
        )
        self._pipeline = pipeline or OutputPipeline(
            scrollback_limit=cfg.scrollback_limit,
            batch_size=cfg.output_batch_size,
            throttle_seconds=cfg.output_throttle_seconds,
            event_callback=cfg.event_callback,
        )
        self._supervisor = supervisor or ProcessSupervisor(
            self._pipeline,
            grace_seconds=cfg.startup_grace_seconds,
            kill_timeout_seconds=cfg.kill_timeout_seconds,
            dev_script=cfg.dev_script,
            extra_env=cfg.extra_env,
        )
        self._supervisor.set_exit_handler(self._handle_process_exit)
        self._servers: dict[str, ServerEntry] = {}
        # In-flight starts keyed by worktree path; later callers join them.
        self._pending_starts: dict[str, asyncio.Task[OperationResult]] = {}

    @property
    def allocator(self) -> PortAllocator:
        return self._allocator

    @property
    def pipeline(self) -> OutputPipeline:
        return self._pipeline

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @staticmethod
    def normalize_path(worktree_path: str) -> str:
        """Absolute form of *worktree_path*, the registry key.

        Raises:
            InvalidWorktreePathError: *worktree_path* is not a string.
        """
        if not isinstance(worktree_path, str) or not worktree_path:
            raise InvalidWorktreePathError(worktree_path)
        return os.path.abspath(worktree_path)

    # ── Start ──

    async def start(self, project_path: str, worktree_path: str) -> OperationResult:
        """Start (or return the already running) dev server for a worktree."""
        try:
            key = self.normalize_path(worktree_path)
        except InvalidWorktreePathError as exc:
            return OperationResult.fail(exc)
        existing = self._servers.get(key)
        if existing is not None:
            return OperationResult.ok(
                worktree_path=existing.worktree_path,
                port=existing.port,
                url=existing.url,
                message=f"Dev server already running on port {existing.port}",
            )

        task = self._pending_starts.get(key)
        if task is None:
            task = asyncio.create_task(self._guarded_start(project_path, key))
            self._pending_starts[key] = task
            task.add_done_callback(
                lambda t, k=key: self._forget_pending_start(k, t)
            )
        else:
            logger.debug("Joining in-flight start for %s", key)
        return await asyncio.shield(task)

    def _forget_pending_start(self, key: str, task: asyncio.Task) -> None:
        if self._pending_starts.get(key) is task:
            del self._pending_starts[key]

    async def _guarded_start(self, project_path: str, worktree_path: str) -> OperationResult:
        try:
            entry = await self._start(project_path, worktree_path)
        except DevServerError as exc:
            logger.warning("Dev server start failed for %s: %s", worktree_path, exc)
            return OperationResult.fail(exc)
        except Exception as exc:
            logger.exception("Unexpected error starting dev server for %s", worktree_path)
            return OperationResult.fail(
                f"Failed to start dev server: {type(exc).__name__}: {exc}"
            )
        return OperationResult.ok(
            worktree_path=entry.worktree_path,
            port=entry.port,
            url=entry.url,
            message=f"Dev server started on port {entry.port}",
        )

    async def _start(self, project_path: str, worktree_path: str) -> ServerEntry:
        root = Path(worktree_path)
        if not root.is_dir():
            raise WorktreeNotFoundError(worktree_path)
        if not (root / MANIFEST_FILE).is_file():
            raise ManifestNotFoundError(worktree_path, MANIFEST_FILE)
        command = self._supervisor.resolve_start_command(worktree_path)
        if command is None:
            raise UnresolvableStartCommandError(worktree_path)

        port = await self._allocator.allocate()
        entry = ServerEntry(
            worktree_path=worktree_path,
            port=port,
            url=f"http://{self.config.hostname}:{port}",
        )
        logger.info(
            "Starting dev server project=%s worktree=%s port=%d command=%s",
            project_path, worktree_path, port, command.display(),
        )
        try:
            await self._supervisor.spawn(entry, command)
            await self._supervisor.confirm_started(entry)
        except BaseException:
            await self._discard_failed(entry)
            raise

        self._servers[worktree_path] = entry
        await fire_event(
            self.config.event_callback,
            {
                "event": "dev_server_started",
                "worktree_path": worktree_path,
                "port": port,
                "url": entry.url,
                "timestamp": utcnow_iso(),
            },
        )
        return entry

    async def _discard_failed(self, entry: ServerEntry) -> None:
        """Undo a start that never made it into the registry."""
        entry.stopping = True
        self._pipeline.cancel(entry)
        proc = entry.process
        if proc is not None and proc.returncode is None:
            # Cancelled mid-startup: the process is still alive.
            self._supervisor.terminate(entry)
        for task in entry.reader_tasks:
            if not task.done():
                task.cancel()
        entry.released = True
        self._allocator.release(entry.port)

    # ── Stop ──

    async def stop(self, worktree_path: str) -> OperationResult:
        """Stop a worktree's dev server; succeeds if none is running."""
        try:
            key = self.normalize_path(worktree_path)
        except InvalidWorktreePathError as exc:
            return OperationResult.fail(exc)
        pending = self._pending_starts.get(key)
        if pending is not None:
            await asyncio.shield(pending)

        entry = self._servers.get(key)
        if entry is None:
            logger.debug("No server record for %s, may have already stopped", key)
            return OperationResult.ok(
                worktree_path=key,
                message="Dev server already stopped",
            )

        logger.info("Stopping dev server for %s", key)
        self._supervisor.terminate(entry)
        advance(entry, ServerState.STOPPED)
        released = self._release(entry)
        if released:
            await fire_event(
                self.config.event_callback,
                {
                    "event": "dev_server_stopped",
                    "worktree_path": key,
                    "port": entry.port,
                    "exit_code": None,
                    "timestamp": utcnow_iso(),
                },
            )
        return OperationResult.ok(
            worktree_path=key,
            port=entry.port,
            message=f"Stopped dev server on port {entry.port}",
        )

    async def stop_all(self) -> None:
        """Stop every dev server; used at host shutdown."""
        entries = list(self._servers.values())
        logger.info("Stopping all %d dev servers", len(entries))
        for entry in entries:
            await self.stop(entry.worktree_path)
        for entry in entries:
            try:
                await self._supervisor.wait_closed(entry)
            except Exception:
                logger.exception(
                    "Failed waiting for dev server %s to exit", entry.worktree_path,
                )

    async def _handle_process_exit(self, entry: ServerEntry) -> None:
        """Exactly-once cleanup for a running server whose process ended."""
        if entry.released:
            return
        self._pipeline.cancel(entry, discard=False)
        notify = not entry.stopping
        if entry.state is ServerState.RUNNING:
            advance(entry, ServerState.STOPPED)
        if not self._release(entry):
            return
        if notify:
            # Last words of a crashed server go out before the stop event.
            while await self._pipeline.flush(entry):
                pass
            event: dict[str, Any] = {
                "event": "dev_server_stopped",
                "worktree_path": entry.worktree_path,
                "port": entry.port,
                "exit_code": entry.exit_code,
                "timestamp": utcnow_iso(),
            }
            if entry.error:
                event["error"] = entry.error
            await fire_event(self.config.event_callback, event)
        # After an error the child may still be alive with nobody
        # watching it; terminate() also sets stopping.
        self._supervisor.terminate(entry)

    def _release(self, entry: ServerEntry) -> bool:
        """Give back the entry's port and registry slot. True the first time."""
        if entry.released:
            return False
        entry.released = True
        self._allocator.release(entry.port)
        if self._servers.get(entry.worktree_path) is entry:
            del self._servers[entry.worktree_path]
        return True

    # ── Queries ──

    def list_servers(self) -> list[dict[str, Any]]:
        return [entry.summary() for entry in self._servers.values()]

    def is_running(self, worktree_path: str) -> bool:
        return self.get_server_info(worktree_path) is not None

    def get_server_info(self, worktree_path: str) -> ServerEntry | None:
        try:
            return self._servers.get(self.normalize_path(worktree_path))
        except InvalidWorktreePathError:
            return None

    def get_allocated_ports(self) -> list[int]:
        return self._allocator.reserved_ports()

    def get_logs(self, worktree_path: str) -> OperationResult:
        """Scrollback for replay to a newly attached viewer."""
        try:
            key = self.normalize_path(worktree_path)
        except InvalidWorktreePathError as exc:
            return OperationResult.fail(exc)
        entry = self._servers.get(key)
        if entry is None:
            return OperationResult.fail(NotRunningError(key))
        return OperationResult.ok(
            worktree_path=entry.worktree_path,
            port=entry.port,
            url=entry.url,
            logs=self._pipeline.get_history(entry),
            started_at=entry.started_at.isoformat(),
        )

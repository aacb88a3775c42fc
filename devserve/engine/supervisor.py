"""Spawning and supervision of per-worktree dev server processes.

The supervisor owns everything that touches the child process: picking
the command from the worktree's lockfiles, launching it with the
allocated port, pumping both output streams into the output pipeline,
telling "never started" apart from "started, later stopped", and
signalling the process on stop.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from .errors import EarlyProcessFailureError
from .lifecycle import advance
from .models import PackageManager, ServerEntry, ServerState, StartCommand
from .output_pipeline import OutputPipeline

logger = logging.getLogger(__name__)

# Called once per entry when a running server exits or errors.
ExitHandler = Callable[[ServerEntry], Awaitable[None]]

MANIFEST_FILE = "package.json"

# Probed in order; first hit wins.
LOCKFILES: tuple[tuple[str, PackageManager], ...] = (
    ("bun.lockb", PackageManager.BUN),
    ("bun.lock", PackageManager.BUN),
    ("pnpm-lock.yaml", PackageManager.PNPM),
    ("yarn.lock", PackageManager.YARN),
    ("package-lock.json", PackageManager.NPM),
)

_READ_CHUNK = 4096
_STREAM_LIMIT = 2 ** 16
# How long to keep reading output after the process itself is gone.
# Grandchildren holding the pipe open must not stall exit handling.
_DRAIN_TIMEOUT_SECONDS = 1.0
_FAILURE_LOG_TAIL = 2000


def _file_exists(path: Path) -> bool:
    try:
        return path.exists()
    except OSError:
        logger.debug("Existence check failed for %s", path, exc_info=True)
        return False


def detect_package_manager(worktree_path: str | Path) -> PackageManager | None:
    """Detect the package manager from lockfiles, or None without a manifest."""
    root = Path(worktree_path)
    for lockfile, manager in LOCKFILES:
        if _file_exists(root / lockfile):
            return manager
    if _file_exists(root / MANIFEST_FILE):
        return PackageManager.NPM
    return None


class _ExitTrackingProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also reports the moment the process exits.

    ``Process.wait()`` only returns once every pipe is closed, which a
    background grandchild holding stdout can delay indefinitely.
    ``exited`` resolves with the return code as soon as the child itself
    is gone.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[int | None] = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(self._transport.get_returncode())


class ProcessSupervisor:
    """Launches dev servers and watches them until they exit."""

    def __init__(
        self,
        pipeline: OutputPipeline,
        *,
        grace_seconds: float = 0.5,
        kill_timeout_seconds: float = 5.0,
        dev_script: str = "dev",
        extra_env: dict[str, str] | None = None,
        on_exit: ExitHandler | None = None,
    ) -> None:
        self._pipeline = pipeline
        self.grace_seconds = grace_seconds
        self.kill_timeout_seconds = kill_timeout_seconds
        self.dev_script = dev_script
        self._extra_env = dict(extra_env or {})
        self._on_exit = on_exit

    def set_exit_handler(self, handler: ExitHandler | None) -> None:
        self._on_exit = handler

    # ── Command resolution ──

    def resolve_start_command(self, worktree_path: str) -> StartCommand | None:
        manager = detect_package_manager(worktree_path)
        if manager is None:
            return None
        script = self.dev_script
        if manager is PackageManager.YARN:
            return StartCommand("yarn", (script,), manager)
        return StartCommand(manager.value, ("run", script), manager)

    def build_env(self, port: int) -> dict[str, str]:
        """Environment for the child: inherited env, PORT and color forcing."""
        env = dict(os.environ)
        env.update(self._extra_env)
        env.update({
            "PORT": str(port),
            # Tools that check for a TTY still emit colors.
            "FORCE_COLOR": "1",
            "COLORTERM": "truecolor",
            "TERM": "xterm-256color",
        })
        return env

    # ── Spawn + startup check ──

    async def spawn(
        self,
        entry: ServerEntry,
        command: StartCommand,
    ) -> asyncio.subprocess.Process:
        """Start *command* in the entry's worktree and wire its output.

        Raises:
            EarlyProcessFailureError: the executable could not be launched.
        """
        executable = shutil.which(command.command) or command.command
        logger.info(
            "Starting dev server for %s on port %d", entry.worktree_path, entry.port,
        )
        logger.debug("Working directory (cwd): %s", entry.worktree_path)
        logger.debug("Command: %s with PORT=%d", command.display(), entry.port)
        loop = asyncio.get_running_loop()
        try:
            # Args passed as an array, no shell
            transport, protocol = await loop.subprocess_exec(
                lambda: _ExitTrackingProtocol(_STREAM_LIMIT, loop),
                executable,
                *command.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=entry.worktree_path,
                env=self.build_env(entry.port),
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            logger.error("Process error for %s: %s", entry.worktree_path, exc)
            entry.error = str(exc)
            advance(entry, ServerState.FAILED)
            raise EarlyProcessFailureError(
                entry.worktree_path, f"Failed to start dev server: {exc}",
            ) from exc

        proc = asyncio.subprocess.Process(transport, protocol, loop)
        entry.process = proc
        entry.exit_future = protocol.exited
        entry.reader_tasks = [
            asyncio.create_task(self._pump(entry, proc.stdout, "stdout")),
            asyncio.create_task(self._pump(entry, proc.stderr, "stderr")),
        ]
        entry.watch_task = asyncio.create_task(self._watch(entry))
        return proc

    async def confirm_started(self, entry: ServerEntry) -> None:
        """Wait out the grace period; fail if the process is already gone.

        Raises:
            EarlyProcessFailureError: the process errored or exited.
        """
        proc = entry.process
        if not self._has_exited(entry):
            try:
                await self._wait_exit(entry, self.grace_seconds)
            except asyncio.TimeoutError:
                pass
            except Exception as exc:
                entry.error = entry.error or str(exc) or type(exc).__name__

        if not entry.error and not self._has_exited(entry):
            advance(entry, ServerState.RUNNING)
            return

        await self._drain_readers(entry)
        advance(entry, ServerState.FAILED)
        self._pipeline.cancel(entry)

        if entry.error:
            raise EarlyProcessFailureError(
                entry.worktree_path,
                f"Failed to start dev server: {entry.error}",
            )
        exit_code = proc.returncode if proc is not None else None
        reason = (
            f"Dev server process exited immediately (exit code {exit_code}). "
            "Check server logs for details."
        )
        tail = entry.scrollback[-_FAILURE_LOG_TAIL:].strip()
        if tail:
            reason = f"{reason}\n{tail}"
        logger.warning(
            "Dev server for %s exited during startup with code %s",
            entry.worktree_path, exit_code,
        )
        raise EarlyProcessFailureError(
            entry.worktree_path, reason, exit_code=exit_code,
        )

    # ── Termination ──

    def terminate(self, entry: ServerEntry) -> None:
        """Stop accepting output and signal the process to exit."""
        entry.stopping = True
        self._pipeline.cancel(entry)
        proc = entry.process
        if proc is not None and proc.returncode is None:
            logger.info(
                "Sending SIGTERM to dev server pid=%s for %s",
                proc.pid, entry.worktree_path,
            )
            self._signal_process_group(proc, signal.SIGTERM)

    async def wait_closed(
        self,
        entry: ServerEntry,
        timeout: float | None = None,
    ) -> None:
        """Wait for the process to exit, escalating to a hard kill."""
        proc = entry.process
        if proc is None or self._has_exited(entry):
            return
        timeout = self.kill_timeout_seconds if timeout is None else timeout
        try:
            await self._wait_exit(entry, timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Dev server pid=%s ignored SIGTERM for %.1fs, killing",
                proc.pid, timeout,
            )
            if sys.platform == "win32":
                proc.kill()
            else:
                self._signal_process_group(proc, signal.SIGKILL)
            await self._wait_exit(entry, None)

    @staticmethod
    def _signal_process_group(
        proc: asyncio.subprocess.Process,
        sig: signal.Signals,
    ) -> bool:
        """Send a signal to the process group when available."""
        if proc.returncode is not None:
            return False
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
            return True
        except ProcessLookupError:
            return False

    # ── Internals ──

    @staticmethod
    def _has_exited(entry: ServerEntry) -> bool:
        if entry.exit_future is not None:
            return entry.exit_future.done()
        return entry.process is None or entry.process.returncode is not None

    @staticmethod
    async def _wait_exit(entry: ServerEntry, timeout: float | None) -> None:
        """Wait for the child itself to exit, not for its pipes to close."""
        if entry.exit_future is None:
            return
        await asyncio.wait_for(asyncio.shield(entry.exit_future), timeout=timeout)

    @staticmethod
    async def _drain_readers(entry: ServerEntry) -> None:
        """Give readers a bounded time to finish, then cancel the rest."""
        pending = [t for t in entry.reader_tasks if not t.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=_DRAIN_TIMEOUT_SECONDS)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.debug(
                "Output of %s still held open after exit, stopped reading",
                entry.worktree_path,
            )
            await asyncio.wait(still_running)

    async def _pump(
        self,
        entry: ServerEntry,
        stream: asyncio.StreamReader | None,
        name: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    self._pipeline.append(entry, text)
        except OSError:
            logger.debug(
                "Reading %s failed for %s", name, entry.worktree_path,
                exc_info=True,
            )
        tail = decoder.decode(b"", final=True)
        if tail:
            self._pipeline.append(entry, tail)

    async def _watch(self, entry: ServerEntry) -> None:
        if entry.process is None or entry.exit_future is None:
            return
        try:
            entry.exit_code = await entry.exit_future
            logger.info(
                "Process for %s exited with code %s",
                entry.worktree_path, entry.exit_code,
            )
        except Exception as exc:
            entry.error = str(exc) or type(exc).__name__
            logger.error("Process error for %s: %s", entry.worktree_path, exc)

        await self._drain_readers(entry)

        # Startup failures are reported by confirm_started(), and
        # caller-initiated stops have already moved the state on.
        if entry.state is ServerState.RUNNING and self._on_exit is not None:
            await self._on_exit(entry)

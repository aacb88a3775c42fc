"""Process supervisor: command resolution, spawning, startup checks."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from devserve.engine.errors import EarlyProcessFailureError
from devserve.engine.models import PackageManager, ServerEntry, ServerState, StartCommand
from devserve.engine.output_pipeline import OutputPipeline
from devserve.engine.supervisor import ProcessSupervisor, detect_package_manager


def _python(script: str) -> StartCommand:
    return StartCommand(sys.executable, ("-c", script))


def _make_supervisor(**kwargs) -> tuple[ProcessSupervisor, OutputPipeline]:
    pipeline = OutputPipeline(throttle_seconds=0.001)
    kwargs.setdefault("grace_seconds", 0.3)
    return ProcessSupervisor(pipeline, **kwargs), pipeline


def _make_entry(tmp_path: Path, port: int = 3001) -> ServerEntry:
    return ServerEntry(worktree_path=str(tmp_path), port=port, url=f"http://localhost:{port}")


@pytest.mark.parametrize(
    "files, expected",
    [
        (["package.json", "bun.lockb", "pnpm-lock.yaml", "yarn.lock"], PackageManager.BUN),
        (["package.json", "pnpm-lock.yaml", "yarn.lock", "package-lock.json"], PackageManager.PNPM),
        (["package.json", "yarn.lock", "package-lock.json"], PackageManager.YARN),
        (["package.json", "package-lock.json"], PackageManager.NPM),
        (["package.json"], PackageManager.NPM),
        ([], None),
    ],
)
def test_detect_package_manager_priority(tmp_path, files, expected):
    for name in files:
        (tmp_path / name).write_text("{}", encoding="utf-8")
    assert detect_package_manager(tmp_path) == expected


def test_resolve_start_command_invocations(tmp_path):
    supervisor, _ = _make_supervisor()
    (tmp_path / "package.json").write_text("{}", encoding="utf-8")
    assert supervisor.resolve_start_command(str(tmp_path)).argv == ["npm", "run", "dev"]

    (tmp_path / "yarn.lock").write_text("", encoding="utf-8")
    assert supervisor.resolve_start_command(str(tmp_path)).argv == ["yarn", "dev"]

    (tmp_path / "pnpm-lock.yaml").write_text("", encoding="utf-8")
    assert supervisor.resolve_start_command(str(tmp_path)).argv == ["pnpm", "run", "dev"]

    (tmp_path / "bun.lockb").write_text("", encoding="utf-8")
    assert supervisor.resolve_start_command(str(tmp_path)).argv == ["bun", "run", "dev"]


def test_resolve_start_command_without_manifest(tmp_path):
    supervisor, _ = _make_supervisor()
    assert supervisor.resolve_start_command(str(tmp_path)) is None


def test_resolve_start_command_uses_configured_script(tmp_path):
    supervisor, _ = _make_supervisor(dev_script="start")
    (tmp_path / "package.json").write_text("{}", encoding="utf-8")
    assert supervisor.resolve_start_command(str(tmp_path)).argv == ["npm", "run", "start"]


def test_build_env_injects_port_and_color(monkeypatch):
    monkeypatch.setenv("SOME_PARENT_VAR", "kept")
    supervisor, _ = _make_supervisor(extra_env={"BROWSER": "none"})

    env = supervisor.build_env(3007)

    assert env["PORT"] == "3007"
    assert env["FORCE_COLOR"] == "1"
    assert env["COLORTERM"] == "truecolor"
    assert env["TERM"] == "xterm-256color"
    assert env["BROWSER"] == "none"
    assert env["SOME_PARENT_VAR"] == "kept"


@pytest.mark.asyncio
async def test_spawned_process_sees_port_and_output_is_captured(tmp_path):
    supervisor, pipeline = _make_supervisor()
    entry = _make_entry(tmp_path, port=3042)
    script = (
        "import os, sys, time\n"
        "print('port=' + os.environ['PORT'], flush=True)\n"
        "print('cwd=' + os.getcwd(), flush=True)\n"
        "sys.stderr.write('warn\\n'); sys.stderr.flush()\n"
        "time.sleep(30)\n"
    )

    await supervisor.spawn(entry, _python(script))
    await supervisor.confirm_started(entry)
    assert entry.state is ServerState.RUNNING

    for _ in range(200):
        if "warn" in entry.scrollback and "cwd=" in entry.scrollback:
            break
        await asyncio.sleep(0.01)
    assert "port=3042" in entry.scrollback
    assert f"cwd={Path(tmp_path).resolve()}" in entry.scrollback or f"cwd={tmp_path}" in entry.scrollback
    assert "warn" in entry.scrollback

    supervisor.terminate(entry)
    await supervisor.wait_closed(entry, timeout=5)
    await asyncio.wait_for(entry.watch_task, timeout=5)
    assert entry.process.returncode is not None
    assert entry.stopping is True


@pytest.mark.asyncio
async def test_immediate_exit_is_an_early_failure(tmp_path):
    supervisor, _ = _make_supervisor(grace_seconds=2.0)
    entry = _make_entry(tmp_path)

    await supervisor.spawn(entry, _python("import sys; print('boom'); sys.exit(3)"))
    with pytest.raises(EarlyProcessFailureError) as excinfo:
        await supervisor.confirm_started(entry)

    assert excinfo.value.exit_code == 3
    assert "exited immediately" in str(excinfo.value)
    assert entry.state is ServerState.FAILED


@pytest.mark.asyncio
async def test_missing_executable_is_an_early_failure(tmp_path):
    supervisor, _ = _make_supervisor()
    entry = _make_entry(tmp_path)

    with pytest.raises(EarlyProcessFailureError) as excinfo:
        await supervisor.spawn(entry, StartCommand("definitely-not-a-real-binary-xyz", ("run", "dev")))

    assert "Failed to start dev server" in str(excinfo.value)
    assert entry.state is ServerState.FAILED
    assert entry.process is None


@pytest.mark.asyncio
async def test_exit_after_startup_calls_exit_handler_once(tmp_path):
    calls: list[ServerEntry] = []

    async def on_exit(entry: ServerEntry) -> None:
        calls.append(entry)

    supervisor, _ = _make_supervisor(grace_seconds=0.1, on_exit=on_exit)
    entry = _make_entry(tmp_path)

    await supervisor.spawn(entry, _python("import time, sys; time.sleep(0.5); sys.exit(2)"))
    await supervisor.confirm_started(entry)
    await asyncio.wait_for(entry.watch_task, timeout=5)

    assert calls == [entry]
    assert entry.exit_code == 2


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell and process groups")
async def test_exit_seen_while_grandchild_keeps_pipes_open(tmp_path):
    import os
    import signal

    calls: list[ServerEntry] = []

    async def on_exit(entry: ServerEntry) -> None:
        calls.append(entry)

    supervisor, _ = _make_supervisor(grace_seconds=0.1, on_exit=on_exit)
    entry = _make_entry(tmp_path)

    await supervisor.spawn(
        entry, StartCommand("sh", ("-c", "echo up; (sleep 8 &); sleep 0.3; exit 4")),
    )
    try:
        await supervisor.confirm_started(entry)
        await asyncio.wait_for(entry.watch_task, timeout=3)

        assert entry.exit_code == 4
        assert calls == [entry]
        # Readers blocked on the inherited pipe are cancelled, not leaked.
        assert all(task.done() for task in entry.reader_tasks)
        assert "up" in entry.scrollback
    finally:
        try:
            os.killpg(entry.process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

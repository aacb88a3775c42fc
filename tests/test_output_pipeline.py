"""Output pipeline: bounded scrollback and throttled, batched events."""

from __future__ import annotations

import asyncio

import pytest

from devserve.engine.models import ServerEntry
from devserve.engine.output_pipeline import OutputPipeline


class Recorder:
    def __init__(self) -> None:
        self.events: list[dict] = []

    async def __call__(self, event: dict) -> None:
        self.events.append(event)

    @property
    def contents(self) -> list[str]:
        return [e["content"] for e in self.events if e["event"] == "dev_server_output"]


def _make_entry() -> ServerEntry:
    return ServerEntry(worktree_path="/proj/.worktrees/a", port=3001, url="http://localhost:3001")


async def _wait_idle(entry: ServerEntry, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while entry.flush_task is not None:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("flush never settled")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_scrollback_keeps_most_recent_suffix():
    pipeline = OutputPipeline(scrollback_limit=10, throttle_seconds=0)
    entry = _make_entry()
    chunks = ["abc", "defg", "hijkl", "mn"]

    for chunk in chunks:
        pipeline.append(entry, chunk)

    full = "".join(chunks)
    assert len(entry.scrollback) == 10
    assert pipeline.get_history(entry) == full[-10:]
    pipeline.cancel(entry)


@pytest.mark.asyncio
async def test_appends_within_one_window_emit_once():
    recorder = Recorder()
    pipeline = OutputPipeline(throttle_seconds=0.05, event_callback=recorder)
    entry = _make_entry()

    for i in range(20):
        pipeline.append(entry, f"line {i}\n")
    await _wait_idle(entry)

    assert len(recorder.events) == 1
    assert recorder.contents[0] == "".join(f"line {i}\n" for i in range(20))
    event = recorder.events[0]
    assert event["worktree_path"] == "/proj/.worktrees/a"
    assert event["timestamp"]
    assert entry.pending_output == ""


@pytest.mark.asyncio
async def test_large_burst_is_drained_in_batches_in_order():
    recorder = Recorder()
    pipeline = OutputPipeline(batch_size=10, throttle_seconds=0.001, event_callback=recorder)
    entry = _make_entry()
    text = "".join(chr(ord("a") + i % 26) for i in range(35))

    pipeline.append(entry, text)
    await _wait_idle(entry)

    assert [len(c) for c in recorder.contents] == [10, 10, 10, 5]
    assert "".join(recorder.contents) == text


@pytest.mark.asyncio
async def test_emitted_output_preserves_arrival_order_across_windows():
    recorder = Recorder()
    pipeline = OutputPipeline(batch_size=16, throttle_seconds=0.002, event_callback=recorder)
    entry = _make_entry()
    chunks = [f"{i:03d}|" * (i % 5 + 1) for i in range(40)]

    for chunk in chunks:
        pipeline.append(entry, chunk)
        await asyncio.sleep(0)
    await _wait_idle(entry)

    assert "".join(recorder.contents) == "".join(chunks)
    assert all(len(c) <= 16 for c in recorder.contents)


@pytest.mark.asyncio
async def test_stopping_entry_discards_output():
    recorder = Recorder()
    pipeline = OutputPipeline(throttle_seconds=0, event_callback=recorder)
    entry = _make_entry()
    entry.stopping = True

    pipeline.append(entry, "ignored")
    await asyncio.sleep(0.01)

    assert entry.scrollback == ""
    assert entry.pending_output == ""
    assert entry.flush_task is None
    assert recorder.events == []


@pytest.mark.asyncio
async def test_flush_with_nothing_pending_emits_nothing():
    recorder = Recorder()
    pipeline = OutputPipeline(event_callback=recorder)
    entry = _make_entry()

    assert await pipeline.flush(entry) is False
    assert recorder.events == []


@pytest.mark.asyncio
async def test_cancel_drops_pending_but_keeps_history():
    recorder = Recorder()
    pipeline = OutputPipeline(throttle_seconds=0.05, event_callback=recorder)
    entry = _make_entry()

    pipeline.append(entry, "hello")
    pipeline.cancel(entry)
    await asyncio.sleep(0.1)

    assert recorder.events == []
    assert entry.pending_output == ""
    assert entry.flush_task is None
    assert entry.scrollback == "hello"


@pytest.mark.asyncio
async def test_callback_failure_does_not_break_draining():
    calls = []

    async def flaky(event):
        calls.append(event["content"])
        if len(calls) == 1:
            raise RuntimeError("socket gone")

    pipeline = OutputPipeline(batch_size=4, throttle_seconds=0.001, event_callback=flaky)
    entry = _make_entry()

    pipeline.append(entry, "abcdefgh")
    await _wait_idle(entry)

    assert calls == ["abcd", "efgh"]


@pytest.mark.asyncio
async def test_batch_survives_flush_cancelled_mid_emit():
    entered = asyncio.Event()
    release = asyncio.Event()
    delivered: list[str] = []

    async def slow_consumer(event):
        entered.set()
        await release.wait()
        delivered.append(event["content"])

    pipeline = OutputPipeline(throttle_seconds=0.001, event_callback=slow_consumer)
    entry = _make_entry()
    pipeline.append(entry, "last words before crash")
    await asyncio.wait_for(entered.wait(), timeout=1)

    pipeline.cancel(entry, discard=False)
    await asyncio.sleep(0)
    assert entry.pending_output == "last words before crash"

    release.set()
    assert await pipeline.flush(entry) is False
    assert delivered == ["last words before crash"]
    assert entry.pending_output == ""


@pytest.mark.asyncio
async def test_output_arriving_during_emit_stays_pending():
    gate = asyncio.Event()
    delivered: list[str] = []

    async def consumer(event):
        await gate.wait()
        delivered.append(event["content"])

    pipeline = OutputPipeline(throttle_seconds=0.001, event_callback=consumer)
    entry = _make_entry()

    pipeline.append(entry, "first ")
    await asyncio.sleep(0.02)
    pipeline.append(entry, "second")
    gate.set()
    await _wait_idle(entry)

    assert "".join(delivered) == "first second"

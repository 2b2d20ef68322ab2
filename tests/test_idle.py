"""Tests for idle detection used by `sync --once`."""

import asyncio

import pytest

from tg_archive.idle import IdleMonitor


class StubScheduler:
    def __init__(self, pending=0, in_progress=0, processing=False):
        self.stats = {"pending": pending, "in_progress": in_progress, "idle": 0, "error": 0}
        self.processing = processing
        self.failure = None

    def raise_if_failed(self):
        if self.failure:
            raise self.failure

    async def queue_stats(self):
        return {**self.stats, "processing": self.processing}


class StubCapture:
    def __init__(self, busy=False):
        self.busy = busy

    def raise_if_failed(self):
        pass


class TestIsQuiescent:
    @pytest.mark.asyncio
    async def test_empty_queue(self):
        assert await IdleMonitor(StubScheduler(), StubCapture()).is_quiescent()

    @pytest.mark.asyncio
    async def test_pending_jobs(self):
        assert not await IdleMonitor(StubScheduler(pending=1)).is_quiescent()

    @pytest.mark.asyncio
    async def test_worker_processing(self):
        assert not await IdleMonitor(StubScheduler(processing=True)).is_quiescent()

    @pytest.mark.asyncio
    async def test_capture_writing(self):
        assert not await IdleMonitor(StubScheduler(), StubCapture(busy=True)).is_quiescent()

    @pytest.mark.asyncio
    async def test_scheduler_failure_propagates(self):
        scheduler = StubScheduler()
        scheduler.failure = RuntimeError("disk I/O error")
        with pytest.raises(RuntimeError):
            await IdleMonitor(scheduler).is_quiescent()


class TestWait:
    @pytest.mark.asyncio
    async def test_returns_after_idle_window(self):
        monitor = IdleMonitor(StubScheduler(), StubCapture(), poll_interval=0.05)
        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await monitor.wait(0.3) is True
        elapsed = loop.time() - started
        assert 0.3 <= elapsed < 0.8

    @pytest.mark.asyncio
    async def test_timer_restarts_when_work_appears(self):
        scheduler = StubScheduler()
        monitor = IdleMonitor(scheduler, poll_interval=0.02)
        loop = asyncio.get_running_loop()

        async def busy_for_a_while():
            await asyncio.sleep(0.1)
            scheduler.processing = True
            await asyncio.sleep(0.15)
            scheduler.processing = False

        started = loop.time()
        helper = asyncio.create_task(busy_for_a_while())
        assert await monitor.wait(0.2) is True
        await helper
        # idle only from ~0.25s onward
        assert loop.time() - started >= 0.45

    @pytest.mark.asyncio
    async def test_stop_event_ends_wait(self):
        monitor = IdleMonitor(StubScheduler(pending=1), poll_interval=0.02)
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, stop.set)
        assert await asyncio.wait_for(monitor.wait(10, stop), timeout=2) is False

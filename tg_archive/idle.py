"""
空闲检测
轮询调度器队列与实时采集状态，持续空闲达到指定时长后返回，用于 run-once 模式
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

logger = logging.getLogger("tg-archive.idle")


class IdleMonitor:
    def __init__(self, scheduler, capture=None, poll_interval: float = 0.5):
        self.scheduler = scheduler
        self.capture = capture
        self.poll_interval = poll_interval

    async def is_quiescent(self) -> bool:
        """没有 pending / in_progress 任务、执行器空闲、实时采集未在写入"""
        self.scheduler.raise_if_failed()
        if self.capture is not None:
            self.capture.raise_if_failed()
        stats = await self.scheduler.queue_stats()
        if stats["processing"] or stats["pending"] + stats["in_progress"] > 0:
            return False
        if self.capture is not None and self.capture.busy:
            return False
        return True

    async def wait(self, idle_window: float, stop_event: Optional[asyncio.Event] = None) -> bool:
        """阻塞直到持续空闲 idle_window 秒；stop_event 被设置时提前返回 False"""
        loop = asyncio.get_running_loop()
        idle_since: Optional[float] = None
        while True:
            if stop_event is not None and stop_event.is_set():
                return False
            if await self.is_quiescent():
                now = loop.time()
                if idle_since is None:
                    idle_since = now
                    logger.debug("💤 队列已空闲，开始计时")
                if now - idle_since >= idle_window:
                    return True
                sleep_for = min(self.poll_interval, idle_window - (now - idle_since))
            else:
                idle_since = None
                sleep_for = self.poll_interval
            await asyncio.sleep(max(sleep_for, 0))

"""
回填任务调度器（状态机）

    pending ──► in_progress ──► idle      历史耗尽 / 到达 min_date
       ▲             │    └───► error     权限 / 鉴权 / 响应异常
       │             │
       └─────────────┘                    临时失败（退避重试）或停止信号
    error ──► pending                      外部 retry
    idle  ──► pending                      外部 resume（继续回填）

同一进程内同时只执行一个任务；任务之间保持 inter_job_delay 的间隔以配合限流。
启动时把上个进程遗留的 in_progress 任务放回 pending（保留锚点）。
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .backfill import EXHAUSTED, BackfillWorker
from .database import Database
from .errors import (
    ArchiveError,
    AuthenticationError,
    NotFoundError,
    TransientFetchError,
)
from .utils import parse_datetime, to_iso

logger = logging.getLogger("tg-archive.scheduler")

# 没有可执行任务时的最长等待，期间可被 wake() 唤醒
IDLE_WAIT = 5.0


class JobScheduler:
    """回填任务调度器"""

    def __init__(self, config: dict, db: Database, worker: BackfillWorker):
        sync_cfg = config.get("sync", {})
        self.db = db
        self.worker = worker
        self.inter_job_delay = float(sync_cfg.get("inter_job_delay", 3.0))
        self.max_attempts = int(sync_cfg.get("max_attempts", 8))
        self.max_backoff = float(sync_cfg.get("max_backoff", 300.0))

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._processing = False
        self._current_job_id: Optional[int] = None
        self._last_activity: Optional[float] = None

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """恢复崩溃遗留任务并启动调度循环"""
        if self.running:
            return
        recovered = await self.db.jobs.reset_in_progress()
        if recovered:
            logger.info(f"♻️ 恢复 {recovered} 个中断的回填任务")
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="backfill-scheduler")

    def wake(self):
        self._wakeup.set()

    async def queue_stats(self) -> Dict[str, Any]:
        stats = await self.db.jobs.counts()
        stats["processing"] = self._processing
        return stats

    def raise_if_failed(self):
        """调度循环因存储级错误退出时，把异常抛给调用方"""
        if self._task is not None and self._task.done() and not self._task.cancelled():
            exc = self._task.exception()
            if exc is not None:
                raise exc

    # ── 外部请求 ─────────────────────────────────────────

    async def retry(self, job_id: int) -> dict:
        """error → pending"""
        return await self._reactivate(job_id, "error")

    async def resume(self, job_id: int) -> dict:
        """idle → pending（继续向更早的历史回填）"""
        return await self._reactivate(job_id, "idle")

    async def _reactivate(self, job_id: int, from_state: str) -> dict:
        job = await self.db.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"任务不存在: #{job_id}")
        if job["state"] == "pending":
            return job
        if not await self.db.jobs.transition(job_id, from_state, "pending"):
            raise ValueError(f"任务 #{job_id} 当前状态为 {job['state']}，不能从 {from_state} 重新排队")
        self.wake()
        return await self.db.jobs.get(job_id)

    # ── 调度循环 ─────────────────────────────────────────

    async def _run(self):
        logger.info("🚀 回填调度已启动")
        while not self._stop_event.is_set():
            # 先清除唤醒标记再查询，查询期间到达的 wake() 不会丢失
            self._wakeup.clear()
            job = await self.db.jobs.next_runnable(to_iso(datetime.now(timezone.utc)))
            if job is None:
                await self._wait_for_work()
                continue

            self._processing = True
            try:
                await self._pace()
                if self._stop_event.is_set():
                    break
                await self._run_job(job)
            finally:
                self._processing = False
                self._current_job_id = None
                self._last_activity = asyncio.get_running_loop().time()
        logger.info("⏹ 回填调度已停止")

    async def _wait_for_work(self):
        timeout = IDLE_WAIT
        due = parse_datetime(await self.db.jobs.next_due_at())
        if due is not None:
            remaining = (due - datetime.now(timezone.utc)).total_seconds()
            timeout = max(0.0, min(timeout, remaining))
        waiters = [
            asyncio.ensure_future(self._wakeup.wait()),
            asyncio.ensure_future(self._stop_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _pace(self):
        """距上一个任务的最后活动至少间隔 inter_job_delay"""
        if self._last_activity is None:
            return
        elapsed = asyncio.get_running_loop().time() - self._last_activity
        remaining = self.inter_job_delay - elapsed
        if remaining > 0:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass

    async def _run_job(self, job: Dict[str, Any]):
        job_id = job["id"]
        self._current_job_id = job_id
        logger.info(f"▶️ [job #{job_id}] 开始回填 {job['chat_ref']}")
        try:
            outcome = await self.worker.run(job, self._stop_event)
        except TransientFetchError as e:
            await self._handle_transient(job, e)
            return
        except AuthenticationError as e:
            logger.error(f"❌ [job #{job_id}] 鉴权失败: {e}")
            await self.db.jobs.mark_error(job_id, f"AuthenticationError: {e}")
            return
        except ArchiveError as e:
            logger.error(f"❌ [job #{job_id}] {type(e).__name__}: {e}")
            await self.db.jobs.mark_error(job_id, f"{type(e).__name__}: {e}")
            return

        if outcome == EXHAUSTED:
            await self.db.jobs.mark_idle(job_id)
            logger.info(f"✅ [job #{job_id}] 回填完成 → idle")
        else:
            await self.db.jobs.requeue(job_id, count_attempt=False)
            logger.info(f"⏸ [job #{job_id}] 已放回队列，锚点已保存")

    def _backoff(self, attempts: int, retry_after: Optional[float]) -> float:
        delay = min(self.inter_job_delay * (2 ** max(attempts - 1, 0)), self.max_backoff)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    async def _handle_transient(self, job: Dict[str, Any], error: TransientFetchError):
        job_id = job["id"]
        # 执行期间有进展时 attempts 已被清零，以库中当前值为准
        current = await self.db.jobs.get(job_id) or job
        attempts = int(current.get("attempts") or 0) + 1
        if attempts >= self.max_attempts:
            logger.error(f"❌ [job #{job_id}] 连续 {attempts} 次临时失败，放弃: {error}")
            await self.db.jobs.mark_error(
                job_id, f"TransientFetchError: 重试 {attempts} 次后放弃: {error}",
            )
            return
        delay = self._backoff(attempts, error.retry_after)
        next_attempt = datetime.now(timezone.utc) + timedelta(seconds=delay)
        await self.db.jobs.requeue(
            job_id, reason=f"TransientFetchError: {error}", next_attempt_at=to_iso(next_attempt),
        )
        logger.warning(f"⚠️ [job #{job_id}] 临时失败，{delay:.1f}s 后重试 (第 {attempts} 次): {error}")

    async def stop(self, timeout: Optional[float] = None):
        """停止接收新批次；正在写入的批次完成后保存任务状态再退出"""
        self._stop_event.set()
        self.wake()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("⚠️ 回填调度未在超时内退出，强制取消")
            job_id = self._current_job_id
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            if job_id is not None:
                await self.db.jobs.requeue(job_id, count_attempt=False)

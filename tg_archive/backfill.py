"""
历史回填执行器
每次执行一个任务：以存储中已有的最旧消息为锚点，按批向更早的历史翻页，
每批写库后持久化锚点，崩溃后可从最后一个锚点继续
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .database import Database
from .errors import classify_error
from .utils import parse_datetime, to_iso

logger = logging.getLogger("tg-archive.backfill")

EXHAUSTED = "exhausted"
STOPPED = "stopped"


class BackfillWorker:
    """历史回填执行器"""

    def __init__(self, config: dict, db: Database, client):
        sync_cfg = config.get("sync", {})
        self.db = db
        self.client = client
        self.batch_size = int(sync_cfg.get("batch_size", 100))
        self.inter_batch_delay = float(sync_cfg.get("inter_batch_delay", 1.2))

    async def _call(self, coro):
        """调用外部客户端，所有失败在此归类"""
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise classify_error(e) from e

    async def _resolve_channel(self, job: Dict[str, Any]) -> int:
        if job.get("channel_id") is not None:
            return job["channel_id"]
        channel = await self.db.channels.find_channel(job["chat_ref"])
        if channel is None:
            summary = await self._call(self.client.resolve_channel(job["chat_ref"]))
            await self.db.channels.upsert_channel(summary)
            return summary["id"]
        return channel["id"]

    async def _initial_anchor(self, job: Dict[str, Any], channel_id: int):
        """取任务锚点与存储中最旧消息中更旧的一个"""
        anchor_id = job.get("anchor_message_id")
        anchor_date = job.get("anchor_date")
        oldest = await self.db.messages.oldest_message(channel_id)
        if oldest and (anchor_id is None or oldest["message_id"] < anchor_id):
            anchor_id, anchor_date = oldest["message_id"], oldest["date"]
        return anchor_id, anchor_date

    async def _pause(self, stop_event: asyncio.Event, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self, job: Dict[str, Any], stop_event: asyncio.Event) -> str:
        """执行一个任务直到历史耗尽或收到停止信号

        返回 EXHAUSTED / STOPPED；外部客户端失败以已归类的 ArchiveError 抛出。
        """
        job_id = job["id"]
        channel_id = await self._resolve_channel(job)
        await self.db.jobs.mark_in_progress(job_id, channel_id)

        min_date = parse_datetime(job.get("min_date"))
        anchor_id, anchor_date = await self._initial_anchor(job, channel_id)
        if anchor_id is not None:
            await self.db.jobs.record_progress(job_id, anchor_id, anchor_date, 0)

        total = 0
        while True:
            if min_date and anchor_date and parse_datetime(anchor_date) <= min_date:
                logger.info(f"🏁 [job #{job_id}] 已到达 min_date {to_iso(min_date)}")
                return EXHAUSTED
            if stop_event.is_set():
                logger.info(f"⏸ [job #{job_id}] 收到停止信号，锚点 {anchor_id} 已保存")
                return STOPPED

            batch: List[Dict[str, Any]] = await self._call(
                self.client.fetch_history(channel_id, before_id=anchor_id, limit=self.batch_size)
            )
            # 只保留严格早于锚点的消息
            if anchor_id is not None:
                batch = [m for m in batch if m["message_id"] < anchor_id]

            within = [
                m for m in batch
                if min_date is None or parse_datetime(m["date"]) >= min_date
            ]
            if within:
                added = await self.db.ingest_messages(within, source="archive")
                oldest = min(within, key=lambda m: m["message_id"])
                anchor_id, anchor_date = oldest["message_id"], to_iso(oldest["date"])
                await self.db.jobs.record_progress(job_id, anchor_id, anchor_date, added)
                total += added
                logger.info(
                    f"📥 [job #{job_id}] 写入 {added} 条，锚点 → #{anchor_id} ({anchor_date})"
                )

            if len(batch) < self.batch_size or len(within) < len(batch):
                logger.info(f"🏁 [job #{job_id}] 历史已耗尽，本次共写入 {total} 条")
                return EXHAUSTED

            await self._pause(stop_event, self.inter_batch_delay)

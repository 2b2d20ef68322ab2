"""
归档服务
把存储、客户端、调度器、实时采集组装成一次会话；
open_archive 负责按顺序获取资源，并在任何退出路径上按固定顺序释放
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .backfill import BackfillWorker
from .client import TelegramArchiveClient
from .config import store_paths
from .database import Database
from .errors import NotFoundError
from .idle import IdleMonitor
from .realtime import RealtimeCapture
from .scheduler import JobScheduler
from .store_lock import StoreLock
from .utils import to_iso

logger = logging.getLogger("tg-archive.service")


class ArchiveService:
    """一次已连接会话内的全部归档操作"""

    def __init__(self, config: dict, db: Database, client, media_dir: Optional[Path] = None):
        sync_cfg = config.get("sync", {})
        self.config = config
        self.db = db
        self.client = client
        self.media_dir = Path(media_dir) if media_dir else None
        self.poll_interval = float(sync_cfg.get("idle_poll_interval", 0.5))
        self.shutdown_timeout = float(sync_cfg.get("shutdown_timeout", 30.0))
        self.worker = BackfillWorker(config, db, client)
        self.scheduler = JobScheduler(config, db, self.worker)
        self.capture = RealtimeCapture(config, db, client)

    # ── 会话 / 任务 ─────────────────────────────────────

    async def refresh_channels_from_dialogs(self) -> int:
        """用账号会话列表刷新 channels 表"""
        dialogs = await self.client.fetch_dialogs()
        for summary in dialogs:
            await self.db.channels.upsert_channel(summary)
        logger.info(f"📋 已同步 {len(dialogs)} 个会话")
        return len(dialogs)

    async def add_job(self, chat_ref: Union[int, str], min_date=None) -> Dict[str, Any]:
        """新增回填任务；同一会话已有未完成任务时直接返回该任务"""
        chat_ref = str(chat_ref).strip()
        if not chat_ref:
            raise ValueError("chat_ref 不能为空")
        channel = await self.db.channels.find_channel(chat_ref)
        channel_id = channel["id"] if channel else None

        existing = await self.db.jobs.find_active(chat_ref, channel_id)
        if existing:
            logger.info(f"ℹ️ {chat_ref} 已有任务 #{existing['id']} ({existing['state']})")
            return existing

        job = await self.db.jobs.create(chat_ref, min_date=to_iso(min_date), channel_id=channel_id)
        logger.info(f"➕ 新增回填任务 #{job['id']}: {chat_ref} (min_date={job['min_date']})")
        self.scheduler.wake()
        return job

    async def list_jobs(self, state: Optional[str] = None) -> List[dict]:
        return await self.db.jobs.list(state)

    async def retry_job(self, job_id: int) -> dict:
        return await self.scheduler.retry(job_id)

    async def resume_job(self, job_id: int) -> dict:
        return await self.scheduler.resume(job_id)

    async def resume_pending_jobs(self):
        """启动调度器；遗留的 in_progress 任务会先放回 pending"""
        await self.scheduler.start()

    async def start_realtime_sync(self):
        await self.capture.start()

    # ── 状态 ─────────────────────────────────────────

    async def check_updates_connection(self) -> bool:
        """订阅一次实时更新再立即取消，只检测连通性，事件不入库"""
        async def discard(event):
            return None

        await self.client.start_updates(discard)
        await self.client.stop_updates()
        return True

    async def get_queue_stats(self) -> Dict[str, Any]:
        return await self.scheduler.queue_stats()

    async def get_search_status(self) -> Dict[str, Any]:
        status = self.db.search_status()
        status["messages"] = await self.db.messages.count_messages()
        return status

    def raise_if_failed(self):
        """后台调度 / 采集因存储级错误退出时抛出"""
        self.scheduler.raise_if_failed()
        self.capture.raise_if_failed()

    async def wait_for_idle(self, idle_window: float, stop_event=None) -> bool:
        monitor = IdleMonitor(self.scheduler, self.capture, poll_interval=self.poll_interval)
        return await monitor.wait(idle_window, stop_event)

    # ── 主动操作 ─────────────────────────────────────────

    async def send_message(self, chat_ref: Union[int, str], text: str) -> Optional[dict]:
        """发送消息并立即写入归档（source=live）"""
        message = await self.client.send_message(chat_ref, text)
        if message:
            await self.db.ingest_messages([message], source="live")
            logger.info(f"📤 已发送到 {chat_ref}: #{message['message_id']}")
        return message

    async def download_media(
        self, channel_id: int, message_id: int, dest_dir: Union[str, Path, None] = None,
    ) -> str:
        dest = Path(dest_dir) if dest_dir else self.media_dir
        if dest is None:
            raise ValueError("未指定媒体下载目录")
        path = await self.client.download_media(channel_id, message_id, dest)
        if not path:
            raise NotFoundError(f"消息 {channel_id}#{message_id} 没有可下载的媒体")
        logger.info(f"📎 媒体已保存: {path}")
        return str(path)

    # ── 关闭 ─────────────────────────────────────────

    async def shutdown(self):
        """停止调度（等待在途批次写完并保存任务）→ 关闭实时订阅"""
        try:
            await self.scheduler.stop(timeout=self.shutdown_timeout)
        except Exception as e:
            logger.error(f"❌ 停止回填调度失败: {e}")
        try:
            await self.capture.stop(timeout=self.shutdown_timeout)
        except Exception as e:
            logger.error(f"❌ 停止实时采集失败: {e}")


@asynccontextmanager
async def open_archive(
    config: dict, store_dir: Union[str, Path], lock: bool = True, client=None,
) -> AsyncIterator[ArchiveService]:
    """打开存储目录并组装服务

    lock=False 时不获取存储锁，存储以只读方式打开，会话内的任何写入都会被拒绝。
    获取顺序：存储锁 → 数据库 → 客户端 → 服务；
    释放顺序：服务关闭 → 客户端断开 → 数据库关闭 → 释放锁。
    每一步释放失败只记录日志，不影响后续步骤。
    """
    paths = store_paths(Path(store_dir))
    paths["root"].mkdir(parents=True, exist_ok=True)

    store_lock = StoreLock(paths["root"])
    if lock:
        store_lock.acquire()

    db: Optional[Database] = None
    service: Optional[ArchiveService] = None
    try:
        # 不持锁的会话只读打开存储
        db = await Database(paths["database"], read_only=not lock).connect()
        if client is None:
            client = TelegramArchiveClient(config, paths["session"])
        service = ArchiveService(config, db, client, media_dir=paths["root"] / "media")
        yield service
    finally:
        if service is not None:
            await service.shutdown()
        if client is not None:
            try:
                await client.destroy()
            except Exception as e:
                logger.error(f"❌ 断开客户端失败: {e}")
        if db is not None:
            try:
                await db.close()
            except Exception as e:
                logger.error(f"❌ 关闭数据库失败: {e}")
        if store_lock.held:
            store_lock.release()

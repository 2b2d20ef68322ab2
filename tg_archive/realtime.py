"""
实时采集
客户端事件进入有界队列，由单个消费任务按到达顺序规范化并写库；
写入走与回填相同的 ingest 路径，同一消息键重复到达只会合并不会重复
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .database import Database
from .errors import AuthenticationError, classify_error

logger = logging.getLogger("tg-archive.realtime")


class RealtimeCapture:
    """实时消息采集器"""

    def __init__(self, config: dict, db: Database, client):
        self.db = db
        self.client = client
        queue_size = int(config.get("realtime", {}).get("queue_size", 1000))
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None
        self._writing = False
        self.received = 0
        self.stored = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        """队列非空或正在写库"""
        return self._writing or not self.queue.empty()

    def raise_if_failed(self):
        if self._task is not None and self._task.done() and not self._task.cancelled():
            exc = self._task.exception()
            if exc is not None:
                raise exc

    async def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._consume(), name="realtime-capture")
        try:
            await self.client.start_updates(self.submit)
        except Exception as e:
            self._task.cancel()
            raise classify_error(e) from e
        logger.info("🚀 实时采集已启动")

    async def submit(self, event: Dict[str, Any]):
        """事件入队；队列满时等待（背压）"""
        self.received += 1
        await self.queue.put(event)

    async def _consume(self):
        while True:
            event = await self.queue.get()
            self._writing = True
            try:
                await self._handle(event)
            finally:
                self._writing = False
                self.queue.task_done()

    async def _handle(self, event: Dict[str, Any]):
        try:
            message = await self.client.normalize_message(event["raw"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_error(e)
            self.failed += 1
            if isinstance(error, AuthenticationError):
                logger.error(f"❌ 实时事件处理鉴权失败: {error}")
            else:
                logger.warning(f"⚠️ 实时事件解析失败 ({type(error).__name__}): {error}")
            return
        if not message:
            return

        stored = await self.db.ingest_messages([message], source="live")
        self.stored += stored
        if stored:
            action = "✏️ 编辑" if event.get("kind") == "edit" else "💬 新消息"
            logger.debug(
                f"{action} [{message['channel_id']}#{message['message_id']}] "
                f"{(message.get('text') or '')[:60]}"
            )

    async def stop(self, timeout: Optional[float] = None):
        """关闭订阅，排空已入队事件后停止消费"""
        try:
            await self.client.stop_updates()
        except Exception as e:
            logger.warning(f"⚠️ 取消实时订阅失败: {e}")
        if self._task is None:
            return
        if not self._task.done():
            try:
                await asyncio.wait_for(self.queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ 实时队列未排空，丢弃 {self.queue.qsize()} 个事件")
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        logger.info(f"⏹ 实时采集已停止 (收到 {self.received}，写入 {self.stored}，失败 {self.failed})")

"""
数据库模块
归档存储的统一入口：连接管理 + 各表 DAO；上层组件不得绕过它写库
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable

from .db.channels import ChannelsDAO
from .db.core import FTS_VERSION, DatabaseConnection
from .db.jobs import JobsDAO
from .db.links import LinksDAO
from .db.messages import MessagesDAO

logger = logging.getLogger("tg-archive.database")


class Database:
    """异步 SQLite 归档存储"""

    def __init__(self, db_path: str, read_only: bool = False):
        self.db_path = str(db_path)
        self.core = DatabaseConnection(self.db_path, read_only=read_only)
        self.channels = ChannelsDAO(self.core)
        self.links = LinksDAO(self.core)
        self.messages = MessagesDAO(self.core, self.channels, self.links)
        self.jobs = JobsDAO(self.core)

    async def connect(self) -> "Database":
        """连接数据库并初始化 schema；存储损坏时抛出 CorruptStoreError"""
        await self.core.connect()
        return self

    async def close(self):
        # 先等被取消方遗留的写入批次落盘
        await self.messages.wait_pending()
        await self.core.close()

    async def ingest_messages(self, messages: Iterable[Dict[str, Any]], source: str) -> int:
        return await self.messages.ingest_messages(messages, source)

    def search_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.core.fts_enabled,
            "version": FTS_VERSION if self.core.fts_enabled else None,
        }

    async def __aenter__(self) -> "Database":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

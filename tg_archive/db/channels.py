"""
会话 / 话题 / 联系人 DAO
三类实体首次被引用时惰性创建，之后择机更新，核心流程从不删除
"""
from typing import Any, Dict, List, Optional, Union

import aiosqlite

from ..utils import to_iso, utcnow_iso

CHANNEL_KINDS = ("direct", "group", "channel", "forum")


class ChannelsDAO:
    def __init__(self, core):
        self.core = core

    # ── 事务内写入（调用方持有写锁，不提交） ─────────────────

    async def _upsert_channel(
        self, conn: aiosqlite.Connection, channel_id: int,
        title: Optional[str] = None, username: Optional[str] = None,
        kind: Optional[str] = None, last_message_at: Optional[str] = None,
    ) -> bool:
        """写入会话，返回标题是否发生变化（需要重建相关索引）"""
        if kind is not None and kind not in CHANNEL_KINDS:
            raise ValueError(f"未知会话类型: {kind}")
        cursor = await conn.execute("SELECT title FROM channels WHERE id = ?", (channel_id,))
        row = await cursor.fetchone()
        await conn.execute(
            """INSERT INTO channels (id, title, username, kind, last_message_at, updated_at)
               VALUES (?, ?, ?, COALESCE(?, 'group'), ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 title = COALESCE(excluded.title, channels.title),
                 username = COALESCE(excluded.username, channels.username),
                 kind = COALESCE(?, channels.kind),
                 last_message_at = CASE
                   WHEN channels.last_message_at IS NULL
                     OR excluded.last_message_at > channels.last_message_at
                   THEN excluded.last_message_at
                   ELSE channels.last_message_at END,
                 updated_at = excluded.updated_at""",
            (channel_id, title, username, kind, to_iso(last_message_at), utcnow_iso(), kind),
        )
        return row is not None and title is not None and row["title"] != title

    async def _upsert_contact(
        self, conn: aiosqlite.Connection, contact_id: int,
        display_name: Optional[str] = None, username: Optional[str] = None,
    ) -> bool:
        cursor = await conn.execute("SELECT display_name FROM contacts WHERE id = ?", (contact_id,))
        row = await cursor.fetchone()
        await conn.execute(
            """INSERT INTO contacts (id, display_name, username, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 display_name = COALESCE(excluded.display_name, contacts.display_name),
                 username = COALESCE(excluded.username, contacts.username),
                 updated_at = excluded.updated_at""",
            (contact_id, display_name, username, utcnow_iso()),
        )
        return row is not None and display_name is not None and row["display_name"] != display_name

    async def _upsert_topic(
        self, conn: aiosqlite.Connection, channel_id: int, topic_id: int,
        title: Optional[str] = None,
    ) -> bool:
        cursor = await conn.execute(
            "SELECT title FROM topics WHERE channel_id = ? AND topic_id = ?",
            (channel_id, topic_id),
        )
        row = await cursor.fetchone()
        await conn.execute(
            """INSERT INTO topics (channel_id, topic_id, title, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(channel_id, topic_id) DO UPDATE SET
                 title = COALESCE(excluded.title, topics.title),
                 updated_at = excluded.updated_at""",
            (channel_id, topic_id, title, utcnow_iso()),
        )
        return row is not None and title is not None and row["title"] != title

    # ── 独立写入 ─────────────────────────────────────────

    async def upsert_channel(self, summary: Dict[str, Any]) -> None:
        """写入会话摘要（来自 dialogs 列表或实体解析）"""
        async with self.core.transaction() as conn:
            renamed = await self._upsert_channel(
                conn, summary["id"], title=summary.get("title"),
                username=summary.get("username"), kind=summary.get("kind"),
                last_message_at=summary.get("last_message_at"),
            )
            if renamed:
                await self.core.reindex(conn, "m.channel_id = ?", (summary["id"],))

    async def upsert_contact(
        self, contact_id: int, display_name: Optional[str] = None,
        username: Optional[str] = None,
    ) -> None:
        async with self.core.transaction() as conn:
            if await self._upsert_contact(conn, contact_id, display_name, username):
                await self.core.reindex(conn, "m.sender_id = ?", (contact_id,))

    async def upsert_topic(self, channel_id: int, topic_id: int, title: Optional[str] = None) -> None:
        async with self.core.transaction() as conn:
            if await self._upsert_topic(conn, channel_id, topic_id, title):
                await self.core.reindex(
                    conn, "m.channel_id = ? AND m.topic_id = ?", (channel_id, topic_id),
                )

    # ── 查询 ─────────────────────────────────────────────

    async def get_channel(self, channel_id: int) -> Optional[dict]:
        cursor = await self.core.reader.execute("SELECT * FROM channels WHERE id = ?", (channel_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def find_channel(self, ref: Union[int, str]) -> Optional[dict]:
        """按数字 ID、@username 或完整标题查找会话"""
        ref = str(ref).strip()
        if ref.lstrip("-").isdigit():
            return await self.get_channel(int(ref))
        cursor = await self.core.reader.execute(
            """SELECT * FROM channels
               WHERE LOWER(username) = LOWER(?) OR title = ?
               ORDER BY updated_at DESC LIMIT 1""",
            (ref.lstrip("@"), ref),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_channels(self) -> List[dict]:
        cursor = await self.core.reader.execute(
            """SELECT c.*, (SELECT COUNT(*) FROM messages m WHERE m.channel_id = c.id) AS message_count
               FROM channels c
               ORDER BY c.last_message_at IS NULL, c.last_message_at DESC, c.title"""
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_topics(self, channel_id: int) -> List[dict]:
        cursor = await self.core.reader.execute(
            "SELECT * FROM topics WHERE channel_id = ? ORDER BY topic_id", (channel_id,)
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_contact(self, contact_id: int) -> Optional[dict]:
        cursor = await self.core.reader.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None

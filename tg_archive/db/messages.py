"""
消息 DAO
ingest_messages 是回填与实时采集共用的唯一写入路径：
消息行、派生链接行、全文索引行在同一个写事务内更新
"""
import asyncio
import logging
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional, Set

from ..utils import to_iso, utcnow_iso
from .links import extract_links

logger = logging.getLogger("tg-archive.db.messages")

SOURCES = ("archive", "live")

ZERO_WIDTH_PATTERN = re.compile(r"[\u200b-\u200f\u2060\ufeff]")
WHITESPACE_PATTERN = re.compile(r"\s+")

MESSAGE_SELECT_SQL = """SELECT m.*, c.title AS channel_title, c.username AS channel_username,
       COALESCE(ct.display_name, m.sender_name) AS sender_display_name,
       ct.username AS sender_username, t.title AS topic_title
  FROM messages m
  LEFT JOIN channels c ON c.id = m.channel_id
  LEFT JOIN contacts ct ON ct.id = m.sender_id
  LEFT JOIN topics t ON t.channel_id = m.channel_id AND t.topic_id = m.topic_id"""


def normalize_display_text(
    text: Optional[str],
    media_type: Optional[str] = None,
    filename: Optional[str] = None,
) -> str:
    """用于索引和展示的规范化文本：NFKC、去零宽字符、合并空白；无正文时用媒体占位"""
    normalized = unicodedata.normalize("NFKC", text or "")
    normalized = ZERO_WIDTH_PATTERN.sub("", normalized)
    normalized = WHITESPACE_PATTERN.sub(" ", normalized).strip()
    if not normalized and media_type:
        normalized = f"[{media_type}]" + (f" {filename}" if filename else "")
    return normalized


class MessagesDAO:
    def __init__(self, core, channels, links):
        self.core = core
        self.channels = channels
        self.links = links
        self._pending: Set[asyncio.Task] = set()

    async def ingest_messages(self, messages: Iterable[Dict[str, Any]], source: str) -> int:
        """批量写入规范化消息，返回实际存储的条数（服务消息不计）

        写入过程不受任务取消影响：关闭流程中正在进行的批次会完整提交。
        """
        if source not in SOURCES:
            raise ValueError(f"未知来源: {source}")
        items = [m for m in messages if m]
        if not items:
            return 0
        task = asyncio.ensure_future(self._ingest(items, source))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return await asyncio.shield(task)

    async def wait_pending(self) -> None:
        """等待所有已开始的写入批次结束（调用方被取消后批次仍会继续）"""
        while self._pending:
            results = await asyncio.gather(*list(self._pending), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"❌ 遗留写入批次失败: {result}")

    async def _ingest(self, items: List[Dict[str, Any]], source: str) -> int:
        stored = 0
        async with self.core.transaction() as conn:
            for msg in items:
                channel_id = msg["channel_id"]
                summary = msg.get("channel") or {}
                service = bool(msg.get("service"))

                renamed = await self.channels._upsert_channel(
                    conn, channel_id,
                    title=summary.get("title"),
                    username=summary.get("username"),
                    kind=summary.get("kind"),
                    last_message_at=None if service else msg.get("date"),
                )
                if renamed:
                    await self.core.reindex(conn, "m.channel_id = ?", (channel_id,))

                topic_id = msg.get("topic_id")
                if topic_id is not None:
                    if await self.channels._upsert_topic(conn, channel_id, topic_id, msg.get("topic_title")):
                        await self.core.reindex(
                            conn, "m.channel_id = ? AND m.topic_id = ?", (channel_id, topic_id),
                        )

                # 服务消息（入群、建话题等）只贡献元数据，不入库
                if service:
                    continue

                sender_id = msg.get("sender_id")
                if sender_id is not None:
                    if await self.channels._upsert_contact(
                        conn, sender_id, msg.get("sender_name"), msg.get("sender_username"),
                    ):
                        await self.core.reindex(conn, "m.sender_id = ?", (sender_id,))

                await self._upsert_message(conn, msg, source)
                stored += 1

        if stored:
            logger.debug(f"✅ 写入 {stored} 条消息 (source={source})")
        return stored

    async def _upsert_message(self, conn, msg: Dict[str, Any], source: str) -> None:
        channel_id = msg["channel_id"]
        message_id = msg["message_id"]
        date = to_iso(msg["date"])
        now = utcnow_iso()
        text = msg.get("text")
        display_text = normalize_display_text(
            text, msg.get("media_type"), msg.get("media_filename"),
        )

        # 同一键重复写入即编辑合并；source 保留首次入库时的来源
        await conn.execute(
            """INSERT INTO messages
               (channel_id, message_id, sender_id, sender_name, topic_id, date,
                edit_date, text, display_text, media_type, media_filename,
                media_mime, reply_to_id, forward_from, source, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(channel_id, message_id) DO UPDATE SET
                 sender_id = COALESCE(excluded.sender_id, messages.sender_id),
                 sender_name = COALESCE(excluded.sender_name, messages.sender_name),
                 topic_id = COALESCE(excluded.topic_id, messages.topic_id),
                 date = excluded.date,
                 edit_date = COALESCE(excluded.edit_date, messages.edit_date),
                 text = excluded.text,
                 display_text = excluded.display_text,
                 media_type = excluded.media_type,
                 media_filename = excluded.media_filename,
                 media_mime = excluded.media_mime,
                 reply_to_id = COALESCE(excluded.reply_to_id, messages.reply_to_id),
                 forward_from = COALESCE(excluded.forward_from, messages.forward_from),
                 updated_at = excluded.updated_at""",
            (
                channel_id, message_id, msg.get("sender_id"), msg.get("sender_name"),
                msg.get("topic_id"), date, to_iso(msg.get("edit_date")), text,
                display_text, msg.get("media_type"), msg.get("media_filename"),
                msg.get("media_mime"), msg.get("reply_to_id"), msg.get("forward_from"),
                source, now, now,
            ),
        )

        links = extract_links(text, msg.get("urls") or ())
        await self.links._replace_links(conn, channel_id, message_id, date, links)
        await self.core.reindex(
            conn, "m.channel_id = ? AND m.message_id = ?", (channel_id, message_id),
        )

    async def get_message(self, channel_id: int, message_id: int) -> Optional[dict]:
        """按复合键读取消息（含链接）；不存在返回 None"""
        cursor = await self.core.reader.execute(
            f"{MESSAGE_SELECT_SQL} WHERE m.channel_id = ? AND m.message_id = ?",
            (channel_id, message_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        message = dict(row)
        message["links"] = await self.links.get_message_links(channel_id, message_id)
        return message

    async def oldest_message(self, channel_id: int) -> Optional[dict]:
        """该会话已存储的最旧消息（回填锚点依据）"""
        cursor = await self.core.reader.execute(
            """SELECT message_id, date FROM messages
               WHERE channel_id = ? ORDER BY message_id ASC LIMIT 1""",
            (channel_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def count_messages(
        self,
        channel_id: Optional[int] = None,
        source: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
    ) -> int:
        conditions: List[str] = []
        params: List[Any] = []
        if channel_id is not None:
            conditions.append("channel_id = ?")
            params.append(channel_id)
        if source:
            conditions.append("source = ?")
            params.append(source)
        if since:
            conditions.append("date >= ?")
            params.append(to_iso(since))
        if until:
            conditions.append("date < ?")
            params.append(to_iso(until))

        where = "WHERE " + " AND ".join(conditions) if conditions else ""
        cursor = await self.core.reader.execute(
            f"SELECT COUNT(*) as cnt FROM messages {where}", params
        )
        row = await cursor.fetchone()
        return row["cnt"]

"""
搜索引擎
只读查询层：全文检索（正文、规范化正文、会话名、发送者、话题、文件名、链接域名）
与结构化过滤条件（会话、话题、来源、媒体类型、时间范围、域名）组合，结果按时间倒序
"""
from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any, List, Optional, Tuple, Union

from .database import Database
from .db.messages import MESSAGE_SELECT_SQL
from .utils import to_iso

logger = logging.getLogger("tg-archive.search")

SOURCE_FILTERS = ("archive", "live", "both")

TERM_PATTERN = re.compile(r"\S+")
WORD_PATTERN = re.compile(r"\w")

LIKE_COLUMNS = (
    "m.text", "m.display_text", "c.title",
    "COALESCE(ct.display_name, m.sender_name)", "t.title", "m.media_filename",
)


def encode_cursor(message: dict) -> str:
    """由一页最后一条结果生成不透明游标"""
    payload = json.dumps([message["date"], message["channel_id"], message["message_id"]])
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[str, int, int]:
    try:
        date, channel_id, message_id = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        return str(date), int(channel_id), int(message_id)
    except (ValueError, TypeError) as e:
        raise ValueError(f"无效的分页游标: {cursor}") from e


def query_terms(query: Optional[str]) -> List[str]:
    """拆分查询词，丢弃不含任何文字的片段"""
    terms = []
    for raw in TERM_PATTERN.findall(query or ""):
        term = raw.replace('"', "")
        if WORD_PATTERN.search(term):
            terms.append(term)
    return terms


def build_fts_query(terms: List[str]) -> str:
    # 每个词按短语处理，避免 FTS5 语法字符被解释；多个词为 AND
    return " ".join(f'"{term}"' for term in terms)


class SearchEngine:
    """归档消息查询"""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, channel_id: int, message_id: int) -> Optional[dict]:
        return await self.db.messages.get_message(channel_id, message_id)

    async def list(self, **filters: Any) -> List[dict]:
        return await self.search(None, **filters)

    async def search(
        self,
        query: Optional[str] = None,
        chat: Union[int, str, None] = None,
        topic_id: Optional[int] = None,
        source: str = "both",
        media_type: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        domain: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        cursor: Optional[str] = None,
    ) -> List[dict]:
        """按条件搜索消息；query 为空时等同于 list"""
        if source not in SOURCE_FILTERS:
            raise ValueError(f"source 只能是 {', '.join(SOURCE_FILTERS)}: {source}")

        conditions: List[str] = []
        params: List[Any] = []

        if chat is not None and str(chat).strip():
            ref = str(chat).strip()
            if ref.lstrip("-").isdigit():
                conditions.append("m.channel_id = ?")
                params.append(int(ref))
            else:
                conditions.append("(LOWER(c.username) = LOWER(?) OR c.title = ?)")
                params.extend([ref.lstrip("@"), ref])
        if topic_id is not None:
            conditions.append("m.topic_id = ?")
            params.append(topic_id)
        if source != "both":
            conditions.append("m.source = ?")
            params.append(source)
        if media_type == "any":
            conditions.append("m.media_type IS NOT NULL")
        elif media_type:
            conditions.append("m.media_type = ?")
            params.append(media_type)
        if since:
            conditions.append("m.date >= ?")
            params.append(to_iso(since))
        if until:
            conditions.append("m.date < ?")
            params.append(to_iso(until))
        if domain:
            domain = domain.lower().strip()
            conditions.append(
                """EXISTS (SELECT 1 FROM links l
                   WHERE l.channel_id = m.channel_id AND l.message_id = m.message_id
                     AND (l.domain = ? OR l.domain LIKE ?))"""
            )
            params.extend([domain, f"%.{domain}"])
        if cursor:
            conditions.append("(m.date, m.channel_id, m.message_id) < (?, ?, ?)")
            params.extend(decode_cursor(cursor))

        terms = query_terms(query)
        if terms:
            if self.db.core.fts_enabled:
                conditions.append(
                    "m.rowid IN (SELECT rowid FROM messages_fts WHERE messages_fts MATCH ?)"
                )
                params.append(build_fts_query(terms))
            else:
                for term in terms:
                    like = f"%{term}%"
                    clauses = [f"{col} LIKE ?" for col in LIKE_COLUMNS]
                    clauses.append(
                        """EXISTS (SELECT 1 FROM links l
                           WHERE l.channel_id = m.channel_id AND l.message_id = m.message_id
                             AND l.domain LIKE ?)"""
                    )
                    conditions.append("(" + " OR ".join(clauses) + ")")
                    params.extend([like] * len(clauses))

        where = "WHERE " + " AND ".join(conditions) if conditions else ""
        sql = (
            f"{MESSAGE_SELECT_SQL} {where} "
            "ORDER BY m.date DESC, m.channel_id DESC, m.message_id DESC LIMIT ? OFFSET ?"
        )
        params.extend([int(limit), int(offset)])

        result = await self.db.core.reader.execute(sql, params)
        rows = await result.fetchall()
        return [dict(r) for r in rows]

"""
链接提取与查询
links 表是从消息文本派生的数据，每次写入消息时整体重算
"""
import re
from typing import Any, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

URL_PATTERN = re.compile(
    r"https?://[^\s<>\"')\]，。！？、；：）》」』】\u200b]+"
)

# 句末标点通常不属于链接
TRAILING_PUNCTUATION = ".,;:!?'\""


def url_domain(url: str) -> Optional[str]:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    return host.lower().rstrip(".") if host else None


def extract_links(text: Optional[str], extra_urls: Iterable[str] = ()) -> List[Tuple[str, str]]:
    """从文本和实体链接中提取 (url, domain)，按出现顺序去重"""
    candidates = URL_PATTERN.findall(text or "")
    candidates.extend(u for u in extra_urls if u)

    seen = set()
    links: List[Tuple[str, str]] = []
    for raw in candidates:
        url = raw.rstrip(TRAILING_PUNCTUATION)
        if url in seen:
            continue
        domain = url_domain(url)
        if not domain:
            continue
        seen.add(url)
        links.append((url, domain))
    return links


class LinksDAO:
    def __init__(self, core):
        self.core = core

    async def _replace_links(
        self, conn, channel_id: int, message_id: int, date: str,
        links: List[Tuple[str, str]],
    ) -> None:
        """事务内重写某条消息的链接行"""
        await conn.execute(
            "DELETE FROM links WHERE channel_id = ? AND message_id = ?",
            (channel_id, message_id),
        )
        for url, domain in links:
            await conn.execute(
                """INSERT OR IGNORE INTO links (channel_id, message_id, url, domain, date)
                   VALUES (?, ?, ?, ?, ?)""",
                (channel_id, message_id, url, domain, date),
            )

    async def get_message_links(self, channel_id: int, message_id: int) -> List[dict]:
        cursor = await self.core.reader.execute(
            "SELECT * FROM links WHERE channel_id = ? AND message_id = ? ORDER BY id",
            (channel_id, message_id),
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_links(
        self,
        channel_id: Optional[int] = None,
        domain: Optional[str] = None,
        limit: int = 20,
    ) -> List[dict]:
        conditions: List[str] = []
        params: List[Any] = []

        if channel_id is not None:
            conditions.append("l.channel_id = ?")
            params.append(channel_id)
        if domain:
            domain = domain.lower()
            conditions.append("(l.domain = ? OR l.domain LIKE ?)")
            params.extend([domain, f"%.{domain}"])

        where = "WHERE " + " AND ".join(conditions) if conditions else ""
        cursor = await self.core.reader.execute(
            f"""SELECT l.*, c.title as channel_title, m.sender_name
                FROM links l
                LEFT JOIN channels c ON l.channel_id = c.id
                LEFT JOIN messages m ON m.channel_id = l.channel_id AND m.message_id = l.message_id
                {where}
                ORDER BY l.date DESC, l.id DESC LIMIT ?""",
            [*params, limit],
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_domains(self, limit: int = 50) -> List[dict]:
        cursor = await self.core.reader.execute(
            """SELECT
                  domain,
                  COUNT(*) as total_count,
                  COUNT(DISTINCT channel_id) as channel_count,
                  MIN(date) as first_seen,
                  MAX(date) as last_seen
               FROM links
               GROUP BY domain
               ORDER BY total_count DESC, last_seen DESC
               LIMIT ?""",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

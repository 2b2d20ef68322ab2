"""
回填任务 DAO
任务状态: pending → in_progress → idle / error，持久化后可跨进程崩溃恢复
"""
from typing import Any, Dict, List, Optional

from ..utils import to_iso, utcnow_iso

JOB_STATES = ("pending", "in_progress", "idle", "error")


class JobsDAO:
    def __init__(self, core):
        self.core = core

    async def create(
        self, chat_ref: str, min_date: Optional[str] = None,
        channel_id: Optional[int] = None,
    ) -> dict:
        now = utcnow_iso()
        async with self.core.transaction() as conn:
            cursor = await conn.execute(
                """INSERT INTO sync_jobs (chat_ref, channel_id, min_date, state, created_at, updated_at)
                   VALUES (?, ?, ?, 'pending', ?, ?)""",
                (str(chat_ref), channel_id, to_iso(min_date), now, now),
            )
            job_id = cursor.lastrowid
        return await self.get(job_id)

    async def get(self, job_id: int) -> Optional[dict]:
        cursor = await self.core.reader.execute("SELECT * FROM sync_jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def list(self, state: Optional[str] = None) -> List[dict]:
        if state:
            cursor = await self.core.reader.execute(
                "SELECT * FROM sync_jobs WHERE state = ? ORDER BY id", (state,)
            )
        else:
            cursor = await self.core.reader.execute("SELECT * FROM sync_jobs ORDER BY id")
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def find_active(self, chat_ref: str, channel_id: Optional[int] = None) -> Optional[dict]:
        """同一会话尚未结束（pending / in_progress）的任务"""
        cursor = await self.core.reader.execute(
            """SELECT * FROM sync_jobs
               WHERE state IN ('pending', 'in_progress')
                 AND (chat_ref = ? OR (? IS NOT NULL AND channel_id = ?))
               ORDER BY id LIMIT 1""",
            (str(chat_ref), channel_id, channel_id),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def next_runnable(self, now: Optional[str] = None) -> Optional[dict]:
        """按创建顺序取下一个到期的 pending 任务"""
        now = now or utcnow_iso()
        cursor = await self.core.reader.execute(
            """SELECT * FROM sync_jobs
               WHERE state = 'pending'
                 AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
               ORDER BY id LIMIT 1""",
            (now,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def next_due_at(self) -> Optional[str]:
        cursor = await self.core.reader.execute(
            "SELECT MIN(next_attempt_at) AS due FROM sync_jobs WHERE state = 'pending'"
        )
        row = await cursor.fetchone()
        return row["due"] if row else None

    async def _update(self, job_id: int, sql: str, params: tuple) -> None:
        async with self.core.transaction() as conn:
            await conn.execute(sql, (*params, utcnow_iso(), job_id))

    async def mark_in_progress(self, job_id: int, channel_id: Optional[int] = None) -> None:
        await self._update(
            job_id,
            """UPDATE sync_jobs SET state = 'in_progress',
                 channel_id = COALESCE(?, channel_id), updated_at = ?
               WHERE id = ?""",
            (channel_id,),
        )

    async def record_progress(
        self, job_id: int, anchor_message_id: int, anchor_date: Optional[str], added: int,
    ) -> None:
        """持久化锚点；锚点只会向更旧的方向移动，有新写入时清零连续失败次数"""
        await self._update(
            job_id,
            """UPDATE sync_jobs SET
                 anchor_date = CASE
                   WHEN anchor_message_id IS NULL OR ? < anchor_message_id THEN ?
                   ELSE anchor_date END,
                 anchor_message_id = CASE
                   WHEN anchor_message_id IS NULL OR ? < anchor_message_id THEN ?
                   ELSE anchor_message_id END,
                 message_count = message_count + ?,
                 attempts = CASE WHEN ? > 0 THEN 0 ELSE attempts END,
                 updated_at = ?
               WHERE id = ?""",
            (anchor_message_id, to_iso(anchor_date), anchor_message_id, anchor_message_id, added, added),
        )

    async def mark_idle(self, job_id: int) -> None:
        await self._update(
            job_id,
            """UPDATE sync_jobs SET state = 'idle', attempts = 0, next_attempt_at = NULL,
                 last_error = NULL, updated_at = ?
               WHERE id = ?""",
            (),
        )

    async def mark_error(self, job_id: int, reason: str) -> None:
        await self._update(
            job_id,
            """UPDATE sync_jobs SET state = 'error', next_attempt_at = NULL,
                 last_error = ?, updated_at = ?
               WHERE id = ?""",
            (reason,),
        )

    async def requeue(
        self, job_id: int, reason: Optional[str] = None,
        next_attempt_at: Optional[str] = None, count_attempt: bool = True,
    ) -> None:
        """放回 pending，保留锚点"""
        await self._update(
            job_id,
            """UPDATE sync_jobs SET state = 'pending',
                 attempts = attempts + ?, next_attempt_at = ?,
                 last_error = COALESCE(?, last_error), updated_at = ?
               WHERE id = ?""",
            (1 if count_attempt else 0, next_attempt_at, reason),
        )

    async def reset_in_progress(self) -> int:
        """启动时把上个进程遗留的 in_progress 任务放回 pending"""
        async with self.core.transaction() as conn:
            cursor = await conn.execute(
                """UPDATE sync_jobs SET state = 'pending', next_attempt_at = NULL, updated_at = ?
                   WHERE state = 'in_progress'""",
                (utcnow_iso(),),
            )
            return cursor.rowcount

    async def transition(self, job_id: int, from_state: str, to_state: str) -> bool:
        """条件状态迁移（重试 / 继续），返回是否生效"""
        async with self.core.transaction() as conn:
            cursor = await conn.execute(
                """UPDATE sync_jobs SET state = ?, attempts = 0, next_attempt_at = NULL,
                     last_error = NULL, updated_at = ?
                   WHERE id = ? AND state = ?""",
                (to_state, utcnow_iso(), job_id, from_state),
            )
            return cursor.rowcount > 0

    async def counts(self) -> Dict[str, Any]:
        cursor = await self.core.reader.execute(
            "SELECT state, COUNT(*) AS cnt FROM sync_jobs GROUP BY state"
        )
        rows = await cursor.fetchall()
        counts = {state: 0 for state in JOB_STATES}
        for row in rows:
            counts[row["state"]] = row["cnt"]
        return counts

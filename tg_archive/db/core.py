"""
核心数据库连接与结构模块
负责 SQLite 连接、PRAGMA 配置、Schema 初始化、全文索引及迁移
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import aiosqlite

from ..errors import ArchiveError, CorruptStoreError

logger = logging.getLogger("tg-archive.db.core")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channels (
    id              INTEGER PRIMARY KEY,
    title           TEXT,
    username        TEXT,
    kind            TEXT NOT NULL DEFAULT 'group',
    last_message_at TEXT,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS topics (
    channel_id   INTEGER NOT NULL,
    topic_id     INTEGER NOT NULL,
    title        TEXT,
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (channel_id, topic_id)
);

CREATE TABLE IF NOT EXISTS contacts (
    id           INTEGER PRIMARY KEY,
    display_name TEXT,
    username     TEXT,
    alias        TEXT,
    tags         TEXT,
    notes        TEXT,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    channel_id     INTEGER NOT NULL,
    message_id     INTEGER NOT NULL,
    sender_id      INTEGER,
    sender_name    TEXT,
    topic_id       INTEGER,
    date           TEXT NOT NULL,
    edit_date      TEXT,
    text           TEXT,
    display_text   TEXT,
    media_type     TEXT,
    media_filename TEXT,
    media_mime     TEXT,
    reply_to_id    INTEGER,
    forward_from   TEXT,
    source         TEXT NOT NULL,
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL,
    PRIMARY KEY (channel_id, message_id)
);

CREATE TABLE IF NOT EXISTS links (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id   INTEGER NOT NULL,
    message_id   INTEGER NOT NULL,
    url          TEXT NOT NULL,
    domain       TEXT NOT NULL,
    date         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_jobs (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_ref          TEXT NOT NULL,
    channel_id        INTEGER,
    min_date          TEXT,
    state             TEXT NOT NULL DEFAULT 'pending',
    anchor_message_id INTEGER,
    anchor_date       TEXT,
    attempts          INTEGER NOT NULL DEFAULT 0,
    next_attempt_at   TEXT,
    message_count     INTEGER NOT NULL DEFAULT 0,
    last_error        TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_channel_date ON messages(channel_id, date);
CREATE INDEX IF NOT EXISTS idx_messages_date ON messages(date);
CREATE INDEX IF NOT EXISTS idx_links_domain ON links(domain);
CREATE INDEX IF NOT EXISTS idx_links_message ON links(channel_id, message_id);
CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender_id);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_state ON sync_jobs(state, id);

-- 同一消息内同一链接只记一次
CREATE UNIQUE INDEX IF NOT EXISTS idx_links_unique
    ON links(channel_id, message_id, url);

CREATE TABLE IF NOT EXISTS meta (
    key        TEXT PRIMARY KEY,
    value      TEXT
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now')),
    description TEXT
);
"""

# FTS 结构变化时递增，连接时检测到版本不一致会整体重建索引
FTS_VERSION = 1

FTS_COLUMNS = (
    "text", "display_text", "channel_name", "sender_name",
    "topic_title", "filename", "domains",
)

FTS_CREATE_SQL = f"""CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    {", ".join(FTS_COLUMNS)},
    tokenize='unicode61 remove_diacritics 2'
)"""

# 由消息行及其关联的会话、联系人、话题、链接生成索引行；{where} 限定范围
FTS_FILL_SQL = """INSERT INTO messages_fts(
    rowid, text, display_text, channel_name, sender_name,
    topic_title, filename, domains)
SELECT m.rowid, m.text, m.display_text, c.title,
       COALESCE(ct.display_name, m.sender_name), t.title, m.media_filename,
       (SELECT group_concat(l.domain, ' ') FROM links l
         WHERE l.channel_id = m.channel_id AND l.message_id = m.message_id)
  FROM messages m
  LEFT JOIN channels c ON c.id = m.channel_id
  LEFT JOIN contacts ct ON ct.id = m.sender_id
  LEFT JOIN topics t ON t.channel_id = m.channel_id AND t.topic_id = m.topic_id
 WHERE {where}"""

FTS_CLEAR_SQL = """DELETE FROM messages_fts WHERE rowid IN (
    SELECT m.rowid FROM messages m WHERE {where})"""

# 新建存储直接记为 SCHEMA_VERSION；之后的结构变更以 (版本, 说明, SQL) 追加到 MIGRATIONS
SCHEMA_VERSION = 1

MIGRATIONS: List[Tuple[int, str, str]] = []

# 只读会话打开尚未创建的存储时使用的空库
MEMORY_DB = ":memory:"


class DatabaseConnection:
    """处理数据库底层连接、初始化及迁移

    read_only=True 用于不持有存储锁的会话：不建表、不迁移、不重建索引，
    所有写事务都会被拒绝。
    """

    def __init__(self, db_path: str, read_only: bool = False):
        self.db_path = db_path
        self.read_only = read_only
        self.conn: Optional[aiosqlite.Connection] = None
        # 只读连接：WAL 模式下只能看到已提交的数据
        self.reader: Optional[aiosqlite.Connection] = None
        self.fts_enabled = False
        # 单写者：所有写事务都必须持有该锁
        self.write_lock = asyncio.Lock()
        self._writable = False

    async def connect(self):
        path = Path(self.db_path)
        if path.exists() and not path.is_file():
            raise CorruptStoreError(f"存储路径不是文件: {path}")
        if self.read_only:
            await self._connect_read_only(path)
            return
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self.conn = await self._open(self.db_path)
            await self.conn.execute("PRAGMA journal_mode=WAL")
            await self.conn.execute("PRAGMA cache_size = -32000")
            await self.conn.execute("PRAGMA temp_store = MEMORY")
            await self.conn.execute("PRAGMA synchronous = NORMAL")
            await self.conn.execute("PRAGMA wal_autocheckpoint = 1000")
            await self._init_schema()
        except aiosqlite.DatabaseError as e:
            await self.close()
            raise CorruptStoreError(f"存储文件不可读写: {self.db_path} ({e})") from e

        self._writable = True
        await self._init_fts()
        await self._run_migrations()

        self.reader = await self._open(self.db_path)
        await self.reader.execute("PRAGMA query_only = 1")
        logger.info(f"✅ 数据库已连接 (WAL 模式): {self.db_path}")

    async def _open(self, target: str) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(target)
        conn.row_factory = aiosqlite.Row
        try:
            # 文件损坏 / 非 SQLite 文件会在第一次读 schema 时报错
            await conn.execute("PRAGMA schema_version")
            await conn.execute("PRAGMA busy_timeout=60000")
        except aiosqlite.DatabaseError:
            await conn.close()
            raise
        return conn

    async def _connect_read_only(self, path: Path):
        """不持锁打开：已有存储只读，不存在或未初始化时以空的内存库代替"""
        if path.exists():
            try:
                conn = await self._open(self.db_path)
                await conn.execute("PRAGMA query_only = 1")
                cursor = await conn.execute(
                    "SELECT name FROM sqlite_master WHERE type IN ('table', 'view')"
                )
                tables = {row["name"] for row in await cursor.fetchall()}
            except aiosqlite.DatabaseError as e:
                raise CorruptStoreError(f"存储文件不可读: {self.db_path} ({e})") from e
            if {"messages", "sync_jobs", "meta"} <= tables:
                self.conn = self.reader = conn
                self.fts_enabled = (
                    "messages_fts" in tables
                    and await self.get_meta("fts_version") == str(FTS_VERSION)
                )
                if not self.fts_enabled:
                    logger.warning("⚠️ 全文索引缺失或版本不一致，只读会话回退到 LIKE 搜索")
                logger.info(f"✅ 数据库已连接 (只读): {self.db_path}")
                return
            await conn.close()

        # 内存库与写连接共用，初始化完成后再禁止写入
        self.conn = await self._open(MEMORY_DB)
        self._writable = True
        await self._init_schema()
        await self._init_fts()
        await self._run_migrations()
        self._writable = False
        self.reader = self.conn
        logger.info(f"ℹ️ 存储尚未初始化，只读会话使用空库: {self.db_path}")

    async def _init_schema(self):
        for stmt in SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if not stmt:
                continue
            try:
                await self.conn.execute(stmt)
            except aiosqlite.OperationalError as e:
                if "already exists" not in str(e).lower():
                    logger.error(f"❌ Schema 初始化失败: {e}\nSQL: {stmt[:120]}")
                    raise
        await self.conn.commit()

    async def _init_fts(self):
        try:
            await self.conn.execute(FTS_CREATE_SQL)
            await self.conn.commit()
        except aiosqlite.OperationalError as e:
            logger.warning(f"⚠️ FTS5 初始化失败（回退到 LIKE 搜索）: {e}")
            self.fts_enabled = False
            return
        self.fts_enabled = True

        stored = await self.get_meta("fts_version")
        cursor = await self.conn.execute("SELECT COUNT(*) AS cnt FROM messages_fts")
        fts_count = (await cursor.fetchone())["cnt"]
        cursor = await self.conn.execute("SELECT COUNT(*) AS cnt FROM messages")
        msg_count = (await cursor.fetchone())["cnt"]

        if stored != str(FTS_VERSION) or (fts_count == 0 and msg_count > 0):
            logger.info(f"🔄 重建 FTS 索引 (v{FTS_VERSION}, {msg_count} 条消息)...")
            async with self.transaction() as conn:
                await conn.execute("DELETE FROM messages_fts")
                await conn.execute(FTS_FILL_SQL.format(where="1=1"))
                await conn.execute(
                    "INSERT INTO meta (key, value) VALUES ('fts_version', ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (str(FTS_VERSION),),
                )
            logger.info("✅ FTS 索引重建完成")

    async def schema_version(self) -> int:
        cursor = await self.conn.execute("SELECT COALESCE(MAX(version), 0) AS ver FROM schema_version")
        return (await cursor.fetchone())["ver"]

    async def _run_migrations(self):
        current = await self.schema_version()
        if current == 0:
            async with self.transaction() as conn:
                await conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (SCHEMA_VERSION, "initial schema"),
                )
            current = SCHEMA_VERSION

        for version, description, sql in MIGRATIONS:
            if version <= current:
                continue
            async with self.transaction() as conn:
                await conn.execute(sql)
                await conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (version, description),
                )
            logger.info(f"   ✅ 迁移 v{version}: {description}")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """持有写锁的事务：正常退出提交，异常回滚"""
        if self.read_only and not self._writable:
            raise ArchiveError("只读会话不能写入存储（需要持有存储锁）")
        async with self.write_lock:
            conn = self.conn
            if conn is None:
                raise ArchiveError("存储已关闭，写入被拒绝")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def reindex(self, conn: aiosqlite.Connection, where: str, params: tuple = ()):
        """在当前事务内重写 where 命中消息的全文索引行"""
        if not self.fts_enabled:
            return
        await conn.execute(FTS_CLEAR_SQL.format(where=where), params)
        await conn.execute(FTS_FILL_SQL.format(where=where), params)

    async def get_meta(self, key: str) -> Optional[str]:
        cursor = await self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def close(self):
        """等待正在进行的写事务提交后再关闭连接"""
        async with self.write_lock:
            if self.reader is not None and self.reader is not self.conn:
                await self.reader.close()
            self.reader = None
            if self.conn is not None:
                await self.conn.close()
                self.conn = None
            self._writable = False

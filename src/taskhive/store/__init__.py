"""taskhive Store -- SQLite 持久化实现

提供工厂函数创建共享数据库连接的 Store 实例组，
以及在同一连接上串行化的写事务。
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
import structlog

from .activity_store import SqliteActivityStore
from .event_store import SqliteEventStore
from .interaction_store import SqliteInteractionStore
from .legacy_store import SqliteLegacyEventStore
from .semaphore_store import SqliteSemaphoreStore
from .sqlite_init import init_db, verify_wal_mode
from .task_store import SqliteTaskStore
from .work_store import SqliteWorkStore

log = structlog.get_logger()


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self.conn.row_factory = aiosqlite.Row
        self.task_store = SqliteTaskStore(conn)
        self.activity_store = SqliteActivityStore(conn)
        self.event_store = SqliteEventStore(conn)
        self.interaction_store = SqliteInteractionStore(conn)
        self.semaphore_store = SqliteSemaphoreStore(conn)
        self.work_store = SqliteWorkStore(conn)
        self.legacy_store = SqliteLegacyEventStore(conn)
        # 同一连接上的写事务串行执行（不可嵌套）
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["StoreGroup"]:
        """写事务：BEGIN IMMEDIATE，异常回滚，正常退出提交

        BEGIN IMMEDIATE 立即获取写锁，跨进程的并发写由 busy_timeout 排队。
        """
        async with self._write_lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self
            except BaseException:
                await self.conn.rollback()
                raise
            else:
                await self.conn.commit()

    async def close(self) -> None:
        await self.conn.close()


async def create_store_group(db_path: str) -> StoreGroup:
    """创建 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径（":memory:" 用于测试）

    Returns:
        StoreGroup 实例
    """
    if db_path != ":memory:":
        # 确保数据库目录存在
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)
    log.debug("store_group_ready", db_path=db_path)

    return StoreGroup(conn=conn)


__all__ = [
    "StoreGroup",
    "create_store_group",
    "SqliteTaskStore",
    "SqliteActivityStore",
    "SqliteEventStore",
    "SqliteInteractionStore",
    "SqliteSemaphoreStore",
    "SqliteWorkStore",
    "SqliteLegacyEventStore",
    "init_db",
    "verify_wal_mode",
]

"""SemaphoreStore SQLite 实现

semaphores 表保存每个 key 的 limit 与 held_count；
semaphore_leases 表保存每张租约。held_count 等于该 key 未释放租约数。

授予使用单条条件 UPDATE（held_count < limit 时 +1），
在 BEGIN IMMEDIATE 事务内执行，跨进程同样不会超发。
"""

import aiosqlite

from ..clock import format_ts, parse_ts
from ..models.lease import SemaphoreLease


class SqliteSemaphoreStore:
    """准入信号量的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def ensure_semaphore(self, key: str, limit: int, now: str) -> None:
        """确保 key 对应的计数器存在"""
        await self._conn.execute(
            """
            INSERT OR IGNORE INTO semaphores (key, limit_count, held_count, updated_at)
            VALUES (?, ?, 0, ?)
            """,
            (key, limit, now),
        )

    async def try_increment(self, key: str, limit: int, now: str) -> int | None:
        """原子比较并递增

        Returns:
            递增后的 held_count；已满时返回 None
        """
        cursor = await self._conn.execute(
            """
            UPDATE semaphores
            SET held_count = held_count + 1, limit_count = ?, updated_at = ?
            WHERE key = ? AND held_count < ?
            """,
            (limit, now, key, limit),
        )
        if cursor.rowcount != 1:
            return None
        return await self.get_held_count(key)

    async def get_held_count(self, key: str) -> int:
        cursor = await self._conn.execute(
            "SELECT held_count FROM semaphores WHERE key = ?",
            (key,),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def insert_lease(self, lease: SemaphoreLease) -> None:
        await self._conn.execute(
            """
            INSERT INTO semaphore_leases (lease_id, key, holder, limit_count, held_count,
                                          acquired_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                lease.lease_id,
                lease.key,
                lease.holder,
                lease.limit,
                lease.held_count,
                format_ts(lease.acquired_at),
                format_ts(lease.expires_at),
            ),
        )

    async def get_lease(self, lease_id: str) -> SemaphoreLease | None:
        cursor = await self._conn.execute(
            "SELECT * FROM semaphore_leases WHERE lease_id = ?",
            (lease_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_lease(row)

    async def list_live_leases(self, key: str) -> list[SemaphoreLease]:
        """未释放的租约（可能已过期但尚未回收）"""
        cursor = await self._conn.execute(
            """
            SELECT * FROM semaphore_leases
            WHERE key = ? AND released_at IS NULL
            ORDER BY acquired_at, lease_id
            """,
            (key,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_lease(row) for row in rows]

    async def release_lease(self, lease_id: str, now: str, reason: str) -> bool:
        """释放租约并归还计数

        已释放（或已被回收）的租约不会重复归还。

        Returns:
            True 如果本次调用真正释放了租约
        """
        cursor = await self._conn.execute(
            """
            UPDATE semaphore_leases SET released_at = ?, release_reason = ?
            WHERE lease_id = ? AND released_at IS NULL
            """,
            (now, reason, lease_id),
        )
        if cursor.rowcount != 1:
            return False
        await self._conn.execute(
            """
            UPDATE semaphores
            SET held_count = MAX(held_count - 1, 0), updated_at = ?
            WHERE key = (SELECT key FROM semaphore_leases WHERE lease_id = ?)
            """,
            (now, lease_id),
        )
        return True

    async def renew_lease(self, lease_id: str, expires_at: str, now: str) -> bool:
        """延长未过期租约的有效期"""
        cursor = await self._conn.execute(
            """
            UPDATE semaphore_leases SET expires_at = ?
            WHERE lease_id = ? AND released_at IS NULL AND expires_at > ?
            """,
            (expires_at, lease_id, now),
        )
        return cursor.rowcount == 1

    async def reap_expired(self, now: str, key: str | None = None) -> dict[str, int]:
        """回收已过期租约

        Returns:
            key -> 回收数量
        """
        key_clause = "AND key = ?" if key is not None else ""
        params: tuple = (now, key) if key is not None else (now,)

        cursor = await self._conn.execute(
            f"""
            SELECT key, COUNT(*) FROM semaphore_leases
            WHERE released_at IS NULL AND expires_at <= ? {key_clause}
            GROUP BY key
            """,
            params,
        )
        counts = {row[0]: row[1] for row in await cursor.fetchall()}
        if not counts:
            return {}

        await self._conn.execute(
            f"""
            UPDATE semaphore_leases SET released_at = ?, release_reason = 'expired'
            WHERE released_at IS NULL AND expires_at <= ? {key_clause}
            """,
            (now, *params),
        )
        for reaped_key, count in counts.items():
            await self._conn.execute(
                """
                UPDATE semaphores
                SET held_count = MAX(held_count - ?, 0), updated_at = ?
                WHERE key = ?
                """,
                (count, now, reaped_key),
            )
        return counts

    @staticmethod
    def _row_to_lease(row: aiosqlite.Row) -> SemaphoreLease:
        return SemaphoreLease(
            lease_id=row["lease_id"],
            key=row["key"],
            limit=row["limit_count"],
            held_count=row["held_count"],
            holder=row["holder"],
            acquired_at=parse_ts(row["acquired_at"]),
            expires_at=parse_ts(row["expires_at"]),
            released_at=parse_ts(row["released_at"]),
        )

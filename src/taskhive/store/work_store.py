"""WorkStore SQLite 实现 -- 持久化工作队列

claim 在事务内读取并条件 UPDATE（status 未变）抢占，多 worker 并发时只有一个成功。
claimed 状态下 not_before 记录领取期限，过期后工作项可被重新领取。
"""

import json

import aiosqlite

from ..clock import format_ts, parse_ts
from ..models.enums import WorkItemStatus
from ..models.work import WorkItem


class SqliteWorkStore:
    """WorkItem 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def insert_item(self, item: WorkItem) -> None:
        await self._conn.execute(
            """
            INSERT INTO work_items (item_id, kind, queue_name, payload, not_before, attempts,
                                    max_attempts, status, last_error, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.item_id,
                item.kind.value,
                item.queue_name,
                json.dumps(item.payload, ensure_ascii=False),
                format_ts(item.not_before),
                item.attempts,
                item.max_attempts,
                item.status.value,
                item.last_error,
                format_ts(item.created_at),
                format_ts(item.updated_at),
            ),
        )

    async def get_item(self, item_id: str) -> WorkItem | None:
        cursor = await self._conn.execute(
            "SELECT * FROM work_items WHERE item_id = ?",
            (item_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_item(row)

    async def next_claimable(self, queue_name: str, now: str) -> WorkItem | None:
        """下一个可领取的工作项（按 not_before、创建顺序）

        包括到期的 ready 项，以及领取期限（claimed 状态下的 not_before）已过的 claimed 项。
        """
        cursor = await self._conn.execute(
            """
            SELECT * FROM work_items
            WHERE queue_name = ? AND status IN (?, ?) AND not_before <= ?
            ORDER BY not_before, item_id
            LIMIT 1
            """,
            (queue_name, WorkItemStatus.READY.value, WorkItemStatus.CLAIMED.value, now),
        )
        row = await cursor.fetchone()
        return self._row_to_item(row) if row else None

    async def set_status(
        self,
        item_id: str,
        expected: WorkItemStatus,
        new_status: WorkItemStatus,
        now: str,
        *,
        attempts: int | None = None,
        not_before: str | None = None,
        last_error: str | None = None,
    ) -> bool:
        """条件更新工作项状态"""
        cursor = await self._conn.execute(
            """
            UPDATE work_items
            SET status = ?, updated_at = ?,
                attempts = COALESCE(?, attempts),
                not_before = COALESCE(?, not_before),
                last_error = COALESCE(?, last_error)
            WHERE item_id = ? AND status = ?
            """,
            (
                new_status.value,
                now,
                attempts,
                not_before,
                last_error,
                item_id,
                expected.value,
            ),
        )
        return cursor.rowcount == 1

    async def list_items(
        self,
        queue_name: str | None = None,
        status: WorkItemStatus | None = None,
    ) -> list[WorkItem]:
        clauses = []
        params: list[str] = []
        if queue_name:
            clauses.append("queue_name = ?")
            params.append(queue_name)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._conn.execute(
            f"SELECT * FROM work_items {where} ORDER BY created_at, item_id",
            tuple(params),
        )
        rows = await cursor.fetchall()
        return [self._row_to_item(row) for row in rows]

    @staticmethod
    def _row_to_item(row: aiosqlite.Row) -> WorkItem:
        return WorkItem(
            item_id=row["item_id"],
            kind=row["kind"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            not_before=parse_ts(row["not_before"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            status=row["status"],
            last_error=row["last_error"],
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )

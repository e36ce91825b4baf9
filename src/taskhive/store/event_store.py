"""EventStore SQLite 实现

事件表 append-only：事件内容由触发器保护，只允许更新分发簿记字段。
每个事件写入 events 一行，并在 event_streams 中为其所属的每个 stream 分配
position（同一 stream 内严格单调递增，从 1 开始）。
注意：此处方法均不自动提交事务，由调用方管理事务。
"""

import json

import aiosqlite

from ..clock import format_ts, parse_ts
from ..models.event import Event, EventMetadata


class SqliteEventStore:
    """EventStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append_event(self, event: Event) -> Event:
        """追加事件（append-only）

        Returns:
            带 global_position 的事件副本
        """
        metadata = event.metadata
        cursor = await self._conn.execute(
            """
            INSERT INTO events (event_id, event_type, data, metadata, task_id,
                                activity_id, project_id, priority, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.event_type,
                json.dumps(event.data, ensure_ascii=False),
                metadata.model_dump_json(),
                metadata.task_id,
                metadata.activity_id,
                metadata.project_id,
                metadata.priority,
                format_ts(event.occurred_at),
            ),
        )
        global_position = cursor.lastrowid

        for stream in metadata.streams():
            await self._conn.execute(
                """
                INSERT INTO event_streams (stream, position, event_id)
                SELECT ?, COALESCE(MAX(position), 0) + 1, ?
                FROM event_streams WHERE stream = ?
                """,
                (stream, event.event_id, stream),
            )

        return event.model_copy(update={"global_position": global_position})

    async def get_event(self, event_id: str) -> Event | None:
        """根据 event_id 查询事件"""
        cursor = await self._conn.execute(
            "SELECT * FROM events WHERE event_id = ?",
            (event_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    async def read_stream(
        self,
        stream: str,
        after_position: int = 0,
        limit: int | None = None,
    ) -> list[Event]:
        """按 stream 内 position 正序读取事件"""
        sql = """
            SELECT e.* FROM event_streams s
            JOIN events e ON e.event_id = s.event_id
            WHERE s.stream = ? AND s.position > ?
            ORDER BY s.position ASC
        """
        params: tuple = (stream, after_position)
        if limit is not None:
            sql += " LIMIT ?"
            params = (*params, limit)
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def stream_version(self, stream: str) -> int:
        """stream 当前最大 position（空 stream 为 0）"""
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(position), 0) FROM event_streams WHERE stream = ?",
            (stream,),
        )
        row = await cursor.fetchone()
        return row[0]

    async def read_all(self, after_position: int = 0, limit: int | None = None) -> list[Event]:
        """按全局 position 正序读取（用于 Projection 重建）"""
        sql = "SELECT * FROM events WHERE global_position > ? ORDER BY global_position ASC"
        params: tuple = (after_position,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (*params, limit)
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def list_unprocessed(self, limit: int = 100) -> list[Event]:
        """尚未分发完成、也未进入死信的事件"""
        cursor = await self._conn.execute(
            """
            SELECT * FROM events
            WHERE processed_at IS NULL AND dead_lettered_at IS NULL
            ORDER BY global_position ASC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def list_dead_lettered(self) -> list[Event]:
        cursor = await self._conn.execute(
            """
            SELECT * FROM events WHERE dead_lettered_at IS NOT NULL
            ORDER BY global_position ASC
            """
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def mark_processed(self, event_id: str, processed_at: str) -> bool:
        """标记分发完成（已完成或已死信的事件不会被重复标记）"""
        cursor = await self._conn.execute(
            """
            UPDATE events SET processed_at = ?, processing_error = NULL
            WHERE event_id = ? AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            (processed_at, event_id),
        )
        return cursor.rowcount == 1

    async def record_failure(self, event_id: str, error: str) -> int:
        """记录一次失败的分发尝试

        Returns:
            累计失败次数
        """
        await self._conn.execute(
            """
            UPDATE events
            SET processing_attempts = processing_attempts + 1, processing_error = ?
            WHERE event_id = ?
            """,
            (error, event_id),
        )
        cursor = await self._conn.execute(
            "SELECT processing_attempts FROM events WHERE event_id = ?",
            (event_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def mark_dead_lettered(self, event_id: str, dead_at: str, error: str) -> bool:
        """放弃分发（死信）"""
        cursor = await self._conn.execute(
            """
            UPDATE events SET dead_lettered_at = ?, processing_error = ?
            WHERE event_id = ? AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            (dead_at, error, event_id),
        )
        return cursor.rowcount == 1

    async def count_by_type(self) -> dict[str, int]:
        cursor = await self._conn.execute(
            "SELECT event_type, COUNT(*) FROM events GROUP BY event_type"
        )
        rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> Event:
        """将数据库行转换为 Event 模型"""
        return Event(
            event_id=row["event_id"],
            event_type=row["event_type"],
            data=json.loads(row["data"]) if row["data"] else {},
            metadata=EventMetadata.model_validate_json(row["metadata"]),
            occurred_at=parse_ts(row["occurred_at"]),
            global_position=row["global_position"],
            processed_at=parse_ts(row["processed_at"]),
            processing_attempts=row["processing_attempts"],
            processing_error=row["processing_error"],
            dead_lettered_at=parse_ts(row["dead_lettered_at"]),
        )

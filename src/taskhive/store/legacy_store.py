"""LegacyEventStore -- 扁平化事件记录

兼容尚未迁移到 stream 读取的消费方。写入失败不影响主事件日志。
"""

import json
from typing import Any

import aiosqlite


class SqliteLegacyEventStore:
    """legacy_events 表的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def insert_record(self, record: dict[str, Any]) -> None:
        """写入一条扁平化记录（重复 event_id 忽略）"""
        await self._conn.execute(
            """
            INSERT OR IGNORE INTO legacy_events (event_id, event_type, data, task_id,
                                                 agent_activity_id, project_id, priority,
                                                 created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["event_id"],
                record["event_type"],
                json.dumps(record["data"], ensure_ascii=False),
                record["task_id"],
                record["agent_activity_id"],
                record["project_id"],
                record["priority"],
                record["created_at"],
            ),
        )

    async def list_records(self, task_id: str | None = None) -> list[dict[str, Any]]:
        if task_id:
            cursor = await self._conn.execute(
                "SELECT * FROM legacy_events WHERE task_id = ? ORDER BY id",
                (task_id,),
            )
        else:
            cursor = await self._conn.execute("SELECT * FROM legacy_events ORDER BY id")
        rows = await cursor.fetchall()
        return [
            {
                "event_id": row["event_id"],
                "event_type": row["event_type"],
                "data": json.loads(row["data"]),
                "task_id": row["task_id"],
                "agent_activity_id": row["agent_activity_id"],
                "project_id": row["project_id"],
                "priority": row["priority"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]

"""ActivityStore SQLite 实现

activity 的 spawn 树通过 parent_id 存储，祖先 / 后代查询使用递归 CTE。
递归部分用 UNION（去重）而非 UNION ALL，遇到环也会终止。
"""

import json

import aiosqlite

from ..clock import format_ts, parse_ts
from ..models.activity import AgentActivity
from ..models.enums import ActivityStatus


class SqliteActivityStore:
    """AgentActivity 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_activity(self, activity: AgentActivity) -> None:
        """创建 activity 记录"""
        await self._conn.execute(
            """
            INSERT INTO agent_activities (activity_id, task_id, parent_id, agent_type, status,
                                          required, paused_by, lease_id, error_message, result,
                                          metadata, created_at, updated_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity.activity_id,
                activity.task_id,
                activity.parent_id,
                activity.agent_type,
                activity.status.value,
                int(activity.required),
                activity.paused_by,
                activity.lease_id,
                activity.error_message,
                json.dumps(activity.result, ensure_ascii=False),
                json.dumps(activity.metadata, ensure_ascii=False),
                format_ts(activity.created_at),
                format_ts(activity.updated_at),
                format_ts(activity.completed_at) if activity.completed_at else None,
            ),
        )

    async def get_activity(self, activity_id: str) -> AgentActivity | None:
        """根据 activity_id 查询"""
        cursor = await self._conn.execute(
            "SELECT * FROM agent_activities WHERE activity_id = ?",
            (activity_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_activity(row)

    async def list_for_task(self, task_id: str) -> list[AgentActivity]:
        """task 自身的 activity，按创建顺序"""
        cursor = await self._conn.execute(
            """
            SELECT * FROM agent_activities WHERE task_id = ?
            ORDER BY created_at, activity_id
            """,
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_activity(row) for row in rows]

    async def list_children(self, activity_id: str) -> list[AgentActivity]:
        """直接子 activity"""
        cursor = await self._conn.execute(
            """
            SELECT * FROM agent_activities WHERE parent_id = ?
            ORDER BY created_at, activity_id
            """,
            (activity_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_activity(row) for row in rows]

    async def list_descendants(self, activity_id: str) -> list[AgentActivity]:
        """全部后代（不含自身），按创建顺序"""
        cursor = await self._conn.execute(
            """
            WITH RECURSIVE subtree(activity_id) AS (
                SELECT activity_id FROM agent_activities WHERE parent_id = ?
                UNION
                SELECT a.activity_id FROM agent_activities a
                JOIN subtree s ON a.parent_id = s.activity_id
            )
            SELECT a.* FROM agent_activities a JOIN subtree s ON a.activity_id = s.activity_id
            ORDER BY a.created_at, a.activity_id
            """,
            (activity_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_activity(row) for row in rows if row["activity_id"] != activity_id]

    async def list_ancestors(self, activity_id: str) -> list[AgentActivity]:
        """全部祖先，根在前、直接父节点在后"""
        cursor = await self._conn.execute(
            """
            WITH RECURSIVE chain(activity_id, parent_id) AS (
                SELECT activity_id, parent_id FROM agent_activities WHERE activity_id = ?
                UNION
                SELECT a.activity_id, a.parent_id FROM agent_activities a
                JOIN chain c ON a.activity_id = c.parent_id
            )
            SELECT a.* FROM agent_activities a JOIN chain c ON a.activity_id = c.activity_id
            """,
            (activity_id,),
        )
        rows = await cursor.fetchall()
        by_id = {row["activity_id"]: self._row_to_activity(row) for row in rows}
        if activity_id not in by_id:
            return []

        # 沿 parent_id 从自身向上走，再反转为根在前
        chain: list[AgentActivity] = []
        seen = {activity_id}
        parent_id = by_id[activity_id].parent_id
        while parent_id is not None and parent_id in by_id and parent_id not in seen:
            seen.add(parent_id)
            chain.append(by_id[parent_id])
            parent_id = by_id[parent_id].parent_id
        chain.reverse()
        return chain

    async def has_failed_required(self, task_id: str) -> bool:
        """task 是否有失败的 required activity"""
        cursor = await self._conn.execute(
            """
            SELECT 1 FROM agent_activities
            WHERE task_id = ? AND required = 1 AND status = ?
            LIMIT 1
            """,
            (task_id, ActivityStatus.FAILED.value),
        )
        return await cursor.fetchone() is not None

    async def count_open(self, task_id: str) -> int:
        """task 自身未进入终态的 activity 数"""
        cursor = await self._conn.execute(
            """
            SELECT COUNT(*) FROM agent_activities
            WHERE task_id = ? AND status IN (?, ?)
            """,
            (task_id, ActivityStatus.ACTIVE.value, ActivityStatus.PAUSED.value),
        )
        row = await cursor.fetchone()
        return row[0]

    async def count_closed(self, task_id: str) -> int:
        """task 自身已进入终态的 activity 数"""
        cursor = await self._conn.execute(
            """
            SELECT COUNT(*) FROM agent_activities
            WHERE task_id = ? AND status IN (?, ?)
            """,
            (task_id, ActivityStatus.COMPLETED.value, ActivityStatus.FAILED.value),
        )
        row = await cursor.fetchone()
        return row[0]

    async def update_status(
        self,
        activity_id: str,
        expected_status: ActivityStatus,
        new_status: ActivityStatus,
        updated_at: str,
        *,
        paused_by: str | None = None,
        error_message: str | None = None,
        result_json: str | None = None,
        completed_at: str | None = None,
    ) -> bool:
        """条件更新 activity 状态

        Returns:
            True 如果更新生效
        """
        cursor = await self._conn.execute(
            """
            UPDATE agent_activities
            SET status = ?, updated_at = ?, paused_by = ?,
                error_message = COALESCE(?, error_message),
                result = COALESCE(?, result),
                completed_at = COALESCE(?, completed_at)
            WHERE activity_id = ? AND status = ?
            """,
            (
                new_status.value,
                updated_at,
                paused_by,
                error_message,
                result_json,
                completed_at,
                activity_id,
                expected_status.value,
            ),
        )
        return cursor.rowcount == 1

    @staticmethod
    def _row_to_activity(row: aiosqlite.Row) -> AgentActivity:
        """将数据库行转换为 AgentActivity 模型"""
        return AgentActivity(
            activity_id=row["activity_id"],
            task_id=row["task_id"],
            parent_id=row["parent_id"],
            agent_type=row["agent_type"],
            status=row["status"],
            required=bool(row["required"]),
            paused_by=row["paused_by"],
            lease_id=row["lease_id"],
            error_message=row["error_message"],
            result=json.loads(row["result"]) if row["result"] else None,
            metadata=json.loads(row["metadata"]),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            completed_at=parse_ts(row["completed_at"]),
        )

"""TaskStore SQLite 实现

tasks 表只在 TaskStateMachine 的事务内更新，每次状态变化伴随一条 task.* 事件。
状态更新带 expected_state 条件，并发流转时后到者 rowcount 为 0。
此处仅提供数据库操作，不做 commit。
"""

import json

import aiosqlite

from ..clock import format_ts, parse_ts
from ..models.enums import TERMINAL_STATES, TaskState
from ..models.task import Task


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        await self._conn.execute(
            """
            INSERT INTO tasks (task_id, title, description, state, parent_id, project_id,
                               priority, required, queue_name, depends_on, paused_by,
                               error_message, metadata, created_at, updated_at,
                               completed_at, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.task_id,
                task.title,
                task.description,
                task.state.value,
                task.parent_id,
                task.project_id,
                task.priority,
                int(task.required),
                task.queue_name,
                json.dumps(task.depends_on),
                task.paused_by,
                task.error_message,
                json.dumps(task.metadata, ensure_ascii=False),
                format_ts(task.created_at),
                format_ts(task.updated_at),
                format_ts(task.completed_at) if task.completed_at else None,
                task.version,
            ),
        )

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def get_tasks(self, task_ids: list[str]) -> list[Task]:
        """批量查询任务（不存在的 ID 被忽略）"""
        if not task_ids:
            return []
        placeholders = ",".join("?" for _ in task_ids)
        cursor = await self._conn.execute(
            f"SELECT * FROM tasks WHERE task_id IN ({placeholders})",
            tuple(task_ids),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks(
        self,
        state: str | None = None,
        project_id: str | None = None,
    ) -> list[Task]:
        """查询任务列表，支持按状态 / 项目筛选，按 created_at 正序"""
        clauses = []
        params: list[str] = []
        if state:
            clauses.append("state = ?")
            params.append(state)
        if project_id:
            clauses.append("project_id = ?")
            params.append(project_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._conn.execute(
            f"SELECT * FROM tasks {where} ORDER BY created_at, task_id",
            tuple(params),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_subtasks(self, parent_id: str) -> list[Task]:
        """直接子任务"""
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE parent_id = ? ORDER BY created_at, task_id",
            (parent_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def count_open_subtasks(self, parent_id: str) -> int:
        """未进入终态的直接子任务数"""
        terminal = tuple(s.value for s in TERMINAL_STATES)
        cursor = await self._conn.execute(
            f"""
            SELECT COUNT(*) FROM tasks
            WHERE parent_id = ? AND state NOT IN ({",".join("?" for _ in terminal)})
            """,
            (parent_id, *terminal),
        )
        row = await cursor.fetchone()
        return row[0]

    async def count_closed_subtasks(self, parent_id: str) -> int:
        """已进入终态的直接子任务数"""
        terminal = tuple(s.value for s in TERMINAL_STATES)
        cursor = await self._conn.execute(
            f"""
            SELECT COUNT(*) FROM tasks
            WHERE parent_id = ? AND state IN ({",".join("?" for _ in terminal)})
            """,
            (parent_id, *terminal),
        )
        row = await cursor.fetchone()
        return row[0]

    async def list_descendants(self, task_id: str) -> list[Task]:
        """全部后代任务（不含自身），UNION 去重保证遇环也能终止"""
        cursor = await self._conn.execute(
            """
            WITH RECURSIVE subtree(task_id) AS (
                SELECT task_id FROM tasks WHERE parent_id = ?
                UNION
                SELECT t.task_id FROM tasks t JOIN subtree s ON t.parent_id = s.task_id
            )
            SELECT t.* FROM tasks t JOIN subtree s ON t.task_id = s.task_id
            ORDER BY t.created_at, t.task_id
            """,
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows if row["task_id"] != task_id]

    async def count_by_state(self, project_id: str | None = None) -> dict[str, int]:
        """按状态统计任务数"""
        if project_id:
            cursor = await self._conn.execute(
                "SELECT state, COUNT(*) FROM tasks WHERE project_id = ? GROUP BY state",
                (project_id,),
            )
        else:
            cursor = await self._conn.execute(
                "SELECT state, COUNT(*) FROM tasks GROUP BY state"
            )
        rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    async def update_state(
        self,
        task_id: str,
        expected_state: TaskState,
        new_state: TaskState,
        updated_at: str,
        *,
        paused_by: str | None = None,
        error_message: str | None = None,
        completed_at: str | None = None,
    ) -> bool:
        """条件更新任务状态

        仅当当前 state 仍为 expected_state 时生效，同时 version + 1。

        Returns:
            True 如果更新生效
        """
        cursor = await self._conn.execute(
            """
            UPDATE tasks
            SET state = ?, updated_at = ?, paused_by = ?,
                error_message = COALESCE(?, error_message),
                completed_at = COALESCE(?, completed_at),
                version = version + 1
            WHERE task_id = ? AND state = ?
            """,
            (
                new_state.value,
                updated_at,
                paused_by,
                error_message,
                completed_at,
                task_id,
                expected_state.value,
            ),
        )
        return cursor.rowcount == 1

    async def delete_project_tasks(self, project_id: str) -> int:
        """删除项目下全部任务（activity / interaction 由外键级联删除）

        子任务经 parent_id 外键级联删除，不计入 DELETE 的 rowcount，
        因此先统计整棵子树。

        Returns:
            删除的任务数（含级联删除的子任务）
        """
        cursor = await self._conn.execute(
            """
            WITH RECURSIVE doomed(task_id) AS (
                SELECT task_id FROM tasks WHERE project_id = ?
                UNION
                SELECT t.task_id FROM tasks t JOIN doomed d ON t.parent_id = d.task_id
            )
            SELECT COUNT(*) FROM doomed
            """,
            (project_id,),
        )
        row = await cursor.fetchone()
        await self._conn.execute(
            "DELETE FROM tasks WHERE project_id = ?",
            (project_id,),
        )
        return row[0]

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        return Task(
            task_id=row["task_id"],
            title=row["title"],
            description=row["description"],
            state=row["state"],
            parent_id=row["parent_id"],
            project_id=row["project_id"],
            priority=row["priority"],
            required=bool(row["required"]),
            queue_name=row["queue_name"],
            depends_on=json.loads(row["depends_on"]),
            paused_by=row["paused_by"],
            error_message=row["error_message"],
            metadata=json.loads(row["metadata"]),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            completed_at=parse_ts(row["completed_at"]),
            version=row["version"],
        )

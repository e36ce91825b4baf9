"""InteractionStore SQLite 实现"""

import aiosqlite

from ..clock import format_ts, parse_ts
from ..models.enums import BLOCKING_INTERACTION_STATUSES, InteractionKind, InteractionStatus
from ..models.interaction import HumanInteraction


class SqliteInteractionStore:
    """HumanInteraction 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_interaction(self, interaction: HumanInteraction) -> None:
        await self._conn.execute(
            """
            INSERT INTO human_interactions (interaction_id, task_id, activity_id, kind,
                                            question, urgency, response, status, required,
                                            escalated_from, handled_by, expires_at,
                                            acknowledged_at, responded_at, escalated_at,
                                            created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                interaction.interaction_id,
                interaction.task_id,
                interaction.activity_id,
                interaction.kind.value,
                interaction.question,
                interaction.urgency.value if interaction.urgency else None,
                interaction.response,
                interaction.status.value,
                int(interaction.required),
                interaction.escalated_from,
                interaction.handled_by,
                format_ts(interaction.expires_at) if interaction.expires_at else None,
                format_ts(interaction.acknowledged_at) if interaction.acknowledged_at else None,
                format_ts(interaction.responded_at) if interaction.responded_at else None,
                format_ts(interaction.escalated_at) if interaction.escalated_at else None,
                format_ts(interaction.created_at),
            ),
        )

    async def get_interaction(self, interaction_id: str) -> HumanInteraction | None:
        cursor = await self._conn.execute(
            "SELECT * FROM human_interactions WHERE interaction_id = ?",
            (interaction_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_interaction(row)

    async def list_for_task(self, task_id: str) -> list[HumanInteraction]:
        cursor = await self._conn.execute(
            """
            SELECT * FROM human_interactions WHERE task_id = ?
            ORDER BY created_at, interaction_id
            """,
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_interaction(row) for row in rows]

    async def count_blocking(self, task_id: str) -> int:
        """仍阻塞 task 的 required 交互数（输入请求与干预）"""
        statuses = tuple(s.value for s in BLOCKING_INTERACTION_STATUSES)
        cursor = await self._conn.execute(
            f"""
            SELECT COUNT(*) FROM human_interactions
            WHERE task_id = ? AND required = 1
              AND status IN ({",".join("?" for _ in statuses)})
            """,
            (task_id, *statuses),
        )
        row = await cursor.fetchone()
        return row[0]

    async def list_due(self, now: str) -> list[HumanInteraction]:
        """已过期但仍为 pending 的输入请求"""
        cursor = await self._conn.execute(
            """
            SELECT * FROM human_interactions
            WHERE kind = ? AND status = ? AND expires_at IS NOT NULL AND expires_at <= ?
            ORDER BY expires_at, interaction_id
            """,
            (InteractionKind.INPUT_REQUEST.value, InteractionStatus.PENDING.value, now),
        )
        rows = await cursor.fetchall()
        return [self._row_to_interaction(row) for row in rows]

    async def list_open_escalations(self, interaction_id: str) -> list[HumanInteraction]:
        """由该输入请求升级而来、仍未处理的干预"""
        statuses = tuple(s.value for s in BLOCKING_INTERACTION_STATUSES)
        cursor = await self._conn.execute(
            f"""
            SELECT * FROM human_interactions
            WHERE escalated_from = ? AND status IN ({",".join("?" for _ in statuses)})
            ORDER BY created_at, interaction_id
            """,
            (interaction_id, *statuses),
        )
        rows = await cursor.fetchall()
        return [self._row_to_interaction(row) for row in rows]

    async def resolve(
        self,
        interaction_id: str,
        expected_statuses: set[InteractionStatus],
        new_status: InteractionStatus,
        *,
        response: str | None = None,
        handled_by: str | None = None,
        acknowledged_at: str | None = None,
        responded_at: str | None = None,
        escalated_at: str | None = None,
    ) -> bool:
        """条件更新交互状态

        Returns:
            True 如果更新生效
        """
        statuses = tuple(s.value for s in expected_statuses)
        cursor = await self._conn.execute(
            f"""
            UPDATE human_interactions
            SET status = ?,
                response = COALESCE(?, response),
                handled_by = COALESCE(?, handled_by),
                acknowledged_at = COALESCE(?, acknowledged_at),
                responded_at = COALESCE(?, responded_at),
                escalated_at = COALESCE(?, escalated_at)
            WHERE interaction_id = ? AND status IN ({",".join("?" for _ in statuses)})
            """,
            (
                new_status.value,
                response,
                handled_by,
                acknowledged_at,
                responded_at,
                escalated_at,
                interaction_id,
                *statuses,
            ),
        )
        return cursor.rowcount == 1

    @staticmethod
    def _row_to_interaction(row: aiosqlite.Row) -> HumanInteraction:
        return HumanInteraction(
            interaction_id=row["interaction_id"],
            task_id=row["task_id"],
            activity_id=row["activity_id"],
            kind=row["kind"],
            question=row["question"],
            urgency=row["urgency"],
            response=row["response"],
            status=row["status"],
            required=bool(row["required"]),
            escalated_from=row["escalated_from"],
            handled_by=row["handled_by"],
            expires_at=parse_ts(row["expires_at"]),
            acknowledged_at=parse_ts(row["acknowledged_at"]),
            responded_at=parse_ts(row["responded_at"]),
            escalated_at=parse_ts(row["escalated_at"]),
            created_at=parse_ts(row["created_at"]),
        )

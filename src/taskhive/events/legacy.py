"""Legacy 事件适配

to_legacy_record 是纯函数：把规范 Event 映射为旧消费方使用的扁平记录。
LegacyEventWriter 尽力写入，失败只记 warning，不影响主分发流程。
"""

from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from ..clock import format_ts
from ..models.event import Event
from ..store import StoreGroup

log = structlog.get_logger()


class LegacyEventRecord(BaseModel):
    """扁平化事件记录"""

    event_id: str
    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    task_id: str | None = None
    agent_activity_id: str | None = None
    project_id: str | None = None
    priority: int
    created_at: datetime


def to_legacy_record(event: Event) -> LegacyEventRecord:
    """Event -> LegacyEventRecord"""
    return LegacyEventRecord(
        event_id=event.event_id,
        event_type=event.event_type,
        data=dict(event.data),
        task_id=event.metadata.task_id,
        agent_activity_id=event.metadata.activity_id,
        project_id=event.metadata.project_id,
        priority=event.metadata.priority,
        created_at=event.occurred_at,
    )


class LegacyEventWriter:
    """legacy_events 写入器"""

    def __init__(self, stores: StoreGroup, enabled: bool = True) -> None:
        self._stores = stores
        self.enabled = enabled

    async def write(self, event: Event) -> bool:
        """尽力写入

        Returns:
            True 如果写入成功
        """
        if not self.enabled:
            return False
        try:
            record = to_legacy_record(event)
            async with self._stores.transaction():
                await self._stores.legacy_store.insert_record(
                    {
                        **record.model_dump(mode="json"),
                        "created_at": format_ts(record.created_at),
                    }
                )
        except Exception as e:
            log.warning(
                "legacy_event_write_failed",
                event_id=event.event_id,
                event_type=event.event_type,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        return True

"""EventLog -- append-only 事件日志

事件按 metadata 落入 task-/activity-/project- stream 以及全局 "all" stream，
同一 stream 内按追加顺序严格有序；跨 stream 不保证顺序。
"""

from ulid import ULID

from ..clock import Clock, utc_now
from ..models.event import Event, EventMetadata
from ..store import StoreGroup


def task_stream(task_id: str) -> str:
    return f"task-{task_id}"


def activity_stream(activity_id: str) -> str:
    return f"activity-{activity_id}"


def project_stream(project_id: str) -> str:
    return f"project-{project_id}"


class EventLog:
    """事件日志读写入口"""

    def __init__(self, stores: StoreGroup, clock: Clock = utc_now) -> None:
        self._stores = stores
        self._clock = clock

    def new_event(
        self,
        event_type: str,
        data: dict | None = None,
        metadata: EventMetadata | None = None,
    ) -> Event:
        """构造新事件（尚未写入）"""
        return Event(
            event_id=str(ULID()),
            event_type=str(event_type),
            data=data or {},
            metadata=metadata or EventMetadata(),
            occurred_at=self._clock(),
        )

    async def append(self, event: Event) -> str:
        """在独立事务中追加事件

        Returns:
            event_id
        """
        async with self._stores.transaction():
            stored = await self.write(event)
        return stored.event_id

    async def write(self, event: Event) -> Event:
        """在调用方已开启的事务内追加事件"""
        return await self._stores.event_store.append_event(event)

    async def get_event(self, event_id: str) -> Event | None:
        return await self._stores.event_store.get_event(event_id)

    async def read_stream(
        self,
        stream_id: str,
        after_position: int = 0,
        limit: int | None = None,
    ) -> list[Event]:
        """读取单个 stream（after_position 用于断点续读）"""
        return await self._stores.event_store.read_stream(stream_id, after_position, limit)

    async def read_all(self, after_position: int = 0, limit: int | None = None) -> list[Event]:
        """按全局顺序读取（Projection 重建）"""
        return await self._stores.event_store.read_all(after_position, limit)

    async def stream_version(self, stream_id: str) -> int:
        return await self._stores.event_store.stream_version(stream_id)

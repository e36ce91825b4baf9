"""Projection 模块 -- 从事件日志派生只读模型

支持单事件应用（作为 handler 订阅）和从 read_all 全量重建两种模式。
TaskStateProjection 回放 task.* 事件得到每个任务的状态，
可与 tasks 表对比，检查状态与事件是否一致。
"""

import time
from collections import Counter
from typing import Protocol

import structlog

from .events.log import EventLog
from .events.registry import HandlerRegistry
from .models.enums import EventType, TaskState
from .models.event import Event
from .store import StoreGroup

log = structlog.get_logger()


class Projection(Protocol):
    def reset(self) -> None: ...

    def apply(self, event: Event) -> None: ...


class EventCounterProjection:
    """按事件类型计数"""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()

    def reset(self) -> None:
        self._counts = Counter()

    def apply(self, event: Event) -> None:
        self._counts[event.event_type] += 1

    async def __call__(self, event: Event) -> None:
        self.apply(event)

    def register(self, registry: HandlerRegistry) -> None:
        registry.register_many([t.value for t in EventType], self)

    @property
    def counts(self) -> dict[str, int]:
        return dict(self._counts)

    def count_for(self, event_type: str) -> int:
        return self._counts.get(str(event_type), 0)


class TaskStateProjection:
    """回放 task.* 事件得到任务状态"""

    def __init__(self) -> None:
        self.states: dict[str, TaskState] = {}

    def reset(self) -> None:
        self.states = {}

    def apply(self, event: Event) -> None:
        task_id = event.data.get("task_id")
        if not task_id:
            return
        if event.event_type == EventType.TASK_CREATED:
            self.states[task_id] = TaskState.PENDING
        elif event.event_type.startswith("task.") and "to_state" in event.data:
            self.states[task_id] = TaskState(event.data["to_state"])

    async def drift(self, stores: StoreGroup) -> list[tuple[str, TaskState, TaskState]]:
        """与 tasks 表对比

        Returns:
            [(task_id, 事件回放状态, 表中状态)]，只包含不一致且仍存在的任务
        """
        mismatches = []
        for task in await stores.task_store.list_tasks():
            projected = self.states.get(task.task_id)
            if projected is not None and projected != task.state:
                mismatches.append((task.task_id, projected, task.state))
        return mismatches


class ProjectionManager:
    """Projection 注册与重建"""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log
        self._projections: dict[str, Projection] = {}

    def register(self, name: str, projection: Projection) -> None:
        self._projections[name] = projection
        log.info("projection_registered", name=name)

    def get(self, name: str) -> Projection | None:
        return self._projections.get(name)

    async def rebuild_all(self, batch_size: int = 500) -> int:
        """从全局事件日志重建全部 projection

        Returns:
            处理的事件总数
        """
        start_time = time.monotonic()
        for projection in self._projections.values():
            projection.reset()

        event_count = 0
        position = 0
        while True:
            batch = await self._log.read_all(after_position=position, limit=batch_size)
            if not batch:
                break
            for event in batch:
                for projection in self._projections.values():
                    projection.apply(event)
            event_count += len(batch)
            position = batch[-1].global_position or position

        elapsed_ms = int((time.monotonic() - start_time) * 1000)
        log.info(
            "projection_rebuild_completed",
            projections=list(self._projections),
            event_count=event_count,
            elapsed_ms=elapsed_ms,
        )
        return event_count

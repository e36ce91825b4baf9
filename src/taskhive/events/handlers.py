"""内置观察者 handler"""

import structlog

from ..models.enums import EventType
from ..models.event import Event
from .registry import HandlerRegistry

log = structlog.get_logger()


class LoggingEventHandler:
    """为每个生命周期事件输出一条结构化日志"""

    async def __call__(self, event: Event) -> None:
        log.info(
            "lifecycle_event",
            event_id=event.event_id,
            event_type=event.event_type,
            task_id=event.metadata.task_id,
            activity_id=event.metadata.activity_id,
            project_id=event.metadata.project_id,
            priority=event.metadata.priority,
        )

    def register(self, registry: HandlerRegistry) -> None:
        registry.register_many([t.value for t in EventType], self)

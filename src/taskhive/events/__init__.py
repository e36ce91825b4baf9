"""taskhive Events -- 事件日志、handler 注册表与分发器"""

from .dispatcher import EventDispatcher
from .handlers import LoggingEventHandler
from .legacy import LegacyEventRecord, LegacyEventWriter, to_legacy_record
from .log import EventLog, activity_stream, project_stream, task_stream
from .registry import EventHandler, EventSchemaRegistry, HandlerRegistry, handler_name

__all__ = [
    "EventDispatcher",
    "EventLog",
    "EventHandler",
    "HandlerRegistry",
    "EventSchemaRegistry",
    "LegacyEventRecord",
    "LegacyEventWriter",
    "LoggingEventHandler",
    "to_legacy_record",
    "handler_name",
    "task_stream",
    "activity_stream",
    "project_stream",
]

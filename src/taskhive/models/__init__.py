"""taskhive Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .activity import AgentActivity
from .enums import (
    ACTIVITY_TRANSITIONS,
    BLOCKING_INTERACTION_STATUSES,
    TERMINAL_ACTIVITY_STATUSES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ActivityStatus,
    EventType,
    InteractionKind,
    InteractionStatus,
    InteractionUrgency,
    TaskState,
    TransitionOutcome,
    WorkItemKind,
    WorkItemStatus,
    validate_activity_transition,
    validate_transition,
)
from .event import ALL_STREAM, Event, EventMetadata
from .interaction import HumanInteraction
from .lease import SemaphoreLease
from .result import TransitionResult
from .task import Task
from .work import WorkItem

__all__ = [
    # 枚举
    "TaskState",
    "ActivityStatus",
    "InteractionKind",
    "InteractionStatus",
    "InteractionUrgency",
    "EventType",
    "TransitionOutcome",
    "WorkItemKind",
    "WorkItemStatus",
    # 状态机
    "VALID_TRANSITIONS",
    "ACTIVITY_TRANSITIONS",
    "TERMINAL_STATES",
    "TERMINAL_ACTIVITY_STATUSES",
    "BLOCKING_INTERACTION_STATUSES",
    "validate_transition",
    "validate_activity_transition",
    # 记录
    "Task",
    "AgentActivity",
    "HumanInteraction",
    "SemaphoreLease",
    "WorkItem",
    # Event
    "Event",
    "EventMetadata",
    "ALL_STREAM",
    # 结果
    "TransitionResult",
]

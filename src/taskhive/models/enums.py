"""枚举定义

包含 TaskState 状态机、ActivityStatus、InteractionStatus、EventType 等枚举，
以及 VALID_TRANSITIONS / ACTIVITY_TRANSITIONS 合法流转映射和终态集合。
"""

from enum import StrEnum


class TaskState(StrEnum):
    """Task 状态机"""

    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    WAITING_ON_HUMAN = "waiting_on_human"

    # 终态
    COMPLETED = "completed"
    FAILED = "failed"


# 合法状态流转
VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    # pending -> failed：准入重试耗尽的任务
    TaskState.PENDING: {TaskState.ACTIVE, TaskState.FAILED},
    TaskState.ACTIVE: {
        TaskState.PAUSED,
        TaskState.WAITING_ON_HUMAN,
        TaskState.COMPLETED,
        TaskState.FAILED,
    },
    TaskState.PAUSED: {TaskState.ACTIVE, TaskState.FAILED},
    TaskState.WAITING_ON_HUMAN: {TaskState.ACTIVE, TaskState.FAILED},
    # 终态不可再流转
    TaskState.COMPLETED: set(),
    TaskState.FAILED: set(),
}

TERMINAL_STATES: set[TaskState] = {
    TaskState.COMPLETED,
    TaskState.FAILED,
}


class ActivityStatus(StrEnum):
    """AgentActivity 状态"""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_ACTIVITY_STATUSES: set[ActivityStatus] = {
    ActivityStatus.COMPLETED,
    ActivityStatus.FAILED,
}

# activity 合法流转（paused 的 activity 仍可记录完成 / 失败）
ACTIVITY_TRANSITIONS: dict[ActivityStatus, set[ActivityStatus]] = {
    ActivityStatus.ACTIVE: {
        ActivityStatus.PAUSED,
        ActivityStatus.COMPLETED,
        ActivityStatus.FAILED,
    },
    ActivityStatus.PAUSED: {
        ActivityStatus.ACTIVE,
        ActivityStatus.COMPLETED,
        ActivityStatus.FAILED,
    },
    ActivityStatus.COMPLETED: set(),
    ActivityStatus.FAILED: set(),
}


class InteractionKind(StrEnum):
    """HumanInteraction 类型"""

    INPUT_REQUEST = "input_request"
    INTERVENTION = "intervention"


class InteractionUrgency(StrEnum):
    """人工干预紧急程度"""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class InteractionStatus(StrEnum):
    """HumanInteraction 状态"""

    PENDING = "pending"

    # input_request
    ANSWERED = "answered"
    IGNORED = "ignored"
    EXPIRED = "expired"

    # intervention
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


# 仍会阻塞 task 的状态（已确认的干预尚未解决，同样阻塞）
BLOCKING_INTERACTION_STATUSES: set[InteractionStatus] = {
    InteractionStatus.PENDING,
    InteractionStatus.ACKNOWLEDGED,
}


class WorkItemKind(StrEnum):
    """工作项类型"""

    TASK_RUN = "task.run"
    EVENT_DISPATCH = "event.dispatch"


class WorkItemStatus(StrEnum):
    """工作项状态"""

    READY = "ready"
    CLAIMED = "claimed"
    DONE = "done"
    DEAD = "dead"


class TransitionOutcome(StrEnum):
    """状态流转调用结果"""

    APPLIED = "applied"
    NOOP = "noop"
    GUARD_FAILED = "guard_failed"
    NOT_FOUND = "not_found"


class EventType(StrEnum):
    """内置事件类型（命名空间字符串；未登记的类型同样允许发布）"""

    TASK_CREATED = "task.created"
    TASK_ACTIVATED = "task.activated"
    TASK_PAUSED = "task.paused"
    TASK_RESUMED = "task.resumed"
    TASK_WAITING_ON_HUMAN = "task.waiting_on_human"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"

    ACTIVITY_CREATED = "agent_activity.created"
    ACTIVITY_PAUSED = "agent_activity.paused"
    ACTIVITY_RESUMED = "agent_activity.resumed"
    ACTIVITY_COMPLETED = "agent_activity.completed"
    ACTIVITY_FAILED = "agent_activity.failed"

    INTERACTION_REQUESTED = "human_interaction.requested"
    INTERACTION_ANSWERED = "human_interaction.answered"
    INTERACTION_IGNORED = "human_interaction.ignored"
    INTERACTION_EXPIRED = "human_interaction.expired"
    INTERACTION_ESCALATED = "human_interaction.escalated"
    INTERVENTION_REQUESTED = "human_interaction.intervention_requested"
    INTERVENTION_ACKNOWLEDGED = "human_interaction.acknowledged"
    INTERVENTION_RESOLVED = "human_interaction.resolved"
    INTERVENTION_DISMISSED = "human_interaction.dismissed"

    PROJECT_DELETED = "project.deleted"


def validate_transition(from_state: TaskState, to_state: TaskState) -> bool:
    """验证状态流转是否合法

    Args:
        from_state: 当前状态
        to_state: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_state, set())
    return to_state in allowed


def validate_activity_transition(from_status: ActivityStatus, to_status: ActivityStatus) -> bool:
    """验证 activity 状态流转是否合法"""
    return to_status in ACTIVITY_TRANSITIONS.get(from_status, set())

"""Event Payload 子类型

内置事件的结构化 payload 定义。发布时按事件类型校验，
新增字段必须带默认值，保证旧事件仍可反序列化。
"""

from typing import Any

from pydantic import BaseModel, Field

from .enums import ActivityStatus, EventType, InteractionUrgency, TaskState


class TaskCreatedPayload(BaseModel):
    """task.created 事件 payload"""

    task_id: str
    title: str
    parent_id: str | None = None
    queue_name: str = ""
    required: bool = True


class TaskTransitionPayload(BaseModel):
    """task.activated / paused / resumed / waiting_on_human / completed 事件 payload"""

    task_id: str
    from_state: TaskState
    to_state: TaskState
    reason: str = Field(default="")
    cascaded_from: str | None = Field(default=None, description="级联来源任务 ID")


class TaskFailedPayload(TaskTransitionPayload):
    """task.failed 事件 payload"""

    error: str


class ActivityCreatedPayload(BaseModel):
    """agent_activity.created 事件 payload"""

    activity_id: str
    task_id: str
    agent_type: str
    parent_id: str | None = None
    required: bool = True


class ActivityTransitionPayload(BaseModel):
    """agent_activity.paused / resumed 事件 payload"""

    activity_id: str
    from_status: ActivityStatus
    to_status: ActivityStatus
    cascaded_from: str | None = None


class ActivityCompletedPayload(BaseModel):
    """agent_activity.completed 事件 payload"""

    activity_id: str
    result: Any = None


class ActivityFailedPayload(BaseModel):
    """agent_activity.failed 事件 payload"""

    activity_id: str
    error: str
    cascaded_from: str | None = None


class InteractionRequestedPayload(BaseModel):
    """human_interaction.requested 事件 payload"""

    interaction_id: str
    task_id: str
    question: str
    required: bool
    expires_at: str | None = None


class InteractionResolvedPayload(BaseModel):
    """human_interaction.answered / ignored / expired 事件 payload"""

    interaction_id: str
    task_id: str
    question: str
    required: bool
    response: str | None = None
    handled_by: str | None = None


class InteractionEscalatedPayload(BaseModel):
    """human_interaction.escalated 事件 payload"""

    interaction_id: str
    task_id: str
    question: str
    required: bool
    description: str


class InterventionRequestedPayload(BaseModel):
    """human_interaction.intervention_requested 事件 payload"""

    interaction_id: str
    task_id: str
    description: str
    urgency: InteractionUrgency
    required: bool
    escalated_from: str | None = Field(default=None, description="升级来源的输入请求 ID")


class InterventionHandledPayload(BaseModel):
    """human_interaction.acknowledged / resolved / dismissed 事件 payload"""

    interaction_id: str
    task_id: str
    description: str
    urgency: InteractionUrgency
    resolution: str | None = None
    handled_by: str | None = None


class ProjectDeletedPayload(BaseModel):
    """project.deleted 事件 payload"""

    project_id: str
    task_count: int


# 事件类型 -> payload 模型
STANDARD_PAYLOADS: dict[str, type[BaseModel]] = {
    EventType.TASK_CREATED: TaskCreatedPayload,
    EventType.TASK_ACTIVATED: TaskTransitionPayload,
    EventType.TASK_PAUSED: TaskTransitionPayload,
    EventType.TASK_RESUMED: TaskTransitionPayload,
    EventType.TASK_WAITING_ON_HUMAN: TaskTransitionPayload,
    EventType.TASK_COMPLETED: TaskTransitionPayload,
    EventType.TASK_FAILED: TaskFailedPayload,
    EventType.ACTIVITY_CREATED: ActivityCreatedPayload,
    EventType.ACTIVITY_PAUSED: ActivityTransitionPayload,
    EventType.ACTIVITY_RESUMED: ActivityTransitionPayload,
    EventType.ACTIVITY_COMPLETED: ActivityCompletedPayload,
    EventType.ACTIVITY_FAILED: ActivityFailedPayload,
    EventType.INTERACTION_REQUESTED: InteractionRequestedPayload,
    EventType.INTERACTION_ANSWERED: InteractionResolvedPayload,
    EventType.INTERACTION_IGNORED: InteractionResolvedPayload,
    EventType.INTERACTION_EXPIRED: InteractionResolvedPayload,
    EventType.INTERACTION_ESCALATED: InteractionEscalatedPayload,
    EventType.INTERVENTION_REQUESTED: InterventionRequestedPayload,
    EventType.INTERVENTION_ACKNOWLEDGED: InterventionHandledPayload,
    EventType.INTERVENTION_RESOLVED: InterventionHandledPayload,
    EventType.INTERVENTION_DISMISSED: InterventionHandledPayload,
    EventType.PROJECT_DELETED: ProjectDeletedPayload,
}

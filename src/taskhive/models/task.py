"""Task Domain Model

state 只能通过 TaskStateMachine 的流转函数修改，
每次修改都伴随同一事务内写入的 task.* 事件。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..config import DEFAULT_QUEUE, NORMAL_PRIORITY
from .enums import TERMINAL_STATES, TaskState


class Task(BaseModel):
    """Task 数据模型

    parent_id 构成子任务树；required 子任务失败会级联到父任务。
    """

    task_id: str = Field(description="唯一标识，ULID 格式")
    title: str = Field(description="任务标题（核心不解释其内容）")
    description: str = Field(default="", description="任务描述（不透明 payload）")
    state: TaskState = Field(default=TaskState.PENDING, description="当前状态")
    parent_id: str | None = Field(default=None, description="父任务 ID")
    project_id: str | None = Field(default=None, description="所属项目 ID")
    priority: int = Field(default=NORMAL_PRIORITY, description="优先级")
    required: bool = Field(default=True, description="失败是否级联到父任务")
    queue_name: str = Field(default=DEFAULT_QUEUE, description="准入队列（agent 类型）")
    depends_on: list[str] = Field(default_factory=list, description="激活前必须完成的任务")
    paused_by: str | None = Field(default=None, description="级联暂停来源任务 ID")
    error_message: str | None = Field(default=None, description="失败原因（可读文本）")
    metadata: dict[str, Any] = Field(default_factory=dict, description="自由元数据")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    completed_at: datetime | None = Field(default=None, description="进入终态时间")
    version: int = Field(default=1, description="乐观锁版本号")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

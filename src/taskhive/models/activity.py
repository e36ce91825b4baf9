"""AgentActivity Domain Model

一次 agent 执行尝试。parent_id 构成独立于 task 树的 spawn 树，
父节点可以属于另一个 task。终态后不再重开，重试会创建新的 activity。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import TERMINAL_ACTIVITY_STATUSES, ActivityStatus


class AgentActivity(BaseModel):
    """AgentActivity 数据模型"""

    activity_id: str = Field(description="唯一标识，ULID 格式")
    task_id: str = Field(description="关联的 Task ID")
    parent_id: str | None = Field(default=None, description="派生它的父 activity")
    agent_type: str = Field(default="agent", description="agent 类型")
    status: ActivityStatus = Field(default=ActivityStatus.ACTIVE, description="当前状态")
    required: bool = Field(default=True, description="失败是否导致 task 失败")
    paused_by: str | None = Field(default=None, description="级联暂停来源 activity ID")
    lease_id: str | None = Field(default=None, description="运行期间持有的准入租约")
    error_message: str | None = Field(default=None, description="失败原因（可读文本）")
    result: Any = Field(default=None, description="执行结果（JSON 值）")
    metadata: dict[str, Any] = Field(default_factory=dict, description="自由元数据")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    completed_at: datetime | None = Field(default=None, description="进入终态时间")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ACTIVITY_STATUSES

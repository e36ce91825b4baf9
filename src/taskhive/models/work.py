"""WorkItem Domain Model -- 异步工作项"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import WorkItemKind, WorkItemStatus


class WorkItem(BaseModel):
    """工作队列中的一项

    至少一次投递；领取期限过期也计一次失败，attempts 达到 max_attempts 后进入死信。
    """

    item_id: str = Field(description="唯一标识，ULID 格式")
    kind: WorkItemKind = Field(description="工作项类型")
    queue_name: str = Field(description="队列名")
    payload: dict[str, Any] = Field(default_factory=dict, description="工作项参数")
    not_before: datetime = Field(description="最早可执行时间；claimed 状态下为领取期限")
    attempts: int = Field(default=0, description="已失败次数")
    max_attempts: int = Field(default=5, description="最大尝试次数")
    status: WorkItemStatus = Field(default=WorkItemStatus.READY, description="状态")
    last_error: str | None = Field(default=None, description="最近一次错误")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")

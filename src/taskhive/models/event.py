"""Event Domain Model

事件 append-only：event_type / data / metadata 写入后不可变，
仅 processed_at、processing_attempts 等分发簿记字段会更新。
event_id 使用 ULID 格式，global_position 在整个事件日志内单调递增。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..config import NORMAL_PRIORITY

ALL_STREAM = "all"


class EventMetadata(BaseModel):
    """事件关联信息（决定事件落入哪些 stream）"""

    model_config = ConfigDict(frozen=True)

    task_id: str | None = Field(default=None, description="关联 Task ID")
    activity_id: str | None = Field(default=None, description="关联 AgentActivity ID")
    project_id: str | None = Field(default=None, description="关联项目 ID")
    priority: int = Field(default=NORMAL_PRIORITY, description="事件优先级")
    correlation_id: str | None = Field(default=None, description="关联链 ID")
    causation_id: str | None = Field(default=None, description="触发本事件的事件 ID")

    def streams(self) -> list[str]:
        """事件所属的 stream 列表（全局 stream 总在最后）"""
        streams = []
        if self.task_id:
            streams.append(f"task-{self.task_id}")
        if self.activity_id:
            streams.append(f"activity-{self.activity_id}")
        if self.project_id:
            streams.append(f"project-{self.project_id}")
        streams.append(ALL_STREAM)
        return streams


class Event(BaseModel):
    """Event 数据模型

    模型冻结；簿记字段的变化通过重新读取或 model_copy 体现。
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(description="唯一标识，ULID 格式，时间有序")
    event_type: str = Field(description="命名空间事件类型，如 task.paused")
    data: dict[str, Any] = Field(default_factory=dict, description="结构化 payload")
    metadata: EventMetadata = Field(default_factory=EventMetadata, description="关联信息")
    occurred_at: datetime = Field(description="事件时间戳")
    global_position: int | None = Field(default=None, description="全局日志位置")
    processed_at: datetime | None = Field(default=None, description="分发完成时间")
    processing_attempts: int = Field(default=0, description="失败的分发尝试次数")
    processing_error: str | None = Field(default=None, description="最近一次分发错误")
    dead_lettered_at: datetime | None = Field(default=None, description="放弃分发时间")

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    @property
    def is_dead(self) -> bool:
        return self.dead_lettered_at is not None

    def __str__(self) -> str:
        return f"Event[{self.event_id}] {self.event_type}"

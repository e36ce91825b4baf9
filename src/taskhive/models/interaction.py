"""HumanInteraction Domain Model

两类交互共用一张表：
- input_request: 向人类提问，answer / ignore / expire
- intervention: 需要人工处理的干预，acknowledge / resolve / dismiss

required 交互处于阻塞状态期间，所属 task 保持 waiting_on_human。
required 输入请求过期后升级为 critical 干预（escalated_from 指向原请求）。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import (
    BLOCKING_INTERACTION_STATUSES,
    InteractionKind,
    InteractionStatus,
    InteractionUrgency,
)


class HumanInteraction(BaseModel):
    """HumanInteraction 数据模型"""

    interaction_id: str = Field(description="唯一标识，ULID 格式")
    task_id: str = Field(description="关联的 Task ID")
    activity_id: str | None = Field(default=None, description="发起请求的 activity")
    kind: InteractionKind = Field(default=InteractionKind.INPUT_REQUEST, description="交互类型")
    question: str = Field(description="向人类提出的问题，或干预描述")
    urgency: InteractionUrgency | None = Field(default=None, description="干预紧急程度")
    response: str | None = Field(default=None, description="回答、处理结论或忽略原因")
    status: InteractionStatus = Field(default=InteractionStatus.PENDING, description="状态")
    required: bool = Field(default=False, description="是否阻塞 task")
    escalated_from: str | None = Field(default=None, description="升级来源的输入请求 ID")
    handled_by: str | None = Field(default=None, description="最近处理人")
    expires_at: datetime | None = Field(default=None, description="过期时间")
    acknowledged_at: datetime | None = Field(default=None, description="干预确认时间")
    responded_at: datetime | None = Field(default=None, description="回答/忽略/解决时间")
    escalated_at: datetime | None = Field(default=None, description="超时升级时间")
    created_at: datetime = Field(description="创建时间")

    @property
    def is_intervention(self) -> bool:
        return self.kind == InteractionKind.INTERVENTION

    @property
    def is_blocking(self) -> bool:
        return self.required and self.status in BLOCKING_INTERACTION_STATUSES

    def is_past_due(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

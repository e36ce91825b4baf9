"""TransitionResult -- 状态机调用的统一返回值

预期内的守卫失败（如 "子任务未完成，不能完成"）不抛异常，
而是返回 guard_failed，且不发布任何事件。
"""

from pydantic import BaseModel, Field

from .activity import AgentActivity
from .enums import TransitionOutcome
from .event import Event
from .interaction import HumanInteraction
from .task import Task


class TransitionResult(BaseModel):
    """流转结果"""

    outcome: TransitionOutcome = Field(description="结果类型")
    reason: str = Field(default="", description="守卫失败 / noop 原因")
    record: Task | AgentActivity | HumanInteraction | None = Field(
        default=None,
        description="调用后的记录",
    )
    events: list[Event] = Field(default_factory=list, description="本次发布的事件")

    @property
    def ok(self) -> bool:
        """applied 或 noop 都视为成功"""
        return self.outcome in (TransitionOutcome.APPLIED, TransitionOutcome.NOOP)

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED

    @classmethod
    def not_found(cls, record_type: str, record_id: str) -> "TransitionResult":
        return cls(
            outcome=TransitionOutcome.NOT_FOUND,
            reason=f"{record_type} {record_id} 不存在",
        )

    @classmethod
    def guard_failed(cls, reason: str, record=None) -> "TransitionResult":
        return cls(outcome=TransitionOutcome.GUARD_FAILED, reason=reason, record=record)

    @classmethod
    def noop(cls, reason: str, record=None) -> "TransitionResult":
        return cls(outcome=TransitionOutcome.NOOP, reason=reason, record=record)

"""SemaphoreLease Domain Model

限时准入票据：held_count 不超过 limit，过期租约可被任何人回收。
"""

from datetime import datetime

from pydantic import BaseModel, Field


class SemaphoreLease(BaseModel):
    """准入租约"""

    lease_id: str = Field(description="唯一标识，ULID 格式")
    key: str = Field(description="信号量 key（队列名）")
    limit: int = Field(description="并发上限")
    held_count: int = Field(description="授予时的占用数（含本租约）")
    holder: str = Field(default="", description="持有者标识")
    acquired_at: datetime = Field(description="授予时间")
    expires_at: datetime = Field(description="过期时间")
    released_at: datetime | None = Field(default=None, description="释放/回收时间")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

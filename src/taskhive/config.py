"""配置模块 -- 可通过环境变量覆盖

包含数据库路径、分发重试、租约 TTL、队列并发上限等可配置项。
非法数值只记录 warning 并回退默认值，不阻塞启动。
"""

import os
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()

# 事件优先级（与事件 metadata.priority 对齐）
LOW_PRIORITY: int = 0
NORMAL_PRIORITY: int = 10
HIGH_PRIORITY: int = 20
CRITICAL_PRIORITY: int = 30

# 默认队列名
DEFAULT_QUEUE: str = "agents"
EVENTS_QUEUE: str = "events"


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("TASKHIVE_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "TASKHIVE_DB_PATH",
        str(_get_base_dir() / "sqlite" / "taskhive.db"),
    )


def parse_queue_limits(raw: str) -> dict[str, int]:
    """解析 "agents=2,research=1" 形式的队列并发配置

    格式错误的条目会被跳过并记录 warning。
    """
    limits: dict[str, int] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, sep, value = chunk.partition("=")
        try:
            if not sep:
                raise ValueError(chunk)
            limit = int(value)
            if limit < 1:
                raise ValueError(chunk)
        except ValueError:
            log.warning("invalid_queue_limit", entry=chunk)
            continue
        limits[name.strip()] = limit
    return limits


class TaskhiveConfig(BaseModel):
    """运行时配置 -- 从环境变量加载

    环境变量:
        TASKHIVE_DB_PATH: SQLite 数据库路径
        TASKHIVE_LOG_FORMAT / TASKHIVE_LOG_LEVEL: 日志渲染模式与级别
        TASKHIVE_DISPATCH_MAX_ATTEMPTS: 单个事件最大分发次数（默认 5）
        TASKHIVE_DISPATCH_BACKOFF_S / TASKHIVE_BACKOFF_CAP_S: 指数退避基数与上限
        TASKHIVE_LEASE_TTL_S: 准入租约 TTL（默认 30 分钟）
        TASKHIVE_DEFAULT_CONCURRENCY / TASKHIVE_QUEUE_LIMITS: 队列并发上限
        TASKHIVE_ADMISSION_BACKOFF_S: 准入被拒后重新入队的退避基数
        TASKHIVE_TRANSIENT_RETRIES: agent 暂时性错误的重试次数
        TASKHIVE_LEGACY_EVENTS: 是否同时写入扁平化 legacy 事件记录
        TASKHIVE_CLAIM_TIMEOUT_S: 工作项领取期限，过期后重新投递（默认 10 分钟）
    """

    db_path: str = Field(default_factory=get_db_path, description="SQLite 数据库路径")
    log_format: str = Field(default="dev", description="日志渲染模式：dev / json")
    log_level: str = Field(default="INFO", description="日志级别")
    dispatch_max_attempts: int = Field(default=5, ge=1, description="事件最大分发次数")
    dispatch_backoff_s: float = Field(default=1.0, ge=0, description="分发重试退避基数（秒）")
    backoff_cap_s: float = Field(default=300.0, ge=0, description="退避上限（秒）")
    lease_ttl_s: int = Field(default=1800, ge=1, description="准入租约 TTL（秒）")
    default_concurrency: int = Field(default=1, ge=1, description="未配置队列的并发上限")
    queue_limits: dict[str, int] = Field(default_factory=dict, description="队列并发上限")
    admission_backoff_s: float = Field(default=5.0, ge=0, description="准入退避基数（秒）")
    transient_retries: int = Field(default=3, ge=1, description="暂时性错误重试次数")
    legacy_events: bool = Field(default=True, description="是否写入 legacy 事件记录")
    claim_timeout_s: float = Field(default=600.0, gt=0, description="工作项领取期限（秒）")

    def limit_for(self, queue_name: str) -> int:
        """获取指定队列的并发上限"""
        return self.queue_limits.get(queue_name, self.default_concurrency)


_INT_FIELDS = {
    "TASKHIVE_DISPATCH_MAX_ATTEMPTS": "dispatch_max_attempts",
    "TASKHIVE_LEASE_TTL_S": "lease_ttl_s",
    "TASKHIVE_DEFAULT_CONCURRENCY": "default_concurrency",
    "TASKHIVE_TRANSIENT_RETRIES": "transient_retries",
}

_FLOAT_FIELDS = {
    "TASKHIVE_DISPATCH_BACKOFF_S": "dispatch_backoff_s",
    "TASKHIVE_BACKOFF_CAP_S": "backoff_cap_s",
    "TASKHIVE_ADMISSION_BACKOFF_S": "admission_backoff_s",
    "TASKHIVE_CLAIM_TIMEOUT_S": "claim_timeout_s",
}


def load_config() -> TaskhiveConfig:
    """从环境变量加载配置

    Returns:
        TaskhiveConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("TASKHIVE_LOG_FORMAT"):
        kwargs["log_format"] = val
    if val := os.environ.get("TASKHIVE_LOG_LEVEL"):
        kwargs["log_level"] = val

    for env_var, field in _INT_FIELDS.items():
        if val := os.environ.get(env_var):
            try:
                kwargs[field] = int(val)
            except ValueError:
                log.warning("invalid_int_config", env_var=env_var, value=val)

    for env_var, field in _FLOAT_FIELDS.items():
        if val := os.environ.get(env_var):
            try:
                kwargs[field] = float(val)
            except ValueError:
                log.warning("invalid_float_config", env_var=env_var, value=val)

    if val := os.environ.get("TASKHIVE_QUEUE_LIMITS"):
        kwargs["queue_limits"] = parse_queue_limits(val)

    if val := os.environ.get("TASKHIVE_LEGACY_EVENTS"):
        kwargs["legacy_events"] = val.lower() not in {"0", "false", "no", "off"}

    return TaskhiveConfig(**kwargs)

"""重试与退避 -- 封顶指数退避 + 抖动

compute_backoff 供工作队列计算 not_before，
with_retries 供进程内对暂时性错误做有限次重试。
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from .exceptions import TransientError

log = structlog.get_logger()

T = TypeVar("T")

# 默认视为暂时性错误的异常类型
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientError,
    TimeoutError,
    ConnectionError,
)


def compute_backoff(
    attempt: int,
    base_s: float,
    cap_s: float,
    jitter: bool = True,
) -> float:
    """计算第 attempt 次（从 1 开始）重试前的等待秒数

    base * 2^(attempt-1)，封顶 cap；jitter 时附加 [0, 10%] 随机抖动。
    """
    delay = min(base_s * (2 ** max(attempt - 1, 0)), cap_s)
    if jitter and delay > 0:
        delay += random.uniform(0, delay * 0.1)
    return min(delay, cap_s)


def is_transient(error: BaseException) -> bool:
    """判断错误是否可重试"""
    return isinstance(error, TRANSIENT_ERRORS)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay_s: float = 1.0,
    cap_s: float = 60.0,
    exceptions: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """执行 operation，对指定异常按封顶指数退避重试

    Args:
        operation: 无参协程工厂（每次重试重新调用）
        max_attempts: 最大尝试次数（含首次）
        base_delay_s: 退避基数
        cap_s: 单次等待上限
        exceptions: 需要重试的异常类型
        sleep: 可注入的等待函数（测试用）

    Raises:
        最后一次尝试的异常
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except exceptions as e:
            if attempt >= max_attempts:
                log.error(
                    "retry_exhausted",
                    attempts=attempt,
                    error_type=type(e).__name__,
                )
                raise
            delay = compute_backoff(attempt, base_delay_s, cap_s)
            log.warning(
                "retry_scheduled",
                attempt=attempt,
                max_attempts=max_attempts,
                delay_s=round(delay, 2),
                error_type=type(e).__name__,
            )
            await sleep(delay)

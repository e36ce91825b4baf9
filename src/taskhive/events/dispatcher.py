"""EventDispatcher -- 事件发布与至少一次分发

发布流程：校验 payload -> 追加到事件日志（事务内）-> 提交后投递。
投递方式：
- 配置了 WorkQueue 时，入队 event.dispatch 工作项，由 Worker 异步分发
- 未配置时，在当前协程内同步分发一次；失败留给 redispatch_pending 扫描

每个事件最终要么 processed_at 被设置，要么进入死信（dead_lettered_at）。
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable

import structlog

from ..clock import Clock, format_ts, utc_now
from ..config import EVENTS_QUEUE
from ..exceptions import DataInvariantError, DispatchError, describe_error
from ..models.enums import WorkItemKind
from ..models.event import Event, EventMetadata
from ..retry import with_retries
from ..store import StoreGroup
from ..work import WorkQueue
from .legacy import LegacyEventWriter
from .log import EventLog
from .registry import EventSchemaRegistry, HandlerRegistry, handler_name

log = structlog.get_logger()


class EventDispatcher:
    """事件分发器（显式构造并注入，每进程一个）"""

    def __init__(
        self,
        stores: StoreGroup,
        registry: HandlerRegistry,
        *,
        schemas: EventSchemaRegistry | None = None,
        work_queue: WorkQueue | None = None,
        max_attempts: int = 5,
        backoff_s: float = 1.0,
        backoff_cap_s: float = 300.0,
        legacy_enabled: bool = True,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._stores = stores
        self._registry = registry
        self._schemas = schemas or EventSchemaRegistry()
        self._work_queue = work_queue
        self._max_attempts = max_attempts
        self._backoff_s = backoff_s
        self._backoff_cap_s = backoff_cap_s
        self._clock = clock
        self._sleep = sleep
        self.log = EventLog(stores, clock=clock)
        self.legacy = LegacyEventWriter(stores, enabled=legacy_enabled)

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def attach_work_queue(self, work_queue: WorkQueue | None) -> None:
        """切换投递方式（None 表示同步分发）"""
        self._work_queue = work_queue

    async def publish(
        self,
        event_type: str,
        data: dict | None = None,
        metadata: EventMetadata | None = None,
    ) -> Event:
        """追加事件并投递

        Raises:
            EventValidationError: payload 不符合已注册的模型（不写入任何内容）
        """
        async with self._stores.transaction():
            event = await self.append(event_type, data, metadata)
        await self.deliver([event])
        return event

    async def append(
        self,
        event_type: str,
        data: dict | None = None,
        metadata: EventMetadata | None = None,
    ) -> Event:
        """在调用方事务内追加事件（提交后需调用 deliver）"""
        payload = self._schemas.validate(event_type, data or {})
        event = self.log.new_event(event_type, payload, metadata)
        return await self.log.write(event)

    async def deliver(self, events: Iterable[Event]) -> None:
        """事务提交后投递事件（legacy 记录 + 分发）"""
        for event in events:
            await self.legacy.write(event)
            if self._work_queue is not None:
                await self._work_queue.enqueue(
                    WorkItemKind.EVENT_DISPATCH,
                    {"event_id": event.event_id},
                    queue_name=EVENTS_QUEUE,
                    max_attempts=self._max_attempts,
                )
                continue
            try:
                await self.dispatch(event)
            except DispatchError as e:
                # 留给 redispatch_pending / dispatch_with_retry 再次投递
                log.warning(
                    "event_dispatch_deferred",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    failed_handlers=[name for name, _ in e.failures],
                )

    async def dispatch(self, event: Event) -> None:
        """执行一次分发尝试

        handler 之间相互隔离：一个失败不影响其他 handler。

        Raises:
            DispatchError: 有 handler 失败且尚未达到最大尝试次数
        """
        if event.is_processed or event.is_dead:
            log.debug("event_already_settled", event_id=event.event_id)
            return

        handlers = self._registry.handlers_for(event.event_type)
        if not handlers:
            log.info(
                "event_no_handlers",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            await self._mark_processed(event)
            return

        failures: list[tuple[str, Exception]] = []
        for handler in handlers:
            name = handler_name(handler)
            try:
                await handler(event)
            except Exception as e:
                log.warning(
                    "event_handler_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    handler=name,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                failures.append((name, e))

        if not failures:
            await self._mark_processed(event)
            return

        error = DispatchError(event.event_id, failures)
        now = format_ts(self._clock())
        async with self._stores.transaction() as stores:
            attempts = await stores.event_store.record_failure(event.event_id, describe_error(error))
            invariant = any(isinstance(err, DataInvariantError) for _, err in failures)
            if invariant or attempts >= self._max_attempts:
                await stores.event_store.mark_dead_lettered(
                    event.event_id, now, describe_error(error)
                )

        if invariant:
            log.error(
                "event_discarded",
                event_id=event.event_id,
                event_type=event.event_type,
                reason="data_invariant",
                error=describe_error(error),
            )
            return
        if attempts >= self._max_attempts:
            log.error(
                "event_dead_lettered",
                event_id=event.event_id,
                event_type=event.event_type,
                attempts=attempts,
                error=describe_error(error),
            )
            return
        raise error

    async def dispatch_with_retry(self, event_id: str) -> Event | None:
        """进程内重试包装：封顶指数退避，直到处理完成或进入死信

        Returns:
            分发结束后的事件；事件不存在时返回 None
        """
        if await self.log.get_event(event_id) is None:
            log.warning("event_missing", event_id=event_id)
            return None

        async def attempt() -> None:
            event = await self.log.get_event(event_id)
            if event is not None:
                await self.dispatch(event)

        try:
            await with_retries(
                attempt,
                max_attempts=self._max_attempts,
                base_delay_s=self._backoff_s,
                cap_s=self._backoff_cap_s,
                exceptions=(DispatchError,),
                sleep=self._sleep,
            )
        except DispatchError:
            log.warning("event_retry_budget_spent", event_id=event_id)
        return await self.log.get_event(event_id)

    async def redispatch_pending(self, limit: int = 100) -> dict[str, int]:
        """扫描未处理事件并各分发一次（活性保证：每轮要么处理完，要么计数 +1）

        Returns:
            {"processed": n, "failed": n, "dead": n}
        """
        counts = {"processed": 0, "failed": 0, "dead": 0}
        pending = await self._stores.event_store.list_unprocessed(limit)
        for event in pending:
            try:
                await self.dispatch(event)
            except DispatchError:
                counts["failed"] += 1
                continue
            settled = await self.log.get_event(event.event_id)
            if settled is not None and settled.is_dead:
                counts["dead"] += 1
            else:
                counts["processed"] += 1
        log.info("events_redispatched", **counts)
        return counts

    async def _mark_processed(self, event: Event) -> None:
        async with self._stores.transaction() as stores:
            await stores.event_store.mark_processed(event.event_id, format_ts(self._clock()))
        log.debug("event_processed", event_id=event.event_id, event_type=event.event_type)

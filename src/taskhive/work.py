"""工作队列 -- 异步工作项的入队、领取、重试与死信

WorkQueue 是核心依赖的入队协作方接口；SqliteWorkQueue 是基于同一 SQLite
数据库的实现：至少一次投递，失败按封顶指数退避重排，耗尽后进入死信。
领取带期限：worker 中途退出时，期限过后工作项会被重新投递。
Worker 从队列领取工作项并路由到 TaskRunner / EventDispatcher。
"""

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from ulid import ULID

from .clock import Clock, format_ts, utc_now
from .exceptions import DataInvariantError, describe_error
from .models.enums import WorkItemKind, WorkItemStatus
from .models.work import WorkItem
from .retry import compute_backoff
from .store import StoreGroup

if TYPE_CHECKING:
    from .events.dispatcher import EventDispatcher
    from .runner import TaskRunner

log = structlog.get_logger()

_CLAIM_EXPIRED = "ClaimExpired: worker 未在领取期限内完成"


class WorkQueue(Protocol):
    """入队协作方接口"""

    async def enqueue(
        self,
        kind: WorkItemKind,
        payload: dict[str, Any],
        queue_name: str,
        not_before: datetime | None = None,
        max_attempts: int = 5,
    ) -> WorkItem: ...


class SqliteWorkQueue:
    """WorkQueue 的 SQLite 实现"""

    def __init__(
        self,
        stores: StoreGroup,
        *,
        backoff_s: float = 1.0,
        backoff_cap_s: float = 300.0,
        claim_timeout_s: float = 600.0,
        clock: Clock = utc_now,
    ) -> None:
        self._stores = stores
        self._backoff_s = backoff_s
        self._backoff_cap_s = backoff_cap_s
        self._claim_timeout_s = claim_timeout_s
        self._clock = clock

    async def enqueue(
        self,
        kind: WorkItemKind,
        payload: dict[str, Any],
        queue_name: str,
        not_before: datetime | None = None,
        max_attempts: int = 5,
    ) -> WorkItem:
        """入队，not_before 之前不会被领取"""
        now = self._clock()
        item = WorkItem(
            item_id=str(ULID()),
            kind=kind,
            queue_name=queue_name,
            payload=payload,
            not_before=not_before or now,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        async with self._stores.transaction():
            await self._stores.work_store.insert_item(item)
        log.debug(
            "work_item_enqueued",
            item_id=item.item_id,
            kind=kind.value,
            queue_name=queue_name,
            not_before=format_ts(item.not_before),
        )
        return item

    async def claim_next(self, queue_name: str) -> WorkItem | None:
        """领取下一个到期工作项（ready -> claimed）

        领取期限已过的 claimed 项视为 worker 中途退出：计一次失败后重新领取，
        尝试耗尽则进入死信。
        """
        now = self._clock()
        now_ts = format_ts(now)
        claimed_until = format_ts(now + timedelta(seconds=self._claim_timeout_s))
        async with self._stores.transaction() as stores:
            while True:
                item = await stores.work_store.next_claimable(queue_name, now_ts)
                if item is None:
                    return None

                attempts = None
                if item.status == WorkItemStatus.CLAIMED:
                    attempts = item.attempts + 1
                    if attempts >= item.max_attempts:
                        await stores.work_store.set_status(
                            item.item_id,
                            WorkItemStatus.CLAIMED,
                            WorkItemStatus.DEAD,
                            now_ts,
                            attempts=attempts,
                            last_error=_CLAIM_EXPIRED,
                        )
                        log.error(
                            "work_item_dead_lettered",
                            item_id=item.item_id,
                            kind=item.kind.value,
                            attempts=attempts,
                            error=_CLAIM_EXPIRED,
                        )
                        continue
                    log.warning(
                        "work_item_claim_expired",
                        item_id=item.item_id,
                        kind=item.kind.value,
                        attempt=attempts,
                    )

                claimed = await stores.work_store.set_status(
                    item.item_id,
                    item.status,
                    WorkItemStatus.CLAIMED,
                    now_ts,
                    attempts=attempts,
                    not_before=claimed_until,
                    last_error=_CLAIM_EXPIRED if attempts is not None else None,
                )
                if not claimed:
                    return None
                return await stores.work_store.get_item(item.item_id)

    async def complete(self, item: WorkItem) -> WorkItem | None:
        """标记完成（claimed -> done）"""
        now = format_ts(self._clock())
        async with self._stores.transaction() as stores:
            await stores.work_store.set_status(
                item.item_id, WorkItemStatus.CLAIMED, WorkItemStatus.DONE, now
            )
            return await stores.work_store.get_item(item.item_id)

    async def retry(self, item: WorkItem, error: str) -> WorkItem | None:
        """记录失败：按退避重排，或在尝试耗尽后进入死信"""
        now = self._clock()
        attempts = item.attempts + 1
        async with self._stores.transaction() as stores:
            if attempts >= item.max_attempts:
                await stores.work_store.set_status(
                    item.item_id,
                    WorkItemStatus.CLAIMED,
                    WorkItemStatus.DEAD,
                    format_ts(now),
                    attempts=attempts,
                    last_error=error,
                )
            else:
                delay = compute_backoff(attempts, self._backoff_s, self._backoff_cap_s)
                await stores.work_store.set_status(
                    item.item_id,
                    WorkItemStatus.CLAIMED,
                    WorkItemStatus.READY,
                    format_ts(now),
                    attempts=attempts,
                    not_before=format_ts(now + timedelta(seconds=delay)),
                    last_error=error,
                )
            updated = await stores.work_store.get_item(item.item_id)

        if updated is not None and updated.status == WorkItemStatus.DEAD:
            log.error(
                "work_item_dead_lettered",
                item_id=item.item_id,
                kind=item.kind.value,
                attempts=attempts,
                error=error,
            )
        return updated

    async def get(self, item_id: str) -> WorkItem | None:
        return await self._stores.work_store.get_item(item_id)

    async def list_items(
        self,
        queue_name: str | None = None,
        status: WorkItemStatus | None = None,
    ) -> list[WorkItem]:
        return await self._stores.work_store.list_items(queue_name, status)

    async def list_dead(self, queue_name: str | None = None) -> list[WorkItem]:
        return await self._stores.work_store.list_items(queue_name, WorkItemStatus.DEAD)


class Worker:
    """工作项执行者

    每次 run_once 领取一个工作项：task.run 交给 TaskRunner，
    event.dispatch 交给 EventDispatcher。异常交给队列按退避重试。
    """

    def __init__(
        self,
        queue: SqliteWorkQueue,
        dispatcher: "EventDispatcher",
        runner: "TaskRunner | None" = None,
    ) -> None:
        self._queue = queue
        self._dispatcher = dispatcher
        self._runner = runner

    async def run_once(self, queue_name: str) -> WorkItem | None:
        """执行一个工作项

        Returns:
            处理后的工作项；队列为空时返回 None
        """
        item = await self._queue.claim_next(queue_name)
        if item is None:
            return None

        log.debug("work_item_claimed", item_id=item.item_id, kind=item.kind.value)
        try:
            await self._handle(item)
        except DataInvariantError as e:
            # 重试无法修复，直接丢弃
            log.error(
                "work_item_discarded",
                item_id=item.item_id,
                kind=item.kind.value,
                error=describe_error(e),
            )
            return await self._queue.complete(item)
        except Exception as e:
            log.warning(
                "work_item_failed",
                item_id=item.item_id,
                kind=item.kind.value,
                attempt=item.attempts + 1,
                error_type=type(e).__name__,
            )
            return await self._queue.retry(item, describe_error(e))
        return await self._queue.complete(item)

    async def run(
        self,
        queue_names: list[str],
        *,
        poll_interval_s: float = 1.0,
        stop: asyncio.Event | None = None,
    ) -> None:
        """轮询执行，直到 stop 被设置"""
        stop = stop or asyncio.Event()
        log.info("worker_started", queues=queue_names)
        while not stop.is_set():
            handled = False
            for queue_name in queue_names:
                if await self.run_once(queue_name) is not None:
                    handled = True
            if not handled:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=poll_interval_s)
                except TimeoutError:
                    pass
        log.info("worker_stopped", queues=queue_names)

    async def _handle(self, item: WorkItem) -> None:
        if item.kind == WorkItemKind.EVENT_DISPATCH:
            event = await self._dispatcher.log.get_event(item.payload["event_id"])
            if event is None:
                # 事件不存在，重试无法修复
                log.error("dispatch_event_missing", event_id=item.payload.get("event_id"))
                return
            await self._dispatcher.dispatch(event)
        elif item.kind == WorkItemKind.TASK_RUN:
            if self._runner is None:
                raise RuntimeError("worker 未配置 TaskRunner，无法执行 task.run")
            await self._runner.perform(item.payload)
        else:
            log.error("work_item_kind_unknown", item_id=item.item_id, kind=item.kind)

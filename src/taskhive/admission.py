"""AdmissionController -- 基于租约的计数信号量

每个 key（队列名 / agent 类型）一个计数器，限制同时执行的数量。
acquire 是全有或全无的原子比较并递增；租约到期后任何人都可以回收，
崩溃的 worker 不会永久占住队列。
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

import structlog
from ulid import ULID

from .clock import Clock, format_ts, utc_now
from .models.lease import SemaphoreLease
from .store import StoreGroup

log = structlog.get_logger()


class AdmissionController:
    """准入控制器

    所有计数变更都在 BEGIN IMMEDIATE 事务内完成，跨进程安全；
    不依赖进程内锁保证正确性。
    """

    def __init__(self, stores: StoreGroup, clock: Clock = utc_now) -> None:
        self._stores = stores
        self._clock = clock

    async def acquire(
        self,
        key: str,
        limit: int,
        ttl: float,
        holder: str = "",
    ) -> SemaphoreLease | None:
        """尝试获取租约

        先惰性回收该 key 的过期租约，再做条件递增。

        Args:
            key: 信号量 key
            limit: 并发上限（>= 1）
            ttl: 租约有效期（秒）
            holder: 持有者标识（日志 / 排查用）

        Returns:
            租约；已满时返回 None，调用方不得执行
        """
        if limit < 1:
            raise ValueError(f"limit 必须 >= 1: {limit}")

        now = self._clock()
        now_ts = format_ts(now)
        async with self._stores.transaction() as stores:
            await stores.semaphore_store.ensure_semaphore(key, limit, now_ts)
            reaped = await stores.semaphore_store.reap_expired(now_ts, key=key)
            held = await stores.semaphore_store.try_increment(key, limit, now_ts)
            if held is None:
                lease = None
            else:
                lease = SemaphoreLease(
                    lease_id=str(ULID()),
                    key=key,
                    limit=limit,
                    held_count=held,
                    holder=holder,
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=ttl),
                )
                await stores.semaphore_store.insert_lease(lease)

        if reaped:
            log.info("leases_reaped", key=key, count=reaped[key])
        if lease is None:
            log.info("admission_refused", key=key, limit=limit, holder=holder)
            return None
        log.info(
            "admission_granted",
            key=key,
            lease_id=lease.lease_id,
            held_count=lease.held_count,
            limit=limit,
            holder=holder,
        )
        return lease

    async def release(self, lease: SemaphoreLease | str) -> bool:
        """释放租约（幂等）

        重复释放或释放已被回收的租约都是 no-op。

        Returns:
            True 如果本次调用真正归还了计数
        """
        lease_id = lease if isinstance(lease, str) else lease.lease_id
        async with self._stores.transaction() as stores:
            released = await stores.semaphore_store.release_lease(
                lease_id, format_ts(self._clock()), "released"
            )
        if released:
            log.info("lease_released", lease_id=lease_id)
        else:
            log.debug("lease_release_noop", lease_id=lease_id)
        return released

    async def renew(self, lease: SemaphoreLease | str, ttl: float) -> SemaphoreLease | None:
        """心跳续租：把 expires_at 推到 now + ttl

        Returns:
            续租后的租约；已释放或已过期时返回 None
        """
        lease_id = lease if isinstance(lease, str) else lease.lease_id
        now = self._clock()
        async with self._stores.transaction() as stores:
            renewed = await stores.semaphore_store.renew_lease(
                lease_id,
                format_ts(now + timedelta(seconds=ttl)),
                format_ts(now),
            )
            current = await stores.semaphore_store.get_lease(lease_id)
        if not renewed:
            log.warning("lease_renew_refused", lease_id=lease_id)
            return None
        return current

    async def reap_expired(self) -> int:
        """回收所有 key 的过期租约（后台 reaper）

        Returns:
            回收的租约数
        """
        async with self._stores.transaction() as stores:
            reaped = await stores.semaphore_store.reap_expired(format_ts(self._clock()))
        for key, count in reaped.items():
            log.info("leases_reaped", key=key, count=count)
        return sum(reaped.values())

    async def held_count(self, key: str) -> int:
        return await self._stores.semaphore_store.get_held_count(key)

    async def get_lease(self, lease_id: str) -> SemaphoreLease | None:
        return await self._stores.semaphore_store.get_lease(lease_id)

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        limit: int,
        ttl: float,
        holder: str = "",
    ) -> AsyncIterator[SemaphoreLease | None]:
        """获取租约并在退出时释放；被拒时 yield None"""
        lease = await self.acquire(key, limit, ttl, holder)
        try:
            yield lease
        finally:
            if lease is not None:
                await self.release(lease)

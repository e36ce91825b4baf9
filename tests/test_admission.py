"""AdmissionController 单元测试

测试内容：
1. 授予 / 拒绝：held_count 永远不超过 limit、不小于 0
2. 幂等释放
3. 过期租约被下一次 acquire 回收
4. 续租与后台回收
5. 两个连接（模拟两个 worker 进程）并发申请
"""

import asyncio

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from taskhive.admission import AdmissionController
from taskhive.store import create_store_group
from ulid import ULID

lease_settings = settings(
    max_examples=30,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)

lease_actions = st.one_of(
    st.tuples(st.just("acquire"), st.sampled_from([5, 30, 120])),
    st.tuples(st.just("release"), st.integers(min_value=0, max_value=10)),
    st.tuples(st.just("advance"), st.sampled_from([1, 10, 60])),
)


@pytest.fixture
def admission(store_group, clock) -> AdmissionController:
    return AdmissionController(store_group, clock=clock)


class TestGrantAndRefuse:
    """授予与拒绝测试"""

    async def test_grants_up_to_limit(self, admission):
        first = await admission.acquire("agents", 2, ttl=60, holder="w1")
        second = await admission.acquire("agents", 2, ttl=60, holder="w2")
        third = await admission.acquire("agents", 2, ttl=60, holder="w3")

        assert first is not None and first.held_count == 1
        assert second is not None and second.held_count == 2
        assert third is None
        assert await admission.held_count("agents") == 2

    async def test_keys_are_independent(self, admission):
        assert await admission.acquire("research", 1, ttl=60) is not None
        assert await admission.acquire("coding", 1, ttl=60) is not None
        assert await admission.acquire("research", 1, ttl=60) is None

    async def test_release_frees_slot(self, admission):
        lease = await admission.acquire("agents", 1, ttl=60)
        assert await admission.acquire("agents", 1, ttl=60) is None

        assert await admission.release(lease) is True
        assert await admission.held_count("agents") == 0
        assert await admission.acquire("agents", 1, ttl=60) is not None

    async def test_invalid_limit(self, admission):
        with pytest.raises(ValueError):
            await admission.acquire("agents", 0, ttl=60)

    @lease_settings
    @given(st.lists(lease_actions, max_size=60), st.integers(min_value=1, max_value=4))
    async def test_random_sequences_respect_bounds(self, admission, clock, actions, limit):
        """随机 acquire / release / 时间推进序列下 0 <= held <= limit"""
        # 各样例共用数据库，用独立 key 隔离
        key = f"agents-{ULID()}"
        live = []
        for action, arg in actions:
            if action == "acquire":
                lease = await admission.acquire(key, limit, ttl=arg)
                if lease is not None:
                    live.append(lease)
            elif action == "release" and live:
                lease = live.pop(arg % len(live))
                await admission.release(lease)
                # 重复释放同一租约不影响计数
                await admission.release(lease)
            elif action == "advance":
                clock.advance(arg)

            held = await admission.held_count(key)
            assert 0 <= held <= limit

        for lease in live:
            await admission.release(lease)
        assert await admission.held_count(key) == 0


class TestRelease:
    """释放测试"""

    async def test_double_release_is_noop(self, admission):
        first = await admission.acquire("agents", 2, ttl=60)
        second = await admission.acquire("agents", 2, ttl=60)

        assert await admission.release(first) is True
        assert await admission.release(first) is False
        assert await admission.release(first.lease_id) is False
        assert await admission.held_count("agents") == 1

        await admission.release(second)
        assert await admission.held_count("agents") == 0

    async def test_release_unknown_lease(self, admission):
        assert await admission.release("no-such-lease") is False

    async def test_hold_context_manager(self, admission):
        async with admission.hold("agents", 1, ttl=60) as lease:
            assert lease is not None
            async with admission.hold("agents", 1, ttl=60) as refused:
                assert refused is None
            assert await admission.held_count("agents") == 1
        assert await admission.held_count("agents") == 0

    async def test_hold_releases_on_error(self, admission):
        with pytest.raises(RuntimeError):
            async with admission.hold("agents", 1, ttl=60):
                raise RuntimeError("agent crashed")
        assert await admission.held_count("agents") == 0


class TestExpiry:
    """租约过期测试"""

    async def test_expired_lease_reclaimed_by_next_acquire(self, admission, clock):
        """持有者崩溃未释放：TTL 过后下一次 acquire 成功"""
        crashed = await admission.acquire("agents", 1, ttl=30)
        assert await admission.acquire("agents", 1, ttl=30) is None

        clock.advance(31)
        lease = await admission.acquire("agents", 1, ttl=30)

        assert lease is not None
        assert await admission.held_count("agents") == 1
        reclaimed = await admission.get_lease(crashed.lease_id)
        assert reclaimed.released_at is not None

    async def test_release_after_reap_does_not_double_count(self, admission, clock):
        crashed = await admission.acquire("agents", 2, ttl=10)
        clock.advance(11)
        await admission.acquire("agents", 2, ttl=60)

        assert await admission.release(crashed) is False
        assert await admission.held_count("agents") == 1

    async def test_background_reap(self, admission, clock):
        await admission.acquire("agents", 2, ttl=10)
        await admission.acquire("research", 1, ttl=10)
        await admission.acquire("agents", 2, ttl=100)

        clock.advance(11)
        assert await admission.reap_expired() == 2
        assert await admission.held_count("agents") == 1
        assert await admission.held_count("research") == 0
        assert await admission.reap_expired() == 0


class TestRenew:
    """续租测试"""

    async def test_renew_extends_expiry(self, admission, clock):
        lease = await admission.acquire("agents", 1, ttl=30)
        clock.advance(20)

        renewed = await admission.renew(lease, ttl=30)

        assert renewed is not None
        assert renewed.expires_at > lease.expires_at
        clock.advance(20)
        assert await admission.acquire("agents", 1, ttl=30) is None

    async def test_renew_expired_lease_refused(self, admission, clock):
        lease = await admission.acquire("agents", 1, ttl=30)
        clock.advance(31)
        assert await admission.renew(lease, ttl=30) is None

    async def test_renew_released_lease_refused(self, admission):
        lease = await admission.acquire("agents", 1, ttl=30)
        await admission.release(lease)
        assert await admission.renew(lease.lease_id, ttl=30) is None


class TestConcurrency:
    """并发申请测试"""

    async def test_concurrent_acquires_same_connection(self, admission):
        results = await asyncio.gather(
            *(admission.acquire("agents", 2, ttl=60, holder=f"w{i}") for i in range(8))
        )
        granted = [lease for lease in results if lease is not None]
        assert len(granted) == 2
        assert await admission.held_count("agents") == 2

    async def test_two_connections_never_exceed_limit(self, tmp_path, clock):
        """两个独立连接（两个 worker 进程）共享同一数据库"""
        db_path = str(tmp_path / "shared.db")
        first_group = await create_store_group(db_path)
        second_group = await create_store_group(db_path)
        try:
            first = AdmissionController(first_group, clock=clock)
            second = AdmissionController(second_group, clock=clock)

            results = await asyncio.gather(
                *(
                    (first if i % 2 else second).acquire("agents", 3, ttl=60)
                    for i in range(10)
                )
            )

            granted = [lease for lease in results if lease is not None]
            assert len(granted) == 3
            assert await first.held_count("agents") == 3
            assert await second.held_count("agents") == 3
        finally:
            await first_group.close()
            await second_group.close()

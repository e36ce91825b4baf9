"""Projection 单元测试

测试内容：
1. 事件计数 projection 的在线应用与全量重建
2. TaskStateProjection 回放结果与 tasks 表一致
3. 状态漂移检测
"""

import pytest
from taskhive.events import HandlerRegistry
from taskhive.models import EventType, TaskState
from taskhive.projection import EventCounterProjection, ProjectionManager, TaskStateProjection


@pytest.fixture
def manager(runtime) -> ProjectionManager:
    return ProjectionManager(runtime.dispatcher.log)


async def _build_history(runtime):
    parent = await runtime.tasks.create_task("parent")
    parent_id = parent.record.task_id
    await runtime.tasks.activate(parent_id)
    child = await runtime.tasks.create_task("child", parent_id=parent_id)
    child_id = child.record.task_id
    await runtime.tasks.activate(child_id)
    await runtime.tasks.pause(parent_id)
    await runtime.tasks.resume(parent_id)
    await runtime.tasks.complete(child_id)
    failed = await runtime.tasks.create_task("failed")
    await runtime.tasks.fail(failed.record.task_id, "boom")
    return parent_id, child_id, failed.record.task_id


class TestEventCounter:
    """事件计数测试"""

    async def test_rebuild_counts_every_event(self, runtime, manager):
        await _build_history(runtime)
        counter = EventCounterProjection()
        manager.register("counter", counter)

        total = await manager.rebuild_all(batch_size=3)

        assert total == len(await runtime.dispatcher.log.read_all())
        assert counter.count_for(EventType.TASK_CREATED) == 3
        assert counter.count_for(EventType.TASK_COMPLETED) == 2
        assert counter.count_for(EventType.TASK_FAILED) == 1
        assert sum(counter.counts.values()) == total

    async def test_rebuild_is_repeatable(self, runtime, manager):
        await _build_history(runtime)
        counter = EventCounterProjection()
        manager.register("counter", counter)

        first = await manager.rebuild_all()
        snapshot = counter.counts
        second = await manager.rebuild_all()

        assert first == second
        assert counter.counts == snapshot

    def test_registers_as_handler(self):
        registry = HandlerRegistry()
        counter = EventCounterProjection()
        counter.register(registry)
        assert registry.handlers_for(EventType.TASK_CREATED) == (counter,)

    async def test_get_registered(self, manager):
        counter = EventCounterProjection()
        manager.register("counter", counter)
        assert manager.get("counter") is counter
        assert manager.get("missing") is None


class TestTaskStateProjection:
    """任务状态回放测试"""

    async def test_replay_matches_table(self, runtime, manager, store_group):
        parent_id, child_id, failed_id = await _build_history(runtime)
        states = TaskStateProjection()
        manager.register("task_states", states)

        await manager.rebuild_all()

        assert states.states[parent_id] == TaskState.COMPLETED
        assert states.states[child_id] == TaskState.COMPLETED
        assert states.states[failed_id] == TaskState.FAILED
        assert await states.drift(store_group) == []

    async def test_drift_detected(self, runtime, manager, store_group):
        parent_id, _, _ = await _build_history(runtime)
        states = TaskStateProjection()
        manager.register("task_states", states)
        await manager.rebuild_all()

        # 绕过状态机直接改表
        async with store_group.transaction() as stores:
            await stores.conn.execute(
                "UPDATE tasks SET state = 'active' WHERE task_id = ?", (parent_id,)
            )

        drift = await states.drift(store_group)
        assert drift == [(parent_id, TaskState.COMPLETED, TaskState.ACTIVE)]

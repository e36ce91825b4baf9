"""ActivityTree 单元测试

测试内容：
1. spawn：幂等、终态 task / 父节点守卫、环检测
2. 暂停级联：N 个 active 后代产生 N+1 个事件，终态后代不受影响
3. 恢复只作用于同一级联暂停的后代
4. 祖先 / 后代 / 根 / 路径查询
5. 失败级联与 required / 非 required 对 task 的影响
"""

import pytest
from taskhive.exceptions import TreeCycleError
from taskhive.models import ActivityStatus, EventType, TaskState, TransitionOutcome


@pytest.fixture
def spawn(runtime):
    """工厂：派生 activity 并返回记录"""

    async def _spawn(task_id, parent_id=None, **kwargs):
        result = await runtime.activities.spawn(task_id, parent_id, **kwargs)
        assert result.applied, result.reason
        return result.record

    return _spawn


class TestSpawn:
    """spawn 测试"""

    async def test_spawn_publishes_created(self, runtime, make_active_task, recorder):
        task = await make_active_task()
        result = await runtime.activities.spawn(task.task_id, agent_type="research")

        activity = result.record
        assert activity.status == ActivityStatus.ACTIVE
        assert activity.agent_type == "research"
        created = recorder.of_type(EventType.ACTIVITY_CREATED)
        assert [e.data["activity_id"] for e in created] == [activity.activity_id]
        assert created[0].metadata.task_id == task.task_id

    async def test_spawn_with_id_is_idempotent(self, runtime, make_active_task):
        task = await make_active_task()
        first = await runtime.activities.spawn(task.task_id, activity_id="act-1")
        second = await runtime.activities.spawn(task.task_id, activity_id="act-1")

        assert first.outcome == TransitionOutcome.APPLIED
        assert second.outcome == TransitionOutcome.NOOP
        assert len(await runtime.activities.for_task(task.task_id)) == 1

    async def test_spawn_on_terminal_task_rejected(self, runtime, make_active_task):
        task = await make_active_task()
        await runtime.tasks.complete(task.task_id)

        result = await runtime.activities.spawn(task.task_id)
        assert result.outcome == TransitionOutcome.GUARD_FAILED

    async def test_spawn_missing_task(self, runtime):
        result = await runtime.activities.spawn("missing")
        assert result.outcome == TransitionOutcome.NOT_FOUND

    async def test_spawn_missing_parent(self, runtime, make_active_task):
        task = await make_active_task()
        result = await runtime.activities.spawn(task.task_id, "missing-parent")
        assert result.outcome == TransitionOutcome.NOT_FOUND

    async def test_spawn_under_finished_parent_allowed(self, runtime, make_active_task, spawn):
        """子任务的 activity 常在派生它的 activity 结束后才运行"""
        task = await make_active_task()
        # 保持 task 不被自动完成
        await spawn(task.task_id)
        parent = await spawn(task.task_id)
        await runtime.activities.complete(parent.activity_id)

        child = await spawn(task.task_id, parent.activity_id)
        assert child.parent_id == parent.activity_id
        assert (await runtime.activities.root(child.activity_id)).activity_id == (
            parent.activity_id
        )

    async def test_self_parent_is_cycle(self, runtime, make_active_task):
        task = await make_active_task()
        with pytest.raises(TreeCycleError):
            await runtime.activities.spawn(task.task_id, "act-x", activity_id="act-x")
        assert await runtime.activities.get("act-x") is None

    async def test_parent_may_belong_to_other_task(self, runtime, make_active_task, spawn):
        parent_task = await make_active_task("parent")
        child_task = await make_active_task("child", parent_id=parent_task.task_id)
        parent_activity = await spawn(parent_task.task_id)

        child_activity = await spawn(child_task.task_id, parent_activity.activity_id)

        children = await runtime.activities.children(parent_activity.activity_id)
        assert [a.activity_id for a in children] == [child_activity.activity_id]
        assert child_activity.task_id == child_task.task_id


class TestPauseResume:
    """暂停 / 恢复级联测试"""

    async def test_pause_emits_n_plus_one_events(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        root = await spawn(task.task_id)
        child = await spawn(task.task_id, root.activity_id)
        grandchild = await spawn(task.task_id, child.activity_id)
        done = await spawn(task.task_id, root.activity_id)
        await runtime.activities.complete(done.activity_id)

        result = await runtime.activities.pause(root.activity_id)

        assert result.applied
        paused_ids = [e.data["activity_id"] for e in result.events]
        assert len(result.events) == 3
        assert set(paused_ids) == {
            root.activity_id,
            child.activity_id,
            grandchild.activity_id,
        }
        assert all(e.event_type == EventType.ACTIVITY_PAUSED for e in result.events)
        for activity_id in (child.activity_id, grandchild.activity_id):
            stored = await runtime.activities.get(activity_id)
            assert stored.status == ActivityStatus.PAUSED
            assert stored.paused_by == root.activity_id
        stored_root = await runtime.activities.get(root.activity_id)
        assert stored_root.paused_by is None
        assert (await runtime.activities.get(done.activity_id)).status == ActivityStatus.COMPLETED

    async def test_resume_only_cascaded_descendants(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        root = await spawn(task.task_id)
        own = await spawn(task.task_id, root.activity_id)
        cascaded = await spawn(task.task_id, root.activity_id)
        own_child = await spawn(task.task_id, own.activity_id)
        await runtime.activities.pause(own.activity_id)

        await runtime.activities.pause(root.activity_id)
        result = await runtime.activities.resume(root.activity_id)

        resumed = {e.data["activity_id"] for e in result.events}
        assert resumed == {root.activity_id, cascaded.activity_id}
        assert (await runtime.activities.get(cascaded.activity_id)).status == ActivityStatus.ACTIVE
        stored_own = await runtime.activities.get(own.activity_id)
        assert stored_own.status == ActivityStatus.PAUSED
        # own_child 由 own 的暂停级联，仍挂着 own 的标记
        stored_child = await runtime.activities.get(own_child.activity_id)
        assert stored_child.status == ActivityStatus.PAUSED
        assert stored_child.paused_by == own.activity_id

        await runtime.activities.resume(own.activity_id)
        assert (await runtime.activities.get(own_child.activity_id)).status == ActivityStatus.ACTIVE

    async def test_pause_guards(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        activity = await spawn(task.task_id)
        await runtime.activities.pause(activity.activity_id)

        again = await runtime.activities.pause(activity.activity_id)
        assert again.outcome == TransitionOutcome.NOOP

        await runtime.activities.resume(activity.activity_id)
        not_paused = await runtime.activities.resume(activity.activity_id)
        assert not_paused.outcome == TransitionOutcome.GUARD_FAILED

    async def test_deep_chain_pause_terminates(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        root = await spawn(task.task_id)
        parent_id = root.activity_id
        for _ in range(60):
            node = await spawn(task.task_id, parent_id)
            parent_id = node.activity_id

        result = await runtime.activities.pause(root.activity_id)
        assert len(result.events) == 61


class TestQueries:
    """树查询测试"""

    async def test_ancestors_root_and_path(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        root = await spawn(task.task_id)
        middle = await spawn(task.task_id, root.activity_id)
        leaf = await spawn(task.task_id, middle.activity_id)

        ancestors = await runtime.activities.ancestors(leaf.activity_id)
        assert [a.activity_id for a in ancestors] == [root.activity_id, middle.activity_id]
        assert (await runtime.activities.root(leaf.activity_id)).activity_id == root.activity_id
        path = await runtime.activities.path(leaf.activity_id)
        assert [a.activity_id for a in path] == [
            root.activity_id,
            middle.activity_id,
            leaf.activity_id,
        ]

    async def test_parentless_activity_is_its_own_root(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        lone = await spawn(task.task_id)

        assert await runtime.activities.ancestors(lone.activity_id) == []
        assert (await runtime.activities.root(lone.activity_id)).activity_id == lone.activity_id
        assert [a.activity_id for a in await runtime.activities.path(lone.activity_id)] == [
            lone.activity_id
        ]

    async def test_descendants(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        root = await spawn(task.task_id)
        a = await spawn(task.task_id, root.activity_id)
        b = await spawn(task.task_id, root.activity_id)
        a1 = await spawn(task.task_id, a.activity_id)

        descendants = await runtime.activities.descendants(root.activity_id)
        assert {d.activity_id for d in descendants} == {a.activity_id, b.activity_id, a1.activity_id}
        assert await runtime.activities.descendants(a1.activity_id) == []

    async def test_missing_activity_queries(self, runtime):
        assert await runtime.activities.get("missing") is None
        assert await runtime.activities.path("missing") == []


class TestCompletionAndFailure:
    """完成 / 失败对 task 的影响"""

    async def test_last_activity_completion_completes_task(
        self, runtime, make_active_task, spawn
    ):
        task = await make_active_task()
        first = await spawn(task.task_id)
        second = await spawn(task.task_id)

        await runtime.activities.complete(first.activity_id, {"answer": 42})
        assert (await runtime.tasks.get_task(task.task_id)).state == TaskState.ACTIVE

        await runtime.activities.complete(second.activity_id)
        assert (await runtime.tasks.get_task(task.task_id)).state == TaskState.COMPLETED
        stored = await runtime.activities.get(first.activity_id)
        assert stored.result == {"answer": 42}
        assert stored.completed_at is not None

    async def test_complete_is_idempotent(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        activity = await spawn(task.task_id)
        await runtime.activities.complete(activity.activity_id)

        again = await runtime.activities.complete(activity.activity_id)
        assert again.outcome == TransitionOutcome.NOOP
        assert (await runtime.activities.fail(activity.activity_id, "x")).outcome == (
            TransitionOutcome.GUARD_FAILED
        )

    async def test_required_activity_failure_fails_task(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        activity = await spawn(task.task_id, required=True)

        await runtime.activities.fail(activity.activity_id, "tool crashed")

        stored = await runtime.tasks.get_task(task.task_id)
        assert stored.state == TaskState.FAILED
        assert "tool crashed" in stored.error_message

    async def test_optional_activity_failure_lets_task_complete(
        self, runtime, make_active_task, spawn
    ):
        """非 required activity 失败，其余 activity 完成后 task 正常完成"""
        task = await make_active_task()
        optional = await spawn(task.task_id, required=False)
        main = await spawn(task.task_id)

        await runtime.activities.fail(optional.activity_id, "search timeout")
        assert (await runtime.tasks.get_task(task.task_id)).state == TaskState.ACTIVE

        await runtime.activities.complete(main.activity_id)
        assert (await runtime.tasks.get_task(task.task_id)).state == TaskState.COMPLETED

    async def test_failure_cascades_to_open_descendants(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        root = await spawn(task.task_id, required=False)
        child = await spawn(task.task_id, root.activity_id, required=False)
        done = await spawn(task.task_id, root.activity_id, required=False)
        await runtime.activities.complete(done.activity_id)
        grandchild = await spawn(task.task_id, child.activity_id, required=False)
        await runtime.activities.pause(grandchild.activity_id)

        result = await runtime.activities.fail(root.activity_id, "root crashed")

        failed = [e for e in result.events if e.event_type == EventType.ACTIVITY_FAILED]
        assert {e.data["activity_id"] for e in failed} == {
            root.activity_id,
            child.activity_id,
            grandchild.activity_id,
        }
        stored_child = await runtime.activities.get(child.activity_id)
        assert stored_child.status == ActivityStatus.FAILED
        assert root.activity_id in stored_child.error_message
        assert (await runtime.activities.get(done.activity_id)).status == ActivityStatus.COMPLETED
        # 全部为非 required：task 在最后一个 activity 结束后完成
        assert (await runtime.tasks.get_task(task.task_id)).state == TaskState.COMPLETED

    async def test_cascaded_required_failure_in_other_task(
        self, runtime, make_active_task, spawn
    ):
        """级联失败的后代属于另一个 task 时，该 task 也按 required 失败"""
        parent_task = await make_active_task("parent")
        other_task = await make_active_task("other")
        root = await spawn(parent_task.task_id)
        await spawn(other_task.task_id, root.activity_id, required=True)

        await runtime.activities.fail(root.activity_id, "crash")

        assert (await runtime.tasks.get_task(parent_task.task_id)).state == TaskState.FAILED
        assert (await runtime.tasks.get_task(other_task.task_id)).state == TaskState.FAILED

    async def test_paused_activity_can_complete(self, runtime, make_active_task, spawn):
        task = await make_active_task()
        activity = await spawn(task.task_id)
        await runtime.activities.pause(activity.activity_id)

        result = await runtime.activities.complete(activity.activity_id)
        assert result.applied
        assert (await runtime.tasks.get_task(task.task_id)).state == TaskState.COMPLETED

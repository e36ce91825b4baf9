"""ActivityTree -- agent 执行记录的 spawn 树

activity 的父节点是派生它的 activity（可以属于另一个 task）。
暂停 / 恢复 / 失败沿后代级联；cascade 暂停时后代打上 paused_by 标记，
恢复时只恢复同一级联暂停的节点，不影响被单独暂停的分支。

对 task 的影响：
- required activity 失败 -> 所属 task 失败
- 非 required activity 失败 / activity 完成 -> 所属 task 完成检查
"""

import json
from typing import Any

import structlog
from ulid import ULID

from .clock import Clock, format_ts, utc_now
from .events.dispatcher import EventDispatcher
from .exceptions import TreeCycleError
from .models.activity import AgentActivity
from .models.enums import (
    TERMINAL_ACTIVITY_STATUSES,
    ActivityStatus,
    EventType,
    TransitionOutcome,
    validate_activity_transition,
)
from .models.event import Event
from .models.result import TransitionResult
from .models.task import Task
from .store import StoreGroup
from .tasks import TaskStateMachine, task_metadata

log = structlog.get_logger()


class ActivityTree:
    """Activity 树操作"""

    def __init__(
        self,
        stores: StoreGroup,
        dispatcher: EventDispatcher,
        tasks: TaskStateMachine,
        clock: Clock = utc_now,
    ) -> None:
        self._stores = stores
        self._dispatcher = dispatcher
        self._tasks = tasks
        self._clock = clock

    # ============================================================
    # 流转
    # ============================================================

    async def spawn(
        self,
        task_id: str,
        parent_activity_id: str | None = None,
        agent_type: str = "agent",
        required: bool = True,
        *,
        activity_id: str | None = None,
        lease_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """创建 activity 节点

        调用方提供 activity_id 时幂等（工作项重复投递返回已有节点）。
        父节点可以已是终态：子任务的 activity 往往在派生它的 activity 结束后才运行。

        Raises:
            TreeCycleError: 父节点是自身或其后代
        """

        async def op(stores: StoreGroup) -> TransitionResult:
            if activity_id is not None:
                existing = await stores.activity_store.get_activity(activity_id)
                if existing is not None:
                    if existing.task_id != task_id:
                        return TransitionResult.guard_failed(
                            f"activity {activity_id} 已属于任务 {existing.task_id}",
                            record=existing,
                        )
                    return TransitionResult.noop("activity 已存在", record=existing)

            task = await stores.task_store.get_task(task_id)
            if task is None:
                return TransitionResult.not_found("task", task_id)
            if task.is_terminal:
                return TransitionResult.guard_failed(
                    f"任务已是终态 {task.state}，不能再派生 activity", record=task
                )

            new_id = activity_id or str(ULID())
            if parent_activity_id is not None:
                if parent_activity_id == new_id:
                    raise TreeCycleError(new_id, parent_activity_id)
                parent = await stores.activity_store.get_activity(parent_activity_id)
                if parent is None:
                    return TransitionResult.not_found("activity", parent_activity_id)
                ancestors = await stores.activity_store.list_ancestors(parent_activity_id)
                if any(a.activity_id == new_id for a in ancestors):
                    raise TreeCycleError(new_id, parent_activity_id)

            now = self._clock()
            activity = AgentActivity(
                activity_id=new_id,
                task_id=task_id,
                parent_id=parent_activity_id,
                agent_type=agent_type,
                required=required,
                lease_id=lease_id,
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            await stores.activity_store.create_activity(activity)
            event = await self._dispatcher.append(
                EventType.ACTIVITY_CREATED,
                {
                    "activity_id": activity.activity_id,
                    "task_id": task_id,
                    "agent_type": agent_type,
                    "parent_id": parent_activity_id,
                    "required": required,
                },
                task_metadata(task, activity.activity_id),
            )
            log.info(
                "activity_spawned",
                activity_id=activity.activity_id,
                task_id=task_id,
                parent_id=parent_activity_id,
                agent_type=agent_type,
            )
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=activity, events=[event]
            )

        return await self._tasks.run(op)

    async def complete(self, activity_id: str, result: Any = None) -> TransitionResult:
        """标记完成并触发所属 task 的完成检查"""

        async def op(stores: StoreGroup) -> TransitionResult:
            activity = await stores.activity_store.get_activity(activity_id)
            if activity is None:
                return TransitionResult.not_found("activity", activity_id)
            if activity.status == ActivityStatus.COMPLETED:
                return TransitionResult.noop("activity 已完成", record=activity)
            if activity.status == ActivityStatus.FAILED:
                return TransitionResult.guard_failed("activity 已失败", record=activity)

            events: list[Event] = []
            updated = await self._transition(
                stores,
                activity,
                ActivityStatus.COMPLETED,
                EventType.ACTIVITY_COMPLETED,
                events,
                data={"activity_id": activity_id, "result": result},
                result_json=json.dumps(result, ensure_ascii=False, default=str),
            )
            if updated is None:
                return TransitionResult.guard_failed("状态已被并发修改", record=activity)
            await self._tasks.evaluate_completion(stores, activity.task_id, events)
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=updated, events=events
            )

        return await self._tasks.run(op)

    async def fail(self, activity_id: str, error: str) -> TransitionResult:
        """标记失败，级联失败所有非终态后代，并按 required 影响所属 task"""

        async def op(stores: StoreGroup) -> TransitionResult:
            activity = await stores.activity_store.get_activity(activity_id)
            if activity is None:
                return TransitionResult.not_found("activity", activity_id)
            if activity.status == ActivityStatus.FAILED:
                return TransitionResult.noop("activity 已失败", record=activity)
            if activity.status == ActivityStatus.COMPLETED:
                return TransitionResult.guard_failed("activity 已完成", record=activity)

            events: list[Event] = []
            updated = await self._transition(
                stores,
                activity,
                ActivityStatus.FAILED,
                EventType.ACTIVITY_FAILED,
                events,
                data={"activity_id": activity_id, "error": error},
                error=error,
            )
            if updated is None:
                return TransitionResult.guard_failed("状态已被并发修改", record=activity)

            failed = [updated]
            cascade_error = f"父 activity {activity_id} 失败"
            for descendant in await stores.activity_store.list_descendants(activity_id):
                if descendant.is_terminal:
                    continue
                cascaded = await self._transition(
                    stores,
                    descendant,
                    ActivityStatus.FAILED,
                    EventType.ACTIVITY_FAILED,
                    events,
                    data={
                        "activity_id": descendant.activity_id,
                        "error": cascade_error,
                        "cascaded_from": activity_id,
                    },
                    error=cascade_error,
                )
                if cascaded is not None:
                    failed.append(cascaded)

            await self._settle_tasks(stores, failed, events)
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=updated, events=events
            )

        return await self._tasks.run(op)

    async def pause(self, activity_id: str) -> TransitionResult:
        """暂停自身及全部 active 后代（N 个 active 后代 -> N+1 个事件）"""

        async def op(stores: StoreGroup) -> TransitionResult:
            activity = await stores.activity_store.get_activity(activity_id)
            if activity is None:
                return TransitionResult.not_found("activity", activity_id)
            if activity.status == ActivityStatus.PAUSED:
                return TransitionResult.noop("activity 已暂停", record=activity)
            if activity.status != ActivityStatus.ACTIVE:
                return TransitionResult.guard_failed(
                    f"activity 状态为 {activity.status}，不能暂停", record=activity
                )

            events: list[Event] = []
            updated = await self._pause_or_resume(
                stores, activity, ActivityStatus.PAUSED, events
            )
            if updated is None:
                return TransitionResult.guard_failed("状态已被并发修改", record=activity)

            for descendant in await stores.activity_store.list_descendants(activity_id):
                if descendant.status != ActivityStatus.ACTIVE:
                    continue
                await self._pause_or_resume(
                    stores, descendant, ActivityStatus.PAUSED, events, cascaded_from=activity_id
                )
            log.info("activity_tree_paused", activity_id=activity_id, events=len(events))
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=updated, events=events
            )

        return await self._tasks.run(op)

    async def resume(self, activity_id: str) -> TransitionResult:
        """恢复自身及被同一级联暂停的后代"""

        async def op(stores: StoreGroup) -> TransitionResult:
            activity = await stores.activity_store.get_activity(activity_id)
            if activity is None:
                return TransitionResult.not_found("activity", activity_id)
            if activity.status != ActivityStatus.PAUSED:
                return TransitionResult.guard_failed(
                    f"activity 状态为 {activity.status}，不能恢复", record=activity
                )

            events: list[Event] = []
            updated = await self._pause_or_resume(
                stores, activity, ActivityStatus.ACTIVE, events
            )
            if updated is None:
                return TransitionResult.guard_failed("状态已被并发修改", record=activity)

            for descendant in await stores.activity_store.list_descendants(activity_id):
                if descendant.status != ActivityStatus.PAUSED:
                    continue
                if descendant.paused_by != activity_id:
                    continue
                await self._pause_or_resume(
                    stores, descendant, ActivityStatus.ACTIVE, events, cascaded_from=activity_id
                )
            log.info("activity_tree_resumed", activity_id=activity_id, events=len(events))
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=updated, events=events
            )

        return await self._tasks.run(op)

    # ============================================================
    # 查询
    # ============================================================

    async def get(self, activity_id: str) -> AgentActivity | None:
        return await self._stores.activity_store.get_activity(activity_id)

    async def for_task(self, task_id: str) -> list[AgentActivity]:
        return await self._stores.activity_store.list_for_task(task_id)

    async def children(self, activity_id: str) -> list[AgentActivity]:
        return await self._stores.activity_store.list_children(activity_id)

    async def ancestors(self, activity_id: str) -> list[AgentActivity]:
        """根在前、直接父节点在后"""
        return await self._stores.activity_store.list_ancestors(activity_id)

    async def descendants(self, activity_id: str) -> list[AgentActivity]:
        """全部后代（顺序无语义）"""
        return await self._stores.activity_store.list_descendants(activity_id)

    async def root(self, activity_id: str) -> AgentActivity | None:
        """根节点；没有父节点的 activity 是自己的根"""
        ancestors = await self.ancestors(activity_id)
        if ancestors:
            return ancestors[0]
        return await self.get(activity_id)

    async def path(self, activity_id: str) -> list[AgentActivity]:
        """根到自身的路径"""
        activity = await self.get(activity_id)
        if activity is None:
            return []
        return [*await self.ancestors(activity_id), activity]

    # ============================================================
    # 内部实现
    # ============================================================

    async def _settle_tasks(
        self,
        stores: StoreGroup,
        failed: list[AgentActivity],
        events: list[Event],
    ) -> None:
        """失败的 activity 对所属 task 的影响（每个 task 只处理一次）"""
        by_task: dict[str, list[AgentActivity]] = {}
        for activity in failed:
            by_task.setdefault(activity.task_id, []).append(activity)

        for task_id, activities in by_task.items():
            required_failure = next((a for a in activities if a.required), None)
            if required_failure is not None:
                result = await self._tasks.fail_in(
                    stores,
                    task_id,
                    f"required activity {required_failure.activity_id} 失败: "
                    f"{required_failure.error_message}",
                )
                events.extend(result.events)
            else:
                await self._tasks.evaluate_completion(stores, task_id, events)

    async def _pause_or_resume(
        self,
        stores: StoreGroup,
        activity: AgentActivity,
        to_status: ActivityStatus,
        events: list[Event],
        *,
        cascaded_from: str | None = None,
    ) -> AgentActivity | None:
        event_type = (
            EventType.ACTIVITY_PAUSED
            if to_status == ActivityStatus.PAUSED
            else EventType.ACTIVITY_RESUMED
        )
        paused_by = cascaded_from if to_status == ActivityStatus.PAUSED else None
        return await self._transition(
            stores,
            activity,
            to_status,
            event_type,
            events,
            data={
                "activity_id": activity.activity_id,
                "from_status": activity.status.value,
                "to_status": to_status.value,
                "cascaded_from": cascaded_from,
            },
            paused_by=paused_by,
        )

    async def _transition(
        self,
        stores: StoreGroup,
        activity: AgentActivity,
        to_status: ActivityStatus,
        event_type: EventType,
        events: list[Event],
        *,
        data: dict[str, Any],
        paused_by: str | None = None,
        error: str | None = None,
        result_json: str | None = None,
    ) -> AgentActivity | None:
        """条件更新 activity + 在同一事务内追加事件

        Returns:
            流转后的 activity；非法流转或并发冲突时返回 None
        """
        if not validate_activity_transition(activity.status, to_status):
            log.debug(
                "activity_transition_rejected",
                activity_id=activity.activity_id,
                from_status=activity.status.value,
                to_status=to_status.value,
            )
            return None

        now = self._clock()
        now_ts = format_ts(now)
        terminal = to_status in TERMINAL_ACTIVITY_STATUSES
        applied = await stores.activity_store.update_status(
            activity.activity_id,
            activity.status,
            to_status,
            now_ts,
            paused_by=paused_by,
            error_message=error,
            result_json=result_json,
            completed_at=now_ts if terminal else None,
        )
        if not applied:
            log.warning(
                "activity_transition_conflict",
                activity_id=activity.activity_id,
                expected_status=activity.status.value,
                to_status=to_status.value,
            )
            return None

        task = await self._task_for(stores, activity)
        metadata = task_metadata(task, activity.activity_id) if task else None
        event = await self._dispatcher.append(event_type, data, metadata)
        events.append(event)
        log.info(
            "activity_transitioned",
            activity_id=activity.activity_id,
            task_id=activity.task_id,
            from_status=activity.status.value,
            to_status=to_status.value,
        )
        return activity.model_copy(
            update={
                "status": to_status,
                "paused_by": paused_by,
                "error_message": error if error is not None else activity.error_message,
                "result": json.loads(result_json) if result_json is not None else activity.result,
                "updated_at": now,
                "completed_at": now if terminal else activity.completed_at,
            }
        )

    @staticmethod
    async def _task_for(stores: StoreGroup, activity: AgentActivity) -> Task | None:
        return await stores.task_store.get_task(activity.task_id)

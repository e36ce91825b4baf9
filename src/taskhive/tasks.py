"""TaskStateMachine -- Task 生命周期与子任务树级联

每个流转在同一 BEGIN IMMEDIATE 事务内完成：
条件更新 tasks 行（expected state + version）并追加 task.* 事件；
提交后再把事件交给 EventDispatcher 投递。

预期内的守卫失败返回 TransitionResult(guard_failed)，不发布事件、不抛异常。
完成检查在子任务 / activity 进入终态时于同一事务内沿父链向上评估，而不是轮询；
任务从 paused / waiting_on_human 恢复时补做一次，覆盖暂停期间结束的工作。
"""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from ulid import ULID

from .clock import Clock, format_ts, utc_now
from .config import DEFAULT_QUEUE, NORMAL_PRIORITY
from .events.dispatcher import EventDispatcher
from .models.enums import (
    TERMINAL_STATES,
    EventType,
    TaskState,
    TransitionOutcome,
    validate_transition,
)
from .models.event import Event, EventMetadata
from .models.result import TransitionResult
from .models.task import Task
from .store import StoreGroup

log = structlog.get_logger()

TxOperation = Callable[[StoreGroup], Awaitable[TransitionResult]]


def task_metadata(task: Task, activity_id: str | None = None) -> EventMetadata:
    """task 相关事件的 metadata"""
    return EventMetadata(
        task_id=task.task_id,
        activity_id=activity_id,
        project_id=task.project_id,
        priority=task.priority,
    )


class TaskStateMachine:
    """Task 状态机"""

    def __init__(
        self,
        stores: StoreGroup,
        dispatcher: EventDispatcher,
        clock: Clock = utc_now,
    ) -> None:
        self._stores = stores
        self._dispatcher = dispatcher
        self._clock = clock

    # ============================================================
    # 事务外入口
    # ============================================================

    async def run(self, operation: TxOperation) -> TransitionResult:
        """在写事务内执行 operation，提交后投递其事件"""
        async with self._stores.transaction() as stores:
            result = await operation(stores)
        if result.events:
            await self._dispatcher.deliver(result.events)
        return result

    async def create_task(
        self,
        title: str,
        *,
        description: str = "",
        parent_id: str | None = None,
        project_id: str | None = None,
        priority: int = NORMAL_PRIORITY,
        required: bool = True,
        queue_name: str = DEFAULT_QUEUE,
        depends_on: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> TransitionResult:
        """创建 pending 任务，子任务默认继承父任务的 project"""

        async def op(stores: StoreGroup) -> TransitionResult:
            if parent_id is not None:
                parent = await stores.task_store.get_task(parent_id)
                if parent is None:
                    return TransitionResult.not_found("task", parent_id)
                if parent.is_terminal:
                    return TransitionResult.guard_failed(
                        f"父任务已是终态 {parent.state}，不能再创建子任务", record=parent
                    )
                effective_project = project_id or parent.project_id
            else:
                effective_project = project_id

            now = self._clock()
            task = Task(
                task_id=task_id or str(ULID()),
                title=title,
                description=description,
                parent_id=parent_id,
                project_id=effective_project,
                priority=priority,
                required=required,
                queue_name=queue_name,
                depends_on=list(depends_on or []),
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            await stores.task_store.create_task(task)
            event = await self._dispatcher.append(
                EventType.TASK_CREATED,
                {
                    "task_id": task.task_id,
                    "title": task.title,
                    "parent_id": task.parent_id,
                    "queue_name": task.queue_name,
                    "required": task.required,
                },
                task_metadata(task),
            )
            log.info("task_created", task_id=task.task_id, parent_id=parent_id)
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=task, events=[event]
            )

        return await self.run(op)

    async def activate(self, task_id: str) -> TransitionResult:
        """pending -> active（依赖任务必须全部完成）"""
        return await self.run(lambda stores: self.activate_in(stores, task_id))

    async def pause(self, task_id: str, reason: str = "") -> TransitionResult:
        """active -> paused，并级联暂停 active 后代子任务"""
        return await self.run(lambda stores: self.pause_in(stores, task_id, reason))

    async def resume(self, task_id: str, reason: str = "") -> TransitionResult:
        """paused -> active，只恢复同一级联暂停的后代"""
        return await self.run(lambda stores: self.resume_in(stores, task_id, reason))

    async def wait_on_human(self, task_id: str, reason: str = "") -> TransitionResult:
        return await self.run(lambda stores: self.wait_on_human_in(stores, task_id, reason))

    async def resume_from_human(self, task_id: str, reason: str = "") -> TransitionResult:
        return await self.run(lambda stores: self.resume_from_human_in(stores, task_id, reason))

    async def complete(self, task_id: str) -> TransitionResult:
        """active -> completed（幂等：已完成返回 noop）"""
        return await self.run(lambda stores: self.complete_in(stores, task_id))

    async def fail(self, task_id: str, error: str) -> TransitionResult:
        """非终态 -> failed，required 任务失败级联到父任务"""
        return await self.run(lambda stores: self.fail_in(stores, task_id, error))

    async def delete_project(self, project_id: str) -> int:
        """删除项目下全部任务（级联删除 activity / interaction，事件保留）

        Returns:
            删除的任务数
        """
        async with self._stores.transaction() as stores:
            deleted = await stores.task_store.delete_project_tasks(project_id)
            event = await self._dispatcher.append(
                EventType.PROJECT_DELETED,
                {"project_id": project_id, "task_count": deleted},
                EventMetadata(project_id=project_id),
            )
        await self._dispatcher.deliver([event])
        log.info("project_deleted", project_id=project_id, task_count=deleted)
        return deleted

    # ============================================================
    # 查询
    # ============================================================

    async def get_task(self, task_id: str) -> Task | None:
        return await self._stores.task_store.get_task(task_id)

    async def subtasks(self, task_id: str) -> list[Task]:
        return await self._stores.task_store.list_subtasks(task_id)

    async def task_path(self, task_id: str) -> list[Task]:
        """根任务到自身的路径"""
        path: list[Task] = []
        seen: set[str] = set()
        current = await self._stores.task_store.get_task(task_id)
        while current is not None and current.task_id not in seen:
            seen.add(current.task_id)
            path.append(current)
            if current.parent_id is None:
                break
            current = await self._stores.task_store.get_task(current.parent_id)
        path.reverse()
        return path

    async def root_task(self, task_id: str) -> Task | None:
        path = await self.task_path(task_id)
        return path[0] if path else None

    async def dependencies_satisfied(self, task_id: str) -> bool:
        task = await self._stores.task_store.get_task(task_id)
        if task is None:
            return False
        return await self._dependencies_met(self._stores, task)

    async def ready_to_start(self, project_id: str | None = None) -> list[Task]:
        """依赖已满足的 pending 任务"""
        pending = await self._stores.task_store.list_tasks(
            state=TaskState.PENDING.value, project_id=project_id
        )
        return [t for t in pending if await self._dependencies_met(self._stores, t)]

    async def status_counts(self, project_id: str | None = None) -> dict[str, Any]:
        """各状态任务数与完成百分比"""
        counts = await self._stores.task_store.count_by_state(project_id)
        result: dict[str, Any] = {state.value: counts.get(state.value, 0) for state in TaskState}
        total = sum(counts.values())
        result["total"] = total
        result["completion_percentage"] = (
            round(result[TaskState.COMPLETED.value] * 100 / total) if total else 0
        )
        return result

    # ============================================================
    # 事务内操作（供 ActivityTree / HumanInteractionGate 复用）
    # ============================================================

    async def activate_in(self, stores: StoreGroup, task_id: str) -> TransitionResult:
        task = await stores.task_store.get_task(task_id)
        if task is None:
            return TransitionResult.not_found("task", task_id)
        if task.state == TaskState.ACTIVE:
            return TransitionResult.noop("任务已是 active", record=task)
        if task.state != TaskState.PENDING:
            return TransitionResult.guard_failed(f"任务状态为 {task.state}，不能激活", record=task)
        if not await self._dependencies_met(stores, task):
            return TransitionResult.guard_failed("依赖任务尚未全部完成", record=task)

        events: list[Event] = []
        updated = await self._transition(
            stores, task, TaskState.ACTIVE, EventType.TASK_ACTIVATED, events
        )
        return self._result(updated, task, events)

    async def pause_in(self, stores: StoreGroup, task_id: str, reason: str = "") -> TransitionResult:
        task = await stores.task_store.get_task(task_id)
        if task is None:
            return TransitionResult.not_found("task", task_id)
        if task.state == TaskState.PAUSED:
            return TransitionResult.noop("任务已暂停", record=task)
        if task.state != TaskState.ACTIVE:
            return TransitionResult.guard_failed(f"任务状态为 {task.state}，不能暂停", record=task)

        events: list[Event] = []
        updated = await self._transition(
            stores, task, TaskState.PAUSED, EventType.TASK_PAUSED, events, reason=reason
        )
        if updated is not None:
            for descendant in await stores.task_store.list_descendants(task_id):
                if descendant.state != TaskState.ACTIVE:
                    continue
                await self._transition(
                    stores,
                    descendant,
                    TaskState.PAUSED,
                    EventType.TASK_PAUSED,
                    events,
                    reason=reason,
                    cascaded_from=task_id,
                    paused_by=task_id,
                )
        return self._result(updated, task, events)

    async def resume_in(self, stores: StoreGroup, task_id: str, reason: str = "") -> TransitionResult:
        task = await stores.task_store.get_task(task_id)
        if task is None:
            return TransitionResult.not_found("task", task_id)
        if task.state != TaskState.PAUSED:
            return TransitionResult.guard_failed(f"任务状态为 {task.state}，不能恢复", record=task)

        events: list[Event] = []
        updated = await self._transition(
            stores, task, TaskState.ACTIVE, EventType.TASK_RESUMED, events, reason=reason
        )
        if updated is not None:
            resumed = [task_id]
            for descendant in await stores.task_store.list_descendants(task_id):
                if descendant.state != TaskState.PAUSED or descendant.paused_by != task_id:
                    continue
                woken = await self._transition(
                    stores,
                    descendant,
                    TaskState.ACTIVE,
                    EventType.TASK_RESUMED,
                    events,
                    reason=reason,
                    cascaded_from=task_id,
                )
                if woken is not None:
                    resumed.append(woken.task_id)
            # 后代先于祖先检查，子任务完成后由 _propagate_terminal 向上传播
            for resumed_id in reversed(resumed):
                await self._settle_resumed(stores, resumed_id, events)
        return self._result(updated, task, events)

    async def wait_on_human_in(
        self,
        stores: StoreGroup,
        task_id: str,
        reason: str = "",
    ) -> TransitionResult:
        task = await stores.task_store.get_task(task_id)
        if task is None:
            return TransitionResult.not_found("task", task_id)
        if task.state == TaskState.WAITING_ON_HUMAN:
            return TransitionResult.noop("任务已在等待人工", record=task)
        if task.state != TaskState.ACTIVE:
            return TransitionResult.guard_failed(
                f"任务状态为 {task.state}，不能进入 waiting_on_human", record=task
            )

        events: list[Event] = []
        updated = await self._transition(
            stores,
            task,
            TaskState.WAITING_ON_HUMAN,
            EventType.TASK_WAITING_ON_HUMAN,
            events,
            reason=reason,
        )
        return self._result(updated, task, events)

    async def resume_from_human_in(
        self,
        stores: StoreGroup,
        task_id: str,
        reason: str = "",
        *,
        settle: bool = True,
    ) -> TransitionResult:
        """waiting_on_human -> active（仍有阻塞的 required 交互时拒绝）

        Args:
            settle: 恢复后立即做完成检查；任务会被重新入队执行时传 False
        """
        task = await stores.task_store.get_task(task_id)
        if task is None:
            return TransitionResult.not_found("task", task_id)
        if task.state != TaskState.WAITING_ON_HUMAN:
            return TransitionResult.guard_failed(
                f"任务状态为 {task.state}，不在等待人工", record=task
            )
        blocking = await stores.interaction_store.count_blocking(task_id)
        if blocking:
            return TransitionResult.guard_failed(
                f"仍有 {blocking} 个 required 交互未处理", record=task
            )

        events: list[Event] = []
        updated = await self._transition(
            stores, task, TaskState.ACTIVE, EventType.TASK_RESUMED, events, reason=reason
        )
        if updated is not None and settle:
            await self._settle_resumed(stores, task_id, events)
        return self._result(updated, task, events)

    async def complete_in(self, stores: StoreGroup, task_id: str) -> TransitionResult:
        """完成任务并沿父链评估完成 / 失败级联"""
        task = await stores.task_store.get_task(task_id)
        if task is None:
            return TransitionResult.not_found("task", task_id)

        events: list[Event] = []
        result = await self._complete_one(stores, task, events)
        if result.applied:
            await self._propagate_terminal(stores, result.record, events)
        result.events = events
        return result

    async def fail_in(
        self,
        stores: StoreGroup,
        task_id: str,
        error: str,
        *,
        cascaded_from: str | None = None,
    ) -> TransitionResult:
        task = await stores.task_store.get_task(task_id)
        if task is None:
            return TransitionResult.not_found("task", task_id)
        if task.state == TaskState.FAILED:
            return TransitionResult.noop("任务已失败", record=task)
        if task.state == TaskState.COMPLETED:
            return TransitionResult.guard_failed("任务已完成，不能再失败", record=task)

        events: list[Event] = []
        updated = await self._transition(
            stores,
            task,
            TaskState.FAILED,
            EventType.TASK_FAILED,
            events,
            error=error,
            cascaded_from=cascaded_from,
        )
        if updated is not None:
            await self._propagate_terminal(stores, updated, events)
        return self._result(updated, task, events)

    async def evaluate_completion(
        self,
        stores: StoreGroup,
        task_id: str,
        events: list[Event],
    ) -> Task | None:
        """activity / 子任务进入终态后的完成检查

        任务只在 active 且守卫通过时完成；其他情况静默跳过。

        Returns:
            完成后的任务；未完成时返回 None
        """
        task = await stores.task_store.get_task(task_id)
        if task is None or task.state != TaskState.ACTIVE:
            return None
        result = await self._complete_one(stores, task, events)
        if not result.applied:
            log.debug("task_completion_deferred", task_id=task_id, reason=result.reason)
            return None
        await self._propagate_terminal(stores, result.record, events)
        return result.record

    # ============================================================
    # 内部实现
    # ============================================================

    async def _complete_one(
        self,
        stores: StoreGroup,
        task: Task,
        events: list[Event],
    ) -> TransitionResult:
        """完成守卫 + 流转（不沿父链传播）"""
        if task.state == TaskState.COMPLETED:
            return TransitionResult.noop("任务已完成", record=task)
        if task.state != TaskState.ACTIVE:
            return TransitionResult.guard_failed(f"任务状态为 {task.state}，不能完成", record=task)

        open_subtasks = await stores.task_store.count_open_subtasks(task.task_id)
        if open_subtasks:
            return TransitionResult.guard_failed(
                f"还有 {open_subtasks} 个子任务未结束", record=task
            )
        open_activities = await stores.activity_store.count_open(task.task_id)
        if open_activities:
            return TransitionResult.guard_failed(
                f"还有 {open_activities} 个 activity 未结束", record=task
            )
        if await stores.activity_store.has_failed_required(task.task_id):
            return TransitionResult.guard_failed("存在失败的 required activity", record=task)

        updated = await self._transition(
            stores, task, TaskState.COMPLETED, EventType.TASK_COMPLETED, events
        )
        return self._result(updated, task, events)

    async def _settle_resumed(
        self,
        stores: StoreGroup,
        task_id: str,
        events: list[Event],
    ) -> None:
        """恢复后的完成检查

        只在任务已有终态的 activity 或子任务时评估；尚未开始工作的任务保持 active。
        """
        task = await stores.task_store.get_task(task_id)
        if task is None or task.state != TaskState.ACTIVE:
            return
        closed = await stores.activity_store.count_closed(task_id)
        closed += await stores.task_store.count_closed_subtasks(task_id)
        if not closed:
            return
        result = await self._complete_one(stores, task, events)
        if result.applied:
            log.info("task_completed_on_resume", task_id=task_id)
            await self._propagate_terminal(stores, result.record, events)

    async def _propagate_terminal(
        self,
        stores: StoreGroup,
        task: Task,
        events: list[Event],
    ) -> None:
        """子任务进入终态后沿父链向上评估

        required 子任务失败 -> 父任务失败；
        其他终态 -> 父任务完成检查。父任务未发生变化时停止。
        """
        child = task
        seen = {child.task_id}
        while child.parent_id is not None and child.parent_id not in seen:
            seen.add(child.parent_id)
            parent = await stores.task_store.get_task(child.parent_id)
            if parent is None or parent.state in TERMINAL_STATES:
                return

            if child.state == TaskState.FAILED and child.required:
                updated = await self._transition(
                    stores,
                    parent,
                    TaskState.FAILED,
                    EventType.TASK_FAILED,
                    events,
                    error=f"必需子任务 {child.task_id} 失败: {child.error_message or ''}".rstrip(),
                    cascaded_from=child.task_id,
                )
            elif parent.state == TaskState.ACTIVE:
                result = await self._complete_one(stores, parent, events)
                updated = result.record if result.applied else None
            else:
                updated = None

            if updated is None:
                return
            child = updated

    async def _transition(
        self,
        stores: StoreGroup,
        task: Task,
        to_state: TaskState,
        event_type: EventType,
        events: list[Event],
        *,
        reason: str = "",
        cascaded_from: str | None = None,
        error: str | None = None,
        paused_by: str | None = None,
    ) -> Task | None:
        """条件更新 + 追加事件

        Returns:
            流转后的任务；非法流转或并发冲突时返回 None
        """
        if not validate_transition(task.state, to_state):
            log.debug(
                "task_transition_rejected",
                task_id=task.task_id,
                from_state=task.state.value,
                to_state=to_state.value,
            )
            return None

        now = self._clock()
        now_ts = format_ts(now)
        terminal = to_state in TERMINAL_STATES
        applied = await stores.task_store.update_state(
            task.task_id,
            task.state,
            to_state,
            now_ts,
            paused_by=paused_by,
            error_message=error,
            completed_at=now_ts if terminal else None,
        )
        if not applied:
            log.warning(
                "task_transition_conflict",
                task_id=task.task_id,
                expected_state=task.state.value,
                to_state=to_state.value,
            )
            return None

        data: dict[str, Any] = {
            "task_id": task.task_id,
            "from_state": task.state.value,
            "to_state": to_state.value,
            "reason": reason,
            "cascaded_from": cascaded_from,
        }
        if error is not None:
            data["error"] = error
        event = await self._dispatcher.append(event_type, data, task_metadata(task))
        events.append(event)

        log.info(
            "task_transitioned",
            task_id=task.task_id,
            from_state=task.state.value,
            to_state=to_state.value,
            cascaded_from=cascaded_from,
        )
        return task.model_copy(
            update={
                "state": to_state,
                "paused_by": paused_by,
                "error_message": error if error is not None else task.error_message,
                "updated_at": now,
                "completed_at": now if terminal else task.completed_at,
                "version": task.version + 1,
            }
        )

    async def _dependencies_met(self, stores: StoreGroup, task: Task) -> bool:
        if not task.depends_on:
            return True
        dependencies = await stores.task_store.get_tasks(task.depends_on)
        completed = {t.task_id for t in dependencies if t.state == TaskState.COMPLETED}
        return all(dep in completed for dep in task.depends_on)

    @staticmethod
    def _result(updated: Task | None, original: Task, events: list[Event]) -> TransitionResult:
        if updated is None:
            return TransitionResult.guard_failed("状态已被并发修改", record=original)
        return TransitionResult(
            outcome=TransitionOutcome.APPLIED,
            record=updated,
            events=events,
        )

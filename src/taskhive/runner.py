"""TaskRunner -- task.run 工作项的执行流程

1. 终态 / 暂停 / 等待人工的任务直接跳过
2. 按 queue_name 申请准入租约；被拒时带退避重新入队（不忙等）
3. pending 任务激活
4. 派生持有租约的 activity
5. 调用注册的 agent（暂时性错误按退避重试）
6. 完成 / 失败 activity；agent 打开了 required 交互时以 suspended 结果完成
7. 释放租约
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import Any

import structlog

from .activities import ActivityTree
from .admission import AdmissionController
from .clock import Clock, utc_now
from .config import TaskhiveConfig
from .exceptions import RecordNotFoundError, describe_error
from .interactions import HumanInteractionGate
from .models.activity import AgentActivity
from .models.enums import TaskState, WorkItemKind
from .models.lease import SemaphoreLease
from .models.result import TransitionResult
from .models.task import Task
from .retry import compute_backoff, with_retries
from .tasks import TaskStateMachine
from .work import WorkQueue

log = structlog.get_logger()


class RunOutcome(StrEnum):
    """一次 perform 的结果"""

    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


@dataclass
class AgentContext:
    """agent 执行时可见的上下文"""

    task: Task
    activity: AgentActivity
    lease: SemaphoreLease
    tasks: TaskStateMachine
    activities: ActivityTree
    gate: HumanInteractionGate
    work_queue: WorkQueue | None = None

    async def request_human(
        self,
        question: str,
        required: bool = True,
        timeout: float | None = None,
    ) -> TransitionResult:
        """打开人工交互；required 时本次执行结束后任务挂起"""
        return await self.gate.request(
            self.task.task_id,
            question,
            required=required,
            activity_id=self.activity.activity_id,
            timeout=timeout,
        )

    async def create_subtask(
        self,
        title: str,
        *,
        queue_name: str | None = None,
        required: bool = True,
        **kwargs: Any,
    ) -> TransitionResult:
        """创建子任务，并入队执行（子 activity 挂在当前 activity 之下）"""
        queue = queue_name or self.task.queue_name
        result = await self.tasks.create_task(
            title,
            parent_id=self.task.task_id,
            queue_name=queue,
            required=required,
            **kwargs,
        )
        if result.applied and self.work_queue is not None:
            await self.work_queue.enqueue(
                WorkItemKind.TASK_RUN,
                {
                    "task_id": result.record.task_id,
                    "parent_activity_id": self.activity.activity_id,
                },
                queue_name=queue,
            )
        return result


AgentCallable = Callable[[AgentContext], Awaitable[Any]]


class AgentRegistry:
    """agent 类型 -> 执行函数"""

    def __init__(self) -> None:
        self._agents: dict[str, AgentCallable] = {}

    def register(self, agent_type: str, agent: AgentCallable) -> None:
        self._agents[agent_type] = agent

    def get(self, agent_type: str) -> AgentCallable | None:
        return self._agents.get(agent_type)

    def agent_types(self) -> list[str]:
        return sorted(self._agents)


class TaskRunner:
    """task.run 工作项执行者"""

    def __init__(
        self,
        tasks: TaskStateMachine,
        activities: ActivityTree,
        gate: HumanInteractionGate,
        admission: AdmissionController,
        agents: AgentRegistry,
        config: TaskhiveConfig,
        *,
        work_queue: WorkQueue | None = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._tasks = tasks
        self._activities = activities
        self._gate = gate
        self._admission = admission
        self._agents = agents
        self._config = config
        self._work_queue = work_queue
        self._clock = clock
        self._sleep = sleep

    async def perform(self, payload: dict[str, Any]) -> RunOutcome:
        """执行一个 task.run 工作项

        Raises:
            RecordNotFoundError: 任务不存在（工作项应被丢弃）
        """
        task_id = payload["task_id"]
        task = await self._tasks.get_task(task_id)
        if task is None:
            raise RecordNotFoundError("task", task_id)

        if task.is_terminal or task.state in (TaskState.PAUSED, TaskState.WAITING_ON_HUMAN):
            log.info("task_run_skipped", task_id=task_id, state=task.state.value)
            return RunOutcome.SKIPPED
        if task.state == TaskState.PENDING and not await self._tasks.dependencies_satisfied(task_id):
            await self._defer(task, payload, "dependencies_pending")
            return RunOutcome.DEFERRED

        lease = await self._admission.acquire(
            task.queue_name,
            self._config.limit_for(task.queue_name),
            self._config.lease_ttl_s,
            holder=f"task:{task_id}",
        )
        if lease is None:
            await self._defer(task, payload, "admission_refused")
            return RunOutcome.DEFERRED

        try:
            return await self._run_admitted(task, lease, payload)
        finally:
            await self._admission.release(lease)

    async def _run_admitted(
        self,
        task: Task,
        lease: SemaphoreLease,
        payload: dict[str, Any],
    ) -> RunOutcome:
        task_id = task.task_id
        if task.state == TaskState.PENDING:
            activated = await self._tasks.activate(task_id)
            if not activated.ok:
                log.info("task_activation_rejected", task_id=task_id, reason=activated.reason)
                return RunOutcome.SKIPPED
            task = activated.record

        spawned = await self._activities.spawn(
            task_id,
            payload.get("parent_activity_id"),
            agent_type=payload.get("agent_type") or task.queue_name,
            required=payload.get("required", True),
            activity_id=payload.get("activity_id"),
            lease_id=lease.lease_id,
        )
        if not spawned.ok:
            log.info("activity_spawn_rejected", task_id=task_id, reason=spawned.reason)
            return RunOutcome.SKIPPED
        activity: AgentActivity = spawned.record
        if activity.is_terminal:
            return RunOutcome.SKIPPED

        agent = self._agents.get(activity.agent_type)
        if agent is None:
            await self._activities.fail(
                activity.activity_id, f"未注册的 agent 类型: {activity.agent_type}"
            )
            return RunOutcome.FAILED

        context = AgentContext(
            task=task,
            activity=activity,
            lease=lease,
            tasks=self._tasks,
            activities=self._activities,
            gate=self._gate,
            work_queue=self._work_queue,
        )
        retry_kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        try:
            result = await with_retries(
                lambda: agent(context),
                max_attempts=self._config.transient_retries,
                base_delay_s=self._config.dispatch_backoff_s,
                cap_s=self._config.backoff_cap_s,
                **retry_kwargs,
            )
        except Exception as e:
            log.error(
                "agent_run_failed",
                task_id=task_id,
                activity_id=activity.activity_id,
                error_type=type(e).__name__,
            )
            await self._activities.fail(activity.activity_id, describe_error(e))
            return RunOutcome.FAILED

        current = await self._tasks.get_task(task_id)
        if current is not None and current.state == TaskState.WAITING_ON_HUMAN:
            await self._activities.complete(
                activity.activity_id, {"suspended": True, "result": result}
            )
            log.info("task_suspended_on_human", task_id=task_id)
            return RunOutcome.SUSPENDED

        await self._activities.complete(activity.activity_id, result)
        return RunOutcome.COMPLETED

    async def _defer(self, task: Task, payload: dict[str, Any], reason: str) -> None:
        """带退避重新入队一个新工作项"""
        attempts = int(payload.get("admission_attempts", 0)) + 1
        delay = compute_backoff(
            attempts, self._config.admission_backoff_s, self._config.backoff_cap_s
        )
        log.info(
            "task_run_deferred",
            task_id=task.task_id,
            reason=reason,
            attempt=attempts,
            delay_s=round(delay, 2),
        )
        if self._work_queue is None:
            return
        await self._work_queue.enqueue(
            WorkItemKind.TASK_RUN,
            {**payload, "admission_attempts": attempts},
            queue_name=task.queue_name,
            not_before=self._clock() + timedelta(seconds=delay),
        )

"""HumanInteractionGate -- 人工交互闸门

两类交互：
- 输入请求（request）：answer / ignore / expire
- 人工干预（intervene）：acknowledge / resolve / dismiss

required 交互打开时把 task 推入 waiting_on_human；交互被处理之后，且同一 task
上没有其他仍阻塞的 required 交互，task 才会回到 active。

过期（expire）发布 human_interaction.escalated 通知外部运维渠道。
required 输入请求过期后升级为一个 pending 的 critical 干预，task 继续阻塞，
直到干预被 resolve / dismiss，或原请求被补答。
task 恢复后，若配置了工作队列，会重新入队一个 task.run 工作项。
"""

from datetime import timedelta
from typing import Any

import structlog
from ulid import ULID

from .clock import Clock, format_ts, utc_now
from .events.dispatcher import EventDispatcher
from .models.enums import (
    EventType,
    InteractionKind,
    InteractionStatus,
    InteractionUrgency,
    TaskState,
    TransitionOutcome,
    WorkItemKind,
)
from .models.event import Event
from .models.interaction import HumanInteraction
from .models.result import TransitionResult
from .models.task import Task
from .store import StoreGroup
from .tasks import TaskStateMachine, task_metadata
from .work import WorkQueue

log = structlog.get_logger()

# 各类处理可接受的起始状态
_INPUT_OPEN = {InteractionStatus.PENDING, InteractionStatus.EXPIRED}
_INTERVENTION_OPEN = {InteractionStatus.PENDING, InteractionStatus.ACKNOWLEDGED}


class HumanInteractionGate:
    """人工交互闸门"""

    def __init__(
        self,
        stores: StoreGroup,
        dispatcher: EventDispatcher,
        tasks: TaskStateMachine,
        *,
        work_queue: WorkQueue | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._stores = stores
        self._dispatcher = dispatcher
        self._tasks = tasks
        self._work_queue = work_queue
        self._clock = clock

    # ============================================================
    # 打开交互
    # ============================================================

    async def request(
        self,
        task_id: str,
        question: str,
        required: bool = False,
        activity_id: str | None = None,
        timeout: float | None = None,
    ) -> TransitionResult:
        """打开输入请求（status=pending）

        required 时立即把 task 推入 waiting_on_human；task 无法进入该状态
        （例如已是终态）时拒绝请求，不写入任何内容。

        Args:
            timeout: 过期秒数，None 表示永不过期
        """

        async def op(stores: StoreGroup) -> TransitionResult:
            task, rejected = await self._check_task(stores, task_id, required)
            if rejected is not None:
                return rejected

            now = self._clock()
            interaction = HumanInteraction(
                interaction_id=str(ULID()),
                task_id=task_id,
                activity_id=activity_id,
                question=question,
                required=required,
                expires_at=now + timedelta(seconds=timeout) if timeout is not None else None,
                created_at=now,
            )
            await stores.interaction_store.create_interaction(interaction)

            events: list[Event] = [
                await self._dispatcher.append(
                    EventType.INTERACTION_REQUESTED,
                    {
                        "interaction_id": interaction.interaction_id,
                        "task_id": task_id,
                        "question": question,
                        "required": required,
                        "expires_at": (
                            format_ts(interaction.expires_at) if interaction.expires_at else None
                        ),
                    },
                    task_metadata(task, activity_id),
                )
            ]
            await self._block_task(stores, task, interaction, events)

            log.info(
                "human_interaction_requested",
                interaction_id=interaction.interaction_id,
                task_id=task_id,
                required=required,
            )
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=interaction, events=events
            )

        return await self._tasks.run(op)

    async def intervene(
        self,
        task_id: str,
        description: str,
        urgency: InteractionUrgency = InteractionUrgency.NORMAL,
        required: bool = True,
        activity_id: str | None = None,
    ) -> TransitionResult:
        """打开人工干预（status=pending）

        critical 干预额外发布 human_interaction.escalated。
        """

        async def op(stores: StoreGroup) -> TransitionResult:
            task, rejected = await self._check_task(stores, task_id, required)
            if rejected is not None:
                return rejected

            events: list[Event] = []
            intervention = await self._open_intervention(
                stores,
                task,
                description,
                urgency,
                required=required,
                activity_id=activity_id,
                events=events,
            )
            if urgency == InteractionUrgency.CRITICAL:
                events.append(
                    await self._dispatcher.append(
                        EventType.INTERACTION_ESCALATED,
                        {
                            "interaction_id": intervention.interaction_id,
                            "task_id": task_id,
                            "question": description,
                            "required": required,
                            "description": f"需要紧急人工干预: {description}",
                        },
                        task_metadata(task, activity_id),
                    )
                )
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=intervention, events=events
            )

        return await self._tasks.run(op)

    # ============================================================
    # 处理输入请求
    # ============================================================

    async def answer(
        self,
        interaction_id: str,
        response: str,
        by: str | None = None,
    ) -> TransitionResult:
        """回答输入请求（pending 或已升级的 expired 请求）

        回答已过期的请求会一并解决由它升级出的干预。
        """
        return await self._handle(
            interaction_id,
            kind=InteractionKind.INPUT_REQUEST,
            allowed=_INPUT_OPEN,
            new_status=InteractionStatus.ANSWERED,
            event_type=EventType.INTERACTION_ANSWERED,
            response=response,
            by=by,
        )

    async def ignore(
        self,
        interaction_id: str,
        reason: str | None = None,
        by: str | None = None,
    ) -> TransitionResult:
        """忽略输入请求（reason 记录在 response 中）"""
        return await self._handle(
            interaction_id,
            kind=InteractionKind.INPUT_REQUEST,
            allowed=_INPUT_OPEN,
            new_status=InteractionStatus.IGNORED,
            event_type=EventType.INTERACTION_IGNORED,
            response=reason,
            by=by,
        )

    async def expire(self, interaction_id: str) -> TransitionResult:
        """过期并升级（只对已超过 expires_at 的 pending 输入请求生效）"""

        async def op(stores: StoreGroup) -> TransitionResult:
            interaction = await stores.interaction_store.get_interaction(interaction_id)
            if interaction is None:
                return TransitionResult.not_found("interaction", interaction_id)
            if interaction.is_intervention:
                return TransitionResult.guard_failed("人工干预不会过期", record=interaction)
            if interaction.status == InteractionStatus.EXPIRED:
                return TransitionResult.noop("交互已过期", record=interaction)
            if interaction.status != InteractionStatus.PENDING:
                return TransitionResult.guard_failed(
                    f"交互状态为 {interaction.status}，不能过期", record=interaction
                )
            now = self._clock()
            if not interaction.is_past_due(now):
                return TransitionResult.guard_failed("交互尚未到期", record=interaction)

            applied = await stores.interaction_store.resolve(
                interaction_id,
                {InteractionStatus.PENDING},
                InteractionStatus.EXPIRED,
                escalated_at=format_ts(now),
            )
            if not applied:
                return TransitionResult.guard_failed("状态已被并发修改", record=interaction)

            task = await stores.task_store.get_task(interaction.task_id)
            metadata = task_metadata(task, interaction.activity_id) if task else None
            escalate = interaction.required and task is not None and not task.is_terminal
            if escalate:
                description = f"必需输入已超时，已升级为人工干预: {interaction.question}"
            else:
                description = f"人工交互已超时，需要人工处理: {interaction.question}"
            events = [
                await self._dispatcher.append(
                    EventType.INTERACTION_EXPIRED,
                    self._event_data(interaction, None, None),
                    metadata,
                ),
                await self._dispatcher.append(
                    EventType.INTERACTION_ESCALATED,
                    {
                        "interaction_id": interaction_id,
                        "task_id": interaction.task_id,
                        "question": interaction.question,
                        "required": interaction.required,
                        "description": description,
                    },
                    metadata,
                ),
            ]
            log.warning(
                "human_interaction_escalated",
                interaction_id=interaction_id,
                task_id=interaction.task_id,
                required=interaction.required,
            )
            if escalate:
                await self._open_intervention(
                    stores,
                    task,
                    f"必需输入已超时: {interaction.question}",
                    InteractionUrgency.CRITICAL,
                    required=True,
                    activity_id=interaction.activity_id,
                    escalated_from=interaction_id,
                    events=events,
                )
            await self._reevaluate_task(stores, interaction.task_id, events)

            updated = interaction.model_copy(
                update={"status": InteractionStatus.EXPIRED, "escalated_at": now}
            )
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED, record=updated, events=events
            )

        result = await self._tasks.run(op)
        await self._requeue_if_resumed(result)
        return result

    async def expire_due(self) -> int:
        """定时扫描：过期所有已到期的 pending 输入请求

        Returns:
            本次过期的交互数
        """
        due = await self._stores.interaction_store.list_due(format_ts(self._clock()))
        expired = 0
        for interaction in due:
            result = await self.expire(interaction.interaction_id)
            if result.applied:
                expired += 1
        if expired:
            log.info("human_interactions_expired", count=expired)
        return expired

    # ============================================================
    # 处理人工干预
    # ============================================================

    async def acknowledge(self, interaction_id: str, by: str | None = None) -> TransitionResult:
        """确认干预（仍阻塞 task，直到 resolve / dismiss）"""
        return await self._handle(
            interaction_id,
            kind=InteractionKind.INTERVENTION,
            allowed={InteractionStatus.PENDING},
            new_status=InteractionStatus.ACKNOWLEDGED,
            event_type=EventType.INTERVENTION_ACKNOWLEDGED,
            response=None,
            by=by,
        )

    async def resolve(
        self,
        interaction_id: str,
        resolution: str,
        by: str | None = None,
    ) -> TransitionResult:
        """解决干预（resolution 记录在 response 中）"""
        return await self._handle(
            interaction_id,
            kind=InteractionKind.INTERVENTION,
            allowed=_INTERVENTION_OPEN,
            new_status=InteractionStatus.RESOLVED,
            event_type=EventType.INTERVENTION_RESOLVED,
            response=resolution,
            by=by,
        )

    async def dismiss(
        self,
        interaction_id: str,
        reason: str | None = None,
        by: str | None = None,
    ) -> TransitionResult:
        """驳回干预（不需要处理或误报）"""
        return await self._handle(
            interaction_id,
            kind=InteractionKind.INTERVENTION,
            allowed=_INTERVENTION_OPEN,
            new_status=InteractionStatus.DISMISSED,
            event_type=EventType.INTERVENTION_DISMISSED,
            response=reason,
            by=by,
        )

    # ============================================================
    # 查询
    # ============================================================

    async def get(self, interaction_id: str) -> HumanInteraction | None:
        return await self._stores.interaction_store.get_interaction(interaction_id)

    async def for_task(self, task_id: str) -> list[HumanInteraction]:
        return await self._stores.interaction_store.list_for_task(task_id)

    async def open_interventions(self, task_id: str) -> list[HumanInteraction]:
        """task 上尚未解决的干预"""
        return [
            i for i in await self.for_task(task_id)
            if i.is_intervention and i.status in _INTERVENTION_OPEN
        ]

    # ============================================================
    # 内部实现
    # ============================================================

    async def _check_task(
        self,
        stores: StoreGroup,
        task_id: str,
        required: bool,
    ) -> tuple[Task | None, TransitionResult | None]:
        task = await stores.task_store.get_task(task_id)
        if task is None:
            return None, TransitionResult.not_found("task", task_id)
        if task.is_terminal:
            return task, TransitionResult.guard_failed(
                f"任务已是终态 {task.state}，不能发起人工交互", record=task
            )
        if required and task.state not in (TaskState.ACTIVE, TaskState.WAITING_ON_HUMAN):
            return task, TransitionResult.guard_failed(
                f"任务状态为 {task.state}，不能进入 waiting_on_human", record=task
            )
        return task, None

    async def _block_task(
        self,
        stores: StoreGroup,
        task: Task,
        interaction: HumanInteraction,
        events: list[Event],
    ) -> None:
        if interaction.required and task.state == TaskState.ACTIVE:
            waited = await self._tasks.wait_on_human_in(
                stores, task.task_id, reason=f"interaction {interaction.interaction_id}"
            )
            events.extend(waited.events)

    async def _open_intervention(
        self,
        stores: StoreGroup,
        task: Task,
        description: str,
        urgency: InteractionUrgency,
        *,
        required: bool,
        activity_id: str | None,
        events: list[Event],
        escalated_from: str | None = None,
    ) -> HumanInteraction:
        intervention = HumanInteraction(
            interaction_id=str(ULID()),
            task_id=task.task_id,
            activity_id=activity_id,
            kind=InteractionKind.INTERVENTION,
            question=description,
            urgency=urgency,
            required=required,
            escalated_from=escalated_from,
            created_at=self._clock(),
        )
        await stores.interaction_store.create_interaction(intervention)
        events.append(
            await self._dispatcher.append(
                EventType.INTERVENTION_REQUESTED,
                {
                    "interaction_id": intervention.interaction_id,
                    "task_id": task.task_id,
                    "description": description,
                    "urgency": urgency.value,
                    "required": required,
                    "escalated_from": escalated_from,
                },
                task_metadata(task, activity_id),
            )
        )
        await self._block_task(stores, task, intervention, events)

        if urgency == InteractionUrgency.CRITICAL:
            log.warning(
                "critical_intervention_requested",
                interaction_id=intervention.interaction_id,
                task_id=task.task_id,
                description=description,
            )
        else:
            log.info(
                "intervention_requested",
                interaction_id=intervention.interaction_id,
                task_id=task.task_id,
                urgency=urgency.value,
            )
        return intervention

    async def _handle(
        self,
        interaction_id: str,
        *,
        kind: InteractionKind,
        allowed: set[InteractionStatus],
        new_status: InteractionStatus,
        event_type: EventType,
        response: str | None,
        by: str | None,
    ) -> TransitionResult:
        async def op(stores: StoreGroup) -> TransitionResult:
            interaction = await stores.interaction_store.get_interaction(interaction_id)
            if interaction is None:
                return TransitionResult.not_found("interaction", interaction_id)
            if interaction.kind != kind:
                return TransitionResult.guard_failed(
                    f"交互类型为 {interaction.kind}，不能执行该操作", record=interaction
                )
            if interaction.status == new_status:
                return TransitionResult.noop(f"交互已是 {new_status}", record=interaction)
            if interaction.status not in allowed:
                return TransitionResult.guard_failed(
                    f"交互状态为 {interaction.status}，不能再处理", record=interaction
                )

            now = self._clock()
            now_ts = format_ts(now)
            acknowledging = new_status == InteractionStatus.ACKNOWLEDGED
            applied = await stores.interaction_store.resolve(
                interaction_id,
                allowed,
                new_status,
                response=response,
                handled_by=by,
                acknowledged_at=now_ts if acknowledging else None,
                responded_at=None if acknowledging else now_ts,
            )
            if not applied:
                return TransitionResult.guard_failed("状态已被并发修改", record=interaction)

            task = await stores.task_store.get_task(interaction.task_id)
            metadata = task_metadata(task, interaction.activity_id) if task else None
            events = [
                await self._dispatcher.append(
                    event_type, self._event_data(interaction, response, by), metadata
                )
            ]
            log.info(
                "human_interaction_handled",
                interaction_id=interaction_id,
                task_id=interaction.task_id,
                status=new_status.value,
            )
            if interaction.status == InteractionStatus.EXPIRED:
                await self._close_escalations(stores, interaction, response, by, events)
            if not acknowledging:
                await self._reevaluate_task(stores, interaction.task_id, events)

            update: dict[str, Any] = {"status": new_status}
            if response is not None:
                update["response"] = response
            if by is not None:
                update["handled_by"] = by
            update["acknowledged_at" if acknowledging else "responded_at"] = now
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED,
                record=interaction.model_copy(update=update),
                events=events,
            )

        result = await self._tasks.run(op)
        await self._requeue_if_resumed(result)
        return result

    async def _close_escalations(
        self,
        stores: StoreGroup,
        interaction: HumanInteraction,
        response: str | None,
        by: str | None,
        events: list[Event],
    ) -> None:
        """补答已过期的请求时，一并解决由它升级出的干预"""
        resolution = f"原请求已处理: {response}" if response else "原请求已处理"
        for intervention in await stores.interaction_store.list_open_escalations(
            interaction.interaction_id
        ):
            applied = await stores.interaction_store.resolve(
                intervention.interaction_id,
                _INTERVENTION_OPEN,
                InteractionStatus.RESOLVED,
                response=resolution,
                handled_by=by,
                responded_at=format_ts(self._clock()),
            )
            if not applied:
                continue
            task = await stores.task_store.get_task(intervention.task_id)
            events.append(
                await self._dispatcher.append(
                    EventType.INTERVENTION_RESOLVED,
                    self._event_data(intervention, resolution, by),
                    task_metadata(task, intervention.activity_id) if task else None,
                )
            )

    @staticmethod
    def _event_data(
        interaction: HumanInteraction,
        response: str | None,
        by: str | None,
    ) -> dict[str, Any]:
        if interaction.is_intervention:
            return {
                "interaction_id": interaction.interaction_id,
                "task_id": interaction.task_id,
                "description": interaction.question,
                "urgency": (interaction.urgency or InteractionUrgency.NORMAL).value,
                "resolution": response,
                "handled_by": by,
            }
        return {
            "interaction_id": interaction.interaction_id,
            "task_id": interaction.task_id,
            "question": interaction.question,
            "required": interaction.required,
            "response": response,
            "handled_by": by,
        }

    async def _reevaluate_task(
        self,
        stores: StoreGroup,
        task_id: str,
        events: list[Event],
    ) -> None:
        """没有其他阻塞的 required 交互时，task 回到 active

        配置了工作队列时恢复的 task 会重新入队执行，由那次执行完成 task；
        否则恢复后立即做完成检查。
        """
        task = await stores.task_store.get_task(task_id)
        if task is None or task.state != TaskState.WAITING_ON_HUMAN:
            return
        resumed = await self._tasks.resume_from_human_in(
            stores, task_id, reason="human_resolved", settle=self._work_queue is None
        )
        if resumed.applied:
            events.extend(resumed.events)
        else:
            log.info("task_still_waiting_on_human", task_id=task_id, reason=resumed.reason)

    async def _requeue_if_resumed(self, result: TransitionResult) -> None:
        """task 恢复后重新入队执行（阻塞期间不保留进程内状态）"""
        if self._work_queue is None or not result.applied:
            return
        resumed = [
            e for e in result.events
            if e.event_type == EventType.TASK_RESUMED
            and e.data.get("from_state") == TaskState.WAITING_ON_HUMAN.value
        ]
        for event in resumed:
            task: Task | None = await self._stores.task_store.get_task(event.data["task_id"])
            if task is None:
                continue
            await self._work_queue.enqueue(
                WorkItemKind.TASK_RUN,
                {"task_id": task.task_id},
                queue_name=task.queue_name,
            )
            log.info("task_requeued_after_human", task_id=task.task_id)

"""Runtime -- 进程内组件装配

显式构造 dispatcher / 状态机 / 闸门 / 队列，并注入给需要它们的组件；
handler 注册在启动阶段完成并冻结。
"""

from dataclasses import dataclass

import structlog

from .activities import ActivityTree
from .admission import AdmissionController
from .clock import Clock, utc_now
from .config import TaskhiveConfig
from .events.dispatcher import EventDispatcher
from .events.handlers import LoggingEventHandler
from .events.registry import HandlerRegistry
from .interactions import HumanInteractionGate
from .runner import AgentRegistry, TaskRunner
from .store import StoreGroup, create_store_group
from .tasks import TaskStateMachine
from .work import SqliteWorkQueue, Worker

log = structlog.get_logger()


@dataclass
class Runtime:
    """一个 worker 进程持有的全部组件"""

    config: TaskhiveConfig
    stores: StoreGroup
    registry: HandlerRegistry
    dispatcher: EventDispatcher
    work_queue: SqliteWorkQueue
    admission: AdmissionController
    tasks: TaskStateMachine
    activities: ActivityTree
    gate: HumanInteractionGate
    agents: AgentRegistry
    runner: TaskRunner
    worker: Worker

    async def close(self) -> None:
        await self.stores.close()


def default_registry() -> HandlerRegistry:
    """内置 handler 注册表（已冻结）"""
    registry = HandlerRegistry()
    LoggingEventHandler().register(registry)
    registry.freeze()
    return registry


def build_runtime(
    config: TaskhiveConfig,
    stores: StoreGroup,
    *,
    registry: HandlerRegistry | None = None,
    agents: AgentRegistry | None = None,
    use_work_queue: bool = True,
    clock: Clock = utc_now,
) -> Runtime:
    """装配组件

    use_work_queue=False 时事件同步分发，任务恢复不会自动入队。
    """
    registry = registry or default_registry()
    agents = agents or AgentRegistry()
    work_queue = SqliteWorkQueue(
        stores,
        backoff_s=config.dispatch_backoff_s,
        backoff_cap_s=config.backoff_cap_s,
        claim_timeout_s=config.claim_timeout_s,
        clock=clock,
    )
    queue = work_queue if use_work_queue else None

    dispatcher = EventDispatcher(
        stores,
        registry,
        work_queue=queue,
        max_attempts=config.dispatch_max_attempts,
        backoff_s=config.dispatch_backoff_s,
        backoff_cap_s=config.backoff_cap_s,
        legacy_enabled=config.legacy_events,
        clock=clock,
    )
    admission = AdmissionController(stores, clock=clock)
    tasks = TaskStateMachine(stores, dispatcher, clock=clock)
    activities = ActivityTree(stores, dispatcher, tasks, clock=clock)
    gate = HumanInteractionGate(stores, dispatcher, tasks, work_queue=queue, clock=clock)
    runner = TaskRunner(
        tasks,
        activities,
        gate,
        admission,
        agents,
        config,
        work_queue=queue,
        clock=clock,
    )
    worker = Worker(work_queue, dispatcher, runner)
    return Runtime(
        config=config,
        stores=stores,
        registry=registry,
        dispatcher=dispatcher,
        work_queue=work_queue,
        admission=admission,
        tasks=tasks,
        activities=activities,
        gate=gate,
        agents=agents,
        runner=runner,
        worker=worker,
    )


async def create_runtime(
    config: TaskhiveConfig,
    *,
    registry: HandlerRegistry | None = None,
    agents: AgentRegistry | None = None,
) -> Runtime:
    """打开数据库并装配组件"""
    stores = await create_store_group(config.db_path)
    runtime = build_runtime(config, stores, registry=registry, agents=agents)
    log.info("runtime_ready", db_path=config.db_path, agents=runtime.agents.agent_types())
    return runtime

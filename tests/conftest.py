"""taskhive 测试配置 -- 共享 fixture"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from taskhive.config import TaskhiveConfig
from taskhive.events.registry import HandlerRegistry
from taskhive.models.enums import EventType
from taskhive.models.event import Event
from taskhive.models.task import Task
from taskhive.runtime import Runtime, build_runtime
from taskhive.store import StoreGroup, create_store_group


class ManualClock:
    """可控时钟：每次读取前进 1 微秒，保证时间戳严格递增"""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(microseconds=1)
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class EventRecorder:
    """记录收到的事件"""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.event_type == event_type]

    def register(self, registry: HandlerRegistry) -> None:
        registry.register_many([t.value for t in EventType], self)


@pytest_asyncio.fixture
async def store_group(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """临时数据库上的 StoreGroup"""
    sg = await create_store_group(str(tmp_path / "test.db"))
    yield sg
    await sg.close()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def registry(recorder: EventRecorder) -> HandlerRegistry:
    """已冻结的注册表，所有内置事件都会进入 recorder"""
    reg = HandlerRegistry()
    recorder.register(reg)
    reg.freeze()
    return reg


@pytest.fixture
def config(tmp_path: Path) -> TaskhiveConfig:
    return TaskhiveConfig(
        db_path=str(tmp_path / "test.db"),
        dispatch_backoff_s=0.0,
        admission_backoff_s=1.0,
        backoff_cap_s=60.0,
        lease_ttl_s=600,
        default_concurrency=1,
    )


@pytest.fixture
def runtime(
    store_group: StoreGroup,
    registry: HandlerRegistry,
    config: TaskhiveConfig,
    clock: ManualClock,
) -> Runtime:
    """同步分发的运行时（事件在发布时立即交给 recorder）"""
    return build_runtime(
        config,
        store_group,
        registry=registry,
        use_work_queue=False,
        clock=clock,
    )


@pytest.fixture
def queued_runtime(
    store_group: StoreGroup,
    registry: HandlerRegistry,
    config: TaskhiveConfig,
    clock: ManualClock,
) -> Runtime:
    """经由工作队列分发的运行时"""
    return build_runtime(
        config,
        store_group,
        registry=registry,
        use_work_queue=True,
        clock=clock,
    )


@pytest.fixture
def make_active_task(runtime: Runtime):
    """工厂：创建并激活任务"""

    async def _make(title: str = "task", **kwargs) -> Task:
        created = await runtime.tasks.create_task(title, **kwargs)
        assert created.applied, created.reason
        activated = await runtime.tasks.activate(created.record.task_id)
        assert activated.applied, activated.reason
        return activated.record

    return _make

"""CLI 入口模块 -- python -m taskhive <command>

支持的命令：
  rebuild-projections   从事件日志重建 projection，并检查任务状态一致性
  redispatch-events     重新分发未处理的事件
  reap-leases           回收过期的准入租约
  expire-interactions   过期并升级已到期的人工交互
  work <queue>...       持续执行指定队列的工作项
"""

import asyncio
import sys

from .config import DEFAULT_QUEUE, EVENTS_QUEUE, load_config
from .logging_config import setup_logging

USAGE = """用法: python -m taskhive <command>
命令:
  rebuild-projections   从事件日志重建 projection，并检查任务状态一致性
  redispatch-events     重新分发未处理的事件
  reap-leases           回收过期的准入租约
  expire-interactions   过期并升级已到期的人工交互
  work <queue>...       持续执行指定队列的工作项"""


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)

    command = sys.argv[1]
    commands = {
        "rebuild-projections": rebuild_projections,
        "redispatch-events": redispatch_events,
        "reap-leases": reap_leases,
        "expire-interactions": expire_interactions,
    }

    config = load_config()
    setup_logging(config)

    if command in commands:
        asyncio.run(commands[command]())
    elif command == "work":
        queues = sys.argv[2:] or [DEFAULT_QUEUE]
        asyncio.run(work([*queues, EVENTS_QUEUE]))
    else:
        print(f"未知命令: {command}")
        print(USAGE)
        sys.exit(1)


async def rebuild_projections() -> None:
    """执行 Projection 重建"""
    from .projection import EventCounterProjection, ProjectionManager, TaskStateProjection
    from .runtime import create_runtime

    runtime = await create_runtime(load_config())
    print(f"数据库路径: {runtime.config.db_path}")
    print("开始重建 Projection...")
    try:
        counter = EventCounterProjection()
        task_states = TaskStateProjection()
        manager = ProjectionManager(runtime.dispatcher.log)
        manager.register("event_counter", counter)
        manager.register("task_states", task_states)

        event_count = await manager.rebuild_all()
        print(f"重建完成，处理 {event_count} 条事件")
        for event_type, count in sorted(counter.counts.items()):
            print(f"  {event_type}: {count}")

        drift = await task_states.drift(runtime.stores)
        if drift:
            print(f"发现 {len(drift)} 个任务状态与事件不一致:")
            for task_id, projected, actual in drift:
                print(f"  {task_id}: 事件={projected} 表={actual}")
            sys.exit(2)
    finally:
        await runtime.close()


async def redispatch_events() -> None:
    from .runtime import create_runtime

    runtime = await create_runtime(load_config())
    try:
        runtime.dispatcher.attach_work_queue(None)
        counts = await runtime.dispatcher.redispatch_pending()
        print(
            f"已处理 {counts['processed']}，失败 {counts['failed']}，死信 {counts['dead']}"
        )
    finally:
        await runtime.close()


async def reap_leases() -> None:
    from .runtime import create_runtime

    runtime = await create_runtime(load_config())
    try:
        reaped = await runtime.admission.reap_expired()
        print(f"回收 {reaped} 个过期租约")
    finally:
        await runtime.close()


async def expire_interactions() -> None:
    from .runtime import create_runtime

    runtime = await create_runtime(load_config())
    try:
        expired = await runtime.gate.expire_due()
        print(f"过期 {expired} 个人工交互")
    finally:
        await runtime.close()


async def work(queue_names: list[str]) -> None:
    """持续执行工作项，直到进程被中断"""
    from .runtime import create_runtime

    runtime = await create_runtime(load_config())
    print(f"worker 启动，队列: {', '.join(queue_names)}")
    try:
        await runtime.worker.run(queue_names)
    finally:
        await runtime.close()


if __name__ == "__main__":
    main()

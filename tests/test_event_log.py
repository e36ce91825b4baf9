"""EventLog 单元测试

测试内容：
1. stream 内 position 从 1 开始连续递增
2. 事件同时写入 task / activity / project / all 多个 stream
3. after_position 断点续读
4. 事件内容不可变（触发器阻止更新 / 删除）
5. 事务回滚后事件与 stream position 都不留下
"""

import sqlite3

import pytest
from taskhive.events.log import EventLog, activity_stream, project_stream, task_stream
from taskhive.models import ALL_STREAM, EventMetadata


@pytest.fixture
def event_log(store_group, clock) -> EventLog:
    return EventLog(store_group, clock=clock)


async def _append(event_log: EventLog, event_type: str, **meta) -> str:
    event = event_log.new_event(event_type, {"n": event_type}, EventMetadata(**meta))
    return await event_log.append(event)


class TestStreamOrdering:
    """stream 内顺序测试"""

    async def test_positions_are_contiguous_per_stream(self, event_log):
        """同一 stream 的 position 为 1..N，读取顺序等于追加顺序"""
        ids = [await _append(event_log, f"test.e{i}", task_id="t1") for i in range(5)]

        events = await event_log.read_stream(task_stream("t1"))
        assert [e.event_id for e in events] == ids
        assert await event_log.stream_version(task_stream("t1")) == 5

    async def test_event_lands_in_every_related_stream(self, event_log):
        event_id = await _append(
            event_log, "test.multi", task_id="t1", activity_id="a1", project_id="p1"
        )
        for stream in (
            task_stream("t1"),
            activity_stream("a1"),
            project_stream("p1"),
            ALL_STREAM,
        ):
            events = await event_log.read_stream(stream)
            assert [e.event_id for e in events] == [event_id]

    async def test_streams_are_independent(self, event_log):
        """不同 task 的 stream 各自从 1 计数"""
        await _append(event_log, "test.a", task_id="t1")
        await _append(event_log, "test.b", task_id="t2")
        await _append(event_log, "test.c", task_id="t1")

        assert await event_log.stream_version(task_stream("t1")) == 2
        assert await event_log.stream_version(task_stream("t2")) == 1
        assert await event_log.stream_version(ALL_STREAM) == 3

    async def test_read_after_position(self, event_log):
        """after_position 之后的事件（断点续读）"""
        ids = [await _append(event_log, f"test.e{i}", task_id="t1") for i in range(4)]

        tail = await event_log.read_stream(task_stream("t1"), after_position=2)
        assert [e.event_id for e in tail] == ids[2:]

        limited = await event_log.read_stream(task_stream("t1"), after_position=0, limit=1)
        assert [e.event_id for e in limited] == ids[:1]

    async def test_empty_stream(self, event_log):
        assert await event_log.read_stream(task_stream("missing")) == []
        assert await event_log.stream_version(task_stream("missing")) == 0

    async def test_read_all_global_order(self, event_log):
        ids = [
            await _append(event_log, "test.x", task_id=f"t{i % 2}") for i in range(4)
        ]
        events = await event_log.read_all()
        assert [e.event_id for e in events] == ids
        positions = [e.global_position for e in events]
        assert positions == sorted(positions)

    async def test_event_roundtrip_fields(self, event_log):
        event_id = await _append(event_log, "test.fields", task_id="t1", priority=30)
        event = await event_log.get_event(event_id)
        assert event is not None
        assert event.event_type == "test.fields"
        assert event.data == {"n": "test.fields"}
        assert event.metadata.priority == 30
        assert event.processed_at is None
        assert event.processing_attempts == 0


class TestImmutability:
    """事件不可变测试"""

    async def test_update_event_content_rejected(self, event_log, store_group):
        event_id = await _append(event_log, "test.frozen", task_id="t1")

        with pytest.raises(sqlite3.DatabaseError):
            await store_group.conn.execute(
                "UPDATE events SET data = '{\"tampered\": true}' WHERE event_id = ?",
                (event_id,),
            )
        await store_group.conn.rollback()

        event = await event_log.get_event(event_id)
        assert event.data == {"n": "test.frozen"}

    async def test_delete_event_rejected(self, event_log, store_group):
        event_id = await _append(event_log, "test.frozen", task_id="t1")

        with pytest.raises(sqlite3.DatabaseError):
            await store_group.conn.execute("DELETE FROM events WHERE event_id = ?", (event_id,))
        await store_group.conn.rollback()

        assert await event_log.get_event(event_id) is not None

    async def test_bookkeeping_fields_updatable(self, event_log, store_group):
        """分发簿记字段允许更新"""
        event_id = await _append(event_log, "test.bookkeeping")
        async with store_group.transaction() as stores:
            await stores.event_store.mark_processed(event_id, "2026-01-01T00:00:00.000000+00:00")

        event = await event_log.get_event(event_id)
        assert event.is_processed


class TestTransactionRollback:
    async def test_rolled_back_append_leaves_nothing(self, event_log, store_group):
        """事务失败时事件与 stream position 一起回滚"""
        event = event_log.new_event("test.rollback", {}, EventMetadata(task_id="t1"))

        with pytest.raises(RuntimeError):
            async with store_group.transaction():
                await event_log.write(event)
                raise RuntimeError("boom")

        assert await event_log.get_event(event.event_id) is None
        assert await event_log.stream_version(task_stream("t1")) == 0

        # 回滚后同一 stream 仍从 1 开始
        await _append(event_log, "test.after", task_id="t1")
        assert await event_log.stream_version(task_stream("t1")) == 1

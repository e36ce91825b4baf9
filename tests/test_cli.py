"""Runtime 装配与 CLI 命令测试

测试内容：
1. 写事务异常回滚
2. 默认 handler 注册表已冻结
3. CLI 维护命令针对临时数据库运行
4. 未知命令 / 缺少命令时退出码为 1
"""

import sys

import pytest
from taskhive.__main__ import (
    expire_interactions,
    main,
    reap_leases,
    rebuild_projections,
    redispatch_events,
)
from taskhive.config import load_config
from taskhive.exceptions import RegistryFrozenError
from taskhive.models import EventType
from taskhive.runtime import create_runtime, default_registry


@pytest.fixture
def db_env(tmp_path, monkeypatch) -> str:
    db_path = str(tmp_path / "sqlite" / "cli.db")
    monkeypatch.setenv("TASKHIVE_DB_PATH", db_path)
    return db_path


class TestStoreTransaction:
    async def test_rollback_on_error(self, store_group):
        with pytest.raises(RuntimeError):
            async with store_group.transaction() as stores:
                await stores.conn.execute(
                    "INSERT INTO semaphores (key, limit_count, held_count, updated_at) "
                    "VALUES ('agents', 1, 1, '2026-01-01')"
                )
                raise RuntimeError("abort")

        cursor = await store_group.conn.execute("SELECT COUNT(*) FROM semaphores")
        row = await cursor.fetchone()
        assert row[0] == 0


class TestRuntime:
    def test_default_registry_frozen(self):
        registry = default_registry()
        assert registry.frozen
        assert registry.handlers_for(EventType.TASK_CREATED)
        with pytest.raises(RegistryFrozenError):
            registry.register(EventType.TASK_CREATED, lambda event: None)

    async def test_create_runtime(self, db_env):
        runtime = await create_runtime(load_config())
        try:
            assert runtime.config.db_path == db_env
            created = await runtime.tasks.create_task("cli task")
            assert created.applied
        finally:
            await runtime.close()


class TestCommands:
    """维护命令测试"""

    async def test_rebuild_projections_reports_counts(self, db_env, capsys):
        runtime = await create_runtime(load_config())
        try:
            created = await runtime.tasks.create_task("t")
            await runtime.tasks.activate(created.record.task_id)
            await runtime.tasks.complete(created.record.task_id)
        finally:
            await runtime.close()

        await rebuild_projections()

        out = capsys.readouterr().out
        assert "处理 3 条事件" in out
        assert "不一致" not in out

    async def test_maintenance_commands_on_empty_db(self, db_env, capsys):
        await redispatch_events()
        await reap_leases()
        await expire_interactions()

        out = capsys.readouterr().out
        assert "已处理 0" in out
        assert "回收 0 个过期租约" in out
        assert "过期 0 个人工交互" in out

    def test_missing_command_exits(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["taskhive"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
        assert "用法" in capsys.readouterr().out

    def test_unknown_command_exits(self, monkeypatch, db_env, capsys):
        monkeypatch.setattr(sys, "argv", ["taskhive", "nope"])
        monkeypatch.setattr("taskhive.__main__.setup_logging", lambda *args: None)
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
        assert "未知命令: nope" in capsys.readouterr().out

"""SQLite 数据库初始化

PRAGMA 配置 + 表 DDL + 索引 + 事件不可变触发器。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# tasks 表 DDL
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id       TEXT PRIMARY KEY,
    title         TEXT NOT NULL DEFAULT '',
    description   TEXT NOT NULL DEFAULT '',
    state         TEXT NOT NULL DEFAULT 'pending',
    parent_id     TEXT,
    project_id    TEXT,
    priority      INTEGER NOT NULL DEFAULT 10,
    required      INTEGER NOT NULL DEFAULT 1,
    queue_name    TEXT NOT NULL DEFAULT 'agents',
    depends_on    TEXT NOT NULL DEFAULT '[]',
    paused_by     TEXT,
    error_message TEXT,
    metadata      TEXT NOT NULL DEFAULT '{}',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    completed_at  TEXT,
    version       INTEGER NOT NULL DEFAULT 1,

    FOREIGN KEY (parent_id) REFERENCES tasks(task_id) ON DELETE CASCADE
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_parent_id ON tasks(parent_id);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_state ON tasks(state);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_project_id ON tasks(project_id);",
]

# agent_activities 表 DDL（parent_id 可指向其他 task 的 activity）
_ACTIVITIES_DDL = """
CREATE TABLE IF NOT EXISTS agent_activities (
    activity_id   TEXT PRIMARY KEY,
    task_id       TEXT NOT NULL,
    parent_id     TEXT,
    agent_type    TEXT NOT NULL DEFAULT 'agent',
    status        TEXT NOT NULL DEFAULT 'active',
    required      INTEGER NOT NULL DEFAULT 1,
    paused_by     TEXT,
    lease_id      TEXT,
    error_message TEXT,
    result        TEXT,
    metadata      TEXT NOT NULL DEFAULT '{}',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    completed_at  TEXT,

    FOREIGN KEY (task_id) REFERENCES tasks(task_id) ON DELETE CASCADE,
    FOREIGN KEY (parent_id) REFERENCES agent_activities(activity_id) ON DELETE SET NULL
);
"""

_ACTIVITIES_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_activities_task_id ON agent_activities(task_id);",
    "CREATE INDEX IF NOT EXISTS idx_activities_parent_id ON agent_activities(parent_id);",
    "CREATE INDEX IF NOT EXISTS idx_activities_status ON agent_activities(status);",
]

# events 表 DDL -- append-only，不随 task 删除
_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS events (
    global_position     INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id            TEXT NOT NULL UNIQUE,
    event_type          TEXT NOT NULL,
    data                TEXT NOT NULL DEFAULT '{}',
    metadata            TEXT NOT NULL DEFAULT '{}',
    task_id             TEXT,
    activity_id         TEXT,
    project_id          TEXT,
    priority            INTEGER NOT NULL DEFAULT 10,
    occurred_at         TEXT NOT NULL,
    processed_at        TEXT,
    processing_attempts INTEGER NOT NULL DEFAULT 0,
    processing_error    TEXT,
    dead_lettered_at    TEXT
);
"""

_EVENT_STREAMS_DDL = """
CREATE TABLE IF NOT EXISTS event_streams (
    stream    TEXT NOT NULL,
    position  INTEGER NOT NULL,
    event_id  TEXT NOT NULL,

    PRIMARY KEY (stream, position),
    FOREIGN KEY (event_id) REFERENCES events(event_id)
);
"""

_EVENTS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_events_event_type ON events(event_type);",
    "CREATE INDEX IF NOT EXISTS idx_events_task_id ON events(task_id);",
    # 未处理事件扫描
    (
        "CREATE INDEX IF NOT EXISTS idx_events_pending "
        "ON events(global_position) WHERE processed_at IS NULL AND dead_lettered_at IS NULL;"
    ),
    "CREATE INDEX IF NOT EXISTS idx_event_streams_event_id ON event_streams(event_id);",
]

# 事件内容不可变：只允许更新分发簿记字段，禁止删除
_EVENTS_TRIGGERS = [
    """
    CREATE TRIGGER IF NOT EXISTS trg_events_immutable
    BEFORE UPDATE OF event_id, event_type, data, metadata, occurred_at ON events
    BEGIN
        SELECT RAISE(ABORT, 'events are append-only');
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_events_no_delete
    BEFORE DELETE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events are append-only');
    END;
    """,
]

# 扁平化 legacy 事件记录（尚未迁移到 stream 读取的消费方使用）
_LEGACY_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS legacy_events (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id          TEXT NOT NULL UNIQUE,
    event_type        TEXT NOT NULL,
    data              TEXT NOT NULL DEFAULT '{}',
    task_id           TEXT,
    agent_activity_id TEXT,
    project_id        TEXT,
    priority          INTEGER NOT NULL DEFAULT 10,
    created_at        TEXT NOT NULL
);
"""

# human_interactions 表 DDL
_INTERACTIONS_DDL = """
CREATE TABLE IF NOT EXISTS human_interactions (
    interaction_id  TEXT PRIMARY KEY,
    task_id         TEXT NOT NULL,
    activity_id     TEXT,
    kind            TEXT NOT NULL DEFAULT 'input_request',
    question        TEXT NOT NULL,
    urgency         TEXT,
    response        TEXT,
    status          TEXT NOT NULL DEFAULT 'pending',
    required        INTEGER NOT NULL DEFAULT 0,
    escalated_from  TEXT,
    handled_by      TEXT,
    expires_at      TEXT,
    acknowledged_at TEXT,
    responded_at    TEXT,
    escalated_at    TEXT,
    created_at      TEXT NOT NULL,

    FOREIGN KEY (task_id) REFERENCES tasks(task_id) ON DELETE CASCADE
);
"""

_INTERACTIONS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_interactions_task_status ON human_interactions(task_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_interactions_expiry ON human_interactions(status, expires_at);",
    "CREATE INDEX IF NOT EXISTS idx_interactions_escalated_from ON human_interactions(escalated_from);",
]

# 信号量计数器 + 租约
_SEMAPHORES_DDL = """
CREATE TABLE IF NOT EXISTS semaphores (
    key          TEXT PRIMARY KEY,
    limit_count  INTEGER NOT NULL,
    held_count   INTEGER NOT NULL DEFAULT 0 CHECK (held_count >= 0),
    updated_at   TEXT NOT NULL
);
"""

_SEMAPHORE_LEASES_DDL = """
CREATE TABLE IF NOT EXISTS semaphore_leases (
    lease_id       TEXT PRIMARY KEY,
    key            TEXT NOT NULL,
    holder         TEXT NOT NULL DEFAULT '',
    limit_count    INTEGER NOT NULL,
    held_count     INTEGER NOT NULL,
    acquired_at    TEXT NOT NULL,
    expires_at     TEXT NOT NULL,
    released_at    TEXT,
    release_reason TEXT,

    FOREIGN KEY (key) REFERENCES semaphores(key)
);
"""

_SEMAPHORE_INDEXES = [
    (
        "CREATE INDEX IF NOT EXISTS idx_leases_live "
        "ON semaphore_leases(key, expires_at) WHERE released_at IS NULL;"
    ),
]

# 工作队列
_WORK_ITEMS_DDL = """
CREATE TABLE IF NOT EXISTS work_items (
    item_id      TEXT PRIMARY KEY,
    kind         TEXT NOT NULL,
    queue_name   TEXT NOT NULL,
    payload      TEXT NOT NULL DEFAULT '{}',
    not_before   TEXT NOT NULL,
    attempts     INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    status       TEXT NOT NULL DEFAULT 'ready',
    last_error   TEXT,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);
"""

_WORK_ITEMS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_work_items_ready ON work_items(queue_name, status, not_before);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引与触发器

    Args:
        conn: aiosqlite 数据库连接
    """
    # 设置 PRAGMA
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    # 创建表
    for ddl in (
        _TASKS_DDL,
        _ACTIVITIES_DDL,
        _EVENTS_DDL,
        _EVENT_STREAMS_DDL,
        _LEGACY_EVENTS_DDL,
        _INTERACTIONS_DDL,
        _SEMAPHORES_DDL,
        _SEMAPHORE_LEASES_DDL,
        _WORK_ITEMS_DDL,
    ):
        await conn.execute(ddl)

    # 创建索引
    for idx_sql in (
        _TASKS_INDEXES
        + _ACTIVITIES_INDEXES
        + _EVENTS_INDEXES
        + _INTERACTIONS_INDEXES
        + _SEMAPHORE_INDEXES
        + _WORK_ITEMS_INDEXES
    ):
        await conn.execute(idx_sql)

    for trigger_sql in _EVENTS_TRIGGERS:
        await conn.execute(trigger_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"

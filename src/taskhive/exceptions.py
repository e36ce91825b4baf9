"""taskhive 异常体系

recoverable 标记决定调用方是否重试：
- 可恢复错误（基础设施抖动）由重试包装器按指数退避重试
- 不可恢复错误（数据不变量被破坏）直接丢弃并记录 error 日志

状态机的守卫失败不走异常，而是返回 TransitionResult(guard_failed)。
"""


class TaskhiveError(Exception):
    """taskhive 基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class TransientError(TaskhiveError):
    """暂时性基础设施错误（存储/入队协作方不可用等），可重试"""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=True)


class DataInvariantError(TaskhiveError):
    """数据不变量被破坏（例如事件引用的记录不存在）

    重试无法修复，事件分发遇到此异常时直接死信。
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)


class RecordNotFoundError(DataInvariantError):
    """事件或工作项引用的记录不存在"""

    def __init__(self, record_type: str, record_id: str) -> None:
        super().__init__(f"{record_type} 不存在: {record_id}")
        self.record_type = record_type
        self.record_id = record_id


class DispatchError(TaskhiveError):
    """一次分发尝试中至少一个 handler 失败

    由重试包装器捕获后按退避策略重新投递。
    """

    def __init__(self, event_id: str, failures: list[tuple[str, Exception]]) -> None:
        summary = "; ".join(f"{name}: {type(err).__name__}: {err}" for name, err in failures)
        super().__init__(f"事件 {event_id} 分发失败 -- {summary}", recoverable=True)
        self.event_id = event_id
        self.failures = failures


class EventValidationError(TaskhiveError):
    """事件 payload 不符合已注册的 schema"""

    def __init__(self, event_type: str, detail: str) -> None:
        super().__init__(f"事件 {event_type} payload 校验失败: {detail}", recoverable=False)
        self.event_type = event_type


class RegistryFrozenError(TaskhiveError):
    """handler 注册表已在启动阶段冻结"""

    def __init__(self, event_type: str) -> None:
        super().__init__(f"注册表已冻结，无法注册 {event_type}", recoverable=False)


class TreeCycleError(DataInvariantError):
    """activity 父节点是自身或其后代，会形成环"""

    def __init__(self, activity_id: str, parent_id: str) -> None:
        super().__init__(f"activity {activity_id} 不能挂在 {parent_id} 之下（形成环）")
        self.activity_id = activity_id
        self.parent_id = parent_id


def describe_error(error: BaseException) -> str:
    """生成面向用户的错误描述（不含堆栈）"""
    message = str(error).strip()
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"

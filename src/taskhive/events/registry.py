"""事件类型注册表

HandlerRegistry: 事件类型 -> 有序 handler 列表，进程启动时注册完毕后冻结。
EventSchemaRegistry: 事件类型 -> payload 模型，发布前校验 data。
"""

from collections.abc import Awaitable, Callable, Iterable

import structlog
from pydantic import BaseModel, ValidationError

from ..exceptions import EventValidationError, RegistryFrozenError
from ..models.event import Event
from ..models.payloads import STANDARD_PAYLOADS

log = structlog.get_logger()

EventHandler = Callable[[Event], Awaitable[None]]


def handler_name(handler: EventHandler) -> str:
    """handler 的可读名称（函数用 qualname，可调用对象用类名）"""
    return getattr(handler, "__qualname__", None) or type(handler).__name__


class HandlerRegistry:
    """事件 handler 注册表

    只按事件类型精确匹配；同一 handler 对同一类型重复注册会被忽略。
    freeze() 之后注册表只读。
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, event_type: str, handler: EventHandler) -> None:
        """为事件类型追加 handler

        Raises:
            RegistryFrozenError: 注册表已冻结
        """
        if self._frozen:
            raise RegistryFrozenError(str(event_type))
        handlers = self._handlers.setdefault(str(event_type), [])
        if handler in handlers:
            log.debug(
                "handler_already_registered",
                event_type=str(event_type),
                handler=handler_name(handler),
            )
            return
        handlers.append(handler)

    def register_many(self, event_types: Iterable[str], handler: EventHandler) -> None:
        for event_type in event_types:
            self.register(event_type, handler)

    def freeze(self) -> None:
        """冻结注册表（启动阶段结束时调用）"""
        self._frozen = True
        log.info(
            "handler_registry_frozen",
            event_types=len(self._handlers),
            handlers=sum(len(h) for h in self._handlers.values()),
        )

    def handlers_for(self, event_type: str) -> tuple[EventHandler, ...]:
        return tuple(self._handlers.get(str(event_type), ()))

    def event_types(self) -> list[str]:
        return sorted(self._handlers)


class EventSchemaRegistry:
    """事件 payload 模型注册表

    已登记类型的 data 必须通过模型校验；未登记类型原样接受。
    """

    def __init__(self, schemas: dict[str, type[BaseModel]] | None = None) -> None:
        self._schemas: dict[str, type[BaseModel]] = {
            str(k): v for k, v in (STANDARD_PAYLOADS if schemas is None else schemas).items()
        }

    def register(self, event_type: str, model: type[BaseModel]) -> None:
        self._schemas[str(event_type)] = model

    def is_known(self, event_type: str) -> bool:
        return str(event_type) in self._schemas

    def validate(self, event_type: str, data: dict) -> dict:
        """校验并规范化 payload

        Returns:
            JSON 友好的 payload dict

        Raises:
            EventValidationError: payload 不符合模型
        """
        model = self._schemas.get(str(event_type))
        if model is None:
            log.debug("event_type_unregistered", event_type=str(event_type))
            return dict(data)
        try:
            return model.model_validate(data).model_dump(mode="json")
        except ValidationError as e:
            raise EventValidationError(str(event_type), str(e)) from e

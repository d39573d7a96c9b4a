"""队列消费者注册中心。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

QueueHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class QueueConsumerDefinition:
    """队列消费者定义。处理失败的消息不重试，直接转入死信流。"""

    key: str
    name: str
    stream: str
    group: str
    handler: QueueHandler
    dead_letter_stream: str | None = None


_queue_consumers: dict[str, QueueConsumerDefinition] = {}


def _require(value: Any, label: str) -> str:
    normalized = str(value or "").strip()
    if not normalized:
        raise ValueError(f"队列消费者 {label} 不能为空")
    return normalized


def register_queue_consumer(
    *,
    key: str,
    name: str,
    stream: str,
    group: str,
    handler: QueueHandler,
    dead_letter_stream: str | None = None,
) -> QueueConsumerDefinition:
    """注册 Redis Streams 消费者定义。"""

    normalized_key = _require(key, "key")
    if normalized_key in _queue_consumers:
        raise ValueError(f"队列消费者已注册: {normalized_key}")

    definition = QueueConsumerDefinition(
        key=normalized_key,
        name=_require(name, "name"),
        stream=_require(stream, "stream"),
        group=_require(group, "group"),
        handler=handler,
        dead_letter_stream=(str(dead_letter_stream or "").strip() or None),
    )
    _queue_consumers[definition.key] = definition
    return definition


def get_queue_consumer(key: str) -> QueueConsumerDefinition | None:
    return _queue_consumers.get(key)


def list_queue_consumers() -> list[QueueConsumerDefinition]:
    """返回全部队列消费者定义。"""

    return list(_queue_consumers.values())


def reset_registry() -> None:
    """重置注册中心（主要用于测试）。"""

    _queue_consumers.clear()

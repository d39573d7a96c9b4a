"""Redis Streams 队列服务。"""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any

from redis.exceptions import ResponseError

from notesguard.services.redis_service import get_redis
from notesguard.services.task_registry import QueueConsumerDefinition

STREAM_MAXLEN = 10000


@dataclass(frozen=True, slots=True)
class StreamMessage:
    """从消费组读取到的一条消息。"""

    message_id: str
    payload: dict[str, Any]


def _json_dumps(value: dict[str, Any]) -> str:
    """序列化队列载荷。"""

    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _json_loads(value: str) -> dict[str, Any]:
    """反序列化队列载荷，非对象一律视为空载荷。"""

    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_stream_message(message_id: str, fields: dict[str, str]) -> StreamMessage:
    """解析 Stream 消息字段。"""

    return StreamMessage(
        message_id=str(message_id),
        payload=_json_loads(str(fields.get("payload") or "{}")),
    )


async def enqueue_task(stream: str, payload: dict[str, Any]) -> str:
    """向 Redis Stream 投递消息（近似裁剪到 STREAM_MAXLEN）。"""

    redis = await get_redis()
    fields = {"payload": _json_dumps(payload)}
    return str(await redis.xadd(stream, fields, maxlen=STREAM_MAXLEN, approximate=True))


async def ensure_stream_group(stream: str, group: str) -> None:
    """确保消费组存在，不存在时自动创建。"""

    redis = await get_redis()
    try:
        await redis.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
    except ResponseError as exc:
        if "BUSYGROUP" not in str(exc):
            raise


async def read_group_messages(
    stream: str,
    group: str,
    consumer_name: str,
    *,
    block_ms: int,
    count: int = 1,
) -> list[StreamMessage]:
    """从指定消费组读取新消息。"""

    redis = await get_redis()
    data = await redis.xreadgroup(
        groupname=group,
        consumername=consumer_name,
        streams={stream: ">"},
        count=max(count, 1),
        block=max(block_ms, 1),
    )

    messages: list[StreamMessage] = []
    for _, stream_messages in data or []:
        for message_id, fields in stream_messages:
            normalized = {str(k): str(v) for k, v in fields.items()}
            messages.append(parse_stream_message(str(message_id), normalized))
    return messages


async def ack_message(stream: str, group: str, message_id: str) -> None:
    """确认消费成功消息。"""

    redis = await get_redis()
    await redis.xack(stream, group, message_id)


async def move_to_dead_letter(
    definition: QueueConsumerDefinition,
    message: StreamMessage,
    *,
    error: str,
) -> str:
    """写入死信流。"""

    redis = await get_redis()
    fields = {
        "payload": _json_dumps(message.payload),
        "error": error,
        "original_stream": definition.stream,
        "original_group": definition.group,
        "original_message_id": message.message_id,
    }
    return str(
        await redis.xadd(
            resolve_dead_letter_stream(definition),
            fields,
            maxlen=STREAM_MAXLEN,
            approximate=True,
        )
    )


def resolve_dead_letter_stream(definition: QueueConsumerDefinition) -> str:
    """解析死信流名称。"""

    return definition.dead_letter_stream or f"{definition.stream}:dead"

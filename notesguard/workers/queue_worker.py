"""队列消费工作进程入口。"""

from __future__ import annotations

import asyncio
import logging
import os
import time

from notesguard.config import QUEUE_BLOCK_MS
from notesguard.db import close_db, init_db
from notesguard.services.queue_service import (
    StreamMessage,
    ack_message,
    ensure_stream_group,
    move_to_dead_letter,
    read_group_messages,
)
from notesguard.services.redis_service import close_redis
from notesguard.services.task_registry import QueueConsumerDefinition, list_queue_consumers
from notesguard.tasks import load_builtin_tasks

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _read_worker_identity() -> tuple[str, str]:
    """读取队列 worker 身份信息。"""

    worker_id = os.getenv("NG_WORKER_ID", "audit-0")
    consumer_name = f"{worker_id}:{os.getpid()}"
    return worker_id, consumer_name


async def handle_message(
    definition: QueueConsumerDefinition,
    message: StreamMessage,
    *,
    worker_id: str,
) -> str:
    """消费单条消息，返回 success / dead_lettered。

    处理失败的消息不重新投递：审计写入只尝试一次，失败的载荷进入死信流留待人工处理。
    """

    start = time.perf_counter()
    try:
        await definition.handler(
            message.payload,
            {
                "stream": definition.stream,
                "group": definition.group,
                "message_id": message.message_id,
                "worker_id": worker_id,
            },
        )
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        error_message = str(exc) or type(exc).__name__
        await move_to_dead_letter(definition, message, error=error_message)
        await ack_message(definition.stream, definition.group, message.message_id)
        logger.error(
            "消息进入死信 consumer=%s message_id=%s error=%s",
            definition.key,
            message.message_id,
            error_message,
        )
        return "dead_lettered"

    await ack_message(definition.stream, definition.group, message.message_id)
    logger.debug(
        "消息处理成功 consumer=%s message_id=%s duration_ms=%d",
        definition.key,
        message.message_id,
        int((time.perf_counter() - start) * 1000),
    )
    return "success"


async def _run_queue_worker() -> int:
    """运行队列消费 worker。"""

    await init_db()
    try:
        load_builtin_tasks()
        definitions = list_queue_consumers()
        worker_id, consumer_name = _read_worker_identity()

        if not definitions:
            logger.warning("未注册任何队列消费者，worker=%s 空转", worker_id)

        for definition in definitions:
            await ensure_stream_group(definition.stream, definition.group)
        logger.info("队列 worker 已启动 worker=%s consumers=%d", worker_id, len(definitions))

        while True:
            processed = False
            for definition in definitions:
                messages = await read_group_messages(
                    definition.stream,
                    definition.group,
                    consumer_name,
                    block_ms=max(QUEUE_BLOCK_MS, 100),
                    count=10,
                )
                if not messages:
                    continue

                processed = True
                for message in messages:
                    await handle_message(definition, message, worker_id=worker_id)

            if not processed:
                await asyncio.sleep(0.2)
    finally:
        await close_redis()
        await close_db()


def main() -> int:
    """队列 worker 同步入口。"""

    try:
        return asyncio.run(_run_queue_worker())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
